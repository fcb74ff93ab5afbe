from datetime import datetime, timezone
import logging
from pathlib import Path
import secrets
import time
from uuid import uuid4

from tabletop.core.errors import InvalidPayload, NotFound
from tabletop.services.state_store import AssetRecord, StateStore

logger = logging.getLogger(__name__)

UPLOAD_FIELD_NAME = "asset"


class AssetService:
    def __init__(
        self,
        store: StateStore,
        upload_dir: str | Path,
        *,
        max_bytes: int,
        allowed_extensions: list[str],
    ) -> None:
        self._store = store
        self.upload_dir = Path(upload_dir)
        self._max_bytes = max_bytes
        self._allowed = {extension.lower().lstrip(".") for extension in allowed_extensions}

    def ensure_upload_dir(self) -> None:
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def _validate(self, original_name: str, mime_type: str, size: int) -> str:
        extension = Path(original_name).suffix.lower().lstrip(".")
        mime_subtype = mime_type.split("/", 1)[-1].lower() if mime_type else ""
        if extension not in self._allowed or mime_subtype not in self._allowed:
            raise InvalidPayload("Only image files are allowed!")
        if size <= 0:
            raise InvalidPayload("No file uploaded")
        if size > self._max_bytes:
            raise InvalidPayload(f"File exceeds {self._max_bytes} bytes")
        return extension

    async def store_upload(self, original_name: str, mime_type: str, content: bytes) -> AssetRecord:
        extension = self._validate(original_name, mime_type, len(content))
        self.ensure_upload_dir()
        unique_suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10**9)}"
        filename = f"{UPLOAD_FIELD_NAME}-{unique_suffix}.{extension}"
        (self.upload_dir / filename).write_bytes(content)

        asset = AssetRecord(
            id=str(uuid4()),
            filename=filename,
            original_name=original_name,
            mime_type=mime_type,
            size=len(content),
            uploaded_at=datetime.now(timezone.utc).isoformat(),
        )
        await self._store.register_asset(asset)
        logger.info(f"Registered asset {asset.id} as {filename}")
        return asset

    async def list_assets(self) -> list[AssetRecord]:
        assets = await self._store.list_assets()
        return sorted(assets, key=lambda asset: asset.uploaded_at, reverse=True)

    async def get_asset(self, asset_id: str) -> AssetRecord:
        asset = await self._store.get_asset(asset_id)
        if asset is None:
            raise NotFound("Asset not found")
        return asset

    async def delete_asset(self, asset_id: str) -> None:
        asset = await self._store.get_asset(asset_id)
        if asset is None or not await self._store.remove_asset(asset_id):
            raise NotFound("Asset not found or could not be deleted")
        path = self.upload_dir / asset.filename
        if path.is_file():
            path.unlink()
