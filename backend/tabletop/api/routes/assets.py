from fastapi import APIRouter, Depends, File, HTTPException, Response, UploadFile, status

from tabletop.api.deps import get_asset_service, http_error
from tabletop.core.errors import TabletopError
from tabletop.schemas.asset import AssetRead
from tabletop.services.asset_service import AssetService
from tabletop.services.state_store import AssetRecord

router = APIRouter()


def _asset_read(asset: AssetRecord) -> AssetRead:
    return AssetRead(
        id=asset.id,
        filename=asset.filename,
        original_name=asset.original_name,
        url=asset.url,
        mime_type=asset.mime_type,
        size=asset.size,
        uploaded_at=asset.uploaded_at,
    )


@router.get("", response_model=list[AssetRead])
async def list_assets(assets: AssetService = Depends(get_asset_service)) -> list[AssetRead]:
    try:
        return [_asset_read(asset) for asset in await assets.list_assets()]
    except TabletopError as exc:
        raise http_error(exc) from exc


@router.post("/upload", response_model=AssetRead, status_code=status.HTTP_201_CREATED)
async def upload_asset(
    asset: UploadFile | None = File(default=None),
    assets: AssetService = Depends(get_asset_service),
) -> AssetRead:
    if asset is None or not asset.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded")
    content = await asset.read()
    try:
        record = await assets.store_upload(asset.filename, asset.content_type or "", content)
    except TabletopError as exc:
        raise http_error(exc) from exc
    return _asset_read(record)


@router.get("/{asset_id}", response_model=AssetRead)
async def get_asset(asset_id: str, assets: AssetService = Depends(get_asset_service)) -> AssetRead:
    try:
        return _asset_read(await assets.get_asset(asset_id))
    except TabletopError as exc:
        raise http_error(exc) from exc


@router.delete("/{asset_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_asset(asset_id: str, assets: AssetService = Depends(get_asset_service)) -> Response:
    try:
        await assets.delete_asset(asset_id)
    except TabletopError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
