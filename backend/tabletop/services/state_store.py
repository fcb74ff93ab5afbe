from abc import ABC, abstractmethod
import copy
from dataclasses import dataclass
from datetime import datetime, timezone
import functools
import json
import logging
import time
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import RedisError

from tabletop.core.config import Settings
from tabletop.core.errors import TransientStoreFailure

logger = logging.getLogger(__name__)

GAME_PREFIX = "game:"
GAME_STATES_SUFFIX = ":states"
GAME_META_SUFFIX = ":meta"
GAME_CURRENT_SUFFIX = ":current"
ASSETS_KEY = "game:assets"


def states_key(board_id: str) -> str:
    return f"{GAME_PREFIX}{board_id}{GAME_STATES_SUFFIX}"


def meta_key(board_id: str) -> str:
    return f"{GAME_PREFIX}{board_id}{GAME_META_SUFFIX}"


def current_key(board_id: str) -> str:
    return f"{GAME_PREFIX}{board_id}{GAME_CURRENT_SUFFIX}"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    return moment.isoformat()


def empty_state() -> dict:
    return {"pieces": []}


@dataclass
class BoardInfo:
    id: str
    name: str
    created_at: str | None
    last_modified: str | None
    state_count: int = 0


@dataclass
class SavedState:
    state_id: str
    name: str
    saved_at: str
    is_manual: bool


@dataclass
class SnapshotSummary:
    id: str
    name: str
    saved_at: str
    is_manual: bool


@dataclass
class AssetRecord:
    id: str
    filename: str
    original_name: str
    mime_type: str
    size: int
    uploaded_at: str

    @property
    def url(self) -> str:
        return f"/assets/{self.filename}"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "originalName": self.original_name,
            "mimeType": self.mime_type,
            "size": self.size,
            "uploadedAt": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AssetRecord":
        return cls(
            id=str(data["id"]),
            filename=str(data.get("filename", "")),
            original_name=str(data.get("originalName", "")),
            mime_type=str(data.get("mimeType") or data.get("mimetype") or ""),
            size=int(data.get("size") or 0),
            uploaded_at=str(data.get("uploadedAt", "")),
        )


def _default_board_name(board_id: str, default_board_id: str) -> str:
    return "Default Board" if board_id == default_board_id else f"Board {board_id}"


def _summary_from_record(record: dict) -> SnapshotSummary:
    return SnapshotSummary(
        id=record["id"],
        name=record.get("name") or record["id"],
        saved_at=record["savedAt"],
        is_manual=bool(record.get("isManual")),
    )


class StateStore(ABC):
    """Persistence for board snapshots, board metadata and asset records.

    Every piece mutation is written as a full snapshot appended to the
    board's history; the board's current pointer selects the live one.
    Callers serialize writes per board.
    """

    def __init__(self, default_board_id: str = "default") -> None:
        self.default_board_id = default_board_id
        self._last_auto_ms: dict[str, int] = {}

    def _next_state_id(self, board_id: str, name: str | None) -> tuple[str, int]:
        timestamp_ms = int(time.time() * 1000)
        last_ms = self._last_auto_ms.get(board_id, 0)
        if timestamp_ms <= last_ms:
            timestamp_ms = last_ms + 1
        self._last_auto_ms[board_id] = timestamp_ms
        return (name or f"state-{timestamp_ms}"), timestamp_ms

    # -- snapshots --

    @abstractmethod
    async def get_current_state(self, board_id: str) -> dict:
        """Return the live state ``{"pieces": [...]}``; empty when no pointer."""

    @abstractmethod
    async def save_state(
        self,
        board_id: str,
        state: dict,
        *,
        name: str | None = None,
        is_manual: bool = False,
    ) -> SavedState:
        """Append a snapshot and move the current pointer to it."""

    @abstractmethod
    async def list_states(
        self,
        board_id: str,
        *,
        limit: int = 10,
        manual_only: bool = False,
    ) -> list[SnapshotSummary]:
        """Newest first."""

    @abstractmethod
    async def switch_to_state(self, board_id: str, state_id: str) -> bool:
        """Point the board at an existing snapshot. False when it does not exist."""

    # -- boards --

    @abstractmethod
    async def create_board(self, name: str | None = None) -> BoardInfo: ...

    @abstractmethod
    async def ensure_board(self, board_id: str) -> BoardInfo: ...

    @abstractmethod
    async def get_board(self, board_id: str) -> BoardInfo | None: ...

    @abstractmethod
    async def list_boards(self) -> list[BoardInfo]: ...

    @abstractmethod
    async def update_board(self, board_id: str, *, name: str | None = None) -> bool: ...

    @abstractmethod
    async def delete_board(self, board_id: str) -> bool: ...

    # -- assets --

    @abstractmethod
    async def register_asset(self, asset: AssetRecord) -> None: ...

    @abstractmethod
    async def list_assets(self) -> list[AssetRecord]: ...

    @abstractmethod
    async def get_asset(self, asset_id: str) -> AssetRecord | None: ...

    @abstractmethod
    async def remove_asset(self, asset_id: str) -> bool: ...

    async def close(self) -> None:
        return None


class MemoryStateStore(StateStore):
    def __init__(self, default_board_id: str = "default") -> None:
        super().__init__(default_board_id)
        self._meta: dict[str, dict[str, str]] = {}
        self._states: dict[str, list[dict]] = {}
        self._current: dict[str, str] = {}
        self._assets: list[dict] = []

    def _touch_meta(self, board_id: str) -> None:
        now = _iso(_utc_now())
        meta = self._meta.setdefault(
            board_id,
            {
                "name": _default_board_name(board_id, self.default_board_id),
                "created_at": now,
            },
        )
        meta["last_modified"] = now

    def _board_info(self, board_id: str) -> BoardInfo:
        meta = self._meta[board_id]
        return BoardInfo(
            id=board_id,
            name=meta.get("name") or f"Board {board_id}",
            created_at=meta.get("created_at"),
            last_modified=meta.get("last_modified"),
            state_count=len(self._states.get(board_id, [])),
        )

    async def get_current_state(self, board_id: str) -> dict:
        current_id = self._current.get(board_id)
        if not current_id:
            return empty_state()
        for record in reversed(self._states.get(board_id, [])):
            if record["id"] == current_id:
                return copy.deepcopy(record["data"])
        return empty_state()

    async def save_state(
        self,
        board_id: str,
        state: dict,
        *,
        name: str | None = None,
        is_manual: bool = False,
    ) -> SavedState:
        state_id, timestamp_ms = self._next_state_id(board_id, name)
        saved_at = _iso(datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc))
        self._states.setdefault(board_id, []).append(
            {
                "id": state_id,
                "name": name,
                "data": copy.deepcopy(state),
                "savedAt": saved_at,
                "isManual": is_manual,
            }
        )
        self._current[board_id] = state_id
        self._touch_meta(board_id)
        return SavedState(
            state_id=state_id,
            name=name or state_id,
            saved_at=saved_at,
            is_manual=is_manual,
        )

    async def list_states(
        self,
        board_id: str,
        *,
        limit: int = 10,
        manual_only: bool = False,
    ) -> list[SnapshotSummary]:
        records = list(reversed(self._states.get(board_id, [])))
        if manual_only:
            records = [record for record in records if record.get("isManual") is True]
        return [_summary_from_record(record) for record in records[: max(0, limit)]]

    async def switch_to_state(self, board_id: str, state_id: str) -> bool:
        if not any(record["id"] == state_id for record in self._states.get(board_id, [])):
            return False
        self._current[board_id] = state_id
        self._touch_meta(board_id)
        return True

    async def create_board(self, name: str | None = None) -> BoardInfo:
        board_id = str(uuid4())
        now = _utc_now()
        self._meta[board_id] = {
            "name": name or f"Board {now.strftime('%Y-%m-%d %H:%M:%S')}",
            "created_at": _iso(now),
            "last_modified": _iso(now),
        }
        await self.save_state(board_id, empty_state(), name="initial")
        return self._board_info(board_id)

    async def ensure_board(self, board_id: str) -> BoardInfo:
        if board_id not in self._meta:
            self._touch_meta(board_id)
        return self._board_info(board_id)

    async def get_board(self, board_id: str) -> BoardInfo | None:
        if board_id not in self._meta:
            return None
        return self._board_info(board_id)

    async def list_boards(self) -> list[BoardInfo]:
        return [self._board_info(board_id) for board_id in self._meta]

    async def update_board(self, board_id: str, *, name: str | None = None) -> bool:
        if board_id not in self._meta:
            return False
        if name:
            self._meta[board_id]["name"] = name
        self._touch_meta(board_id)
        return True

    async def delete_board(self, board_id: str) -> bool:
        existed = board_id in self._meta
        self._meta.pop(board_id, None)
        self._states.pop(board_id, None)
        self._current.pop(board_id, None)
        self._last_auto_ms.pop(board_id, None)
        return existed

    async def register_asset(self, asset: AssetRecord) -> None:
        self._assets.append(asset.to_dict())

    async def list_assets(self) -> list[AssetRecord]:
        return [AssetRecord.from_dict(entry) for entry in self._assets]

    async def get_asset(self, asset_id: str) -> AssetRecord | None:
        entry = next((entry for entry in self._assets if entry["id"] == asset_id), None)
        return AssetRecord.from_dict(entry) if entry else None

    async def remove_asset(self, asset_id: str) -> bool:
        remaining = [entry for entry in self._assets if entry["id"] != asset_id]
        if len(remaining) == len(self._assets):
            return False
        self._assets = remaining
        return True


def _redis_call(func):
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except RedisError as exc:
            logger.error(f"Redis error in {func.__name__}: {exc}", exc_info=True)
            raise TransientStoreFailure(f"State store unavailable during {func.__name__}") from exc

    return wrapper


class RedisStateStore(StateStore):
    """Layout: ``game:<id>:states`` sorted set of JSON snapshots scored by
    epoch millis, ``game:<id>:meta`` hash, ``game:<id>:current`` snapshot id,
    and ``game:assets`` JSON list."""

    def __init__(self, client: redis.Redis, default_board_id: str = "default") -> None:
        super().__init__(default_board_id)
        self._redis = client

    @classmethod
    def from_url(cls, url: str, default_board_id: str = "default") -> "RedisStateStore":
        return cls(redis.from_url(url, decode_responses=True), default_board_id)

    async def _records(self, board_id: str) -> list[dict]:
        raw_states = await self._redis.zrevrange(states_key(board_id), 0, -1)
        return [json.loads(raw) for raw in raw_states]

    async def _touch_meta(self, board_id: str) -> None:
        key = meta_key(board_id)
        now = _iso(_utc_now())
        if not await self._redis.exists(key):
            await self._redis.hset(
                key,
                mapping={
                    "name": _default_board_name(board_id, self.default_board_id),
                    "created_at": now,
                },
            )
        await self._redis.hset(key, "last_modified", now)

    async def _board_info(self, board_id: str) -> BoardInfo | None:
        metadata = await self._redis.hgetall(meta_key(board_id))
        if not metadata:
            return None
        state_count = await self._redis.zcard(states_key(board_id))
        return BoardInfo(
            id=board_id,
            name=metadata.get("name") or f"Board {board_id}",
            created_at=metadata.get("created_at"),
            last_modified=metadata.get("last_modified"),
            state_count=int(state_count or 0),
        )

    async def _written_board_info(self, board_id: str) -> BoardInfo:
        info = await self._board_info(board_id)
        if info is None:
            raise TransientStoreFailure(f"Board {board_id} metadata missing after write")
        return info

    @_redis_call
    async def get_current_state(self, board_id: str) -> dict:
        current_id = await self._redis.get(current_key(board_id))
        if not current_id:
            return empty_state()
        for record in await self._records(board_id):
            if record.get("id") == current_id:
                return record.get("data") or empty_state()
        return empty_state()

    @_redis_call
    async def save_state(
        self,
        board_id: str,
        state: dict,
        *,
        name: str | None = None,
        is_manual: bool = False,
    ) -> SavedState:
        state_id, timestamp_ms = self._next_state_id(board_id, name)
        saved_at = _iso(datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc))
        member = json.dumps(
            {
                "id": state_id,
                "name": name,
                "data": state,
                "savedAt": saved_at,
                "isManual": is_manual,
            }
        )
        await self._redis.zadd(states_key(board_id), {member: timestamp_ms})
        await self._redis.set(current_key(board_id), state_id)
        await self._touch_meta(board_id)
        return SavedState(
            state_id=state_id,
            name=name or state_id,
            saved_at=saved_at,
            is_manual=is_manual,
        )

    @_redis_call
    async def list_states(
        self,
        board_id: str,
        *,
        limit: int = 10,
        manual_only: bool = False,
    ) -> list[SnapshotSummary]:
        records = await self._records(board_id)
        if manual_only:
            records = [record for record in records if record.get("isManual") is True]
        return [_summary_from_record(record) for record in records[: max(0, limit)]]

    @_redis_call
    async def switch_to_state(self, board_id: str, state_id: str) -> bool:
        records = await self._records(board_id)
        if not any(record.get("id") == state_id for record in records):
            return False
        await self._redis.set(current_key(board_id), state_id)
        await self._touch_meta(board_id)
        return True

    @_redis_call
    async def create_board(self, name: str | None = None) -> BoardInfo:
        board_id = str(uuid4())
        now = _utc_now()
        await self._redis.hset(
            meta_key(board_id),
            mapping={
                "name": name or f"Board {now.strftime('%Y-%m-%d %H:%M:%S')}",
                "created_at": _iso(now),
                "last_modified": _iso(now),
            },
        )
        await self.save_state(board_id, empty_state(), name="initial")
        return await self._written_board_info(board_id)

    @_redis_call
    async def ensure_board(self, board_id: str) -> BoardInfo:
        if not await self._redis.exists(meta_key(board_id)):
            await self._touch_meta(board_id)
        return await self._written_board_info(board_id)

    @_redis_call
    async def get_board(self, board_id: str) -> BoardInfo | None:
        return await self._board_info(board_id)

    @_redis_call
    async def list_boards(self) -> list[BoardInfo]:
        boards: list[BoardInfo] = []
        async for key in self._redis.scan_iter(match=f"{GAME_PREFIX}*{GAME_META_SUFFIX}"):
            board_id = key[len(GAME_PREFIX) : -len(GAME_META_SUFFIX)]
            info = await self._board_info(board_id)
            if info:
                boards.append(info)
        return boards

    @_redis_call
    async def update_board(self, board_id: str, *, name: str | None = None) -> bool:
        key = meta_key(board_id)
        if not await self._redis.exists(key):
            return False
        updates = {"last_modified": _iso(_utc_now())}
        if name:
            updates["name"] = name
        await self._redis.hset(key, mapping=updates)
        return True

    @_redis_call
    async def delete_board(self, board_id: str) -> bool:
        deleted = await self._redis.delete(
            meta_key(board_id),
            states_key(board_id),
            current_key(board_id),
        )
        self._last_auto_ms.pop(board_id, None)
        return bool(deleted)

    async def _asset_entries(self) -> list[dict]:
        raw = await self._redis.get(ASSETS_KEY)
        return json.loads(raw) if raw else []

    @_redis_call
    async def register_asset(self, asset: AssetRecord) -> None:
        entries = await self._asset_entries()
        entries.append(asset.to_dict())
        await self._redis.set(ASSETS_KEY, json.dumps(entries))

    @_redis_call
    async def list_assets(self) -> list[AssetRecord]:
        return [AssetRecord.from_dict(entry) for entry in await self._asset_entries()]

    @_redis_call
    async def get_asset(self, asset_id: str) -> AssetRecord | None:
        entry = next(
            (entry for entry in await self._asset_entries() if entry.get("id") == asset_id),
            None,
        )
        return AssetRecord.from_dict(entry) if entry else None

    @_redis_call
    async def remove_asset(self, asset_id: str) -> bool:
        entries = await self._asset_entries()
        remaining = [entry for entry in entries if entry.get("id") != asset_id]
        if len(remaining) == len(entries):
            return False
        await self._redis.set(ASSETS_KEY, json.dumps(remaining))
        return True

    async def close(self) -> None:
        await self._redis.aclose()


def build_state_store(settings: Settings) -> StateStore:
    backend = settings.state_store_backend.strip().lower()
    if backend == "memory":
        return MemoryStateStore(settings.default_board_id)
    if backend == "redis":
        return RedisStateStore.from_url(settings.redis_url, settings.default_board_id)
    raise ValueError(f"Unsupported state store backend: {settings.state_store_backend}")
