import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging

from tabletop.core.errors import NotFound
from tabletop.services.state_store import BoardInfo, SavedState, SnapshotSummary, StateStore

logger = logging.getLogger(__name__)

POSITION_FIELDS = ("x", "y")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _idle_since(board: BoardInfo, cutoff: datetime) -> bool:
    if not board.last_modified:
        return False
    try:
        last_modified = datetime.fromisoformat(board.last_modified)
    except ValueError:
        return False
    if last_modified.tzinfo is None:
        last_modified = last_modified.replace(tzinfo=timezone.utc)
    return last_modified < cutoff


@dataclass
class Piece:
    id: str
    x: float
    y: float
    asset_url: str
    owner: str | None = None
    created_at: str = field(default_factory=lambda: _utc_now().isoformat())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "x": self.x,
            "y": self.y,
            "assetUrl": self.asset_url,
            "owner": self.owner,
            "createdAt": self.created_at,
        }


class BoardService:
    """Piece CRUD for boards, always through the state store.

    Each mutation is a read-modify-write of the whole piece collection, so
    writes are funnelled through one ``asyncio.Lock`` per board.
    """

    def __init__(self, store: StateStore, default_board_id: str = "default") -> None:
        self._store = store
        self.default_board_id = default_board_id
        self._board_locks: dict[str, asyncio.Lock] = {}

    @property
    def store(self) -> StateStore:
        return self._store

    def _lock_for(self, board_id: str) -> asyncio.Lock:
        lock = self._board_locks.get(board_id)
        if lock is None:
            lock = asyncio.Lock()
            self._board_locks[board_id] = lock
        return lock

    async def get_state(self, board_id: str) -> dict:
        state = await self._store.get_current_state(board_id)
        state.setdefault("pieces", [])
        return state

    async def get_all_pieces(self, board_id: str) -> list[dict]:
        state = await self.get_state(board_id)
        return state["pieces"]

    async def get_piece(self, piece_id: str, board_id: str) -> dict | None:
        pieces = await self.get_all_pieces(board_id)
        return next((piece for piece in pieces if piece.get("id") == piece_id), None)

    async def add_piece(self, piece: Piece, board_id: str) -> dict:
        async with self._lock_for(board_id):
            state = await self.get_state(board_id)
            entry = piece.to_dict()
            state["pieces"].append(entry)
            await self._store.save_state(board_id, state)
            return entry

    async def update_piece(self, piece_id: str, updates: dict, board_id: str) -> dict | None:
        async with self._lock_for(board_id):
            state = await self.get_state(board_id)
            for index, piece in enumerate(state["pieces"]):
                if piece.get("id") == piece_id:
                    merged = {**piece, **updates}
                    state["pieces"][index] = merged
                    await self._store.save_state(board_id, state)
                    return merged
            return None

    async def remove_piece(self, piece_id: str, board_id: str) -> bool:
        async with self._lock_for(board_id):
            state = await self.get_state(board_id)
            remaining = [piece for piece in state["pieces"] if piece.get("id") != piece_id]
            if len(remaining) == len(state["pieces"]):
                return False
            state["pieces"] = remaining
            await self._store.save_state(board_id, state)
            return True

    # -- snapshots --

    async def save_snapshot(self, board_id: str, name: str | None = None) -> SavedState:
        async with self._lock_for(board_id):
            state = await self.get_state(board_id)
            state["savedAt"] = _utc_now().isoformat()
            return await self._store.save_state(board_id, state, name=name, is_manual=True)

    async def list_snapshots(
        self,
        board_id: str,
        *,
        limit: int = 10,
        manual_only: bool = True,
    ) -> list[SnapshotSummary]:
        return await self._store.list_states(board_id, limit=limit, manual_only=manual_only)

    async def load_snapshot(self, board_id: str, state_id: str) -> dict:
        async with self._lock_for(board_id):
            switched = await self._store.switch_to_state(board_id, state_id)
            if not switched:
                raise NotFound(f"State {state_id} not found")
            return await self.get_state(board_id)

    # -- boards --

    async def create_board(self, name: str | None = None) -> BoardInfo:
        board = await self._store.create_board(name)
        logger.info(f"Created board {board.id} ({board.name})")
        return board

    async def ensure_board(self, board_id: str) -> BoardInfo:
        return await self._store.ensure_board(board_id)

    async def get_board(self, board_id: str) -> BoardInfo:
        board = await self._store.get_board(board_id)
        if board is None:
            raise NotFound(f"Board {board_id} not found")
        return board

    async def list_boards(self) -> list[BoardInfo]:
        return await self._store.list_boards()

    async def rename_board(self, board_id: str, name: str) -> BoardInfo:
        if not await self._store.update_board(board_id, name=name):
            raise NotFound(f"Board {board_id} not found")
        return await self.get_board(board_id)

    async def delete_board(self, board_id: str) -> None:
        async with self._lock_for(board_id):
            deleted = await self._store.delete_board(board_id)
        if not deleted:
            raise NotFound(f"Board {board_id} not found")
        logger.info(f"Deleted board {board_id}")

    async def cleanup_idle_boards(
        self,
        max_idle: timedelta,
        keep: set[str] | None = None,
    ) -> list[str]:
        protected = {self.default_board_id, *(keep or set())}
        cutoff = _utc_now() - max_idle
        removed: list[str] = []
        for board in await self._store.list_boards():
            if board.id in protected or not _idle_since(board, cutoff):
                continue
            async with self._lock_for(board.id):
                # a mutation may have landed while waiting for the lock
                current = await self._store.get_board(board.id)
                if current is None or not _idle_since(current, cutoff):
                    continue
                await self._store.delete_board(board.id)
            removed.append(board.id)
        if removed:
            logger.info(f"Removed {len(removed)} idle boards")
        return removed
