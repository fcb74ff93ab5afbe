import logging

from fastapi import APIRouter, Depends, Query, Response, status

from tabletop.api.deps import get_app_settings, get_board_service, get_sync_engine, http_error
from tabletop.core.config import Settings
from tabletop.core.errors import TabletopError
from tabletop.realtime.sync_engine import SyncEngine
from tabletop.schemas.board import (
    BoardCreateRequest,
    BoardRead,
    BoardStateRead,
    BoardUpdateRequest,
    SavedStateRead,
    SnapshotLoadRequest,
    SnapshotRead,
    SnapshotSaveRequest,
)
from tabletop.services.board_service import BoardService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("", response_model=list[BoardRead])
async def list_boards(boards: BoardService = Depends(get_board_service)) -> list[BoardRead]:
    try:
        return [BoardRead(**board.__dict__) for board in await boards.list_boards()]
    except TabletopError as exc:
        raise http_error(exc) from exc


@router.post("", response_model=BoardRead, status_code=status.HTTP_201_CREATED)
async def create_board(
    payload: BoardCreateRequest,
    boards: BoardService = Depends(get_board_service),
) -> BoardRead:
    try:
        board = await boards.create_board(payload.name.strip() if payload.name else None)
    except TabletopError as exc:
        raise http_error(exc) from exc
    return BoardRead(**board.__dict__)


@router.get("/{board_id}", response_model=BoardRead)
async def get_board(board_id: str, boards: BoardService = Depends(get_board_service)) -> BoardRead:
    try:
        return BoardRead(**(await boards.get_board(board_id)).__dict__)
    except TabletopError as exc:
        raise http_error(exc) from exc


@router.patch("/{board_id}", response_model=BoardRead)
async def rename_board(
    board_id: str,
    payload: BoardUpdateRequest,
    boards: BoardService = Depends(get_board_service),
) -> BoardRead:
    try:
        board = await boards.rename_board(board_id, payload.name.strip())
    except TabletopError as exc:
        raise http_error(exc) from exc
    return BoardRead(**board.__dict__)


@router.delete("/{board_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_board(board_id: str, boards: BoardService = Depends(get_board_service)) -> Response:
    try:
        await boards.delete_board(board_id)
    except TabletopError as exc:
        raise http_error(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{board_id}/state", response_model=BoardStateRead)
async def get_board_state(
    board_id: str,
    engine: SyncEngine = Depends(get_sync_engine),
) -> BoardStateRead:
    try:
        payload = await engine.state_payload(board_id)
    except TabletopError as exc:
        raise http_error(exc) from exc
    return BoardStateRead(board_id=board_id, pieces=payload["pieces"], locks=payload["locks"])


@router.post(
    "/{board_id}/snapshots",
    response_model=SavedStateRead,
    status_code=status.HTTP_201_CREATED,
)
async def save_snapshot(
    board_id: str,
    payload: SnapshotSaveRequest,
    boards: BoardService = Depends(get_board_service),
    engine: SyncEngine = Depends(get_sync_engine),
) -> SavedStateRead:
    name = payload.name.strip() if payload.name and payload.name.strip() else None
    try:
        saved = await boards.save_snapshot(board_id, name)
    except TabletopError as exc:
        raise http_error(exc) from exc
    await engine.announce_snapshot_saved(board_id, saved, payload.client_id)
    logger.info(f"Saved snapshot {saved.state_id} for board {board_id}")
    return SavedStateRead(**saved.__dict__)


@router.get("/{board_id}/snapshots", response_model=list[SnapshotRead])
async def list_snapshots(
    board_id: str,
    limit: int | None = Query(default=None, ge=1, le=200),
    manual_only: bool = Query(default=True),
    boards: BoardService = Depends(get_board_service),
    settings: Settings = Depends(get_app_settings),
) -> list[SnapshotRead]:
    try:
        snapshots = await boards.list_snapshots(
            board_id,
            limit=limit or settings.snapshot_list_default_limit,
            manual_only=manual_only,
        )
    except TabletopError as exc:
        raise http_error(exc) from exc
    return [SnapshotRead(**snapshot.__dict__) for snapshot in snapshots]


@router.post("/{board_id}/snapshots/load", response_model=BoardStateRead)
async def load_snapshot(
    board_id: str,
    payload: SnapshotLoadRequest,
    boards: BoardService = Depends(get_board_service),
    engine: SyncEngine = Depends(get_sync_engine),
) -> BoardStateRead:
    try:
        await boards.load_snapshot(board_id, payload.state_id)
        await engine.announce_snapshot_loaded(board_id, payload.state_id, payload.client_id)
        state = await engine.state_payload(board_id)
    except TabletopError as exc:
        raise http_error(exc) from exc
    logger.info(f"Loaded snapshot {payload.state_id} for board {board_id}")
    return BoardStateRead(board_id=board_id, pieces=state["pieces"], locks=state["locks"])
