from fastapi import APIRouter, Depends

from tabletop.api.deps import get_board_service, http_error
from tabletop.core.errors import TabletopError
from tabletop.schemas.board import RoomRead, RoomRequest
from tabletop.services.board_service import BoardService

router = APIRouter()


@router.post("", response_model=RoomRead)
async def create_or_get_room(
    payload: RoomRequest,
    boards: BoardService = Depends(get_board_service),
) -> RoomRead:
    room_code = payload.room_code.strip()
    try:
        await boards.ensure_board(room_code)
        pieces = await boards.get_all_pieces(room_code)
    except TabletopError as exc:
        raise http_error(exc) from exc
    return RoomRead(room_code=room_code, piece_count=len(pieces))
