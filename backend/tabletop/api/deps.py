from fastapi import HTTPException, Request, status

from tabletop.core.config import Settings
from tabletop.core.errors import InvalidPayload, NotFound, TabletopError, TransientStoreFailure
from tabletop.realtime.sync_engine import SyncEngine
from tabletop.services.asset_service import AssetService
from tabletop.services.board_service import BoardService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_board_service(request: Request) -> BoardService:
    return request.app.state.board_service


def get_asset_service(request: Request) -> AssetService:
    return request.app.state.asset_service


def get_sync_engine(request: Request) -> SyncEngine:
    return request.app.state.sync_engine


def http_error(exc: TabletopError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, InvalidPayload):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    if isinstance(exc, TransientStoreFailure):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="State store unavailable",
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
