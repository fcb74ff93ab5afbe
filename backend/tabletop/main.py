import asyncio
from datetime import timedelta
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.base import BaseHTTPMiddleware

from tabletop.api.routes import router as api_router
from tabletop.core.config import Settings, get_settings
from tabletop.core.errors import TabletopError
from tabletop.core.logging import configure_logging
from tabletop.core.request_meta import extract_client_ip
from tabletop.realtime.socket_server import (
    SocketGate,
    build_socket_app,
    create_socket_server,
    register_socket_handlers,
)
from tabletop.realtime.sync_engine import SyncEngine
from tabletop.services.asset_service import AssetService
from tabletop.services.board_service import BoardService
from tabletop.services.rate_limit_service import RateLimitService
from tabletop.services.session_registry import SessionRegistry
from tabletop.services.state_store import StateStore, build_state_store
from tabletop.services.token_service import TokenAuthority

logger = logging.getLogger(__name__)


class ApiRateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, settings: Settings, rate_limits: RateLimitService) -> None:
        super().__init__(app)
        self.settings = settings
        self.rate_limits = rate_limits

    async def dispatch(self, request, call_next):
        settings = self.settings
        if not settings.rate_limit_enabled:
            return await call_next(request)

        if request.url.path.endswith("/health"):
            return await call_next(request)

        client_ip = extract_client_ip(request)
        path = request.url.path.lower()
        if path.endswith("/assets/upload"):
            scope = "upload"
            limit = settings.rate_limit_upload_limit
            window_seconds = settings.rate_limit_upload_window_seconds
        else:
            scope = "global"
            limit = settings.rate_limit_global_limit
            window_seconds = settings.rate_limit_global_window_seconds

        decision = self.rate_limits.check(
            f"api:{scope}:{client_ip}",
            limit=limit,
            window_seconds=window_seconds,
        )
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset-Seconds": str(decision.reset_after_seconds),
        }
        if not decision.allowed:
            headers["Retry-After"] = str(decision.retry_after_seconds)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded"},
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response


async def _maintenance_loop(engine: SyncEngine, settings: Settings) -> None:
    idle_ttl = timedelta(hours=settings.board_idle_ttl_hours)
    while True:
        await asyncio.sleep(settings.maintenance_interval_seconds)
        try:
            await engine.run_maintenance(idle_ttl)
        except TabletopError as exc:
            logger.error(f"Maintenance pass failed: {exc.message}")


def create_api_app(
    settings: Settings | None = None,
    store: StateStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    store = store or build_state_store(settings)
    rate_limits = RateLimitService()
    tokens = TokenAuthority(
        settings.token_ttl_seconds,
        exclusive_grant=settings.token_exclusive_grant,
    )
    sessions = SessionRegistry()
    boards = BoardService(store, settings.default_board_id)
    assets = AssetService(
        store,
        settings.upload_dir,
        max_bytes=settings.upload_max_bytes,
        allowed_extensions=settings.upload_allowed_extensions,
    )
    sio, transport = create_socket_server(settings)
    engine = SyncEngine(
        boards,
        tokens,
        sessions,
        transport,
        default_board_id=settings.default_board_id,
        auto_join_default_board=settings.auto_join_default_board,
        max_piece_id_length=settings.max_piece_id_length,
    )
    register_socket_handlers(sio, engine, SocketGate(settings, rate_limits))

    api_app = FastAPI(title=settings.app_name, debug=settings.debug)
    api_app.state.settings = settings
    api_app.state.store = store
    api_app.state.board_service = boards
    api_app.state.asset_service = assets
    api_app.state.sync_engine = engine
    api_app.state.sio = sio
    api_app.state.maintenance_task = None

    api_app.add_middleware(ApiRateLimitMiddleware, settings=settings, rate_limits=rate_limits)
    api_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    api_app.include_router(api_router, prefix=settings.api_prefix)
    assets.ensure_upload_dir()
    api_app.mount("/assets", StaticFiles(directory=str(assets.upload_dir)), name="assets")

    @api_app.on_event("startup")
    async def on_startup() -> None:
        await boards.ensure_board(settings.default_board_id)
        if settings.maintenance_interval_seconds > 0:
            api_app.state.maintenance_task = asyncio.create_task(
                _maintenance_loop(engine, settings)
            )
        logger.info(f"{settings.app_name} started with {settings.state_store_backend} store")

    @api_app.on_event("shutdown")
    async def on_shutdown() -> None:
        task = api_app.state.maintenance_task
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await store.close()

    return api_app


def create_app(settings: Settings | None = None, store: StateStore | None = None):
    api_app = create_api_app(settings, store)
    return build_socket_app(api_app, api_app.state.sio)


app = create_app()
