import logging

import socketio

from tabletop.core.config import Settings
from tabletop.core.request_meta import extract_client_ip_from_environ
from tabletop.realtime.sync_engine import SyncEngine, Transport
from tabletop.services.rate_limit_service import RateLimitService

logger = logging.getLogger(__name__)

# events whose volume is bounded by the drag throttle rather than the event limit
THROTTLED_EVENTS = {"drag-piece"}


def board_room(board_id: str) -> str:
    return f"board:{board_id}"


class SocketIOTransport(Transport):
    def __init__(self, sio: socketio.AsyncServer) -> None:
        self.sio = sio

    async def send(self, connection_id: str, event: str, payload: object) -> None:
        await self.sio.emit(event, payload, room=connection_id)

    async def broadcast(
        self,
        board_id: str,
        event: str,
        payload: object,
        *,
        skip: str | None = None,
    ) -> None:
        await self.sio.emit(event, payload, room=board_room(board_id), skip_sid=skip)

    async def join(self, connection_id: str, board_id: str) -> None:
        await self.sio.enter_room(connection_id, board_room(board_id))

    async def leave(self, connection_id: str, board_id: str) -> None:
        await self.sio.leave_room(connection_id, board_room(board_id))


class SocketGate:
    """Connect and per-event limits in front of the sync engine."""

    def __init__(self, settings: Settings, rate_limits: RateLimitService) -> None:
        self.settings = settings
        self.rate_limits = rate_limits

    def connect_allowed(self, client_ip: str) -> bool:
        if not self.settings.rate_limit_enabled:
            return True
        decision = self.rate_limits.check(
            f"ws:connect:{client_ip or 'unknown'}",
            limit=self.settings.websocket_connect_limit,
            window_seconds=self.settings.websocket_connect_window_seconds,
        )
        return decision.allowed

    def event_allowed(self, sid: str, event_name: str) -> bool:
        if event_name in THROTTLED_EVENTS:
            interval = max(0, self.settings.drag_min_interval_ms) / 1000.0
            return self.rate_limits.allow_interval(f"ws:drag:{sid}", interval)
        if not self.settings.rate_limit_enabled:
            return True
        decision = self.rate_limits.check(
            f"ws:event:{sid}",
            limit=self.settings.websocket_event_limit,
            window_seconds=self.settings.websocket_event_window_seconds,
        )
        return decision.allowed

    def forget(self, sid: str) -> None:
        self.rate_limits.forget(f"ws:drag:{sid}")


def create_socket_server(settings: Settings) -> tuple[socketio.AsyncServer, SocketIOTransport]:
    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=settings.cors_origins or "*",
    )
    return sio, SocketIOTransport(sio)


def register_socket_handlers(
    sio: socketio.AsyncServer,
    engine: SyncEngine,
    gate: SocketGate,
) -> None:
    async def _rate_limited(sid: str, event_name: str) -> None:
        await sio.emit(
            "rate-limited",
            {"event": event_name, "message": "Too many requests. Slow down."},
            room=sid,
        )

    async def connect(sid: str, environ: dict, auth: dict | None = None) -> bool:
        client_ip = extract_client_ip_from_environ(environ)
        if not gate.connect_allowed(client_ip):
            logger.warning(f"Rejected socket connect from {client_ip}: rate limited")
            return False
        await engine.connect(sid)
        return True

    async def disconnect(sid: str, *_args) -> None:
        gate.forget(sid)
        await engine.disconnect(sid)

    def _limited(event_name: str, handler):
        async def dispatch(sid: str, data=None) -> None:
            if not gate.event_allowed(sid, event_name):
                if event_name not in THROTTLED_EVENTS:
                    await _rate_limited(sid, event_name)
                return
            await handler(sid, data)

        return dispatch

    async def get_game_state(sid: str, _data=None) -> None:
        await engine.get_game_state(sid)

    sio.on("connect", connect)
    sio.on("disconnect", disconnect)
    sio.on("get-game-state", _limited("get-game-state", get_game_state))
    sio.on("join-room", _limited("join-room", engine.join_room))
    sio.on("request-token", _limited("request-token", engine.request_token))
    sio.on("release-token", _limited("release-token", engine.release_token))
    sio.on("drag-piece", _limited("drag-piece", engine.drag_piece))
    sio.on("move-piece", _limited("move-piece", engine.move_piece))
    sio.on("add-piece", _limited("add-piece", engine.add_piece))
    sio.on("remove-piece", _limited("remove-piece", engine.remove_piece))


def build_socket_app(api_app, sio: socketio.AsyncServer) -> socketio.ASGIApp:
    return socketio.ASGIApp(sio, other_asgi_app=api_app, socketio_path="socket.io")
