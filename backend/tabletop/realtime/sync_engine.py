from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import timedelta
import logging
from typing import AsyncIterator

from pydantic import ValidationError

from tabletop.core.errors import (
    AuthorizationDenied,
    InvalidPayload,
    NotFound,
    TabletopError,
    TransientStoreFailure,
)
from tabletop.schemas.board import PieceAddPayload, PiecePosition
from tabletop.services.board_service import BoardService, Piece
from tabletop.services.session_registry import SessionRegistry
from tabletop.services.state_store import SavedState
from tabletop.services.token_service import Token, TokenAuthority

logger = logging.getLogger(__name__)

MAX_ROOM_CODE_LENGTH = 64


class Transport(ABC):
    """Delivers server events to one connection or to everyone in a board room."""

    @abstractmethod
    async def send(self, connection_id: str, event: str, payload: object) -> None: ...

    @abstractmethod
    async def broadcast(
        self,
        board_id: str,
        event: str,
        payload: object,
        *,
        skip: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def join(self, connection_id: str, board_id: str) -> None: ...

    @abstractmethod
    async def leave(self, connection_id: str, board_id: str) -> None: ...


class SyncEngine:
    """Validates client events against token ownership, mutates the board and
    fans the result out through the transport.

    Connections start unjoined; with ``auto_join_default_board`` they are
    placed on the default board when they connect.
    """

    def __init__(
        self,
        boards: BoardService,
        tokens: TokenAuthority,
        sessions: SessionRegistry,
        transport: Transport,
        *,
        default_board_id: str = "default",
        auto_join_default_board: bool = True,
        max_piece_id_length: int = 128,
    ) -> None:
        self.boards = boards
        self.tokens = tokens
        self.sessions = sessions
        self.transport = transport
        self.default_board_id = default_board_id
        self.auto_join_default_board = auto_join_default_board
        self.max_piece_id_length = max_piece_id_length

    # -- helpers --

    @asynccontextmanager
    async def _handler_boundary(self, connection_id: str, failure_message: str) -> AsyncIterator[None]:
        try:
            yield
        except TransientStoreFailure as exc:
            logger.error(f"{failure_message} for {connection_id}: {exc.message}", exc_info=True)
            await self._send_error(connection_id, failure_message)
        except TabletopError as exc:
            logger.debug(f"Rejected event from {connection_id}: {exc.message}")
            await self._send_error(connection_id, exc.message)

    async def _send_error(self, connection_id: str, message: str) -> None:
        await self.transport.send(connection_id, "error", message)

    def _require_board(self, connection_id: str) -> str:
        board_id = self.sessions.room_of(connection_id)
        if not board_id:
            raise NotFound("Not in a room")
        return board_id

    def _piece_id(self, value: object) -> str:
        if not isinstance(value, str):
            raise InvalidPayload("Piece id is required")
        piece_id = value.strip()
        if not piece_id:
            raise InvalidPayload("Piece id is required")
        if len(piece_id) > self.max_piece_id_length:
            raise InvalidPayload("Piece id is too long")
        return piece_id

    @staticmethod
    def _parse(model, data: object):
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise InvalidPayload("Invalid payload") from exc

    def _parse_piece(self, model, data: object):
        payload = self._parse(model, data)
        payload.piece_id = self._piece_id(payload.piece_id)
        return payload

    async def state_payload(self, board_id: str) -> dict:
        state = await self.boards.get_state(board_id)
        return {
            "boardId": board_id,
            "pieces": state["pieces"],
            "locks": self.tokens.locks(board_id),
        }

    async def _announce_unlocked(self, released: list[Token], skip: str | None = None) -> None:
        for token in released:
            await self.transport.broadcast(
                token.board_id,
                "piece-unlocked",
                {"pieceId": token.piece_id},
                skip=skip,
            )

    # -- connection lifecycle --

    async def connect(self, connection_id: str) -> None:
        logger.info(f"Client connected: {connection_id}")
        if self.auto_join_default_board:
            await self.join_room(connection_id, self.default_board_id)

    async def join_room(self, connection_id: str, room_code: object) -> None:
        async with self._handler_boundary(connection_id, "Failed to join room"):
            if not isinstance(room_code, str) or not room_code.strip():
                raise InvalidPayload("Room code is required")
            board_id = room_code.strip()
            if len(board_id) > MAX_ROOM_CODE_LENGTH:
                raise InvalidPayload("Room code is too long")

            await self.boards.ensure_board(board_id)

            previous_board_id = self.sessions.room_of(connection_id)
            if previous_board_id and previous_board_id != board_id:
                await self._leave_board(connection_id, previous_board_id)

            # state is read after entering the room; later commits arrive as events
            change = self.sessions.join(connection_id, board_id)
            await self.transport.join(connection_id, board_id)
            payload = await self.state_payload(board_id)
            await self.transport.send(connection_id, "game-state", payload)
            if change.previous_room_id != board_id:
                logger.info(f"{connection_id} joined board {board_id}")
                await self.transport.broadcast(
                    board_id,
                    "player-joined",
                    {"playerId": connection_id},
                    skip=connection_id,
                )

    async def _leave_board(self, connection_id: str, board_id: str) -> None:
        released = self.tokens.release_board(connection_id, board_id)
        await self._announce_unlocked(released, skip=connection_id)
        await self.transport.broadcast(
            board_id,
            "player-left",
            {"playerId": connection_id},
            skip=connection_id,
        )
        await self.transport.leave(connection_id, board_id)

    async def disconnect(self, connection_id: str) -> None:
        logger.info(f"Client disconnected: {connection_id}")
        released = self.tokens.release_all(connection_id)
        board_id = self.sessions.leave(connection_id)
        await self._announce_unlocked(released, skip=connection_id)
        if board_id:
            await self.transport.broadcast(
                board_id,
                "player-left",
                {"playerId": connection_id},
                skip=connection_id,
            )

    # -- client events --

    async def get_game_state(self, connection_id: str) -> None:
        async with self._handler_boundary(connection_id, "Failed to get game state"):
            board_id = self.sessions.room_of(connection_id) or self.default_board_id
            payload = await self.state_payload(board_id)
            await self.transport.send(connection_id, "game-state", payload)

    async def request_token(self, connection_id: str, piece_id: object) -> None:
        async with self._handler_boundary(connection_id, "Failed to request token"):
            board_id = self._require_board(connection_id)
            piece_id = self._piece_id(piece_id)
            if not self.tokens.grant(piece_id, connection_id, board_id):
                logger.debug(f"Token for {piece_id} denied to {connection_id}")
                await self.transport.send(connection_id, "token-denied", piece_id)
                return
            await self.transport.send(connection_id, "token-granted", piece_id)
            await self.transport.broadcast(
                board_id,
                "piece-locked",
                {"pieceId": piece_id, "playerId": connection_id},
                skip=connection_id,
            )

    async def release_token(self, connection_id: str, piece_id: object) -> None:
        async with self._handler_boundary(connection_id, "Failed to release token"):
            board_id = self._require_board(connection_id)
            piece_id = self._piece_id(piece_id)
            if self.tokens.release(piece_id, connection_id, board_id):
                await self.transport.broadcast(
                    board_id,
                    "piece-unlocked",
                    {"pieceId": piece_id},
                    skip=connection_id,
                )

    async def drag_piece(self, connection_id: str, data: object) -> None:
        # high-frequency and unacknowledged: anything unauthorized is dropped silently
        board_id = self.sessions.room_of(connection_id)
        if not board_id:
            return
        try:
            position = self._parse_piece(PiecePosition, data)
        except InvalidPayload:
            return
        if not self.tokens.check(position.piece_id, connection_id, board_id):
            return
        await self.transport.broadcast(
            board_id,
            "piece-dragged",
            {
                "pieceId": position.piece_id,
                "x": position.x,
                "y": position.y,
                "playerId": connection_id,
            },
            skip=connection_id,
        )

    async def move_piece(self, connection_id: str, data: object) -> None:
        async with self._handler_boundary(connection_id, "Failed to move piece"):
            board_id = self._require_board(connection_id)
            position = self._parse_piece(PiecePosition, data)
            if not self.tokens.check(position.piece_id, connection_id, board_id):
                raise AuthorizationDenied("No authority to move this piece")

            updated = await self.boards.update_piece(
                position.piece_id,
                {"x": position.x, "y": position.y, "owner": connection_id},
                board_id,
            )
            if updated is None:
                raise NotFound("Piece not found")

            await self.transport.broadcast(
                board_id,
                "piece-moved",
                {
                    "pieceId": position.piece_id,
                    "x": position.x,
                    "y": position.y,
                    "playerId": connection_id,
                },
            )

    async def add_piece(self, connection_id: str, data: object) -> None:
        async with self._handler_boundary(connection_id, "Failed to add piece"):
            board_id = self._require_board(connection_id)
            payload = self._parse_piece(PieceAddPayload, data)
            piece = Piece(
                id=payload.piece_id,
                x=payload.x,
                y=payload.y,
                asset_url=payload.asset_url,
                owner=connection_id,
            )
            await self.boards.add_piece(piece, board_id)
            self.tokens.grant(piece.id, connection_id, board_id)

            await self.transport.broadcast(
                board_id,
                "piece-added",
                {
                    "pieceId": piece.id,
                    "x": piece.x,
                    "y": piece.y,
                    "assetUrl": piece.asset_url,
                    "playerId": connection_id,
                },
            )

    async def remove_piece(self, connection_id: str, piece_id: object) -> None:
        async with self._handler_boundary(connection_id, "Failed to remove piece"):
            board_id = self._require_board(connection_id)
            piece_id = self._piece_id(piece_id)
            if not self.tokens.check(piece_id, connection_id, board_id):
                raise AuthorizationDenied("No authority to remove this piece")

            removed = await self.boards.remove_piece(piece_id, board_id)
            self.tokens.release(piece_id, connection_id, board_id)
            if not removed:
                raise NotFound("Piece not found")

            await self.transport.broadcast(
                board_id,
                "piece-removed",
                {"pieceId": piece_id, "playerId": connection_id},
            )

    # -- server-originated events --

    async def announce_snapshot_saved(
        self,
        board_id: str,
        saved: SavedState,
        client_id: str | None = None,
    ) -> None:
        await self.transport.broadcast(
            board_id,
            "game-saved",
            {
                "savedAt": saved.saved_at,
                "name": saved.name,
                "stateId": saved.state_id,
                "savedBy": client_id,
                "isManual": saved.is_manual,
            },
        )

    async def announce_snapshot_loaded(
        self,
        board_id: str,
        state_id: str,
        client_id: str | None = None,
    ) -> None:
        await self.transport.broadcast(
            board_id,
            "game-state-loaded",
            {"stateId": state_id, "loadedBy": client_id},
        )
        await self.transport.broadcast(board_id, "game-state", await self.state_payload(board_id))

    async def release_expired_tokens(self) -> int:
        expired = self.tokens.purge_expired()
        await self._announce_unlocked(expired)
        return len(expired)

    async def run_maintenance(self, board_idle_ttl: timedelta) -> None:
        await self.release_expired_tokens()
        await self.boards.cleanup_idle_boards(board_idle_ttl, keep=self.sessions.active_rooms())
