from dataclasses import dataclass
import time
from typing import Callable

DEFAULT_TOKEN_TTL_SECONDS = 30.0


@dataclass(frozen=True)
class Token:
    board_id: str
    piece_id: str
    owner_connection_id: str
    granted_at: float


class TokenAuthority:
    """Exclusive, time-bounded piece locks, one per (board, piece).

    Expiry is lazy: a token older than the TTL is treated as absent by every
    query and physically removed on the next check or sweep.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TOKEN_TTL_SECONDS,
        *,
        exclusive_grant: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = max(0.001, float(ttl_seconds))
        self._exclusive = exclusive_grant
        self._clock = clock
        self._tokens: dict[tuple[str, str], Token] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def _is_expired(self, token: Token, now: float) -> bool:
        return now - token.granted_at >= self._ttl

    def _valid_token(self, board_id: str, piece_id: str) -> Token | None:
        key = (board_id, piece_id)
        token = self._tokens.get(key)
        if token is None:
            return None
        if self._is_expired(token, self._clock()):
            self._tokens.pop(key, None)
            return None
        return token

    def grant(self, piece_id: str, connection_id: str, board_id: str) -> bool:
        if self._exclusive:
            current = self._valid_token(board_id, piece_id)
            if current and current.owner_connection_id != connection_id:
                return False
        self._tokens[(board_id, piece_id)] = Token(
            board_id=board_id,
            piece_id=piece_id,
            owner_connection_id=connection_id,
            granted_at=self._clock(),
        )
        return True

    def check(self, piece_id: str, connection_id: str, board_id: str) -> bool:
        token = self._valid_token(board_id, piece_id)
        return token is not None and token.owner_connection_id == connection_id

    def release(self, piece_id: str, connection_id: str, board_id: str) -> bool:
        if not self.check(piece_id, connection_id, board_id):
            return False
        self._tokens.pop((board_id, piece_id), None)
        return True

    def holder(self, piece_id: str, board_id: str) -> str | None:
        token = self._valid_token(board_id, piece_id)
        return token.owner_connection_id if token else None

    def locks(self, board_id: str) -> dict[str, str]:
        now = self._clock()
        return {
            token.piece_id: token.owner_connection_id
            for (token_board_id, _), token in self._tokens.items()
            if token_board_id == board_id and not self._is_expired(token, now)
        }

    def _release_matching(self, connection_id: str, board_id: str | None) -> list[Token]:
        now = self._clock()
        released: list[Token] = []
        for key, token in list(self._tokens.items()):
            if token.owner_connection_id != connection_id:
                continue
            if board_id is not None and token.board_id != board_id:
                continue
            self._tokens.pop(key, None)
            if not self._is_expired(token, now):
                released.append(token)
        return released

    def release_all(self, connection_id: str) -> list[Token]:
        return self._release_matching(connection_id, None)

    def release_board(self, connection_id: str, board_id: str) -> list[Token]:
        return self._release_matching(connection_id, board_id)

    def purge_expired(self) -> list[Token]:
        now = self._clock()
        expired = [token for token in self._tokens.values() if self._is_expired(token, now)]
        for token in expired:
            self._tokens.pop((token.board_id, token.piece_id), None)
        return expired

    def clear(self) -> None:
        self._tokens.clear()
