import asyncio

from tabletop.core.errors import TransientStoreFailure
from tabletop.realtime.sync_engine import Transport
from tabletop.services.state_store import MemoryStateStore


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingTransport(Transport):
    def __init__(self) -> None:
        self.rooms: dict[str, set[str]] = {}
        # (recipient, event, payload) in delivery order
        self.deliveries: list[tuple[str, str, object]] = []

    async def send(self, connection_id: str, event: str, payload: object) -> None:
        self.deliveries.append((connection_id, event, payload))

    async def broadcast(self, board_id, event, payload, *, skip=None) -> None:
        for member in sorted(self.rooms.get(board_id, set())):
            if member != skip:
                self.deliveries.append((member, event, payload))

    async def join(self, connection_id: str, board_id: str) -> None:
        self.rooms.setdefault(board_id, set()).add(connection_id)

    async def leave(self, connection_id: str, board_id: str) -> None:
        self.rooms.get(board_id, set()).discard(connection_id)

    def drop(self, connection_id: str) -> None:
        for members in self.rooms.values():
            members.discard(connection_id)

    def received(self, connection_id: str, event: str | None = None) -> list:
        return [
            (name, payload) if event is None else payload
            for recipient, name, payload in self.deliveries
            if recipient == connection_id and (event is None or name == event)
        ]

    def clear(self) -> None:
        self.deliveries.clear()


class SlowMemoryStore(MemoryStateStore):
    """Yields to the loop inside every read and write so handlers interleave."""

    async def get_current_state(self, board_id: str) -> dict:
        await asyncio.sleep(0)
        state = await super().get_current_state(board_id)
        await asyncio.sleep(0)
        return state

    async def save_state(self, board_id, state, *, name=None, is_manual=False):
        await asyncio.sleep(0)
        return await super().save_state(board_id, state, name=name, is_manual=is_manual)


class FailingWritesStore(MemoryStateStore):
    def __init__(self, default_board_id: str = "default") -> None:
        super().__init__(default_board_id)
        self.fail_writes = False

    async def save_state(self, board_id, state, *, name=None, is_manual=False):
        if self.fail_writes:
            raise TransientStoreFailure("State store unavailable during save_state")
        return await super().save_state(board_id, state, name=name, is_manual=is_manual)


class YieldingTransport(RecordingTransport):
    """Yields to the loop before each fan-out; room membership is read afterwards."""

    async def broadcast(self, board_id, event, payload, *, skip=None) -> None:
        await asyncio.sleep(0)
        await super().broadcast(board_id, event, payload, skip=skip)
