from dataclasses import dataclass


@dataclass
class RoomChange:
    connection_id: str
    room_id: str
    previous_room_id: str | None

    @property
    def switched(self) -> bool:
        return self.previous_room_id is not None and self.previous_room_id != self.room_id


class SessionRegistry:
    """Which connection sits in which room, and who is in each room."""

    def __init__(self) -> None:
        self._connection_rooms: dict[str, str] = {}
        self._room_members: dict[str, set[str]] = {}

    def join(self, connection_id: str, room_id: str) -> RoomChange:
        previous_room_id = self._connection_rooms.get(connection_id)
        if previous_room_id and previous_room_id != room_id:
            self._discard_member(previous_room_id, connection_id)
        self._connection_rooms[connection_id] = room_id
        self._room_members.setdefault(room_id, set()).add(connection_id)
        return RoomChange(
            connection_id=connection_id,
            room_id=room_id,
            previous_room_id=previous_room_id,
        )

    def leave(self, connection_id: str) -> str | None:
        room_id = self._connection_rooms.pop(connection_id, None)
        if room_id:
            self._discard_member(room_id, connection_id)
        return room_id

    def _discard_member(self, room_id: str, connection_id: str) -> None:
        members = self._room_members.get(room_id)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            self._room_members.pop(room_id, None)

    def room_of(self, connection_id: str) -> str | None:
        return self._connection_rooms.get(connection_id)

    def members(self, room_id: str) -> set[str]:
        return set(self._room_members.get(room_id, set()))

    def is_active(self, room_id: str) -> bool:
        return bool(self._room_members.get(room_id))

    def active_rooms(self) -> set[str]:
        return set(self._room_members)

    def clear(self) -> None:
        self._connection_rooms.clear()
        self._room_members.clear()
