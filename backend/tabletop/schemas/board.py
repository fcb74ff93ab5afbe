from pydantic import BaseModel, ConfigDict, Field


class PiecePosition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    piece_id: str = Field(alias="pieceId")
    x: float
    y: float


class PieceAddPayload(PiecePosition):
    asset_url: str = Field(alias="assetUrl", min_length=1, max_length=2048)


class PieceRead(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    x: float
    y: float
    asset_url: str | None = Field(default=None, alias="assetUrl")
    owner: str | None = None
    created_at: str | None = Field(default=None, alias="createdAt")


class BoardStateRead(BaseModel):
    board_id: str
    pieces: list[PieceRead]
    locks: dict[str, str] = Field(default_factory=dict)


class BoardCreateRequest(BaseModel):
    name: str | None = Field(default=None, max_length=120)


class BoardUpdateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=120)


class BoardRead(BaseModel):
    id: str
    name: str
    created_at: str | None = None
    last_modified: str | None = None
    state_count: int = 0


class SnapshotSaveRequest(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    client_id: str | None = Field(default=None, max_length=128)


class SnapshotLoadRequest(BaseModel):
    state_id: str = Field(min_length=1, max_length=160)
    client_id: str | None = Field(default=None, max_length=128)


class SavedStateRead(BaseModel):
    state_id: str
    name: str
    saved_at: str
    is_manual: bool


class SnapshotRead(BaseModel):
    id: str
    name: str
    saved_at: str
    is_manual: bool


class RoomRequest(BaseModel):
    room_code: str = Field(min_length=1, max_length=64)


class RoomRead(BaseModel):
    room_code: str
    piece_count: int
