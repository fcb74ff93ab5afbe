from pydantic import BaseModel


class AssetRead(BaseModel):
    id: str
    filename: str
    original_name: str
    url: str
    mime_type: str
    size: int
    uploaded_at: str
