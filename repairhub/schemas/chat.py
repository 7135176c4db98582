from typing import Optional

from pydantic import BaseModel, Field


class MessageCreate(BaseModel):
    body: str
    client_id: Optional[str] = Field(default=None, max_length=64)


class LocationUpdate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    heading: Optional[float] = None
    speed: Optional[float] = None
    accuracy: Optional[float] = None
