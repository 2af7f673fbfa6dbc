from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ReviewDecisionRequest(BaseModel):
    notes: str = Field(default="", max_length=2000)


class RejectDecisionRequest(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000)


class StoreLocationUpdate(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class StorageEventPayload(BaseModel):
    """Object finalize notification posted by an external object store."""

    name: str = Field(..., min_length=1, max_length=1024)
    contentType: str = "application/octet-stream"
    size: int = Field(default=0, ge=0)
    timeCreated: Optional[datetime] = None
    bucket: str = ""
