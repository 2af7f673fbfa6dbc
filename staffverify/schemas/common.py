from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str
    version: str
    requests_count: int
    pending_count: int
    users_count: int
    storage_backend: str
