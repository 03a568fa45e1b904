from pydantic import BaseModel, Field
from typing import List, Optional


class ConnectionState(BaseModel):
    id: str
    remote: Optional[str] = None
    state: str
    pending: int = Field(0, ge=0, description="Frames queued but not yet sent")


class RelayStatus(BaseModel):
    connections: List[ConnectionState] = []
    open: int = Field(0, ge=0, description="Connections eligible for broadcast")
