from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class AuditEvent(BaseModel):
    event_type: str
    event_category: str
    user_id: Optional[str] = None
    success: bool = True
    ip_address: Optional[str] = None
    event_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditLogOut(BaseModel):
    id: int
    user_id: Optional[str]
    action: str
    details: Optional[str]
    timestamp: datetime

    class Config:
        from_attributes = True
