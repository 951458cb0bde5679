from typing import Any, Dict, Optional
from pydantic import BaseModel, UUID4
from datetime import datetime


class Notification(BaseModel):
    id: UUID4
    role: str
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    reference_id: Optional[UUID4] = None
    created_at: datetime

    class Config:
        from_attributes = True
