from typing import List, Optional
from pydantic import BaseModel


class NotificationResponse(BaseModel):
    id: str
    type: str
    title: str
    message: str
    link: Optional[str] = None
    requisition_id: Optional[str] = None
    is_read: bool = False
    read_at: Optional[str] = None
    created_at: str


class NotificationListResponse(BaseModel):
    data: List[NotificationResponse] = []
    unread_count: int = 0
