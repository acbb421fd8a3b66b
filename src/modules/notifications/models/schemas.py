from pydantic import BaseModel
from datetime import datetime
from typing import Optional

class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    link: Optional[str] = None
    recipient_email: str
    created_at: datetime
    updated_at: datetime
    user_id: Optional[int] = None
    read: bool = False

    model_config = {"from_attributes": True}
