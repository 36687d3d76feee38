"""Notification Pydantic schemas."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from portal.common.constants import NotificationType


class NotificationOut(BaseModel):
    """Single notification in API responses."""

    id: uuid.UUID
    type: NotificationType
    title: str
    message: str
    action_url: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[uuid.UUID] = None
    is_read: bool = False
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
