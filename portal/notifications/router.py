"""Notification endpoints: the caller's in-app notifications."""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from portal.auth.dependencies import get_current_user
from portal.core_hr.models import Employee
from portal.database import get_db
from portal.notifications.schemas import NotificationOut
from portal.notifications.service import NotificationService

router = APIRouter(prefix="", tags=["notifications"])


# ── GET /: list current user's notifications ───────────────────────

@router.get("", response_model=list[NotificationOut])
async def list_notifications(
    entity_id: Optional[uuid.UUID] = Query(default=None, description="Filter by entity"),
    employee: Employee = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await NotificationService.list_for_recipient(db, employee.id, entity_id=entity_id)
