"""Notification service: persistence of in-app notifications.

Leave and workflow code never calls ``create_notification`` directly;
it goes through :func:`notify`, which isolates the write in a SAVEPOINT
so a failing notification channel cannot roll back the caller's
leave accounting.
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from portal.common.constants import NotificationType
from portal.notifications.models import Notification

logger = logging.getLogger(__name__)


class NotificationService:
    """Async notification operations."""

    @staticmethod
    async def create_notification(
        db: AsyncSession,
        *,
        recipient_id: uuid.UUID,
        type: NotificationType = NotificationType.info,
        title: str,
        message: str,
        action_url: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[uuid.UUID] = None,
    ) -> Notification:
        """Create a new notification and flush to DB."""
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            title=title,
            message=message,
            action_url=action_url,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.add(notification)
        await db.flush()
        return notification

    @staticmethod
    async def list_for_recipient(
        db: AsyncSession,
        recipient_id: uuid.UUID,
        *,
        entity_id: Optional[uuid.UUID] = None,
    ) -> list[Notification]:
        """Return notifications for one recipient, oldest first."""
        query = select(Notification).where(Notification.recipient_id == recipient_id)
        if entity_id is not None:
            query = query.where(Notification.entity_id == entity_id)
        result = await db.execute(query.order_by(Notification.created_at, Notification.id))
        return list(result.scalars().all())


# ── Fire-and-forget dispatcher ──────────────────────────────────────


async def notify(
    db: AsyncSession,
    recipient_id: Optional[uuid.UUID],
    *,
    title: str,
    message: str,
    type: NotificationType = NotificationType.info,
    action_url: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[uuid.UUID] = None,
) -> Optional[Notification]:
    """Send a notification; failures are logged and never propagate."""
    if recipient_id is None:
        return None
    try:
        async with db.begin_nested():
            return await NotificationService.create_notification(
                db,
                recipient_id=recipient_id,
                type=type,
                title=title,
                message=message,
                action_url=action_url,
                entity_type=entity_type,
                entity_id=entity_id,
            )
    except Exception:
        logger.exception(
            "Failed to send notification %r to %s (entity %s/%s)",
            title, recipient_id, entity_type, entity_id,
        )
        return None
