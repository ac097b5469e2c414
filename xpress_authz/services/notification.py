# This project was developed with assistance from AI tools.
"""Approval notifications.

Transport is out of scope here; the dispatcher logs each message so the
orchestrator's notify calls stay observable.
"""

import logging
from typing import Any

from xpress_db.enums import NotificationChannel

from ..schemas.approval import NotificationSettings

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    async def send(
        self, channel: NotificationChannel, template_id: str, payload: dict[str, Any]
    ) -> None:
        logger.info(
            "Notification %s via %s: %s",
            template_id,
            channel.value,
            payload.get("request_id", ""),
        )

    async def notify(
        self, notification: NotificationSettings, template_id: str, payload: dict[str, Any]
    ) -> None:
        """Send ``template_id`` on every channel the settings name."""
        for channel in notification.notification_channels:
            await self.send(channel, template_id, payload)
