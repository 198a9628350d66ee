"""
Uploader notifications for video processing outcomes.

Delivers JSON events to a webhook (the notification gateway that fans out to
email/push). With no webhook configured, events are only logged.

Delivery is fire-and-forget: every public method swallows and logs its own
errors so a notification problem can never undo a status transition.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Optional, Set

import httpx

from config import NOTIFICATION_WEBHOOK_TIMEOUT, NOTIFICATION_WEBHOOK_URL
from ingest.contracts import VideoNotification
from ingest.enums import NotificationType

logger = logging.getLogger(__name__)


@dataclass
class NotificationMetrics:
    """In-process delivery counters."""

    sent: int = 0
    failed: int = 0
    logged_only: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)

    def record(self, notification_type: NotificationType) -> None:
        key = notification_type.value
        self.by_type[key] = self.by_type.get(key, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sent": self.sent,
            "failed": self.failed,
            "logged_only": self.logged_only,
            "by_type": dict(self.by_type),
        }


class WebhookNotificationService:
    """NotificationService that posts events to a webhook with httpx."""

    def __init__(
        self,
        webhook_url: str = NOTIFICATION_WEBHOOK_URL,
        timeout: float = NOTIFICATION_WEBHOOK_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client
        self.metrics = NotificationMetrics()
        self._pending: Set[asyncio.Task] = set()

    async def notify_video_ready(self, data: VideoNotification) -> None:
        await self._send(NotificationType.VIDEO_READY, data)

    async def notify_video_partial_ready(self, data: VideoNotification) -> None:
        await self._send(NotificationType.VIDEO_PARTIAL_READY, data)

    async def notify_video_failed(self, data: VideoNotification) -> None:
        await self._send(NotificationType.VIDEO_FAILED, data)

    async def notify_quality_retry_failed(self, data: VideoNotification) -> None:
        await self._send(NotificationType.QUALITY_FAILED, data)

    def send_fire_and_forget(self, coro: Awaitable[Any]) -> None:
        """
        Run a notification coroutine in the background.

        Exceptions are logged at debug level and otherwise ignored.
        """

        async def _safe_send():
            try:
                await coro
            except Exception as e:
                logger.debug(f"Failed to send notification (fire-and-forget): {e}")

        try:
            task = asyncio.create_task(_safe_send())
        except RuntimeError:
            logger.debug("Cannot send notification: no running event loop")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for background notifications (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def build_payload(self, notification_type: NotificationType, data: VideoNotification) -> Dict[str, Any]:
        return {
            "event": notification_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": asdict(data),
        }

    async def _send(self, notification_type: NotificationType, data: VideoNotification) -> bool:
        """
        Deliver one notification.

        Returns:
            True if the webhook accepted it, False otherwise (never raises)
        """
        self.metrics.record(notification_type)

        if not self.webhook_url:
            self.metrics.logged_only += 1
            logger.info(
                f"Notification {notification_type.value} for video {data.video_id} "
                f"(user {data.user_id}, quality {data.quality_name or '-'})"
            )
            return False

        payload = self.build_payload(notification_type, data)
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
                response.raise_for_status()
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
                    response.raise_for_status()

            self.metrics.sent += 1
            logger.info(f"Notification sent: {notification_type.value} for video {data.video_id}")
            return True

        except httpx.TimeoutException:
            self.metrics.failed += 1
            logger.warning(f"Notification webhook timed out after {self.timeout}s")
            return False
        except httpx.HTTPStatusError as e:
            self.metrics.failed += 1
            logger.warning(f"Notification webhook returned error: {e.response.status_code}")
            return False
        except Exception as e:
            self.metrics.failed += 1
            logger.warning(f"Failed to send notification webhook: {e}")
            return False
