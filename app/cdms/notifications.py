from __future__ import annotations

import logging
from typing import Any

logger = logging.getLogger(__name__)


class NotificationSink:
    """
    Fire-and-forget user notifications. Callers treat every failure as non-fatal.
    """

    def notify(self, user_id: int, document_id: int, context: dict[str, Any] | None = None) -> None:
        raise NotImplementedError


class LoggingNotificationSink(NotificationSink):
    def notify(self, user_id: int, document_id: int, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        logger.info(
            "notify user_id=%s document_id=%s kind=%s context=%s",
            user_id,
            document_id,
            ctx.get("kind", "generic"),
            ctx,
        )


def notify_safely(sink: NotificationSink, user_id: int, document_id: int, context: dict[str, Any]) -> bool:
    """
    Deliver one notification; log and report False instead of raising.
    """
    try:
        sink.notify(user_id, document_id, context)
        return True
    except Exception as e:
        logger.error("Notification failed (user_id=%s document_id=%s): %s", user_id, document_id, e)
        return False
