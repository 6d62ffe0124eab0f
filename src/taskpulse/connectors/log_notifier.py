# src/taskpulse/connectors/log_notifier.py

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class LogNotifier:
    """Notifier used when no chat transport is configured: messages go to the log."""

    async def notify(self, owner_id: str, message: str) -> None:
        logger.warning("Notification owner=%s: %s", owner_id, message)
