from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger(__name__)

TARGET_CASE = "case"
TARGET_DOCUMENT = "document"


class Notifier(Protocol):
    def notify(self, target_kind: str, target_id: str, outcome: str) -> None: ...


class LoggingNotifier:
    def notify(self, target_kind: str, target_id: str, outcome: str) -> None:
        logger.info("Notification: %s %s finished with status %s", target_kind, target_id, outcome)


def safe_notify(notifier: Notifier | None, target_kind: str, target_id: str, outcome: str) -> None:
    """Fire-and-forget delivery: failures are logged and never propagate."""
    if notifier is None:
        return
    try:
        notifier.notify(target_kind, target_id, outcome)
    except Exception:
        logger.exception("Failed to deliver %s notification for %s %s", outcome, target_kind, target_id)
