from __future__ import annotations

import logging
import os
from typing import List, Tuple

logger = logging.getLogger(__name__)


class NotificationProvider:
    def send(
        self,
        *,
        recipient: str,
        event_type: str,
        payload: dict,
    ) -> None:
        raise NotImplementedError


class NoopProvider(NotificationProvider):
    def send(
        self,
        *,
        recipient: str,
        event_type: str,
        payload: dict,
    ) -> None:
        return None


class LoggingProvider(NotificationProvider):
    """Writes notifications to the application log; useful on single hosts."""

    def send(
        self,
        *,
        recipient: str,
        event_type: str,
        payload: dict,
    ) -> None:
        logger.info(
            "Notification %s for %s",
            event_type,
            recipient,
            extra={"recipient": recipient, "event_type": event_type},
        )


class InMemoryProvider(NotificationProvider):
    """Collects sent notifications; tests inspect ``sent``."""

    def __init__(self) -> None:
        self.sent: List[dict] = []

    def send(
        self,
        *,
        recipient: str,
        event_type: str,
        payload: dict,
    ) -> None:
        self.sent.append({"recipient": recipient, "event_type": event_type, "payload": payload})


def get_notification_provider() -> Tuple[NotificationProvider, bool]:
    provider_name = (os.getenv("NOTIFICATIONS_PROVIDER") or "").strip().lower()
    if not provider_name or provider_name in {"none", "noop", "disabled"}:
        return NoopProvider(), False
    if provider_name == "log":
        return LoggingProvider(), True
    raise ValueError(f"Unsupported notification provider: {provider_name}")
