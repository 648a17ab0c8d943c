from __future__ import annotations

import logging
import os
from typing import Tuple

logger = logging.getLogger(__name__)


class PushProvider:
    def send(
        self,
        *,
        endpoint: str,
        p256dh: str,
        auth: str,
        payload: dict,
        correlation_id: str | None,
    ) -> None:
        raise NotImplementedError


class NoopProvider(PushProvider):
    def send(
        self,
        *,
        endpoint: str,
        p256dh: str,
        auth: str,
        payload: dict,
        correlation_id: str | None,
    ) -> None:
        return None


class LogProvider(PushProvider):
    """Development provider: writes the push to the application log."""

    def send(
        self,
        *,
        endpoint: str,
        p256dh: str,
        auth: str,
        payload: dict,
        correlation_id: str | None,
    ) -> None:
        logger.info(
            "push (log provider)",
            extra={"endpoint": endpoint, "title": payload.get("title"), "correlation_id": correlation_id},
        )


def get_push_provider() -> Tuple[PushProvider, bool]:
    provider_name = (
        os.getenv("NOTIFICATIONS_PUSH_PROVIDER")
        or os.getenv("PUSH_PROVIDER")
        or ""
    ).strip().lower()
    if not provider_name or provider_name in {"none", "noop", "disabled"}:
        return NoopProvider(), False
    if provider_name == "log":
        return LogProvider(), True
    raise ValueError(f"Unsupported push provider: {provider_name}")
