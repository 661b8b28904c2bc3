"""User-facing notifications (the "toasts" of the calendar UI)."""

from __future__ import annotations

import logging
from typing import Protocol

from verve_calendar.core.logging import redact_credential_values

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Sink for short messages meant for the user, not the log."""

    def info(self, title: str, message: str) -> None: ...

    def error(self, title: str, message: str) -> None: ...


class LoggingNotifier:
    """Notifier that records messages in the application log."""

    def info(self, title: str, message: str) -> None:
        logger.info("%s: %s", title, redact_credential_values(message))

    def error(self, title: str, message: str) -> None:
        logger.error("%s: %s", title, redact_credential_values(message))

