"""Error taxonomy shared by the store, persistence and sync layers."""

from __future__ import annotations


class CalendarError(RuntimeError):
    """Base error raised by Verve Calendar components."""


class ParseError(CalendarError):
    """Raised when persisted calendar data cannot be decoded."""


class DuplicateEventError(CalendarError):
    """Raised when an event id (or Google event id) is already present in the store."""


class UnknownEventError(CalendarError):
    """Raised when an update targets an event id the store does not hold."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"No event with id {event_id!r} in the store")


class TokenExpiredError(CalendarError):
    """Raised when Google rejects the bearer token (expired or revoked)."""


class SyncError(CalendarError):
    """Raised when a Google Calendar request fails for any non-auth reason."""

    def __init__(self, *, status_code: int | None, message: str) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__(f"Google Calendar request failed: {message}")
        else:
            super().__init__(f"Google Calendar API request failed ({status_code}): {message}")
