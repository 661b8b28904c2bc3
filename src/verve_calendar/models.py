"""Calendar event model.

``Event`` is the single record type shared by the store, persistence and the
Google sync layer. Attribute names are snake_case in Python; the persisted
JSON and private Google metadata use the camelCase aliases
(``startTime``, ``googleEventId``).
"""

from __future__ import annotations

import datetime as dt
import re
import uuid
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

PROGRESS_STEP = 10
PROGRESS_COMPLETE = 100

_TIME_OF_DAY_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def new_event_id() -> str:
    """Return a fresh local event id."""
    return uuid.uuid4().hex


def validate_progress(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("progress must be an integer")
    if value < 0 or value > PROGRESS_COMPLETE:
        raise ValueError(f"progress must be between 0 and {PROGRESS_COMPLETE}")
    if value % PROGRESS_STEP:
        raise ValueError(f"progress must be a multiple of {PROGRESS_STEP}")
    return value


class Event(BaseModel):
    """A single calendar entry with task-style progress tracking."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    id: str = Field(default_factory=new_event_id, min_length=1)
    title: str
    description: str | None = None
    date: dt.date
    start_time: str
    end_time: str
    progress: int = 0
    google_event_id: str | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("description", "google_event_id")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("start_time", "end_time")
    @classmethod
    def _validate_time_of_day(cls, value: str) -> str:
        normalized = value.strip()
        if _TIME_OF_DAY_PATTERN.fullmatch(normalized) is None:
            raise ValueError(f"time must be a zero-padded 24-hour HH:MM string, got {value!r}")
        return normalized

    @field_validator("progress")
    @classmethod
    def _validate_progress(cls, value: int) -> int:
        return validate_progress(value)

    @model_validator(mode="before")
    @classmethod
    def _progress_from_completed(cls, data: Any) -> Any:
        # A record that only says "completed" is fully progressed.
        if isinstance(data, dict) and data.get("progress") is None and data.get("completed") is True:
            return {**data, "progress": PROGRESS_COMPLETE}
        return data

    @computed_field
    @property
    def completed(self) -> bool:
        return self.progress == PROGRESS_COMPLETE

    @property
    def is_mirrored(self) -> bool:
        return self.google_event_id is not None

    def with_progress(self, progress: int) -> Event:
        """Return a copy with *progress* set; ``completed`` follows from it."""
        validate_progress(progress)
        return self.model_copy(update={"progress": progress})

    def with_completed(self, completed: bool) -> Event:
        """Return a copy marked complete (progress 100) or reopened (progress 0)."""
        return self.with_progress(PROGRESS_COMPLETE if completed else 0)

    def with_remote_id(self, google_event_id: str) -> Event:
        return self.model_copy(update={"google_event_id": google_event_id})

    def to_storage(self) -> dict[str, Any]:
        """Serialize to the camelCase JSON shape used on disk."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
