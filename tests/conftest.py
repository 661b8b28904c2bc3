"""Shared fixtures for the Verve Calendar test suite."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

import pytest
import structlog

from verve_calendar.core.logging import _profile_context
from verve_calendar.core.state import MemoryKeyValueStore
from verve_calendar.models import Event
from verve_calendar.persistence import PersistenceAdapter
from verve_calendar.store import EventStore
from verve_calendar.sync import SyncEngine

# Fixed "now" for fetch-window assertions.
FROZEN_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


class RecordingNotifier:
    """Notifier that keeps every message for assertions."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str, str]] = []

    def info(self, title: str, message: str) -> None:
        self.messages.append(("info", title, message))

    def error(self, title: str, message: str) -> None:
        self.messages.append(("error", title, message))

    def titles(self, level: str | None = None) -> list[str]:
        return [title for lvl, title, _ in self.messages if level is None or lvl == level]


class FakeRemoteCalendar:
    """In-memory stand-in for ``GoogleCalendarClient``.

    ``next_ids`` are handed out by ``create_event`` before generated ones.
    ``create_errors`` maps a local event id to the error its creation raises.
    Setting ``create_gate`` suspends every create until the gate is set.
    """

    def __init__(self) -> None:
        self.remote_events: list[Event] = []
        self.next_ids: list[str] = []
        self.fetch_error: Exception | None = None
        self.create_errors: dict[str, Exception] = {}
        self.patch_error: Exception | None = None
        self.create_gate: asyncio.Event | None = None
        self.closed = False

        self.fetch_calls: list[tuple[str, datetime, datetime]] = []
        self.created: list[tuple[str, Event]] = []
        self.patched: list[tuple[str, str, Event]] = []
        self._counter = 0

    @property
    def call_count(self) -> int:
        return len(self.fetch_calls) + len(self.created) + len(self.patched)

    async def fetch_events(
        self, token: str, window_start: datetime, window_end: datetime
    ) -> list[Event]:
        self.fetch_calls.append((token, window_start, window_end))
        if self.fetch_error is not None:
            raise self.fetch_error
        return [event.model_copy() for event in self.remote_events]

    async def create_event(self, token: str, event: Event) -> str:
        self.created.append((token, event))
        if self.create_gate is not None:
            await self.create_gate.wait()
        error = self.create_errors.get(event.id)
        if error is not None:
            raise error
        if self.next_ids:
            return self.next_ids.pop(0)
        self._counter += 1
        return f"remote-{self._counter}"

    async def patch_event(self, token: str, remote_id: str, event: Event) -> None:
        self.patched.append((token, remote_id, event))
        if self.patch_error is not None:
            raise self.patch_error

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _reset_logging():
    """Undo any ``configure_logging`` call made by a test."""
    root = logging.getLogger()
    saved_level = root.level
    token = _profile_context.set(None)
    yield
    for handler in list(root.handlers):
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(saved_level)
    _profile_context.reset(token)
    structlog.reset_defaults()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def persistence(kv: MemoryKeyValueStore) -> PersistenceAdapter:
    return PersistenceAdapter(kv)


@pytest.fixture
def store(persistence: PersistenceAdapter) -> EventStore:
    event_store = EventStore()
    persistence.attach(event_store)
    return event_store


@pytest.fixture
def remote() -> FakeRemoteCalendar:
    return FakeRemoteCalendar()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def engine(store, persistence, remote, notifier):
    sync_engine = SyncEngine(store, persistence, remote, notifier, clock=lambda: FROZEN_NOW)
    yield sync_engine
    await sync_engine.aclose()
