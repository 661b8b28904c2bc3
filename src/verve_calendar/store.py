"""In-memory event store with awaited change observers.

Every mutation returns only after all subscribed listeners have run, so a
write-through persistence listener has finished before the caller resumes.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import date
from enum import StrEnum

from verve_calendar.errors import DuplicateEventError, UnknownEventError
from verve_calendar.models import Event

logger = logging.getLogger(__name__)


class ChangeKind(StrEnum):
    """Kind of store mutation delivered to listeners."""

    ADDED = "added"
    UPDATED = "updated"


@dataclass(frozen=True)
class StoreChange:
    """A single store mutation.

    ``events`` holds the added or updated events, ``previous`` the replaced
    version for an update, and ``snapshot`` the full store contents after
    the mutation.
    """

    kind: ChangeKind
    events: tuple[Event, ...]
    snapshot: tuple[Event, ...]
    previous: Event | None = None


StoreListener = Callable[[StoreChange], Awaitable[None]]


class EventStore:
    """Ordered collection of events; the canonical state for a session."""

    def __init__(self, events: Iterable[Event] = ()) -> None:
        self._events: list[Event] = []
        self._listeners: list[StoreListener] = []
        for event in events:
            self._check_insertable(event, self._events)
            self._events.append(event)

    def subscribe(self, listener: StoreListener) -> None:
        """Register *listener*; listeners run in subscription order."""
        self._listeners.append(listener)

    def all(self) -> tuple[Event, ...]:
        return tuple(self._events)

    def get(self, event_id: str) -> Event | None:
        for event in self._events:
            if event.id == event_id:
                return event
        return None

    def find_by_remote_id(self, google_event_id: str) -> Event | None:
        for event in self._events:
            if event.google_event_id == google_event_id:
                return event
        return None

    def for_date(self, day: date) -> list[Event]:
        """Return the events occurring on *day*, ordered by start time."""
        return sorted(
            (event for event in self._events if event.date == day),
            key=lambda event: event.start_time,
        )

    def unsynced(self) -> list[Event]:
        return [event for event in self._events if event.google_event_id is None]

    async def add(self, event: Event) -> None:
        self._check_insertable(event, self._events)
        self._events.append(event)
        await self._notify(StoreChange(ChangeKind.ADDED, (event,), self.all()))

    async def add_many(self, events: Iterable[Event]) -> None:
        """Append *events* as a single mutation (one listener round)."""
        staged = list(self._events)
        added: list[Event] = []
        for event in events:
            self._check_insertable(event, staged)
            staged.append(event)
            added.append(event)
        if not added:
            return
        self._events = staged
        await self._notify(StoreChange(ChangeKind.ADDED, tuple(added), self.all()))

    async def update(self, event: Event) -> None:
        """Replace the stored event sharing ``event.id``.

        Raises UnknownEventError when no such event exists.
        """
        for index, existing in enumerate(self._events):
            if existing.id == event.id:
                break
        else:
            raise UnknownEventError(event.id)

        if event.google_event_id is not None:
            holder = self.find_by_remote_id(event.google_event_id)
            if holder is not None and holder.id != event.id:
                raise DuplicateEventError(
                    f"Google event {event.google_event_id!r} is already mirrored by {holder.id!r}"
                )

        self._events[index] = event
        await self._notify(
            StoreChange(ChangeKind.UPDATED, (event,), self.all(), previous=existing)
        )

    @staticmethod
    def _check_insertable(event: Event, current: list[Event]) -> None:
        for existing in current:
            if existing.id == event.id:
                raise DuplicateEventError(f"Event id {event.id!r} is already in the store")
            if event.google_event_id is not None and existing.google_event_id == (
                event.google_event_id
            ):
                raise DuplicateEventError(
                    f"Google event {event.google_event_id!r} is already mirrored by {existing.id!r}"
                )

    async def _notify(self, change: StoreChange) -> None:
        logger.debug("Store %s: %s", change.kind, [event.id for event in change.events])
        for listener in self._listeners:
            await listener(change)
