"""Calendar service: wires storage, the event store and Google sync together.

This is the entry point user interfaces talk to. It restores state on open
(malformed stored events are reported and replaced by an empty calendar),
exposes the user operations, and forwards session control to the sync engine.
"""

from __future__ import annotations

import logging
from datetime import date

from verve_calendar.config import CalendarSettings
from verve_calendar.core.state import FileKeyValueStore, KeyValueStore
from verve_calendar.errors import ParseError, UnknownEventError
from verve_calendar.models import Event
from verve_calendar.notify import LoggingNotifier, Notifier
from verve_calendar.persistence import PersistenceAdapter
from verve_calendar.remote import GoogleCalendarClient
from verve_calendar.store import EventStore
from verve_calendar.sync import RemoteCalendar, SyncEngine, SyncReport, SyncState

logger = logging.getLogger(__name__)


class CalendarService:
    """User-level calendar operations over a synced event store."""

    def __init__(
        self,
        store: EventStore,
        persistence: PersistenceAdapter,
        engine: SyncEngine,
        notifier: Notifier,
        *,
        owned_client: GoogleCalendarClient | None = None,
    ) -> None:
        self.store = store
        self.persistence = persistence
        self.engine = engine
        self.notifier = notifier
        self._owned_client = owned_client

    @classmethod
    async def open(
        cls,
        settings: CalendarSettings,
        *,
        kv: KeyValueStore | None = None,
        client: RemoteCalendar | None = None,
        notifier: Notifier | None = None,
    ) -> CalendarService:
        """Load persisted state and resume any stored Google session."""
        notifier = notifier or LoggingNotifier()
        persistence = PersistenceAdapter(kv or FileKeyValueStore(settings.data_dir))

        try:
            events = await persistence.load_events()
        except ParseError as exc:
            logger.error("Failed to parse saved events: %s", exc)
            notifier.error("Error", "Failed to load saved events")
            events = []

        store = EventStore(events)
        persistence.attach(store)

        owned_client: GoogleCalendarClient | None = None
        if client is None:
            owned_client = GoogleCalendarClient(
                calendar_id=settings.calendar_id,
                timezone=settings.timezone,
                timeout_s=settings.request_timeout_s,
            )
            client = owned_client

        engine = SyncEngine(store, persistence, client, notifier)
        await engine.restore()
        return cls(store, persistence, engine, notifier, owned_client=owned_client)

    # ------------------------------------------------------------------ #
    # Queries                                                             #
    # ------------------------------------------------------------------ #

    def get(self, event_id: str) -> Event:
        event = self.store.get(event_id)
        if event is None:
            raise UnknownEventError(event_id)
        return event

    def events_for(self, day: date) -> list[Event]:
        return self.store.for_date(day)

    @property
    def sync_state(self) -> SyncState:
        return self.engine.state

    # ------------------------------------------------------------------ #
    # Mutations                                                           #
    # ------------------------------------------------------------------ #

    async def add_event(
        self,
        *,
        title: str,
        day: date,
        start_time: str,
        end_time: str,
        description: str | None = None,
    ) -> Event:
        event = Event(
            title=title,
            description=description,
            date=day,
            start_time=start_time,
            end_time=end_time,
        )
        await self.store.add(event)
        logger.info("Added event %s on %s", event.id, event.date.isoformat())
        return event

    async def set_progress(self, event_id: str, progress: int) -> Event:
        """Move the progress slider; reaching 100 completes the event."""
        current = self.get(event_id)
        updated = current.with_progress(progress)
        await self.store.update(updated)
        if updated.completed and not current.completed:
            self._announce_completed(updated)
        return updated

    async def set_completed(self, event_id: str, completed: bool) -> Event:
        """Tick or untick the completion box (progress 100 or 0)."""
        current = self.get(event_id)
        updated = current.with_completed(completed)
        await self.store.update(updated)
        if completed:
            self._announce_completed(updated)
        return updated

    def _announce_completed(self, event: Event) -> None:
        self.notifier.info("Task completed", f"{event.title} has been marked as complete")

    # ------------------------------------------------------------------ #
    # Google session                                                      #
    # ------------------------------------------------------------------ #

    async def connect(self, token: str | None) -> SyncReport | None:
        return await self.engine.connect(token)

    async def disconnect(self) -> None:
        await self.engine.disconnect()

    async def sync_now(self) -> SyncReport | None:
        return await self.engine.sync_now()

    async def close(self) -> None:
        """Let background sync work finish, then release the HTTP client."""
        await self.engine.wait_idle()
        if self._owned_client is not None:
            await self._owned_client.aclose()
