"""Persistence adapter: events and the Google token on a key-value store."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterable

from pydantic import ValidationError

from verve_calendar.core.state import KeyValueStore
from verve_calendar.errors import ParseError
from verve_calendar.models import Event
from verve_calendar.store import EventStore, StoreChange

logger = logging.getLogger(__name__)

EVENTS_KEY = "calendarEvents"
TOKEN_KEY = "googleCalendarToken"


class PersistenceAdapter:
    """Reads and writes calendar state through a ``KeyValueStore``."""

    def __init__(self, kv: KeyValueStore) -> None:
        self._kv = kv
        self._store: EventStore | None = None
        self._save_lock = asyncio.Lock()

    async def load_events(self) -> list[Event]:
        """Return the stored events, or an empty list when nothing is stored.

        Raises ParseError when the stored value is not a valid event array,
        including arrays that repeat an event id or a Google event id.
        """
        try:
            raw = await self._kv.get(EVENTS_KEY)
        except UnicodeDecodeError as exc:
            raise ParseError(f"Stored events are not valid UTF-8: {exc.reason}") from exc
        if raw is None or not raw.strip():
            return []

        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Stored events are not valid JSON: {exc.msg}") from exc

        if not isinstance(payload, list):
            raise ParseError("Stored events must decode to a JSON array")

        events: list[Event] = []
        seen_ids: set[str] = set()
        seen_remote_ids: set[str] = set()
        for index, item in enumerate(payload):
            try:
                event = Event.model_validate(item)
            except ValidationError as exc:
                raise ParseError(
                    f"Stored event #{index} is invalid: {exc.error_count()} validation error(s)"
                ) from exc

            if event.id in seen_ids:
                raise ParseError(f"Stored event #{index} repeats event id {event.id!r}")
            if event.google_event_id is not None:
                if event.google_event_id in seen_remote_ids:
                    raise ParseError(
                        f"Stored event #{index} repeats Google event id {event.google_event_id!r}"
                    )
                seen_remote_ids.add(event.google_event_id)
            seen_ids.add(event.id)
            events.append(event)

        logger.debug("Loaded %d event(s) from storage", len(events))
        return events

    async def save_events(self, events: Iterable[Event]) -> None:
        """Overwrite the stored event array."""
        payload = [event.to_storage() for event in events]
        await self._kv.set(EVENTS_KEY, json.dumps(payload))

    async def load_token(self) -> str | None:
        token = await self._kv.get(TOKEN_KEY)
        if token is None:
            return None
        return token.strip() or None

    async def save_token(self, token: str) -> None:
        await self._kv.set(TOKEN_KEY, token)

    async def clear_token(self) -> None:
        await self._kv.delete(TOKEN_KEY)

    def attach(self, store: EventStore) -> None:
        """Subscribe to *store* so every mutation is written through."""
        self._store = store
        store.subscribe(self._on_store_change)

    async def _on_store_change(self, change: StoreChange) -> None:
        # One save at a time, each writing the store's contents as of that save.
        async with self._save_lock:
            events = self._store.all() if self._store is not None else change.snapshot
            await self.save_events(events)
