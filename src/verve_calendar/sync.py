"""Google Calendar sync engine.

Session lifecycle::

    DISCONNECTED --connect(token)--> CONNECTING --> CONNECTED
    CONNECTED --401 from any call--> TOKEN_EXPIRED
    TOKEN_EXPIRED --connect(token)--> CONNECTING --> CONNECTED

On connect the engine fetches a window of remote events and merges the ones
not already mirrored locally (local copies always win), then pushes every
local-only event. While connected, each store mutation schedules another push
pass, and edits to mirrored events are patched to Google in the background.
Remote failures never roll back local state.
"""

from __future__ import annotations

import asyncio
import calendar
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol

from verve_calendar.errors import SyncError, TokenExpiredError
from verve_calendar.models import Event, new_event_id
from verve_calendar.notify import Notifier
from verve_calendar.persistence import PersistenceAdapter
from verve_calendar.store import ChangeKind, EventStore, StoreChange

logger = logging.getLogger(__name__)

# Fetch window relative to "now", in calendar months.
FETCH_WINDOW_MONTHS_BEFORE = 1
FETCH_WINDOW_MONTHS_AFTER = 2


class SyncState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TOKEN_EXPIRED = "token_expired"


@dataclass
class SyncSession:
    """The live Google session; only ``token`` is ever persisted."""

    token: str | None = None
    state: SyncState = SyncState.DISCONNECTED

    @property
    def connected(self) -> bool:
        return self.token is not None and self.state is SyncState.CONNECTED


@dataclass
class MergeResult:
    """Outcome of one fetch-and-merge."""

    added: list[str] = field(default_factory=list)
    adopted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


@dataclass
class PushResult:
    """Outcome of one push-unsynced pass.

    ``token_expired`` is set when the pass stopped early on a rejected token;
    events after that point were not attempted.
    """

    pushed: list[str] = field(default_factory=list)
    failed: list[tuple[str, SyncError]] = field(default_factory=list)
    token_expired: bool = False


@dataclass
class SyncReport:
    merge: MergeResult | None
    push: PushResult


class RemoteCalendar(Protocol):
    """The remote operations the engine depends on."""

    async def fetch_events(
        self, token: str, window_start: datetime, window_end: datetime
    ) -> list[Event]: ...

    async def create_event(self, token: str, event: Event) -> str: ...

    async def patch_event(self, token: str, remote_id: str, event: Event) -> None: ...


def add_months(value: datetime, months: int) -> datetime:
    """Shift *value* by whole calendar months, clamping the day to the month length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncEngine:
    """Keeps an ``EventStore`` and a Google calendar in step."""

    def __init__(
        self,
        store: EventStore,
        persistence: PersistenceAdapter,
        client: RemoteCalendar,
        notifier: Notifier,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.persistence = persistence
        self.client = client
        self.notifier = notifier
        self.session = SyncSession()
        self._clock = clock
        self._push_lock = asyncio.Lock()
        self._patch_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._push_task: asyncio.Task[None] | None = None
        self._push_requested = False
        store.subscribe(self._on_store_change)

    @property
    def state(self) -> SyncState:
        return self.session.state

    @property
    def connected(self) -> bool:
        return self.session.connected

    # ------------------------------------------------------------------ #
    # Session lifecycle                                                   #
    # ------------------------------------------------------------------ #

    async def restore(self) -> SyncSession:
        """Resume the session from the persisted token, without fetching."""
        token = await self.persistence.load_token()
        if token:
            self.session = SyncSession(token=token, state=SyncState.CONNECTED)
            logger.info("Restored Google Calendar session from stored token")
        else:
            self.session = SyncSession()
        return self.session

    async def connect(self, token: str | None) -> SyncReport | None:
        """Complete a login with the access token from the OAuth flow.

        A blank token counts as a failed login and leaves the engine
        disconnected.
        """
        normalized = token.strip() if token else ""
        if not normalized:
            self.session = SyncSession()
            self.notifier.error("Error", "Failed to connect to Google Calendar")
            return None

        self.session = SyncSession(state=SyncState.CONNECTING)
        await self.persistence.save_token(normalized)
        self.session = SyncSession(token=normalized, state=SyncState.CONNECTED)
        logger.info("Connected to Google Calendar")
        self.notifier.info("Success", "Connected to Google Calendar")
        return await self._fetch_merge_and_push()

    async def disconnect(self) -> None:
        """Sign out: forget the token and stop syncing."""
        self.session = SyncSession()
        await self.persistence.clear_token()
        logger.info("Disconnected from Google Calendar")
        self.notifier.info("Disconnected", "Google Calendar sync is off")

    async def sync_now(self) -> SyncReport | None:
        """Run fetch-and-merge followed by a push pass on the current session."""
        if not self.session.connected:
            self.notifier.error("Not connected", "Connect Google Calendar before syncing")
            return None
        return await self._fetch_merge_and_push()

    async def _fetch_merge_and_push(self) -> SyncReport:
        merge = await self.fetch_and_merge()
        push = await self.push_unsynced()
        return SyncReport(merge=merge, push=push)

    async def _expire(self, token: str | None) -> None:
        # Only the first observer of a given token's rejection acts on it.
        if token is None or self.session.token != token:
            return
        self.session = SyncSession(state=SyncState.TOKEN_EXPIRED)
        logger.warning("Google Calendar token rejected; session expired")
        await self.persistence.clear_token()
        self.notifier.error(
            "Session expired", "Your Google Calendar session expired. Please reconnect."
        )

    # ------------------------------------------------------------------ #
    # Fetch-and-merge                                                     #
    # ------------------------------------------------------------------ #

    async def fetch_and_merge(self) -> MergeResult | None:
        """Pull remote events in the fetch window and append the unknown ones.

        Returns None when nothing was merged because the session is not
        connected or the fetch failed.
        """
        session = self.session
        if not session.connected:
            return None

        now = self._clock()
        window_start = add_months(now, -FETCH_WINDOW_MONTHS_BEFORE)
        window_end = add_months(now, FETCH_WINDOW_MONTHS_AFTER)
        try:
            remote_events = await self.client.fetch_events(session.token, window_start, window_end)
        except TokenExpiredError:
            await self._expire(session.token)
            return None
        except SyncError as exc:
            logger.warning("Fetching Google events failed: %s", exc)
            self.notifier.error("Sync failed", f"Could not fetch Google Calendar events: {exc}")
            return None

        if self.session is not session:
            logger.info("Session changed during fetch; discarding fetched events")
            return None
        return await self._merge(remote_events)

    async def _merge(self, remote_events: list[Event]) -> MergeResult:
        result = MergeResult()
        # Read the store after the fetch returned; it may have changed meanwhile.
        local_remote_ids = {
            event.google_event_id for event in self.store.all() if event.google_event_id
        }
        incoming_ids: set[str] = set()
        fresh: list[Event] = []

        for remote in remote_events:
            remote_id = remote.google_event_id
            if remote_id is None:
                logger.warning("Ignoring fetched event %s without a Google id", remote.id)
                continue
            if remote_id in local_remote_ids:
                result.skipped.append(remote_id)
                continue

            local = self.store.get(remote.id)
            if local is not None and local.google_event_id is None:
                # The remote copy of a local-only event whose id never came back.
                await self.store.update(local.with_remote_id(remote_id))
                local_remote_ids.add(remote_id)
                result.adopted.append(local.id)
                continue
            if local is not None or remote.id in incoming_ids:
                remote = remote.model_copy(update={"id": new_event_id()})

            local_remote_ids.add(remote_id)
            incoming_ids.add(remote.id)
            fresh.append(remote)

        await self.store.add_many(fresh)
        result.added = [event.id for event in fresh]
        logger.info(
            "Merged Google events: added=%d adopted=%d already_local=%d",
            len(result.added),
            len(result.adopted),
            len(result.skipped),
        )
        return result

    # ------------------------------------------------------------------ #
    # Push-unsynced                                                       #
    # ------------------------------------------------------------------ #

    async def push_unsynced(self) -> PushResult:
        """Create a Google event for every local-only event, one at a time.

        A rejected token ends the pass; any other failure is reported and the
        pass moves on to the next event.
        """
        async with self._push_lock:
            result = PushResult()
            session = self.session
            for candidate in self.store.unsynced():
                if self.session is not session or not session.connected:
                    break
                # Re-check at call time: an earlier pass or a merge may have mirrored it.
                current = self.store.get(candidate.id)
                if current is None or current.google_event_id is not None:
                    continue

                try:
                    remote_id = await self.client.create_event(session.token, current)
                except TokenExpiredError:
                    await self._expire(session.token)
                    result.token_expired = True
                    break
                except SyncError as exc:
                    logger.warning("Pushing event %s failed: %s", current.id, exc)
                    self.notifier.error(
                        "Sync failed", f"Could not add {current.title!r} to Google Calendar: {exc}"
                    )
                    result.failed.append((current.id, exc))
                    continue

                # Attach the id to whatever version is current after the suspension.
                latest = self.store.get(current.id)
                if latest is None:
                    continue
                if latest.google_event_id is not None:
                    if latest.google_event_id != remote_id:
                        logger.warning(
                            "Event %s was mirrored as %s while push created %s",
                            latest.id,
                            latest.google_event_id,
                            remote_id,
                        )
                    continue
                await self.store.update(latest.with_remote_id(remote_id))
                result.pushed.append(latest.id)
                if latest != current:
                    # Edited while the create was in flight; Google holds the older version.
                    self._spawn(self._propagate_update(latest.id))

            if result.pushed or result.failed:
                logger.info(
                    "Push pass: pushed=%d failed=%d token_expired=%s",
                    len(result.pushed),
                    len(result.failed),
                    result.token_expired,
                )
            return result

    def request_push(self) -> None:
        """Schedule a push pass, coalescing with one already in flight."""
        if not self.session.connected:
            return
        if self._push_task is not None and not self._push_task.done():
            self._push_requested = True
            return
        self._push_task = self._spawn(self._run_push_passes())

    async def _run_push_passes(self) -> None:
        while True:
            self._push_requested = False
            result = await self.push_unsynced()
            if result.token_expired or not self._push_requested:
                return

    # ------------------------------------------------------------------ #
    # Update propagation                                                  #
    # ------------------------------------------------------------------ #

    async def _propagate_update(self, event_id: str) -> None:
        async with self._patch_lock:
            session = self.session
            if not session.connected:
                return
            # Send the latest stored version; patches are serialized.
            event = self.store.get(event_id)
            if event is None or event.google_event_id is None:
                return
            try:
                await self.client.patch_event(session.token, event.google_event_id, event)
            except TokenExpiredError:
                await self._expire(session.token)
            except SyncError as exc:
                logger.warning("Patching Google event %s failed: %s", event.google_event_id, exc)
                self.notifier.error(
                    "Sync failed", f"Could not update {event.title!r} on Google Calendar: {exc}"
                )

    async def _on_store_change(self, change: StoreChange) -> None:
        if not self.session.connected:
            return

        if change.kind is ChangeKind.UPDATED and change.previous is not None:
            event = change.events[0]
            if change.previous.google_event_id is None:
                if event.google_event_id is not None:
                    # Remote id just attached by a push or a merge.
                    return
            else:
                self._spawn(self._propagate_update(event.id))

        if self.store.unsynced():
            self.request_push()

    # ------------------------------------------------------------------ #
    # Background tasks                                                    #
    # ------------------------------------------------------------------ #

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background sync task failed", exc_info=exc)

    async def wait_idle(self) -> None:
        """Wait until every scheduled push and patch has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel outstanding background work."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
