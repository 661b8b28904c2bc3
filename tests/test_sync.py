"""Tests for verve_calendar.sync — session lifecycle, merge, push and patch.

All remote traffic goes through the in-memory ``FakeRemoteCalendar`` from
conftest, so these tests exercise the engine's ordering and state rules
without HTTP.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, date, datetime

import pytest

from verve_calendar.errors import SyncError, TokenExpiredError
from verve_calendar.models import Event
from verve_calendar.persistence import EVENTS_KEY, TOKEN_KEY
from verve_calendar.remote import google_event_to_event
from verve_calendar.sync import SyncEngine, SyncState, add_months

pytestmark = pytest.mark.unit

TODAY = date(2026, 3, 15)


def _event(event_id: str, **overrides) -> Event:
    fields = {
        "id": event_id,
        "title": f"Task {event_id}",
        "date": TODAY,
        "start_time": "09:00",
        "end_time": "10:00",
    }
    fields.update(overrides)
    return Event(**fields)


def _remote_event(remote_id: str, **overrides) -> Event:
    payload = {
        "id": remote_id,
        "summary": f"Remote {remote_id}",
        "start": {"dateTime": "2026-03-15T13:00:00Z"},
        "end": {"dateTime": "2026-03-15T14:00:00Z"},
    }
    payload.update(overrides)
    return google_event_to_event(payload, timezone="UTC")


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# add_months
# ---------------------------------------------------------------------------


class TestAddMonths:
    def test_moves_across_year_boundaries(self):
        start = datetime(2026, 1, 10, tzinfo=UTC)
        assert add_months(start, -1) == datetime(2025, 12, 10, tzinfo=UTC)
        assert add_months(start, 12) == datetime(2027, 1, 10, tzinfo=UTC)
        assert add_months(datetime(2026, 11, 10), 2) == datetime(2027, 1, 10)

    def test_clamps_to_month_length(self):
        assert add_months(datetime(2026, 1, 31), 1) == datetime(2026, 2, 28)
        assert add_months(datetime(2028, 3, 31), -1) == datetime(2028, 2, 29)


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------


class TestSessionLifecycle:
    async def test_starts_disconnected(self, engine):
        assert engine.state is SyncState.DISCONNECTED
        assert engine.connected is False

    async def test_connect_persists_token_and_fetches_window(self, engine, kv, remote, notifier):
        report = await engine.connect("tok-1")

        assert engine.state is SyncState.CONNECTED
        assert kv.data[TOKEN_KEY] == "tok-1"
        assert remote.fetch_calls == [
            (
                "tok-1",
                datetime(2026, 2, 15, 12, 0, tzinfo=UTC),
                datetime(2026, 5, 15, 12, 0, tzinfo=UTC),
            )
        ]
        assert report.merge.added == []
        assert ("info", "Success", "Connected to Google Calendar") in notifier.messages

    async def test_blank_token_is_a_failed_login(self, engine, kv, remote, notifier):
        assert await engine.connect("   ") is None

        assert engine.state is SyncState.DISCONNECTED
        assert TOKEN_KEY not in kv.data
        assert remote.call_count == 0
        assert notifier.messages == [("error", "Error", "Failed to connect to Google Calendar")]

    async def test_restore_resumes_without_fetching(self, engine, kv, remote):
        kv.data[TOKEN_KEY] = "stored"

        session = await engine.restore()

        assert session.state is SyncState.CONNECTED
        assert session.token == "stored"
        assert remote.call_count == 0

    async def test_restore_without_token_stays_disconnected(self, engine):
        session = await engine.restore()
        assert session.state is SyncState.DISCONNECTED

    async def test_disconnect_forgets_token_and_stops_syncing(self, engine, store, kv, remote):
        await engine.connect("tok")
        await engine.disconnect()

        await store.add(_event("after"))
        await engine.wait_idle()

        assert engine.state is SyncState.DISCONNECTED
        assert TOKEN_KEY not in kv.data
        assert remote.created == []

    async def test_sync_now_requires_connection(self, engine, remote, notifier):
        assert await engine.sync_now() is None
        assert remote.call_count == 0
        assert notifier.titles("error") == ["Not connected"]

    async def test_sync_now_fetches_and_pushes(self, engine, store, remote):
        await engine.connect("tok")
        remote.remote_events = [_remote_event("g-new")]
        await store.add(_event("local"))
        await engine.wait_idle()

        report = await engine.sync_now()

        assert len(remote.fetch_calls) == 2
        assert store.find_by_remote_id("g-new") is not None
        assert report.merge.added == [store.find_by_remote_id("g-new").id]


# ---------------------------------------------------------------------------
# Fetch-and-merge
# ---------------------------------------------------------------------------


class TestFetchAndMerge:
    async def test_remote_event_without_metadata_is_added(self, engine, store, remote, kv):
        remote.remote_events = [_remote_event("g-1")]

        await engine.connect("tok")

        (event,) = store.all()
        assert event.google_event_id == "g-1"
        assert event.date == TODAY
        assert event.progress == 0
        assert event.completed is False
        assert json.loads(kv.data[EVENTS_KEY])[0]["googleEventId"] == "g-1"

    async def test_mirrored_events_are_not_duplicated(self, engine, store, remote):
        remote.remote_events = [_remote_event("g-1"), _remote_event("g-2")]

        await engine.connect("tok")
        report = await engine.sync_now()

        assert len(store.all()) == 2
        assert report.merge.added == []
        assert sorted(report.merge.skipped) == ["g-1", "g-2"]

    async def test_local_copy_wins_over_remote(self, engine, store, remote):
        await store.add(_event("mine", title="Local title", progress=50, google_event_id="g-1"))
        remote.remote_events = [
            _remote_event(
                "g-1",
                summary="Remote title",
                extendedProperties={"private": {"progress": "0", "completed": "false"}},
            )
        ]

        await engine.connect("tok")

        (event,) = store.all()
        assert event.title == "Local title"
        assert event.progress == 50

    async def test_same_remote_id_twice_in_one_fetch_is_added_once(self, engine, store, remote):
        remote.remote_events = [_remote_event("g-1"), _remote_event("g-1")]

        await engine.connect("tok")

        assert len(store.all()) == 1

    async def test_fetched_event_without_remote_id_is_ignored(self, engine, store, remote):
        remote.remote_events = [_event("stray"), _remote_event("g-1")]

        report = await engine.connect("tok")

        (event,) = store.all()
        assert event.google_event_id == "g-1"
        assert report.merge.added == [event.id]

    async def test_remote_copy_of_local_only_event_is_adopted(self, engine, store, remote):
        await store.add(_event("L1", progress=40))
        remote.remote_events = [
            _remote_event("g-9", extendedProperties={"private": {"localEventId": "L1"}})
        ]

        report = await engine.connect("tok")

        (event,) = store.all()
        assert event.id == "L1"
        assert event.google_event_id == "g-9"
        assert event.progress == 40
        assert report.merge.adopted == ["L1"]
        assert remote.created == []

    async def test_local_id_collision_gets_fresh_id(self, engine, store, remote):
        await store.add(_event("L1", google_event_id="g-1"))
        remote.remote_events = [
            _remote_event("g-2", extendedProperties={"private": {"localEventId": "L1"}})
        ]

        await engine.connect("tok")

        assert len(store.all()) == 2
        incoming = store.find_by_remote_id("g-2")
        assert incoming.id != "L1"

    async def test_fetch_failure_is_reported_and_push_still_runs(
        self, engine, store, remote, notifier
    ):
        await store.add(_event("local"))
        remote.fetch_error = SyncError(status_code=500, message="Backend Error")

        report = await engine.connect("tok")

        assert report.merge is None
        assert report.push.pushed == ["local"]
        assert engine.state is SyncState.CONNECTED
        assert "Sync failed" in notifier.titles("error")

    async def test_expired_token_on_fetch(self, engine, store, remote, kv, notifier):
        await store.add(_event("local"))
        remote.fetch_error = TokenExpiredError("401")

        report = await engine.connect("tok")

        assert report.merge is None
        assert report.push.pushed == []
        assert engine.state is SyncState.TOKEN_EXPIRED
        assert TOKEN_KEY not in kv.data
        assert remote.created == []
        assert notifier.titles("error") == ["Session expired"]


# ---------------------------------------------------------------------------
# Push-unsynced
# ---------------------------------------------------------------------------


class TestPushUnsynced:
    async def test_local_event_is_pushed_with_remote_id_attached(self, engine, store, remote, kv):
        await store.add(_event("local", progress=50))
        remote.next_ids = ["abc123"]

        report = await engine.connect("tok")

        event = store.get("local")
        assert event.google_event_id == "abc123"
        assert event.progress == 50
        assert report.push.pushed == ["local"]
        (created_token, created_event) = remote.created[0]
        assert created_token == "tok"
        assert created_event.progress == 50
        assert json.loads(kv.data[EVENTS_KEY])[0]["googleEventId"] == "abc123"

    async def test_second_pass_creates_nothing(self, engine, store, remote):
        await store.add(_event("local"))
        await engine.connect("tok")

        result = await engine.push_unsynced()

        assert result.pushed == []
        assert len(remote.created) == 1

    async def test_failed_create_does_not_stop_the_pass(self, engine, store, remote, notifier):
        await store.add_many([_event("bad"), _event("good")])
        remote.create_errors["bad"] = SyncError(status_code=500, message="Backend Error")

        report = await engine.connect("tok")

        assert [event_id for event_id, _ in report.push.failed] == ["bad"]
        assert report.push.pushed == ["good"]
        assert store.get("bad").google_event_id is None
        assert store.get("good").google_event_id is not None
        assert engine.state is SyncState.CONNECTED
        assert "Sync failed" in notifier.titles("error")

    async def test_expired_token_stops_the_pass(self, engine, store, remote, kv):
        await store.add_many([_event("a"), _event("b"), _event("c")])
        remote.create_errors["a"] = TokenExpiredError("401")

        report = await engine.connect("tok")

        assert report.push.token_expired is True
        assert len(remote.created) == 1
        assert engine.state is SyncState.TOKEN_EXPIRED
        assert TOKEN_KEY not in kv.data

        calls_before = remote.call_count
        await store.add(_event("d"))
        await store.update(store.get("b").with_progress(20))
        await engine.wait_idle()
        assert remote.call_count == calls_before

    async def test_reconnect_after_expiry_pushes_backlog(self, engine, store, remote):
        await store.add(_event("a"))
        remote.create_errors["a"] = TokenExpiredError("401")
        await engine.connect("old")
        assert engine.state is SyncState.TOKEN_EXPIRED

        remote.create_errors.clear()
        report = await engine.connect("new")

        assert engine.state is SyncState.CONNECTED
        assert report.push.pushed == ["a"]
        assert remote.created[-1][0] == "new"

    async def test_not_connected_push_is_noop(self, engine, store, remote):
        await store.add(_event("a"))
        result = await engine.push_unsynced()
        assert result.pushed == []
        assert remote.created == []


# ---------------------------------------------------------------------------
# Background sync triggered by store changes
# ---------------------------------------------------------------------------


class TestBackgroundSync:
    async def test_added_event_is_pushed_while_connected(self, engine, store, remote):
        await engine.connect("tok")

        await store.add(_event("new"))
        await engine.wait_idle()

        assert store.get("new").google_event_id == "remote-1"

    async def test_nothing_is_sent_while_disconnected(self, engine, store, remote):
        await store.add(_event("new"))
        await engine.wait_idle()
        assert remote.call_count == 0

    async def test_completing_mirrored_event_patches_google(self, engine, store, remote):
        await store.add(_event("e1", progress=90, google_event_id="g-1"))
        await engine.connect("tok")

        await store.update(store.get("e1").with_progress(100))
        await engine.wait_idle()

        (token, remote_id, sent) = remote.patched[0]
        assert (token, remote_id) == ("tok", "g-1")
        assert sent.progress == 100
        assert sent.completed is True

    async def test_failed_patch_keeps_local_change(self, engine, store, remote, notifier):
        await store.add(_event("e1", google_event_id="g-1"))
        await engine.connect("tok")
        remote.patch_error = SyncError(status_code=503, message="unavailable")

        await store.update(store.get("e1").with_progress(30))
        await engine.wait_idle()

        assert store.get("e1").progress == 30
        assert engine.state is SyncState.CONNECTED
        assert "Sync failed" in notifier.titles("error")

    async def test_expired_token_on_patch(self, engine, store, remote, kv):
        await store.add(_event("e1", google_event_id="g-1"))
        await engine.connect("tok")
        remote.patch_error = TokenExpiredError("401")

        await store.update(store.get("e1").with_progress(30))
        await engine.wait_idle()

        assert engine.state is SyncState.TOKEN_EXPIRED
        assert TOKEN_KEY not in kv.data
        assert store.get("e1").progress == 30

    async def test_attaching_remote_id_does_not_patch(self, engine, store, remote):
        await engine.connect("tok")
        await store.add(_event("new"))
        await engine.wait_idle()

        assert store.get("new").google_event_id is not None
        assert remote.patched == []

    async def test_edit_during_create_keeps_edit_and_creates_once(self, engine, store, remote):
        await engine.connect("tok")
        remote.create_gate = asyncio.Event()

        await store.add(_event("racy"))
        while not remote.created:
            await asyncio.sleep(0)

        # The create is in flight; edit the still-unsynced event.
        await store.update(store.get("racy").with_progress(30))
        remote.create_gate.set()
        await engine.wait_idle()

        event = store.get("racy")
        assert event.progress == 30
        assert event.google_event_id == "remote-1"
        assert len(remote.created) == 1
        _, remote_id, patched = remote.patched[-1]
        assert remote_id == "remote-1"
        assert patched.progress == 30

    async def test_concurrent_pushes_create_each_event_once(self, engine, store, remote):
        await engine.connect("tok")
        remote.create_gate = asyncio.Event()
        await store.add_many([_event("a"), _event("b")])
        await _settle()

        passes = [asyncio.create_task(engine.push_unsynced()) for _ in range(3)]
        remote.create_gate.set()
        await asyncio.gather(*passes)
        await engine.wait_idle()

        assert sorted(event.id for _, event in remote.created) == ["a", "b"]
        assert all(event.google_event_id for event in store.all())


class TestExpire:
    async def test_expiry_is_acted_on_once(self, engine, notifier):
        await engine.connect("tok")

        await engine._expire("tok")
        await engine._expire("tok")

        assert notifier.titles("error") == ["Session expired"]

    async def test_stale_rejection_does_not_end_new_session(self, engine, kv):
        await engine.connect("old")
        await engine.connect("new")

        await engine._expire("old")

        assert engine.state is SyncState.CONNECTED
        assert kv.data[TOKEN_KEY] == "new"


class TestAclose:
    async def test_cancels_outstanding_work(self, store, persistence, remote, notifier):
        engine = SyncEngine(store, persistence, remote, notifier)
        await engine.connect("tok")
        remote.create_gate = asyncio.Event()

        await store.add(_event("stuck"))
        while not remote.created:
            await asyncio.sleep(0)
        await engine.aclose()

        assert store.get("stuck").google_event_id is None
