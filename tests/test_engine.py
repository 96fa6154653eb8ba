"""
Tests for the reconciliation engine.

Covers seeding, last-write-wins service updates, malformed-event
isolation, the debounced incident re-fetch and its failure handling,
stale-snapshot rejection on resync, and teardown.
"""

import asyncio
import itertools
import logging
import random

import pytest

from conftest import FakeFetcher, frame, incident, service, wait_until
from statussync.engine import ReconciliationEngine
from statussync.errors import AlreadyInitializedError, NotFoundError, NotInitializedError
from statussync.models import (
    IncidentCreated,
    IncidentUpdate,
    IncidentStatus,
    IncidentUpdated,
    IssueKind,
    ServiceStatus,
    ServiceUpdated,
    Snapshot,
    UpdateAdded,
)
from statussync.projection import ALL_OPERATIONAL, MAJOR_OUTAGE, PARTIAL_OUTAGE


def make_engine(fetcher, settings, issues=None):
    return ReconciliationEngine(
        "acme",
        lambda: fetcher.fetch_incidents("acme"),
        settings=settings,
        on_issue=issues.append if issues is not None else None,
    )


class TestInitialize:
    def test_seeds_view(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot(services=(service("1"),), incidents=(incident("i1"),)))
        view = engine.get_view()
        assert view.initialized
        assert set(view.services) == {"1"}
        assert set(view.incidents) == {"i1"}

    def test_twice_raises(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot())
        with pytest.raises(AlreadyInitializedError):
            engine.initialize(Snapshot())

    def test_events_before_initialize_raise(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        with pytest.raises(NotInitializedError):
            engine.apply_event(ServiceUpdated(service("1")))

    def test_uninitialized_view_is_empty(self, settings):
        view = make_engine(FakeFetcher(), settings).get_view()
        assert not view.initialized
        assert len(view.services) == 0


class TestServiceUpdates:
    def test_outage_then_recovery(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot(services=(service("1", name="API"),)))
        assert engine.get_system_status() == ALL_OPERATIONAL

        assert engine.apply_frame(frame("SERVICE_UPDATED", {"id": 1, "status": "Outage"}))
        assert engine.get_system_status() == MAJOR_OUTAGE

        assert engine.apply_frame(frame("SERVICE_UPDATED", {"id": 1, "status": "Operational"}))
        assert engine.get_system_status() == ALL_OPERATIONAL

    def test_upsert_unknown_id(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot())
        engine.apply_event(ServiceUpdated(service("new", ServiceStatus.DEGRADED)))
        assert engine.get_view().services["new"].status is ServiceStatus.DEGRADED
        assert engine.get_system_status() == PARTIAL_OUTAGE

    def test_last_write_wins_regardless_of_interleaving(self, settings):
        rng = random.Random(7)
        statuses = list(ServiceStatus)
        per_service = {
            sid: [service(sid, rng.choice(statuses)) for _ in range(5)]
            for sid in ("a", "b", "c")
        }
        for _ in range(20):
            # Random interleaving that keeps each service's own order
            queues = {sid: list(events) for sid, events in per_service.items()}
            engine = make_engine(FakeFetcher(), settings)
            engine.initialize(Snapshot())
            while any(queues.values()):
                sid = rng.choice([s for s, q in queues.items() if q])
                engine.apply_event(ServiceUpdated(queues[sid].pop(0)))
            for sid, events in per_service.items():
                assert engine.get_view().services[sid] == events[-1]

    def test_status_independent_of_order(self, settings):
        final = [service("a", ServiceStatus.DEGRADED), service("b"), service("c", ServiceStatus.OUTAGE)]
        results = set()
        for order in itertools.permutations(final):
            engine = make_engine(FakeFetcher(), settings)
            engine.initialize(Snapshot())
            for svc in order:
                engine.apply_event(ServiceUpdated(svc))
            results.add(engine.get_system_status())
        assert results == {MAJOR_OUTAGE}


class TestMalformedEvents:
    @pytest.mark.parametrize(
        "raw",
        [
            "{not json",
            frame("SERVICE_UPDATED", {"name": "no id", "status": "Outage"}),
            frame("INCIDENT_CREATED", {"id": "i9", "status": "Bogus"}),
            frame("SOMETHING_NEW", {}),
        ],
    )
    def test_dropped_without_touching_state(self, settings, issues, raw):
        engine = make_engine(FakeFetcher(), settings, issues)
        engine.initialize(Snapshot(services=(service("1"),), incidents=(incident("i1"),)))
        before = engine.get_view()

        assert engine.apply_frame(raw) is False

        after = engine.get_view()
        assert after is before
        assert dict(after.services) == dict(before.services)
        assert dict(after.incidents) == dict(before.incidents)
        assert [i.kind for i in issues] == [IssueKind.DROPPED]

    def test_unsupported_event_object(self, settings, issues):
        engine = make_engine(FakeFetcher(), settings, issues)
        engine.initialize(Snapshot())
        assert engine.apply_event("SERVICE_UPDATED") is False
        assert issues[0].kind is IssueKind.DROPPED


class TestViewIsolation:
    def test_view_is_read_only(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot(services=(service("1"),)))
        with pytest.raises(TypeError):
            engine.get_view().services["2"] = service("2")

    def test_old_view_unchanged_after_event(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot(services=(service("1"),)))
        old = engine.get_view()
        engine.apply_event(ServiceUpdated(service("1", ServiceStatus.OUTAGE)))
        assert old.services["1"].status is ServiceStatus.OPERATIONAL
        assert engine.get_view().version == old.version + 1

    def test_listeners_receive_each_view(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        engine.initialize(Snapshot())
        engine.apply_event(ServiceUpdated(service("1")))
        unsubscribe()
        engine.apply_event(ServiceUpdated(service("2")))
        assert [v.version for v in seen] == [1, 2]

    def test_failing_listener_does_not_break_engine(self, settings):
        engine = make_engine(FakeFetcher(), settings)

        def explode(view):
            raise RuntimeError("render failed")

        engine.subscribe(explode)
        engine.initialize(Snapshot())
        assert engine.apply_event(ServiceUpdated(service("1")))
        assert "1" in engine.get_view().services


class TestIncidentRefetch:
    def test_created_is_upserted(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot())
        engine.apply_event(IncidentCreated(incident("i1")))
        assert "i1" in engine.get_view().incidents

    def test_burst_triggers_single_refetch(self, settings):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1", IncidentStatus.MONITORING)])
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            for _ in range(10):
                engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: not engine.refetch_pending)
            return fetcher, engine

        fetcher, engine = asyncio.run(scenario())
        assert fetcher.incident_calls == 1
        assert engine.coalesced_triggers == 9
        assert engine.get_view().incidents["i1"].status is IncidentStatus.MONITORING

    def test_trigger_during_inflight_fetch_applies_once(self, settings):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1", IncidentStatus.RESOLVED)])
            fetcher.gate = asyncio.Event()
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            versions = []
            engine.subscribe(lambda v: versions.append(v.version))

            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: fetcher.incident_calls == 1)
            engine.apply_event(UpdateAdded("i1"))
            fetcher.gate.set()
            await wait_until(lambda: not engine.refetch_pending)
            await asyncio.sleep(settings.debounce_seconds * 3)
            return fetcher, engine, versions

        fetcher, engine, versions = asyncio.run(scenario())
        assert fetcher.incident_calls == 1
        assert len(versions) == 1
        assert engine.get_view().incidents["i1"].status is IncidentStatus.RESOLVED

    def test_update_added_message_logged(self, settings, caplog):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1")])
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            engine.apply_event(UpdateAdded("i1", IncidentUpdate(id="u1", message="Fix deployed")))
            await wait_until(lambda: not engine.refetch_pending)
            return fetcher

        with caplog.at_level(logging.INFO, logger="statussync.engine"):
            fetcher = asyncio.run(scenario())
        assert "Fix deployed" in caplog.text
        assert fetcher.incident_calls == 1

    def test_refetch_replaces_mapping(self, settings):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i2")])
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: not engine.refetch_pending)
            return engine

        engine = asyncio.run(scenario())
        assert set(engine.get_view().incidents) == {"i2"}

    def test_does_not_block_event_intake(self, settings):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1")])
            fetcher.gate = asyncio.Event()
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot(services=(service("1"),)))
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: fetcher.incident_calls == 1)
            engine.apply_event(ServiceUpdated(service("1", ServiceStatus.OUTAGE)))
            status_mid_fetch = engine.get_system_status()
            fetcher.gate.set()
            await wait_until(lambda: not engine.refetch_pending)
            return status_mid_fetch, engine

        status_mid_fetch, engine = asyncio.run(scenario())
        assert status_mid_fetch == MAJOR_OUTAGE
        assert engine.get_view().services["1"].status is ServiceStatus.OUTAGE

    def test_incident_created_during_fetch_survives(self, settings):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1")])
            fetcher.gate = asyncio.Event()
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot())
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: fetcher.incident_calls == 1)
            engine.apply_event(IncidentCreated(incident("i2")))
            fetcher.gate.set()
            await wait_until(lambda: not engine.refetch_pending)
            return engine

        engine = asyncio.run(scenario())
        assert set(engine.get_view().incidents) == {"i1", "i2"}

    def test_transient_failure_retried(self, settings, issues):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1", IncidentStatus.IDENTIFIED)])
            fetcher.fail_incidents = 1
            engine = make_engine(fetcher, settings, issues)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: not engine.refetch_pending)
            return fetcher, engine

        fetcher, engine = asyncio.run(scenario())
        assert fetcher.incident_calls == 2
        assert engine.get_view().incidents["i1"].status is IncidentStatus.IDENTIFIED
        assert issues == []
        assert not engine.degraded

    def test_repeated_failures_surface_degraded(self, settings, issues):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1", IncidentStatus.RESOLVED)])
            fetcher.fail_incidents = 100
            engine = make_engine(fetcher, settings, issues)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            before = engine.get_view()
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: not engine.refetch_pending)
            return fetcher, engine, before

        fetcher, engine, before = asyncio.run(scenario())
        assert fetcher.incident_calls == settings.max_refetch_failures
        assert engine.get_view() is before
        assert engine.degraded
        assert [i.kind for i in issues] == [IssueKind.DEGRADED]

    def test_not_found_is_fatal(self, settings, issues):
        async def scenario():
            async def gone():
                raise NotFoundError("acme")

            engine = ReconciliationEngine("acme", gone, settings=settings, on_issue=issues.append)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: not engine.refetch_pending)
            return engine

        engine = asyncio.run(scenario())
        assert "i1" in engine.get_view().incidents
        assert [i.kind for i in issues] == [IssueKind.FATAL]


class TestResync:
    def test_snapshot_replaces_untouched_entities(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot(services=(service("1"), service("2"))))
        since = engine.mark()
        engine.resync(Snapshot(services=(service("1", ServiceStatus.OUTAGE),)), since)
        assert set(engine.get_view().services) == {"1"}
        assert engine.get_system_status() == MAJOR_OUTAGE

    def test_newer_event_beats_snapshot(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot(services=(service("1"),)))
        since = engine.mark()
        # Arrives while the snapshot request is outstanding
        engine.apply_event(ServiceUpdated(service("1", ServiceStatus.DEGRADED)))
        engine.resync(Snapshot(services=(service("1"),)), since)
        assert engine.get_view().services["1"].status is ServiceStatus.DEGRADED

    def test_requires_initialize(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        with pytest.raises(NotInitializedError):
            engine.resync(Snapshot(), 0)

    def test_older_refetch_does_not_undo_resync(self, settings):
        calls = []
        gates = []

        async def load():
            calls.append(1)
            if len(calls) == 1:
                stale = [incident("i1", IncidentStatus.INVESTIGATING)]
                await gates[0].wait()
                return stale
            return [incident("i1", IncidentStatus.RESOLVED)]

        async def scenario():
            gates.append(asyncio.Event())
            engine = ReconciliationEngine("acme", load, settings=settings)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: len(calls) == 1)

            # Stream reconnects while the re-fetch is still outstanding
            since = engine.mark()
            engine.resync(Snapshot(incidents=(incident("i1", IncidentStatus.RESOLVED),)), since)
            after_resync = engine.get_view().incidents["i1"].status

            gates[0].set()
            await wait_until(lambda: not engine.refetch_pending)
            return engine, after_resync

        engine, after_resync = asyncio.run(scenario())
        assert after_resync is IncidentStatus.RESOLVED
        assert engine.get_view().incidents["i1"].status is IncidentStatus.RESOLVED
        assert len(calls) == 2

    def test_slow_resync_keeps_newer_refetched_incidents(self, settings):
        async def scenario():
            fetcher = FakeFetcher(incidents=[incident("i1", IncidentStatus.RESOLVED)])
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot(services=(service("1"),), incidents=(incident("i1"),)))

            since = engine.mark()
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: not engine.refetch_pending)

            # Snapshot requested before the re-fetch finally arrives
            engine.resync(
                Snapshot(
                    services=(service("1", ServiceStatus.DEGRADED),),
                    incidents=(incident("i1", IncidentStatus.INVESTIGATING),),
                ),
                since,
            )
            return engine

        engine = asyncio.run(scenario())
        assert engine.get_view().incidents["i1"].status is IncidentStatus.RESOLVED
        assert engine.get_view().services["1"].status is ServiceStatus.DEGRADED

    def test_markers_of_removed_entities_forgotten(self, settings):
        engine = make_engine(FakeFetcher(), settings)
        engine.initialize(Snapshot(services=(service("1"), service("2"))))
        engine.apply_event(ServiceUpdated(service("2", ServiceStatus.OUTAGE)))
        assert "service:2" in engine._applied

        since = engine.mark()
        engine.resync(Snapshot(services=(service("1"),)), since)
        assert set(engine.get_view().services) == {"1"}
        assert "service:2" not in engine._applied


class TestClose:
    def test_discards_inflight_refetch(self, settings):
        async def scenario():
            fetcher = FakeFetcher(incidents=[])
            fetcher.gate = asyncio.Event()
            engine = make_engine(fetcher, settings)
            engine.initialize(Snapshot(incidents=(incident("i1"),)))
            engine.apply_event(IncidentUpdated("i1"))
            await wait_until(lambda: fetcher.incident_calls == 1)
            await engine.close()
            fetcher.gate.set()
            await asyncio.sleep(0.01)
            return engine

        engine = asyncio.run(scenario())
        assert set(engine.get_view().incidents) == {"i1"}
        assert not engine.refetch_pending

    def test_events_after_close_ignored(self, settings):
        async def scenario():
            engine = make_engine(FakeFetcher(), settings)
            engine.initialize(Snapshot())
            await engine.close()
            return engine, engine.apply_event(ServiceUpdated(service("1")))

        engine, applied = asyncio.run(scenario())
        assert applied is False
        assert len(engine.get_view().services) == 0
