"""Tests for the monitor that ties detectors, discovery and the registry together."""

import asyncio
from unittest.mock import MagicMock

from donecall.config import DetectionConfig, Settings
from donecall.errors import SignalUnavailable
from donecall.models import SessionMetadata, SessionState, StateChangedEvent, now_ms
from donecall.monitor import Monitor
from donecall.notifier.dispatcher import Dispatcher
from donecall.persistence import DURABLE_KEY, EPHEMERAL_KEY, MemoryStore, PersistenceBridge
from donecall.registry import SessionRegistry

FAST = DetectionConfig(
    poll_interval_ms=10,
    completion_grace_ms=100,
    discovery_interval_ms=20,
)

# ── Helpers ─────────────────────────────────────────────────


class FakeSource:
    def __init__(self, active=False, content=""):
        self.active = active
        self.intermediate = False
        self.content = content

    def is_active(self):
        return self.active

    def is_intermediate_phase(self):
        return self.intermediate

    def current_content_snapshot(self):
        return self.content

    def authoritative_timestamp(self):
        return None


class FakeEnumerator:
    """In-memory stand-in for a directory of signal files."""

    def __init__(self, *session_ids):
        self.sessions = {
            sid: SessionMetadata(title=f"Chat {sid}", window_group="w1") for sid in session_ids
        }
        self.sources = {sid: FakeSource() for sid in session_ids}
        self.fail = False

    def list_sessions(self):
        if self.fail:
            raise SignalUnavailable("bridge restarting")
        return dict(self.sessions)

    def source_for(self, session_id):
        return self.sources.setdefault(session_id, FakeSource())


def make_monitor(enumerator, durable=None, ephemeral=None, stability_window_ms=50):
    surface = MagicMock()
    settings = Settings(stability_window_ms=stability_window_ms, sound_enabled=False)
    dispatcher = Dispatcher(surface=surface, settings=settings)
    durable_store = MemoryStore({DURABLE_KEY: durable} if durable is not None else None)
    ephemeral_store = MemoryStore({EPHEMERAL_KEY: ephemeral} if ephemeral is not None else None)
    registry = SessionRegistry(
        persistence=PersistenceBridge(durable_store, ephemeral_store),
        dispatcher=dispatcher,
        settings=settings,
    )
    dispatcher.resolver = registry.resolve
    monitor = Monitor(enumerator, registry, dispatcher, settings, FAST)
    return monitor, surface, durable_store, ephemeral_store


async def wait_until(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def state_of(monitor, session_id):
    session = monitor.registry.get(session_id)
    return session.state if session else None


# ── Tests ───────────────────────────────────────────────────


class TestLifecycle:
    def test_generation_to_notification(self):
        async def scenario():
            enumerator = FakeEnumerator("tab-1")
            monitor, surface, _, _ = make_monitor(enumerator)
            await monitor.start()
            source = enumerator.sources["tab-1"]

            source.active = True
            await wait_until(lambda: state_of(monitor, "tab-1") == SessionState.GENERATING)
            assert monitor.registry.aggregate_active_count() == 1

            source.content = "The answer is 42."
            source.active = False
            await wait_until(lambda: monitor.registry.get("tab-1").completion_history)
            await monitor.drain()

            session = monitor.registry.get("tab-1")
            assert session.completion_history[0].preview == "The answer is 42."
            assert monitor.registry.aggregate_active_count() == 0
            surface.notify.assert_called_once()

            await wait_until(lambda: state_of(monitor, "tab-1") == SessionState.IDLE)
            await monitor.stop()
            assert not monitor.running

        asyncio.run(scenario())

    def test_start_discovers_sessions(self):
        async def scenario():
            monitor, *_ = make_monitor(FakeEnumerator("a", "b"))
            await monitor.start()
            assert monitor.registry.session_ids() == {"a", "b"}
            assert monitor.detector("a").monitoring
            await monitor.stop()
            assert monitor.detector("a") is None

        asyncio.run(scenario())

    def test_activity_before_first_poll_is_a_start(self):
        async def scenario():
            enumerator = FakeEnumerator("tab-1")
            monitor, surface, _, _ = make_monitor(enumerator)
            await monitor.start()
            assert monitor.detector("tab-1").monitoring

            # Flips before the detector task has had a chance to run
            enumerator.sources["tab-1"].active = True
            await wait_until(lambda: monitor.detector("tab-1").generation_started_at is not None)

            enumerator.sources["tab-1"].active = False
            await wait_until(lambda: monitor.registry.get("tab-1").completion_history)
            surface.notify.assert_called_once()
            await monitor.stop()

        asyncio.run(scenario())

    def test_start_twice_is_noop(self):
        async def scenario():
            monitor, *_ = make_monitor(FakeEnumerator("a"))
            await monitor.start()
            first = monitor.detector("a")
            await monitor.start()
            assert monitor.detector("a") is first
            await monitor.stop()

        asyncio.run(scenario())


class TestDiscovery:
    def test_closed_session_removed(self):
        async def scenario():
            enumerator = FakeEnumerator("a", "b")
            monitor, *_ = make_monitor(enumerator)
            await monitor.start()
            detector = monitor.detector("a")

            del enumerator.sessions["a"]
            assert monitor.discover_once() is True

            assert "a" not in monitor.registry
            assert monitor.detector("a") is None
            assert not detector.monitoring
            await monitor.stop()

        asyncio.run(scenario())

    def test_new_session_picked_up_by_loop(self):
        async def scenario():
            enumerator = FakeEnumerator("a")
            monitor, *_ = make_monitor(enumerator)
            await monitor.start()

            enumerator.sessions["b"] = SessionMetadata(title="Late")
            await wait_until(lambda: "b" in monitor.registry)
            assert monitor.detector("b") is not None
            await monitor.stop()

        asyncio.run(scenario())

    def test_failed_enumeration_keeps_sessions(self):
        async def scenario():
            enumerator = FakeEnumerator("a")
            monitor, *_ = make_monitor(enumerator)
            await monitor.start()

            enumerator.fail = True
            assert monitor.discover_once() is False
            assert "a" in monitor.registry
            assert monitor.detector("a").monitoring
            await monitor.stop()

        asyncio.run(scenario())

    def test_metadata_refreshed(self):
        async def scenario():
            enumerator = FakeEnumerator("a")
            monitor, *_ = make_monitor(enumerator)
            await monitor.start()

            enumerator.sessions["a"] = SessionMetadata(title="Renamed", window_group="w2")
            monitor.discover_once()
            assert monitor.registry.get("a").title == "Renamed"
            assert monitor.registry.resolve("a") == ("a", "w2")
            await monitor.stop()

        asyncio.run(scenario())


class TestEvents:
    def test_stale_epoch_discarded(self):
        async def scenario():
            monitor, *_ = make_monitor(FakeEnumerator("a"))
            await monitor.start()
            old_epoch = monitor.detector("a").epoch

            assert monitor.restart_detector("a")
            new_epoch = monitor.detector("a").epoch
            assert new_epoch != old_epoch

            monitor.apply(StateChangedEvent(
                session_id="a", state=SessionState.WRITING, observed_at=now_ms(), epoch=old_epoch
            ))
            assert state_of(monitor, "a") == SessionState.IDLE

            monitor.apply(StateChangedEvent(
                session_id="a", state=SessionState.WRITING, observed_at=now_ms(), epoch=new_epoch
            ))
            assert state_of(monitor, "a") == SessionState.WRITING
            await monitor.stop()

        asyncio.run(scenario())

    def test_events_for_ended_session_discarded(self):
        async def scenario():
            monitor, *_ = make_monitor(FakeEnumerator("a"))
            await monitor.start()
            epoch = monitor.detector("a").epoch
            monitor.end_session("a")

            monitor.apply(StateChangedEvent(
                session_id="a", state=SessionState.WRITING, observed_at=now_ms(), epoch=epoch
            ))
            assert "a" not in monitor.registry
            await monitor.stop()

        asyncio.run(scenario())


class TestRestart:
    def test_resumes_in_flight_generation(self):
        async def scenario():
            enumerator = FakeEnumerator("tab-1")
            enumerator.sources["tab-1"].active = True
            started = now_ms() - 5000
            monitor, surface, _, _ = make_monitor(
                enumerator,
                durable={"tab-1": {"monitored": True}},
                ephemeral={"tab-1": {
                    "state": "generating",
                    "state_changed_at": started,
                    "generation_started_at": started,
                }},
            )
            await monitor.start()
            assert state_of(monitor, "tab-1") == SessionState.GENERATING
            assert monitor.registry.get("tab-1").generation_started_at == started

            enumerator.sources["tab-1"].active = False
            await wait_until(lambda: monitor.registry.get("tab-1").completion_history)

            record = monitor.registry.get("tab-1").completion_history[0]
            assert record.duration_ms >= 5000
            surface.notify.assert_called_once()
            await monitor.stop()

        asyncio.run(scenario())

    def test_orphaned_state_dropped_after_first_discovery(self):
        async def scenario():
            monitor, _, durable, ephemeral = make_monitor(
                FakeEnumerator("a"),
                durable={"gone": {"monitored": True}},
                ephemeral={"gone": {"state": "writing"}},
            )
            await monitor.start()
            assert "gone" not in durable.data[DURABLE_KEY]
            assert "gone" not in ephemeral.data[EPHEMERAL_KEY]
            await monitor.stop()

        asyncio.run(scenario())


class TestControl:
    def test_update_settings(self):
        monitor, *_ = make_monitor(FakeEnumerator())
        settings = monitor.update_settings({"soundVolume": 0.9, "previewLength": -1})

        assert settings.sound_volume == 0.9
        assert settings.preview_length == 100
        assert monitor.registry.settings is settings
        assert monitor.dispatcher.settings is settings

    def test_focus(self):
        async def scenario():
            monitor, surface, _, _ = make_monitor(FakeEnumerator("a"))
            await monitor.start()
            assert monitor.focus("a") is True
            assert monitor.focus("nope") is False
            surface.focus.assert_called_once_with("a", "w1")
            await monitor.stop()

        asyncio.run(scenario())

    def test_set_monitored(self):
        async def scenario():
            monitor, *_ = make_monitor(FakeEnumerator("a"))
            await monitor.start()
            assert monitor.set_monitored("a", False) is False
            assert monitor.registry.get("a").monitored is False
            await monitor.stop()

        asyncio.run(scenario())
