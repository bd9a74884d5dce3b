"""Tests for the completion detection engine."""

from donecall.errors import SignalUnavailable
from donecall.models import CompletionEvent, SessionState, StateChangedEvent, TimestampEvent
from donecall.watcher.clock import ManualScheduler
from donecall.watcher.detector import SessionDetector, make_preview

# ── Helpers ─────────────────────────────────────────────────


class FakeSource:
    """Scriptable signal source."""

    def __init__(self, active=False, intermediate=False, content="", timestamp=None):
        self.active = active
        self.intermediate = intermediate
        self.content = content
        self.timestamp = timestamp
        self.fail = False

    def _check(self):
        if self.fail:
            raise SignalUnavailable("not ready")

    def is_active(self):
        self._check()
        return self.active

    def is_intermediate_phase(self):
        self._check()
        return self.intermediate

    def current_content_snapshot(self):
        self._check()
        return self.content

    def authoritative_timestamp(self):
        self._check()
        return self.timestamp


def make_detector(source=None, **kwargs):
    """Detector on a manual clock at t=0, already monitoring."""
    clock = ManualScheduler()
    events = []
    detector = SessionDetector("tab-1", source or FakeSource(), events.append, clock, **kwargs)
    detector.start()
    return detector, clock, events


def step(detector, clock, at, **signals):
    """Move the clock to ``at``, update the source, then tick once."""
    clock.advance_to(at)
    for name, value in signals.items():
        setattr(detector.source, name, value)
    detector.tick()


def states(events):
    return [e.state for e in events if isinstance(e, StateChangedEvent)]


def completions(events):
    return [e for e in events if isinstance(e, CompletionEvent)]


def run_generation(detector, clock, stop_at=1000):
    """Active from t=0 until ``stop_at``, sampling every 500ms."""
    step(detector, clock, 0, active=True)
    t = 500
    while t < stop_at:
        step(detector, clock, t)
        t += 500
    step(detector, clock, stop_at, active=False)


# ── Tests: make_preview ─────────────────────────────────────


class TestMakePreview:
    def test_short_text_unchanged(self):
        assert make_preview("Hello there") == "Hello there"

    def test_long_text_truncated_with_ellipsis(self):
        text = "x" * 150
        preview = make_preview(text)
        assert preview == "x" * 100 + "..."

    def test_whitespace_stripped(self):
        assert make_preview("  done \n") == "done"

    def test_custom_limit(self):
        assert make_preview("abcdef", limit=3) == "abc..."


# ── Tests: Classification ───────────────────────────────────


class TestClassification:
    def test_inactive_stays_idle(self):
        """Scenario A: no activity means no events at all."""
        detector, clock, events = make_detector()
        for t in (0, 500, 1000):
            step(detector, clock, t, active=False)

        assert events == []
        assert detector.state == SessionState.IDLE

    def test_active_reports_generating(self):
        detector, clock, events = make_detector()
        step(detector, clock, 0, active=True)

        assert states(events) == [SessionState.GENERATING]

    def test_intermediate_reports_thinking(self):
        detector, clock, events = make_detector()
        step(detector, clock, 0, active=True, intermediate=True)

        assert states(events) == [SessionState.THINKING]

    def test_growing_content_reports_writing(self):
        detector, clock, events = make_detector()
        step(detector, clock, 0, active=True)
        step(detector, clock, 500, content="Hel")
        step(detector, clock, 1000, content="Hello")
        step(detector, clock, 1500)

        assert states(events) == [
            SessionState.GENERATING,
            SessionState.WRITING,
            SessionState.GENERATING,
        ]

    def test_no_duplicate_state_events(self):
        detector, clock, events = make_detector()
        for t in (0, 500, 1000, 1500):
            step(detector, clock, t, active=True)

        assert states(events) == [SessionState.GENERATING]


# ── Tests: Completion ───────────────────────────────────────


class TestCompletion:
    def test_completion_after_stability_window(self):
        """Scenario B: stop at 1000, quiet afterwards, completion at 2500."""
        detector, clock, events = make_detector(stability_window_ms=1500)
        step(detector, clock, 0, active=True)

        assert events[0].generation_started_at == 0
        assert detector.generation_started_at == 0

        step(detector, clock, 500)
        step(detector, clock, 1000, active=False)
        assert detector.state == SessionState.IDLE
        step(detector, clock, 1500)
        step(detector, clock, 2000)
        assert completions(events) == []
        assert states(events) == [
            SessionState.GENERATING,
            SessionState.IDLE,
            SessionState.COMPLETED,
        ]

        clock.advance_to(2500)

        done = completions(events)
        assert len(done) == 1
        assert done[0].emitted_at == 2500
        assert done[0].duration_ms == 1000
        assert detector.state == SessionState.COMPLETED
        assert detector.generation_started_at is None

    def test_content_change_restarts_window(self):
        """Scenario C: a late write at 2000 pushes completion to 3500."""
        detector, clock, events = make_detector(stability_window_ms=1500)
        run_generation(detector, clock, stop_at=1000)
        step(detector, clock, 1500)
        step(detector, clock, 2000, content="trailing words")

        clock.advance_to(3499)
        assert completions(events) == []

        clock.advance_to(3500)
        done = completions(events)
        assert len(done) == 1
        assert done[0].emitted_at == 3500
        assert done[0].duration_ms == 2000
        assert done[0].preview == "trailing words"

    def test_continuous_writes_hold_completion(self):
        detector, clock, events = make_detector(stability_window_ms=1500)
        run_generation(detector, clock, stop_at=1000)

        t = 1500
        while t <= 4000:
            step(detector, clock, t, content=f"chunk {t}")
            assert completions(events) == []
            t += 500

        clock.advance_to(5499)
        assert completions(events) == []
        clock.advance_to(5500)
        assert len(completions(events)) == 1

    def test_no_completion_without_observed_start(self):
        """A stale 'active' indicator on load must not produce a completion."""
        source = FakeSource(active=True)
        detector, clock, events = make_detector(source)
        step(detector, clock, 0)
        step(detector, clock, 500, active=False)
        clock.advance_to(10_000)

        assert completions(events) == []
        assert states(events) == [SessionState.GENERATING, SessionState.IDLE]
        assert events[0].generation_started_at is None

    def test_flicker_keeps_original_start(self):
        detector, clock, events = make_detector(stability_window_ms=1500)
        run_generation(detector, clock, stop_at=1000)
        step(detector, clock, 1500, active=True)
        step(detector, clock, 2000, active=False)
        clock.advance_to(3500)

        done = completions(events)
        assert len(done) == 1
        assert done[0].duration_ms == 2000

    def test_flicker_never_reports_completed(self):
        detector, clock, events = make_detector(stability_window_ms=1500)
        step(detector, clock, 0, active=True)
        step(detector, clock, 1000, active=False)
        step(detector, clock, 1500, active=True)

        assert states(events) == [
            SessionState.GENERATING,
            SessionState.IDLE,
            SessionState.GENERATING,
        ]
        assert [e.observed_at for e in events] == [0, 1000, 1500]
        assert completions(events) == []

    def test_exactly_one_completion_per_generation(self):
        detector, clock, events = make_detector()
        run_generation(detector, clock)
        for t in range(1500, 10_000, 500):
            step(detector, clock, t)

        assert len(completions(events)) == 1

    def test_preview_is_truncated(self):
        detector, clock, events = make_detector(preview_chars=10)
        run_generation(detector, clock)
        detector.source.content = "The answer is forty-two."
        clock.advance_to(5000)

        assert completions(events)[0].preview == "The answer..."

    def test_completed_falls_back_to_idle_after_grace(self):
        detector, clock, events = make_detector(completion_grace_ms=3000)
        run_generation(detector, clock)
        clock.advance_to(2500)
        step(detector, clock, 3000)
        assert detector.state == SessionState.COMPLETED

        clock.advance_to(5500)
        assert detector.state == SessionState.IDLE
        assert states(events)[-2:] == [SessionState.COMPLETED, SessionState.IDLE]

    def test_new_generation_during_grace(self):
        detector, clock, events = make_detector()
        run_generation(detector, clock)
        clock.advance_to(2500)
        step(detector, clock, 3000, active=True)

        assert detector.state == SessionState.GENERATING
        assert detector.generation_started_at == 3000
        clock.advance_to(6000)
        assert detector.state == SessionState.GENERATING

    def test_second_generation_completes_again(self):
        detector, clock, events = make_detector()
        run_generation(detector, clock)
        clock.advance_to(6000)
        step(detector, clock, 6000, active=True)
        step(detector, clock, 7000, active=False)
        clock.advance_to(9000)

        done = completions(events)
        assert len(done) == 2
        assert done[1].duration_ms == 1000


# ── Tests: Robustness ───────────────────────────────────────


class TestRobustness:
    def test_unavailable_signal_reads_as_inactive(self):
        detector, clock, events = make_detector()
        detector.source.fail = True
        step(detector, clock, 0)
        step(detector, clock, 500)

        assert events == []

    def test_glitch_mid_generation_is_debounced(self):
        detector, clock, events = make_detector()
        step(detector, clock, 0, active=True)
        detector.source.fail = True
        step(detector, clock, 500)
        detector.source.fail = False
        step(detector, clock, 1000)
        clock.advance_to(5000)

        assert completions(events) == []
        assert detector.state == SessionState.GENERATING

    def test_emit_failure_does_not_break_loop(self):
        clock = ManualScheduler()

        def broken(event):
            raise RuntimeError("channel closed")

        detector = SessionDetector("tab-1", FakeSource(), broken, clock)
        detector.start()
        step(detector, clock, 0, active=True)

        assert detector.state == SessionState.GENERATING


# ── Tests: Cancellation ─────────────────────────────────────


class TestCancellation:
    def test_stop_cancels_pending_timer(self):
        detector, clock, events = make_detector()
        run_generation(detector, clock)
        assert detector.stability_pending

        detector.stop()
        clock.advance_to(10_000)

        assert completions(events) == []
        assert clock.pending_timers == 0

    def test_no_events_after_stop(self):
        detector, clock, events = make_detector()
        detector.stop()
        step(detector, clock, 0, active=True)
        detector.push_timestamp(1_700_000_000_000)

        assert events == []

    def test_stopped_detector_cannot_restart(self):
        detector, clock, events = make_detector()
        detector.stop()
        detector.start()

        assert detector.monitoring is False


# ── Tests: Timestamps & resume ──────────────────────────────


class TestTimestamps:
    def test_polled_timestamp_emitted_once(self):
        detector, clock, events = make_detector()
        step(detector, clock, 0, timestamp=1_700_000_000_000)
        step(detector, clock, 500)

        stamps = [e for e in events if isinstance(e, TimestampEvent)]
        assert len(stamps) == 1
        assert stamps[0].timestamp == 1_700_000_000_000

    def test_pushed_timestamp(self):
        detector, clock, events = make_detector()
        detector.push_timestamp(1_700_000_000_500)

        assert isinstance(events[-1], TimestampEvent)

    def test_invalid_timestamp_ignored(self):
        detector, clock, events = make_detector()
        detector.push_timestamp(-1)

        assert events == []


class TestResume:
    def test_resumed_generation_can_complete(self):
        clock = ManualScheduler(start=10_000)
        events = []
        detector = SessionDetector(
            "tab-1",
            FakeSource(active=True),
            events.append,
            clock,
            initial_state=SessionState.GENERATING,
            resume_started_at=4_000,
        )
        detector.start()
        step(detector, clock, 10_000)
        step(detector, clock, 10_500, active=False)
        clock.advance_to(12_000)

        done = completions(events)
        assert len(done) == 1
        assert done[0].duration_ms == 6_500

    def test_resumed_state_reconciled_when_inactive(self):
        clock = ManualScheduler(start=10_000)
        events = []
        detector = SessionDetector(
            "tab-1",
            FakeSource(active=False),
            events.append,
            clock,
            initial_state=SessionState.GENERATING,
            resume_started_at=4_000,
        )
        detector.start()
        step(detector, clock, 10_000)

        assert states(events) == [SessionState.IDLE]
        clock.advance_to(20_000)
        assert completions(events) == []
