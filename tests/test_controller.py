import random

import numpy as np
import pytest

from controller import (
    STRATEGIES,
    AimdController,
    ControllerState,
    DelayTriggeredConfig,
    DelayTriggeredController,
    ProbabilisticController,
    TelemetryEvent,
    WindowController,
    make_controller,
)
from window_selector import select_probabilistic


class EventRecorder:
    def __init__(self):
        self.events = []

    def __call__(self, event, controller, **fields):
        self.events.append((event, fields))

    def of(self, event):
        return [fields for e, fields in self.events if e == event]


def feed_acks(controller: WindowController, rtt: int, count: int, start: int = 1000,
              spacing: int = 1, first_seq: int = 1):
    windows = []
    for i in range(count):
        now = start + i * spacing
        seq = first_seq + i
        controller.datagram_was_sent(seq, now - rtt)
        controller.ack_received(seq, now - rtt, now - rtt // 2, now)
        windows.append(controller.window_size())
    return windows


@pytest.fixture(params=sorted(STRATEGIES))
def any_controller(request) -> WindowController:
    return make_controller(request.param)


# ==============================================================================
# Contract shared by every strategy
# ==============================================================================


def test_fresh_controller_is_usable(any_controller: WindowController):
    assert any_controller.state is ControllerState.IDLE
    assert any_controller.window_size() >= 0
    assert any_controller.timeout_ms() == 1000


def test_reads_are_idempotent(any_controller: WindowController):
    feed_acks(any_controller, rtt=60, count=30)

    assert any_controller.window_size() == any_controller.window_size()
    assert any_controller.timeout_ms() == any_controller.timeout_ms()
    assert any_controller.state is ControllerState.ACTIVE


def test_invariants_under_jitter(any_controller: WindowController):
    rng = random.Random(0xC0FFEE)
    now = 0
    for seq in range(2000):
        now += rng.randint(0, 5)
        send_time = now - rng.randint(-20, 600)  # includes clock skew
        any_controller.datagram_was_sent(seq, max(send_time, 0), rng.random() < 0.02)
        any_controller.ack_received(
            rng.choice([seq, seq - 1]), send_time, now - 10, now
        )

        window = any_controller.window_size()
        assert isinstance(window, int)
        assert window >= 0
        assert any_controller.timeout_ms() > 0


def test_timeout_tracks_min_rtt(any_controller: WindowController):
    feed_acks(any_controller, rtt=50, count=3)
    assert any_controller.timeout_ms() == 100


def test_zero_rtt_timeout_stays_positive(any_controller: WindowController):
    any_controller.ack_received(1, 200, 150, 100)
    assert any_controller.rtt.min_rtt == 0
    assert any_controller.timeout_ms() == 1


def test_instances_do_not_share_state():
    first = make_controller("delay", initial_window=30)
    second = make_controller("delay", initial_window=30)
    feed_acks(first, rtt=400, count=1)

    assert first.window_size() == 20
    assert second.window_size() == 30
    assert second.rtt.min_rtt is None


# ==============================================================================
# Probabilistic strategy
# ==============================================================================


def test_probabilistic_single_tick_scenario():
    controller = make_controller("probabilistic", max_rate=200, tick_duration=20)
    cfg = controller.config
    previous = controller.window_size()

    # 5 acks, 4 ms apart from the clock origin, RTT fixed at 50 ms
    feed_acks(controller, rtt=50, count=5, start=4, spacing=4)

    assert controller.ticks.ticks == 1
    assert abs(controller.percentile_rate(0.5) - 25) <= 5

    expected = select_probabilistic(
        controller.percentile_rate(cfg.percentile),
        cfg.bucket_resolution,
        cfg.window_horizon_ms,
        cfg.ewma_weight,
        previous,
    )
    assert abs(controller.window_size() - expected) <= 1


def test_probabilistic_default_clock_closes_ticks():
    controller = make_controller("probabilistic")
    previous = controller.window_size()

    # The clock runs from 0, so the first ack at 1004 already ends a tick
    feed_acks(controller, rtt=50, count=5, start=1004, spacing=4)

    assert controller.ticks.ticks == 1
    assert controller.distribution.updates == 1
    # One ack in 20 ms is a slow link, so the window shrinks from its start
    assert controller.window_size() < previous


def test_probabilistic_clock_can_anchor_on_first_ack():
    controller = make_controller("probabilistic", start_time=None)
    feed_acks(controller, rtt=50, count=5, start=1004, spacing=4)

    assert controller.ticks.ticks == 1
    assert controller.ticks.previous_tick_count == 5


def test_probabilistic_distribution_normalized_every_tick():
    masses = []

    def check(event, controller, **fields):
        if event is TelemetryEvent.TICK_CLOSED:
            masses.append(controller.distribution.masses)

    controller = make_controller("probabilistic", start_time=0, callback=check)
    rng = random.Random(7)
    now = 0
    for seq in range(1, 600):
        now += rng.choice([0, 1, 3, 15, 45])
        controller.ack_received(seq, now - 40, now - 20, now)

    assert len(masses) > 10
    for m in masses:
        assert m.sum() == pytest.approx(1.0)
        assert np.all(m > 0)


def test_probabilistic_reset_reported():
    recorder = EventRecorder()
    controller = make_controller("probabilistic", callback=recorder)
    controller.distribution.update(float("nan"), 20, 20)

    resets = recorder.of(TelemetryEvent.DISTRIBUTION_RESET)
    assert len(resets) == 1
    assert "non-normalizable" in resets[0]["reason"]
    assert controller.window_size() >= 0


def test_probabilistic_window_follows_link_rate():
    controller = ProbabilisticController()
    # One ack per ms: 1 packet/ms over a 100 ms horizon
    feed_acks(controller, rtt=40, count=3000, start=0)
    slow = ProbabilisticController()
    # One ack every 10 ms
    feed_acks(slow, rtt=40, count=300, start=0, spacing=10)

    assert controller.window_size() > slow.window_size()


# ==============================================================================
# Simpler strategies
# ==============================================================================


def test_aimd_timeout_halves_window():
    controller = make_controller("aimd", initial_window=20, decrease_factor=0.5)
    controller.datagram_was_sent(1, 0, after_timeout=False)
    assert controller.window_size() == 20

    controller.datagram_was_sent(2, 10, after_timeout=True)
    assert controller.window_size() == 10
    assert controller.timeouts == 1


def test_aimd_additive_increase_per_window():
    controller = AimdController()
    controller._set_window(2, "test")
    feed_acks(controller, rtt=50, count=2)
    assert controller.window_size() == 3


def test_delay_triggered_decrease_by_decrement():
    controller = make_controller("delay", threshold_ms=350, decrement=10, initial_window=30)
    feed_acks(controller, rtt=400, count=1)
    assert controller.window_size() == 20


def test_delay_triggered_never_underflows():
    controller = DelayTriggeredController(
        DelayTriggeredConfig(threshold_ms=350, decrement=10, initial_window=5)
    )
    windows = feed_acks(controller, rtt=400, count=5)
    assert windows == [0, 0, 0, 0, 0]


def test_delay_triggered_stale_ack_shrinks_window():
    controller = make_controller("delay", initial_window=30)
    feed_acks(controller, rtt=50, count=1, first_seq=10)
    window = controller.window_size()
    controller.ack_received(5, 1000, 1020, 1050)
    assert controller.window_size() == window - 10


@pytest.mark.parametrize("strategy", ["delay", "aimd"])
def test_low_rtt_never_shrinks_window(strategy):
    controller = make_controller(strategy)
    windows = feed_acks(controller, rtt=50, count=500)

    assert windows == sorted(windows)
    assert windows[-1] > windows[0]


def test_high_rtt_shrinks_window_to_zero():
    controller = make_controller("delay", initial_window=50)
    windows = feed_acks(controller, rtt=500, count=20)

    assert windows == sorted(windows, reverse=True)
    assert windows[0] < 50
    assert windows[-1] == 0


def test_gradient_tick_backoff():
    controller = make_controller("gradient", start_time=0, initial_window=10)

    # rtt at min_rtt: +2, then the first tick backs off gently
    controller.ack_received(1, 0, 25, 50)
    assert controller.window_size() == 1 + int(0.9 * 12)

    # rtt within 1.5 * min_rtt: +1, mean RTT rose so back off harder
    controller.ack_received(2, 10, 40, 70)
    assert controller.window_size() == 1 + int(0.7 * 12)
    assert controller.timeout_ms() == 100


def test_fixed_window_ignores_events():
    controller = make_controller("fixed")
    feed_acks(controller, rtt=500, count=10)
    controller.datagram_was_sent(99, 2000, after_timeout=True)
    assert controller.window_size() == 15


# ==============================================================================
# Telemetry and construction
# ==============================================================================


def test_window_changes_reported():
    recorder = EventRecorder()
    controller = make_controller("delay", initial_window=30, callback=recorder)
    feed_acks(controller, rtt=400, count=1)

    changes = recorder.of(TelemetryEvent.WINDOW_CHANGED)
    assert changes == [{"old_window": 30, "new_window": 20, "reason": "delay trigger"}]


def test_clamped_rtt_reported():
    recorder = EventRecorder()
    controller = make_controller("fixed", callback=recorder)
    controller.ack_received(1, 200, 150, 100)

    assert len(recorder.of(TelemetryEvent.RTT_CLAMPED)) == 1


@pytest.mark.parametrize("strategy", sorted(STRATEGIES))
def test_callback_does_not_change_behavior(strategy):
    silent = make_controller(strategy)
    observed = make_controller(strategy, callback=EventRecorder())

    assert feed_acks(silent, rtt=70, count=200, spacing=3) == feed_acks(
        observed, rtt=70, count=200, spacing=3
    )


def test_make_controller_rejects_unknown_strategy():
    with pytest.raises(ValueError, match="Unknown strategy"):
        make_controller("vegas")


def test_make_controller_rejects_unknown_setting():
    with pytest.raises(ValueError, match="Unknown aimd settings"):
        make_controller("aimd", threshold_ms=10)


@pytest.mark.parametrize(
    "strategy,overrides",
    [
        ("probabilistic", {"percentile": 0.0}),
        ("probabilistic", {"tick_duration": 0}),
        ("aimd", {"decrease_factor": 1.5}),
        ("delay", {"threshold_ms": -1}),
        ("gradient", {"slow_rtt_ratio": 0.5}),
        ("fixed", {"initial_window": -1}),
    ],
)
def test_invalid_settings_rejected(strategy, overrides):
    with pytest.raises(ValueError):
        make_controller(strategy, **overrides)
