"""
Congestion window controllers for a datagram transport.

A controller consumes timing signals about sent and acknowledged datagrams
and answers two questions for the transport's send loop:

- window_size(): how many datagrams may be outstanding at once
- timeout_ms():  how long to wait for an ack before declaring a timeout

Strategies (selected by name through make_controller):

- fixed:          constant window
- aimd:           additive increase per window of acks, multiplicative
                  decrease on timeout-triggered sends
- delay:          grow while RTT stays under a threshold, shrink otherwise
- gradient:       per-ack RTT bonus plus per-tick backoff driven by the
                  tick-over-tick mean RTT trend
- probabilistic:  Bayesian grid filter over the arrival rate; the window
                  is a low percentile of the rate times a time horizon

Each flow owns its own controller instance. Controllers are synchronous and
do no I/O; every call completes in bounded time.
"""

import logging
from dataclasses import dataclass, fields
from enum import Enum
from typing import Callable, Dict, Optional, Type

from rate_estimator import RateDistribution
from rtt_sampler import RttSample, RttSampler
from tick_aggregator import TickAggregator, TickWindow
from window_selector import (
    aimd_decrease,
    aimd_increase,
    delay_threshold,
    select_delay_triggered,
    select_probabilistic,
)

logger = logging.getLogger("WindowController")


class TelemetryEvent(Enum):
    WINDOW_CHANGED = 0
    TICK_CLOSED = 1
    DISTRIBUTION_RESET = 2
    RTT_CLAMPED = 3


class ControllerState(Enum):
    IDLE = "idle"  # nothing observed yet
    ACTIVE = "active"  # at least one send or ack observed


# ==============================================================================
# Configuration
# ==============================================================================


@dataclass
class ControllerConfig:
    """Settings shared by every strategy"""

    initial_window: int = 20
    rtt_alpha: float = 0.2  # EWMA weight of a new RTT sample
    timeout_multiplier: float = 2.0  # timeout = multiplier * min_rtt
    default_timeout_ms: int = 1000  # used until the first RTT sample

    def validate(self):
        if self.initial_window < 0:
            raise ValueError(f"initial_window must be >= 0, got {self.initial_window}")
        if not 0.0 < self.rtt_alpha <= 1.0:
            raise ValueError(f"rtt_alpha must lie in (0, 1], got {self.rtt_alpha}")
        if self.timeout_multiplier <= 0:
            raise ValueError("timeout_multiplier must be positive")
        if self.default_timeout_ms <= 0:
            raise ValueError("default_timeout_ms must be positive")


@dataclass
class FixedWindowConfig(ControllerConfig):
    initial_window: int = 15


@dataclass
class AimdConfig(ControllerConfig):
    increment: int = 1
    decrease_factor: float = 0.5
    min_window: int = 1

    def validate(self):
        super().validate()
        if self.increment < 0:
            raise ValueError(f"increment must be >= 0, got {self.increment}")
        if not 0.0 <= self.decrease_factor <= 1.0:
            raise ValueError(
                f"decrease_factor must lie in [0, 1], got {self.decrease_factor}"
            )
        if self.min_window < 0:
            raise ValueError(f"min_window must be >= 0, got {self.min_window}")


@dataclass
class DelayTriggeredConfig(ControllerConfig):
    initial_window: int = 1
    increment: int = 1
    decrement: int = 10
    threshold_ms: float = 350.0
    # When set, the threshold becomes threshold_ratio * min_rtt
    threshold_ratio: Optional[float] = None
    update_period_ms: int = 2

    def validate(self):
        super().validate()
        if self.increment < 0 or self.decrement < 0:
            raise ValueError("increment and decrement must be >= 0")
        if self.threshold_ms <= 0:
            raise ValueError(f"threshold_ms must be positive, got {self.threshold_ms}")
        if self.threshold_ratio is not None and self.threshold_ratio <= 0:
            raise ValueError("threshold_ratio must be positive")
        if self.update_period_ms < 0:
            raise ValueError("update_period_ms must be >= 0")


@dataclass
class DelayGradientConfig(ControllerConfig):
    tick_duration: int = 20
    start_time: Optional[int] = 0  # None: start the tick clock at the first ack
    fast_increment: int = 2  # rtt at min_rtt
    slow_increment: int = 1  # rtt within slow_rtt_ratio of min_rtt
    slow_rtt_ratio: float = 1.5
    backoff_rising: float = 0.7  # mean RTT not falling
    backoff_falling: float = 0.9  # mean RTT falling

    def validate(self):
        super().validate()
        if self.tick_duration <= 0:
            raise ValueError(f"tick_duration must be positive, got {self.tick_duration}")
        if self.fast_increment < 0 or self.slow_increment < 0:
            raise ValueError("increments must be >= 0")
        if self.slow_rtt_ratio < 1.0:
            raise ValueError("slow_rtt_ratio must be >= 1")
        for factor in (self.backoff_rising, self.backoff_falling):
            if not 0.0 <= factor <= 1.0:
                raise ValueError(f"backoff factors must lie in [0, 1], got {factor}")


@dataclass
class ProbabilisticConfig(ControllerConfig):
    max_rate: int = 200
    bucket_resolution: int = 100
    tick_duration: int = 20
    start_time: Optional[int] = 0  # None: start the tick clock at the first ack
    min_prob: float = 1e-6
    diffusion_coefficient: float = 0.05
    diffusion_span: int = 10
    percentile: float = 0.05
    ewma_weight: float = 0.5
    window_horizon_ms: float = 100.0

    def validate(self):
        super().validate()
        if self.max_rate < 2:
            raise ValueError(f"max_rate must be at least 2, got {self.max_rate}")
        if self.bucket_resolution <= 0:
            raise ValueError("bucket_resolution must be positive")
        if self.tick_duration <= 0:
            raise ValueError(f"tick_duration must be positive, got {self.tick_duration}")
        if not 0.0 < self.percentile <= 1.0:
            raise ValueError(f"percentile must lie in (0, 1], got {self.percentile}")
        if not 0.0 < self.ewma_weight <= 1.0:
            raise ValueError(f"ewma_weight must lie in (0, 1], got {self.ewma_weight}")
        if self.window_horizon_ms <= 0:
            raise ValueError("window_horizon_ms must be positive")


# ==============================================================================
# Controller contract
# ==============================================================================


class WindowController:
    """
    Base window controller.

    Subclasses react to events through on_sent() / on_ack() and change the
    window only through _set_window(), which saturates at zero and reports
    the change.

    Args:
        config: Strategy configuration (defaults to config_class())
        callback: Optional telemetry sink called as
            callback(event, controller, **fields); behavior is identical
            without it
    """

    name = "base"
    config_class: Type[ControllerConfig] = ControllerConfig

    def __init__(
        self,
        config: Optional[ControllerConfig] = None,
        callback: Optional[Callable] = None,
    ):
        self.config = config if config is not None else self.config_class()
        self.config.validate()
        self.callback = callback

        self.rtt = RttSampler(alpha=self.config.rtt_alpha)
        self.state = ControllerState.IDLE
        self._window = max(0, int(self.config.initial_window))

        self.datagrams_sent = 0
        self.acks_received = 0
        self.timeouts = 0

        logger.info(f"Initializing {self.name} controller: {self.config}")

    # --------------------------------------------------------------------------
    # Transport-facing operations
    # --------------------------------------------------------------------------

    def window_size(self) -> int:
        """Current window, in datagrams"""
        return self._window

    def timeout_ms(self) -> int:
        """
        How long to wait without acks before sending one more datagram.

        Twice the minimum RTT (by default) once a sample exists, otherwise
        the configured fallback. Never zero.
        """
        if self.rtt.min_rtt is None:
            return self.config.default_timeout_ms
        return max(1, int(self.config.timeout_multiplier * self.rtt.min_rtt))

    def datagram_was_sent(
        self, sequence_number: int, send_time: int, after_timeout: bool = False
    ):
        self.datagrams_sent += 1
        self.state = ControllerState.ACTIVE
        if after_timeout:
            self.timeouts += 1

        logger.debug(
            f"At time {send_time} sent datagram {sequence_number} "
            f"(timeout = {after_timeout})"
        )
        self.on_sent(sequence_number, send_time, after_timeout)

    def ack_received(
        self,
        sequence_number: int,
        send_time: int,
        recv_time_peer: int,
        recv_time_local: int,
    ):
        """
        An ack arrived.

        Args:
            sequence_number: Sequence number acknowledged
            send_time: When the acknowledged datagram was sent (sender's clock)
            recv_time_peer: When the datagram was received (receiver's clock)
            recv_time_local: When the ack was received (sender's clock)
        """
        self.acks_received += 1
        self.state = ControllerState.ACTIVE

        clamped = self.rtt.clamped
        rtt = self.rtt.sample(send_time, recv_time_local)
        if self.rtt.clamped != clamped:
            self._emit(
                TelemetryEvent.RTT_CLAMPED,
                sequence_number=sequence_number,
                send_time=send_time,
                ack_recv_time=recv_time_local,
            )

        logger.debug(
            f"At time {recv_time_local} received ack for datagram {sequence_number} "
            f"(send @ time {send_time}, received @ time {recv_time_peer} "
            f"by receiver's clock), rtt={rtt}ms"
        )
        sample = RttSample(sequence_number, send_time, recv_time_peer, recv_time_local)
        self.on_ack(sample, rtt)

    # --------------------------------------------------------------------------
    # Strategy hooks
    # --------------------------------------------------------------------------

    def on_sent(self, sequence_number: int, send_time: int, after_timeout: bool):
        pass

    def on_ack(self, sample: RttSample, rtt: int):
        pass

    # --------------------------------------------------------------------------
    # Helpers
    # --------------------------------------------------------------------------

    def _set_window(self, new_window, reason: str):
        new_window = max(0, int(new_window))
        if new_window == self._window:
            return

        old_window = self._window
        self._window = new_window
        logger.debug(f"{self.name}: window {old_window} -> {new_window} ({reason})")
        self._emit(
            TelemetryEvent.WINDOW_CHANGED,
            old_window=old_window,
            new_window=new_window,
            reason=reason,
        )

    def _emit(self, event: TelemetryEvent, **event_fields):
        if self.callback is not None:
            self.callback(event, self, **event_fields)


# ==============================================================================
# Strategies
# ==============================================================================


class FixedWindowController(WindowController):
    """Constant window; only the timeout adapts"""

    name = "fixed"
    config_class = FixedWindowConfig


class AimdController(WindowController):
    """
    Additive increase, multiplicative decrease.

    Every window's worth of acks adds `increment`; a datagram sent because
    of a timeout multiplies the window by `decrease_factor` (truncated
    toward zero, floored at `min_window`).
    """

    name = "aimd"
    config_class = AimdConfig

    def __init__(self, config=None, callback=None):
        super().__init__(config, callback)
        self.acks_in_round = 0

    def on_sent(self, sequence_number, send_time, after_timeout):
        if not after_timeout:
            return

        self.acks_in_round = 0
        new_window = aimd_decrease(
            self._window, self.config.decrease_factor, self.config.min_window
        )
        logger.info(
            f"Timeout at {send_time}: window {self._window} -> {new_window} "
            f"(factor={self.config.decrease_factor})"
        )
        self._set_window(new_window, "timeout")

    def on_ack(self, sample, rtt):
        new_window, self.acks_in_round = aimd_increase(
            self._window, self.acks_in_round, self.config.increment
        )
        self._set_window(new_window, "additive increase")


class DelayTriggeredController(WindowController):
    """
    Delay-triggered window.

    Fresh acks with RTT below the threshold grow the window by `increment`,
    no more often than every `update_period_ms`. An RTT at or above the
    threshold, or an ack that does not advance the highest sequence number
    seen, shrinks the window by `decrement`, saturating at zero.
    """

    name = "delay"
    config_class = DelayTriggeredConfig

    def __init__(self, config=None, callback=None):
        super().__init__(config, callback)
        self.last_ack: Optional[int] = None
        self.last_update = 0

    def on_ack(self, sample, rtt):
        cfg = self.config
        now = sample.ack_recv_time
        threshold = delay_threshold(cfg.threshold_ms, cfg.threshold_ratio, self.rtt.min_rtt)
        advanced = self.last_ack is None or sample.sequence_number > self.last_ack
        since_last_update = now - self.last_update

        new_window = select_delay_triggered(
            self._window,
            rtt,
            threshold,
            advanced,
            since_last_update,
            cfg.update_period_ms,
            cfg.increment,
            cfg.decrement,
        )

        fresh = rtt < threshold and advanced
        if not fresh or since_last_update >= cfg.update_period_ms:
            self.last_update = now
        if not fresh:
            logger.debug(
                f"Delay trigger: rtt={rtt}ms threshold={threshold:.1f}ms "
                f"advanced={advanced}"
            )

        if advanced:
            self.last_ack = sample.sequence_number
        self._set_window(new_window, "increase" if fresh else "delay trigger")


class DelayGradientController(WindowController):
    """
    Per-ack RTT bonus with a per-tick multiplicative backoff.

    Each ack adds `fast_increment` when its RTT equals the minimum RTT and
    `slow_increment` when it is within `slow_rtt_ratio` of it. When a tick
    closes, the tick's mean RTT is compared with the previous tick's: a mean
    that did not fall backs the window off to 1 + backoff_rising * window,
    a falling one to 1 + backoff_falling * window.
    """

    name = "gradient"
    config_class = DelayGradientConfig

    def __init__(self, config=None, callback=None):
        super().__init__(config, callback)
        self.ticks = TickAggregator(
            self.config.tick_duration, start_time=self.config.start_time
        )
        self.prev_rtt_avg: Optional[float] = None
        self._rtt_sum = 0
        self._rtt_count = 0

    def on_ack(self, sample, rtt):
        cfg = self.config
        window = self._window
        min_rtt = self.rtt.min_rtt

        if rtt <= min_rtt:
            window += cfg.fast_increment
        elif rtt <= cfg.slow_rtt_ratio * min_rtt:
            window += cfg.slow_increment

        self._rtt_sum += rtt
        self._rtt_count += 1

        tick = self.ticks.observe(sample.sequence_number, sample.ack_recv_time)
        if tick is not None:
            window = self._back_off(window, tick)

        self._set_window(window, "rtt gradient")

    def _back_off(self, window: int, tick: TickWindow) -> int:
        curr_rtt_avg = self._rtt_sum / self._rtt_count
        if self.prev_rtt_avg is not None and curr_rtt_avg >= self.prev_rtt_avg:
            factor = self.config.backoff_rising
        else:
            factor = self.config.backoff_falling

        self._emit(
            TelemetryEvent.TICK_CLOSED,
            tick=tick,
            rtt_avg=curr_rtt_avg,
            prev_rtt_avg=self.prev_rtt_avg,
        )
        self.prev_rtt_avg = curr_rtt_avg
        self._rtt_sum = 0
        self._rtt_count = 0
        return 1 + int(factor * window)


class ProbabilisticController(WindowController):
    """
    Window derived from a Bayesian estimate of the link's delivery rate.

    Acks are bucketed into ticks; every closed tick updates a discrete
    distribution over the arrival rate (see rate_estimator). The window
    target is a low percentile of that distribution times the horizon one
    window should cover, blended into the previous window by EWMA, so the
    more uncertain the estimate the more conservative the window.
    """

    name = "probabilistic"
    config_class = ProbabilisticConfig

    def __init__(self, config=None, callback=None):
        super().__init__(config, callback)
        cfg = self.config
        self.distribution = RateDistribution(
            max_rate=cfg.max_rate,
            bucket_resolution=cfg.bucket_resolution,
            min_prob=cfg.min_prob,
            diffusion_coefficient=cfg.diffusion_coefficient,
            diffusion_span=cfg.diffusion_span,
            on_reset=self._on_distribution_reset,
        )
        self.ticks = TickAggregator(cfg.tick_duration, start_time=cfg.start_time)

    def percentile_rate(self, p: float) -> int:
        """Smallest rate bucket whose cumulative mass reaches p"""
        return self.distribution.percentile_rate(p)

    def on_ack(self, sample, rtt):
        tick = self.ticks.observe(sample.sequence_number, sample.ack_recv_time)
        if tick is not None:
            self._on_tick(tick)

    def _on_tick(self, tick: TickWindow):
        cfg = self.config
        self.distribution.update(
            tick.packet_count, tick.tick_duration, self.ticks.elapsed_time
        )

        index = self.distribution.percentile_rate(cfg.percentile)
        new_window = select_probabilistic(
            index,
            cfg.bucket_resolution,
            cfg.window_horizon_ms,
            cfg.ewma_weight,
            self._window,
        )

        self._emit(
            TelemetryEvent.TICK_CLOSED,
            tick=tick,
            percentile_index=index,
            expected_rate=self.distribution.expected_rate(),
        )
        logger.debug(
            f"Tick at {tick.tick_start_time}: packets={tick.packet_count}, "
            f"p{cfg.percentile:g} bucket={index}, window {self._window} -> {new_window}"
        )
        self._set_window(new_window, "rate percentile")

    def _on_distribution_reset(self, reason: str):
        self._emit(TelemetryEvent.DISTRIBUTION_RESET, reason=reason)


# ==============================================================================
# Factory
# ==============================================================================

STRATEGIES: Dict[str, Type[WindowController]] = {
    cls.name: cls
    for cls in (
        FixedWindowController,
        AimdController,
        DelayTriggeredController,
        DelayGradientController,
        ProbabilisticController,
    )
}


def make_controller(
    name: str, callback: Optional[Callable] = None, **overrides
) -> WindowController:
    """
    Build a controller by strategy name.

    Args:
        name: One of STRATEGIES
        callback: Optional telemetry sink
        **overrides: Fields of the strategy's config dataclass

    Returns:
        WindowController: A fresh controller owning its own state

    Raises:
        ValueError: Unknown strategy, unknown config field or invalid value
    """
    try:
        cls = STRATEGIES[name]
    except KeyError:
        raise ValueError(
            f"Unknown strategy {name!r}, expected one of {sorted(STRATEGIES)}"
        ) from None

    known = {f.name for f in fields(cls.config_class)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown {name} settings: {sorted(unknown)}")

    return cls(cls.config_class(**overrides), callback=callback)
