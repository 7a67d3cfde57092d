"""
Fixed-duration tick bucketing of acknowledgment arrivals.

Acks are counted into the current tick; once an ack arrives at least one
tick duration after the tick started, the tick is closed and handed to
whoever listens (the rate estimator, or a strategy's own tick logic).
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

logger = logging.getLogger("TickAggregator")


@dataclass(frozen=True)
class TickWindow:
    """A closed tick"""

    tick_start_time: int
    tick_duration: int
    packet_count: int

    @property
    def rate(self) -> float:
        """Observed arrival rate (packets per ms)"""
        return self.packet_count / self.tick_duration


class TickAggregator:
    """
    Buckets ack arrivals into ticks of `tick_duration` milliseconds.

    The tick clock starts at `start_time` (0, the transport clock's origin,
    by default); with `start_time=None` it starts at the first observed
    ack. At most one tick closes per observation; after a long silence the
    next ack closes a single tick and restarts the clock at its own
    arrival time.

    Attributes:
        tick_duration (int): Tick length (ms)
        packet_count (int): Distinct acks counted in the open tick
        previous_tick_count (int | None): Count of the last closed tick
        last_tick_time (int | None): Start of the open tick (ms)
        last_ack_sequence_seen (int | None): Sequence number of the last ack
        elapsed_time (int): Tick durations accumulated since the start (ms)
        ticks (int): Number of closed ticks
    """

    def __init__(
        self,
        tick_duration: int = 20,
        start_time: Optional[int] = 0,
        on_tick: Optional[Callable[[TickWindow], None]] = None,
    ):
        if tick_duration <= 0:
            raise ValueError(f"tick_duration must be positive, got {tick_duration}")

        self.tick_duration = tick_duration
        self.on_tick = on_tick

        self.packet_count = 0
        self.previous_tick_count: Optional[int] = None
        self.last_tick_time: Optional[int] = start_time
        self.last_ack_sequence_seen: Optional[int] = None
        self.elapsed_time = 0
        self.ticks = 0
        self.duplicates = 0

    def observe(self, ack_sequence: int, ack_recv_time: int) -> Optional[TickWindow]:
        """
        Count one acknowledgment and close the tick if it has run out.

        Args:
            ack_sequence: Sequence number carried by the ack
            ack_recv_time: When the ack arrived at the sender (ms)

        Returns:
            TickWindow | None: The tick closed by this ack, if any
        """
        if self.last_tick_time is None:
            self.last_tick_time = ack_recv_time

        if ack_sequence == self.last_ack_sequence_seen:
            self.duplicates += 1
            logger.debug(f"Duplicate ack {ack_sequence} not counted")
        else:
            self.packet_count += 1
        self.last_ack_sequence_seen = ack_sequence

        if ack_recv_time - self.last_tick_time < self.tick_duration:
            return None

        return self._close_tick(ack_recv_time)

    def _close_tick(self, now: int) -> TickWindow:
        closed = TickWindow(
            tick_start_time=self.last_tick_time,
            tick_duration=self.tick_duration,
            packet_count=self.packet_count,
        )

        self.previous_tick_count = self.packet_count
        self.packet_count = 0
        self.last_tick_time = now
        self.elapsed_time += self.tick_duration
        self.ticks += 1

        logger.debug(
            f"Tick {self.ticks} closed: start={closed.tick_start_time}, "
            f"packets={closed.packet_count}, elapsed={self.elapsed_time}ms"
        )

        if self.on_tick is not None:
            self.on_tick(closed)
        return closed
