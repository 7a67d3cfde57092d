"""
Round-trip time sampling for the window controllers.

One RTT sample is derived per acknowledgment from the sender-side send
timestamp and the sender-side ack arrival timestamp. The sampler keeps the
running statistics every strategy needs:

- min_rtt:  smallest RTT observed so far (propagation delay estimate)
- ewma_rtt: exponentially weighted moving average of RTT samples

All timestamps are milliseconds from a monotonic clock owned by the
transport.
"""

import logging
import math
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger("RttSampler")


@dataclass(frozen=True)
class RttSample:
    """A single acknowledged datagram's timing record"""

    sequence_number: int
    send_time: int  # sender's clock
    recv_time_local: int  # datagram arrival, receiver's own clock
    ack_recv_time: int  # ack arrival, sender's clock

    @property
    def rtt(self) -> int:
        """Round-trip time (ms), clamped to zero under clock skew"""
        return max(0, self.ack_recv_time - self.send_time)


class RttSampler:
    """
    Running RTT statistics for one flow.

    Attributes:
        alpha (float): EWMA smoothing factor applied to each new sample
        min_rtt (int | None): Minimum RTT seen so far (ms)
        ewma_rtt (float | None): Smoothed RTT (ms)
        last_rtt (int | None): Most recent RTT sample (ms)
        samples (int): Number of samples taken
        clamped (int): Number of samples clamped to zero
    """

    def __init__(self, alpha: float = 0.2):
        if not 0.0 < alpha <= 1.0:
            raise ValueError(f"alpha must lie in (0, 1], got {alpha}")

        self.alpha = alpha
        self.min_rtt: Optional[int] = None
        self.ewma_rtt: Optional[float] = None
        self.last_rtt: Optional[int] = None
        self.samples = 0
        self.clamped = 0

    @property
    def has_samples(self) -> bool:
        return self.samples > 0

    def sample(self, send_time, ack_recv_time) -> int:
        """
        Take one RTT sample and fold it into the running statistics.

        Negative RTTs (clock skew between send and ack timestamps) and
        garbled non-finite timestamps are clamped to zero rather than
        rejected, so the statistics always move forward.

        Args:
            send_time: When the acknowledged datagram was sent (ms)
            ack_recv_time: When the ack arrived at the sender (ms)

        Returns:
            int: The (possibly clamped) RTT sample in milliseconds
        """
        try:
            raw = float(ack_recv_time) - float(send_time)
        except (TypeError, ValueError):
            raw = float("nan")

        if not math.isfinite(raw) or raw < 0:
            logger.warning(
                f"Clamping implausible RTT sample to 0: "
                f"send_time={send_time}, ack_recv_time={ack_recv_time}"
            )
            self.clamped += 1
            rtt = 0
        else:
            rtt = int(raw)

        self.samples += 1
        self.last_rtt = rtt
        self.min_rtt = rtt if self.min_rtt is None else min(self.min_rtt, rtt)

        # First sample seeds the average
        if self.ewma_rtt is None:
            self.ewma_rtt = float(rtt)
        else:
            self.ewma_rtt = self.alpha * rtt + (1.0 - self.alpha) * self.ewma_rtt

        return rtt

    def record(self, sample: RttSample) -> int:
        """Take a sample from an RttSample record"""
        return self.sample(sample.send_time, sample.ack_recv_time)
