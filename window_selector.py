"""
Window selection rules shared by the controller strategies.

Each rule is a pure function from the strategy's signal and the previous
window to the next window. Windows are non-negative integers; every
decrease goes through saturating_sub so a large decrement floors at zero.
"""

from typing import Optional


def saturating_sub(value: int, amount: int) -> int:
    """value - amount, floored at zero"""
    return value - amount if value > amount else 0


def select_probabilistic(
    percentile_index: int,
    bucket_resolution: int,
    window_horizon_ms: float,
    ewma_weight: float,
    previous_window: int,
) -> int:
    """
    Blend the rate-percentile target into the previous window.

    The percentile bucket is converted to a rate (packets per ms) and
    multiplied by the horizon the window should cover, giving the number
    of datagrams the link is expected to drain in that time.

    Args:
        percentile_index: Bucket index returned by percentile_rate()
        bucket_resolution: Buckets per packet-per-millisecond
        window_horizon_ms: Time span one window should cover (ms)
        ewma_weight: Weight of the new target against the previous window
        previous_window: Current window (datagrams)

    Returns:
        int: New window, rounded and non-negative
    """
    target = percentile_index / bucket_resolution * window_horizon_ms
    blended = ewma_weight * target + (1.0 - ewma_weight) * previous_window
    return max(0, int(round(blended)))


def delay_threshold(
    threshold_ms: float, threshold_ratio: Optional[float], min_rtt: Optional[int]
) -> float:
    """Absolute threshold, or a multiple of min_rtt once one is known"""
    if threshold_ratio is not None and min_rtt is not None:
        return threshold_ratio * min_rtt
    return threshold_ms


def select_delay_triggered(
    window: int,
    rtt: int,
    threshold: float,
    sequence_advanced: bool,
    since_last_update: int,
    update_period_ms: int,
    increment: int,
    decrement: int,
) -> int:
    """
    Delay-triggered step.

    Below the threshold on a fresh ack the window grows by `increment`,
    at most once per `update_period_ms`. Anything else (RTT at or above the
    threshold, or an ack that does not advance the sequence) shrinks it by
    `decrement`.
    """
    if rtt < threshold and sequence_advanced:
        if since_last_update >= update_period_ms:
            return window + increment
        return window
    return saturating_sub(window, decrement)


def aimd_increase(window: int, acks_in_round: int, increment: int):
    """
    Additive increase: one `increment` per window's worth of acks.

    Returns:
        tuple: (new_window, new_acks_in_round)
    """
    acks_in_round += 1
    if acks_in_round >= window:
        return window + increment, 0
    return window, acks_in_round


def aimd_decrease(window: int, factor: float, min_window: int = 0) -> int:
    """Multiplicative decrease, truncated toward zero and floored at min_window"""
    return max(min_window, int(window * factor))
