"""
Bayesian grid filter over a flow's packet arrival rate.

The true arrival rate of the bottleneck link is treated as a hidden,
slowly drifting quantity that is only seen through noisy per-tick ack
counts. The filter keeps a discrete probability mass function over
`max_rate` candidate rates and, once per closed tick:

1. Diffusion: widens the distribution with a Gaussian kernel whose
   standard deviation grows with the flow's elapsed time
2. Likelihood: weights every candidate rate by the Poisson probability of
   the observed count, computed in log space
3. Normalization: rescales to unit mass above the `min_prob` floor, falling
   back to the uniform distribution when the arithmetic went non-finite

Bucket i stands for the rate i / bucket_resolution packets per millisecond.
"""

import logging
import math
from typing import Callable, Optional

import numpy as np
from scipy.stats import norm, poisson

logger = logging.getLogger("RateDistribution")


class RateDistribution:
    """
    Discrete rate distribution with diffusion and Poisson updates.

    Attributes:
        max_rate (int): Number of rate buckets
        bucket_resolution (int): Buckets per packet-per-millisecond
        min_prob (float): Floor applied to every bucket's mass
        diffusion_coefficient (float): Kernel stddev growth (buckets per sqrt(ms))
        diffusion_span (int): Half-width of the diffusion kernel (buckets)
        updates (int): Number of ticks folded in
        resets (int): Number of fallbacks to the uniform distribution
    """

    def __init__(
        self,
        max_rate: int = 200,
        bucket_resolution: int = 100,
        min_prob: float = 1e-6,
        diffusion_coefficient: float = 0.05,
        diffusion_span: int = 10,
        on_reset: Optional[Callable[[str], None]] = None,
    ):
        if max_rate < 2:
            raise ValueError(f"max_rate must be at least 2, got {max_rate}")
        if bucket_resolution <= 0:
            raise ValueError(
                f"bucket_resolution must be positive, got {bucket_resolution}"
            )
        if not 0.0 < min_prob < 1.0 / max_rate:
            raise ValueError(
                f"min_prob must lie in (0, 1/max_rate), got {min_prob}"
            )
        if diffusion_coefficient < 0 or diffusion_span < 0:
            raise ValueError("diffusion parameters must be non-negative")

        self.max_rate = max_rate
        self.bucket_resolution = bucket_resolution
        self.min_prob = min_prob
        self.diffusion_coefficient = diffusion_coefficient
        # Kernel must fit inside the grid for a same-length convolution
        self.diffusion_span = min(diffusion_span, (max_rate - 1) // 2)
        self.on_reset = on_reset

        # Candidate rates in packets per millisecond
        self.rates = np.arange(max_rate, dtype=float) / bucket_resolution

        self.updates = 0
        self.resets = 0
        self._masses = np.full(max_rate, 1.0 / max_rate)

    @property
    def masses(self) -> np.ndarray:
        """Copy of the current probability masses"""
        return self._masses.copy()

    def reset(self):
        """Return to the uniform distribution"""
        self._masses = np.full(self.max_rate, 1.0 / self.max_rate)

    def update(self, packet_count: int, tick_duration: float, elapsed_time: float):
        """
        Fold one closed tick into the distribution.

        Args:
            packet_count: Distinct acks observed during the tick
            tick_duration: Tick length (ms)
            elapsed_time: Flow time covered by closed ticks so far (ms)
        """
        # No prior uncertainty to grow before the first observation
        if self.updates > 0:
            self._diffuse(elapsed_time)

        posterior = self._apply_likelihood(packet_count, tick_duration)
        self._normalize(posterior, packet_count)
        self.updates += 1

    def _diffuse(self, elapsed_time: float):
        sigma = self.diffusion_coefficient * math.sqrt(max(elapsed_time, 0.0))
        if sigma <= 0 or self.diffusion_span == 0:
            return

        # Mass landing one bucket wide at each offset: CDF difference
        offsets = np.arange(-self.diffusion_span, self.diffusion_span + 1)
        kernel = norm.cdf((offsets + 0.5) / sigma) - norm.cdf((offsets - 0.5) / sigma)
        # Truncated tails would otherwise leak mass once sigma outgrows the span
        kernel /= kernel.sum()

        diffused = np.convolve(self._masses, kernel, mode="same")
        self._masses = np.maximum(diffused, self.min_prob)

    def _apply_likelihood(self, packet_count: int, tick_duration: float) -> np.ndarray:
        expected = self.rates * tick_duration
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            log_likelihood = poisson.logpmf(packet_count, expected)
            finite = log_likelihood[np.isfinite(log_likelihood)]
            if finite.size == 0:
                return np.full(self.max_rate, np.nan)
            # Shift so the most likely bucket weighs exactly 1
            likelihood = np.exp(log_likelihood - finite.max())
            return self._masses * likelihood

    def _normalize(self, posterior: np.ndarray, packet_count: int):
        total = posterior.sum()
        if not np.isfinite(total) or total <= 0:
            self.resets += 1
            reason = f"non-normalizable posterior (sum={total}, count={packet_count})"
            logger.warning(f"Resetting rate distribution to uniform: {reason}")
            self.reset()
            if self.on_reset is not None:
                self.on_reset(reason)
            return

        # Share the mass left over after the floor in proportion to each
        # bucket's excess over it, so every bucket stays at or above min_prob
        excess = np.maximum(posterior / total - self.min_prob, 0.0)
        spare = 1.0 - self.max_rate * self.min_prob
        self._masses = self.min_prob + spare * excess / excess.sum()

    def percentile_rate(self, p: float) -> int:
        """
        Smallest bucket whose cumulative mass reaches `p`.

        Args:
            p: Cumulative probability threshold in (0, 1]

        Returns:
            int: Bucket index in [0, max_rate)
        """
        if not 0.0 < p <= 1.0:
            raise ValueError(f"percentile must lie in (0, 1], got {p}")

        cumulative = np.cumsum(self._masses)
        index = int(np.searchsorted(cumulative, p, side="left"))
        # Rounding can leave the last cumulative value just below 1
        return min(index, self.max_rate - 1)

    def expected_rate(self) -> float:
        """Mean rate of the distribution (packets per ms)"""
        return float(np.dot(self._masses, self.rates))
