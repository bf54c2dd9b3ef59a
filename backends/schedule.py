"""
Noise schedule for the mean-reverting restoration SDE.

The forward process pulls a clean image toward its degraded counterpart while
injecting noise; the reverse sampler walks the same arrays backwards. All
arrays are built once per session and never mutated.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np

from backends.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Offset that keeps the cosine curve's derivative away from zero at the origin.
COSINE_OFFSET = 0.008


@dataclass(frozen=True)
class NoiseSchedule:
    step_count: int
    max_sigma: float
    eps: float
    thetas: np.ndarray
    thetas_cumsum: np.ndarray
    dt: float
    sigmas: np.ndarray
    sigma_bars: np.ndarray

    def __len__(self) -> int:
        return self.step_count

    def coefficients(self, t: int):
        """(theta, sigma, sigma_bar) at schedule index t."""
        return float(self.thetas[t]), float(self.sigmas[t]), float(self.sigma_bars[t])

    def summary(self) -> dict:
        return {
            "steps": self.step_count,
            "max_sigma": self.max_sigma,
            "eps": self.eps,
            "dt": self.dt,
            "sigma_bar_last": float(self.sigma_bars[-1]),
        }


def _validate(step_count, max_sigma, eps) -> None:
    if isinstance(step_count, bool) or not isinstance(step_count, (int, np.integer)):
        raise ConfigurationError(f"step_count must be an integer, got {step_count!r}")
    if step_count < 2:
        # With a single entry thetas_cumsum[0] is the zero anchor, so dt is undefined.
        raise ConfigurationError(f"step_count must be >= 2, got {step_count}")
    if not math.isfinite(max_sigma) or max_sigma <= 0:
        raise ConfigurationError(f"max_sigma must be a positive finite number, got {max_sigma}")
    if not math.isfinite(eps) or not (0.0 < eps < 1.0):
        raise ConfigurationError(f"eps must lie in (0, 1), got {eps}")


def build_schedule(step_count: int, max_sigma: float, eps: float) -> NoiseSchedule:
    """
    Build the cosine noise schedule.

    Args:
        step_count: Number of schedule entries T (>= 2)
        max_sigma: Stationary noise level of the SDE (> 0)
        eps: Residual decay reached at the last schedule index, in (0, 1)

    Returns:
        NoiseSchedule with every array of length T

    Raises:
        ConfigurationError on invalid parameters
    """
    try:
        max_sigma = float(max_sigma)
        eps = float(eps)
    except (TypeError, ValueError):
        raise ConfigurationError(f"max_sigma and eps must be numbers, got {max_sigma!r}, {eps!r}")
    _validate(step_count, max_sigma, eps)
    T = int(step_count)

    # Cosine cumulative alpha over T+2 points, normalized so ac[0] == 1.
    x = np.arange(T + 2, dtype=np.float64) / (T + 1)
    alphas_cumprod = np.cos((x + COSINE_OFFSET) / (1 + COSINE_OFFSET) * math.pi * 0.5) ** 2
    alphas_cumprod = alphas_cumprod / alphas_cumprod[0]

    thetas = 1.0 - alphas_cumprod[1 : T + 1]
    # Zero-anchored: thetas_cumsum[0] == 0.
    thetas_cumsum = np.cumsum(thetas) - thetas[0]

    dt = -math.log(eps) / float(thetas_cumsum[-1])

    sq = max_sigma * max_sigma
    sigmas = np.sqrt(2.0 * sq * thetas)
    sigma_bars = np.sqrt(sq * (1.0 - np.exp(-2.0 * thetas_cumsum * dt)))

    for arr in (thetas, thetas_cumsum, sigmas, sigma_bars):
        arr.setflags(write=False)

    logger.debug(f"[Schedule] T={T} dt={dt:.6f} max_sigma={max_sigma:.6f} eps={eps}")

    return NoiseSchedule(
        step_count=T,
        max_sigma=max_sigma,
        eps=eps,
        thetas=thetas,
        thetas_cumsum=thetas_cumsum,
        dt=dt,
        sigmas=sigmas,
        sigma_bars=sigma_bars,
    )
