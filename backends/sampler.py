"""
Reverse-diffusion sampler for the mean-reverting restoration SDE.

Each iteration is one Euler-Maruyama step of the reverse SDE

    dx = [theta_t (mu - x) - sigma_t^2 * score(x, t)] dt + sigma_t dW

where mu is the low-quality reference. The loop walks the schedule
backwards: wall-clock step S maps to the largest schedule index, step 1 to the
smallest.

Noise distribution for the dispersion term is a swappable NoiseSource:
  - "gaussian": standard normal draws (Euler-Maruyama, default)
  - "uniform":  U[0, 1) draws (legacy device behaviour)
Draws are per element, never shared across elements.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import numpy as np
from PIL import Image

from backends.denoiser import DenoisingStepInvoker
from backends.errors import ConfigurationError, RestorationCancelled
from backends.features import ConditioningFeatureExtractor
from backends.schedule import NoiseSchedule
from backends.tensor_codec import (
    ImageTensor,
    image_to_tensor,
    resize,
    tensor_to_image,
    working_size,
)

logger = logging.getLogger(__name__)

ProgressSink = Callable[[int, int, str], None]
NoiseSource = Callable[[np.random.RandomState, int], np.ndarray]


def gaussian_noise(rng: np.random.RandomState, size: int) -> np.ndarray:
    return rng.standard_normal(size).astype(np.float32)


def uniform_noise(rng: np.random.RandomState, size: int) -> np.ndarray:
    return rng.random_sample(size).astype(np.float32)


NOISE_SOURCES: Dict[str, NoiseSource] = {
    "gaussian": gaussian_noise,
    "uniform": uniform_noise,
}


def get_noise_source(name: str) -> NoiseSource:
    key = (name or "").strip().lower()
    if key not in NOISE_SOURCES:
        raise ConfigurationError(f"Unknown noise source {name!r}. Available: {sorted(NOISE_SOURCES)}")
    return NOISE_SOURCES[key]


def schedule_index(step: int, steps: int, schedule_len: int) -> int:
    """
    Map wall-clock step (steps..1) to a schedule index, rounding half up.

    For small step counts neighbouring steps can share an index.
    """
    t = math.floor(step * schedule_len / steps + 0.5)
    return min(max(t, 0), schedule_len - 1)


def sde_reverse_step(
    x: np.ndarray,
    noise: np.ndarray,
    lq: np.ndarray,
    schedule: NoiseSchedule,
    t: int,
    draws: np.ndarray,
) -> np.ndarray:
    """
    One reverse step over flat buffers. Returns a new buffer; inputs are untouched.
    """
    theta, sigma, sigma_bar = schedule.coefficients(t)
    dt = schedule.dt

    score = -noise / sigma_bar
    drift = (theta * (lq - x) - sigma * sigma * score) * dt
    dispersion = sigma * draws * math.sqrt(dt)
    return (x - drift - dispersion).astype(np.float32, copy=False)


@dataclass
class SamplerOutput:
    image: Image.Image
    working_size: Tuple[int, int]
    elapsed_s: float


class ReverseDiffusionSampler:
    def __init__(
        self,
        schedule: NoiseSchedule,
        extractor: ConditioningFeatureExtractor,
        invoker: DenoisingStepInvoker,
        *,
        noise: str = "gaussian",
        size_multiple: int = 1,
        log_every: int = 5,
    ):
        self.schedule = schedule
        self.extractor = extractor
        self.invoker = invoker
        self.noise_name = noise
        self.noise_source = get_noise_source(noise)
        self.size_multiple = max(1, int(size_multiple))
        self.log_every = max(1, int(log_every))

    def validate(self, steps: int, max_dim: int) -> None:
        T = self.schedule.step_count
        if isinstance(steps, bool) or not isinstance(steps, (int, np.integer)):
            raise ConfigurationError(f"steps must be an integer, got {steps!r}")
        if steps < 1 or steps > T:
            raise ConfigurationError(f"steps must satisfy 1 <= steps <= {T}, got {steps}")
        if isinstance(max_dim, bool) or not isinstance(max_dim, (int, np.integer)) or max_dim < 1:
            raise ConfigurationError(f"max working dimension must be a positive integer, got {max_dim!r}")
        if max_dim < self.size_multiple:
            raise ConfigurationError(
                f"max working dimension {max_dim} is smaller than the size multiple {self.size_multiple}"
            )

    @staticmethod
    def _report(progress: Optional[ProgressSink], done: int, total: int, msg: str) -> None:
        if progress is None:
            return
        try:
            progress(done, total, msg)
        except Exception as e:
            logger.warning(f"[Sampler] progress sink raised {e!r}; continuing")

    def initial_estimate(self, lq: ImageTensor, rng: np.random.RandomState) -> ImageTensor:
        s = self.schedule.max_sigma
        offsets = rng.uniform(-s, s, lq.size).astype(np.float32)
        return lq.with_data(lq.data + offsets)

    def run(
        self,
        image: Image.Image,
        steps: int,
        max_dim: int,
        progress: Optional[ProgressSink] = None,
        rng: Optional[np.random.RandomState] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SamplerOutput:
        """
        Restore `image` with `steps` reverse steps at a working size bounded by `max_dim`.

        Raises:
            ConfigurationError before any model call for invalid steps/max_dim
            InferenceError / ResourceExhaustion from either model
            RestorationCancelled if cancel_event is set between steps
        """
        self.validate(steps, max_dim)
        steps = int(steps)
        rng = rng if rng is not None else np.random.RandomState()
        start = time.time()

        src = image.convert("RGB")
        orig_w, orig_h = src.size
        work_w, work_h = working_size(orig_w, orig_h, int(max_dim), self.size_multiple)
        if (work_w, work_h) != (orig_w, orig_h):
            logger.debug(f"[Sampler] Resizing from {orig_w}x{orig_h} to {work_w}x{work_h}")
        work = resize(src, (work_w, work_h))

        logger.info(f"[Sampler] Starting restoration: {work_w}x{work_h}, steps={steps}, noise={self.noise_name}")
        self._report(progress, 0, steps, "Extracting features...")

        ctx = self.extractor.extract(work)
        lq = image_to_tensor(work)
        x = self.initial_estimate(lq, rng)

        T = self.schedule.step_count
        for step in range(steps, 0, -1):
            if cancel_event is not None and cancel_event.is_set():
                raise RestorationCancelled(f"Cancelled before step {steps - step + 1}/{steps}")

            t = schedule_index(step, steps, T)
            noise = self.invoker.predict_noise(x, lq, t, ctx)
            draws = self.noise_source(rng, x.size)
            x = x.with_data(sde_reverse_step(x.data, noise.data, lq.data, self.schedule, t, draws))

            done = steps - step + 1
            if done % self.log_every == 0:
                logger.debug(
                    f"[Sampler]  Step {done}/{steps} (t={t}): x range "
                    f"[{float(x.data.min()):.4f}, {float(x.data.max()):.4f}]"
                )
            self._report(progress, done, steps, f"Restoring... ({done}/{steps})")

        result = tensor_to_image(x)
        if result.size != (orig_w, orig_h):
            result = resize(result, (orig_w, orig_h))

        elapsed = time.time() - start
        logger.info(f"[Sampler] Restoration complete in {elapsed:.1f}s")
        return SamplerOutput(image=result, working_size=(work_w, work_h), elapsed_s=elapsed)
