"""
Restoration session: owns the encoder and denoiser handles and the noise schedule.

States:
    UNINITIALIZED -> LOADING -> READY
                     LOADING -> FAILED -> LOADING (caller retry)
    any state     -> RELEASED (terminal)

A session is single-flight. `restore()` serializes on a per-session lock; run
one session per concurrent caller if overlapping restorations are needed.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Tuple

import numpy as np
from PIL import Image

from backends.denoiser import DenoisingStepInvoker
from backends.errors import (
    ConfigurationError,
    RestorationError,
    ResourceExhaustion,
    Result,
    SessionStateError,
    classify_runtime_error,
)
from backends.features import CLIP_SIZE, CONTEXT_DIM, ConditioningFeatureExtractor
from backends.ort_model import OrtModel
from backends.runtime import InferenceRuntime
from backends.sampler import ProgressSink, ReverseDiffusionSampler
from backends.schedule import NoiseSchedule, build_schedule

logger = logging.getLogger(__name__)

# (role, path) -> callable model with close()
ModelLoader = Callable[[str, str], Any]


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"
    RELEASED = "released"


@dataclass
class SessionConfig:
    """Everything a session needs to load its models and build its schedule."""
    encoder_path: str
    denoiser_path: str

    schedule_steps: int = 100
    max_sigma: float = 50.0 / 255.0
    eps: float = 0.005

    default_steps: int = 20
    default_max_size: int = 384

    noise: str = "gaussian"
    size_multiple: int = 1
    encoder_size: int = CLIP_SIZE
    context_dim: Optional[int] = CONTEXT_DIM

    # Two-phase load tuning
    load_backoff_s: float = 0.5
    min_free_mb: int = 0
    lazy: bool = False


@dataclass
class RestoredImage:
    image: Image.Image
    seed: int
    steps: int
    working_size: Tuple[int, int]
    elapsed_s: float


def gen_seed_8_digits() -> int:
    return int(np.random.randint(0, 100_000_000))


class RestorationSession:
    def __init__(
        self,
        runtime: InferenceRuntime,
        config: SessionConfig,
        model_loader: Optional[ModelLoader] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            runtime: Process-owned inference runtime shared by sessions
            config: Model paths, schedule parameters and load tuning
            model_loader: Optional factory (role, path) -> model. Defaults to
                          OrtModel through `runtime`; tests inject fakes here.
            sleep: Backoff function used between load phases
        """
        self.runtime = runtime
        self.config = config
        self._model_loader = model_loader or self._default_model_loader
        self._sleep = sleep

        self._lock = threading.RLock()
        self._state = SessionState.UNINITIALIZED
        self.last_error: Optional[RestorationError] = None

        self.schedule: Optional[NoiseSchedule] = None
        self.encoder: Any = None
        self.denoiser: Any = None
        self.sampler: Optional[ReverseDiffusionSampler] = None

    def _default_model_loader(self, role: str, path: str) -> OrtModel:
        return OrtModel(path, self.runtime, name=role)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state == SessionState.READY

    # ---------------------------
    # Lifecycle
    # ---------------------------
    def initialize(self) -> Result[None]:
        """
        Build the schedule and load both models.

        Never raises for load problems: failures leave the session FAILED and
        are returned as a Result. Calling again from FAILED retries the load.
        """
        with self._lock:
            if self._state == SessionState.RELEASED:
                return Result.failure(SessionStateError("Session has been released"))
            if self._state == SessionState.READY:
                return Result.success()

            self._state = SessionState.LOADING
            self.last_error = None
            logger.info("[Session] Initializing restoration models...")
            try:
                self.schedule = build_schedule(self.config.schedule_steps, self.config.max_sigma, self.config.eps)

                self.encoder = self._model_loader("encoder", self.config.encoder_path)
                self._between_phases()
                self.denoiser = self._model_loader("denoiser", self.config.denoiser_path)

                self.sampler = ReverseDiffusionSampler(
                    self.schedule,
                    ConditioningFeatureExtractor(
                        self.encoder,
                        input_size=self.config.encoder_size,
                        context_dim=self.config.context_dim,
                    ),
                    DenoisingStepInvoker(self.denoiser),
                    noise=self.config.noise,
                    size_multiple=self.config.size_multiple,
                )
            except Exception as e:
                err = classify_runtime_error(e, "Session initialization")
                return self._fail(err)

            self._state = SessionState.READY
            logger.info(
                f"[Session] Ready: T={self.schedule.step_count}, dt={self.schedule.dt:.4f}, "
                f"max_sigma={self.schedule.max_sigma:.4f}"
            )
            return Result.success()

    def _between_phases(self) -> None:
        """
        Second phase of the load: reclaim phase-one buffers, back off, check memory.

        Raises:
            ResourceExhaustion if available memory is under the configured floor
        """
        collected = self.runtime.reclaim()
        if self.config.load_backoff_s > 0:
            self._sleep(self.config.load_backoff_s)

        available = self.runtime.available_memory_bytes()
        if available is None:
            logger.debug(f"[Session] Reclaimed {collected} objects; available memory unknown")
            return

        available_mb = available / 1024 / 1024
        logger.info(f"[Session] Reclaimed {collected} objects; {available_mb:.0f}MB available before denoiser load")
        if self.config.min_free_mb and available_mb < self.config.min_free_mb:
            raise ResourceExhaustion(
                f"Only {available_mb:.0f}MB available, denoiser load needs at least {self.config.min_free_mb}MB"
            )

    def _fail(self, err: RestorationError) -> Result[None]:
        if isinstance(err, ResourceExhaustion):
            logger.error(f"[Session] OUT OF MEMORY! Models too large for this device: {err}")
        else:
            logger.error(f"[Session] Failed to initialize: {err}")
        self._close_models()
        self.last_error = err
        self._state = SessionState.FAILED
        return Result.failure(err)

    def _close_models(self) -> None:
        for attr in ("encoder", "denoiser"):
            model = getattr(self, attr)
            if model is None:
                continue
            close = getattr(model, "close", None)
            if callable(close):
                try:
                    close()
                except Exception as e:
                    logger.warning(f"[Session] Closing {attr} failed: {e!r}")
            setattr(self, attr, None)
        self.sampler = None

    def release(self) -> None:
        """Close both model handles. Idempotent and legal from any state."""
        with self._lock:
            if self._state == SessionState.RELEASED:
                return
            self._close_models()
            self._state = SessionState.RELEASED
            logger.info("[Session] Models released")

    # ---------------------------
    # Restoration
    # ---------------------------
    def _check_request(self, steps: Any, max_dim: Any) -> None:
        T = self.config.schedule_steps
        if isinstance(steps, bool) or not isinstance(steps, (int, np.integer)) or not (1 <= steps <= T):
            raise ConfigurationError(f"steps must satisfy 1 <= steps <= {T}, got {steps!r}")
        if isinstance(max_dim, bool) or not isinstance(max_dim, (int, np.integer)) or max_dim < 1:
            raise ConfigurationError(f"max working dimension must be a positive integer, got {max_dim!r}")

    def _ensure_ready(self) -> None:
        if self._state == SessionState.UNINITIALIZED and self.config.lazy:
            logger.info("[Session] Loading models on demand...")
            self.initialize().unwrap()
            return
        if self._state != SessionState.READY:
            raise SessionStateError(f"Session is {self._state.value}; models not initialized")

    def restore(
        self,
        image: Image.Image,
        steps: Optional[int] = None,
        max_dim: Optional[int] = None,
        progress: Optional[ProgressSink] = None,
        seed: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Result[RestoredImage]:
        """
        Restore a degraded image.

        Args:
            image: Input image (any PIL mode, converted to RGB)
            steps: Reverse steps, 1 <= steps <= T (default from config)
            max_dim: Longest side of the working resolution (default from config)
            progress: Optional sink (completed, total, message)
            seed: Seed for the noise draws; a random 8-digit seed if None
            cancel_event: Optional flag checked before every step

        Returns:
            Result holding RestoredImage, or the error that aborted the run.
            No partially diffused image is ever returned.
        """
        steps = self.config.default_steps if steps is None else steps
        max_dim = self.config.default_max_size if max_dim is None else max_dim

        with self._lock:
            try:
                if self._state in (SessionState.FAILED, SessionState.RELEASED):
                    raise SessionStateError(f"Session is {self._state.value}; cannot restore")
                self._check_request(steps, max_dim)
                self._ensure_ready()

                seed = int(seed) if seed is not None else gen_seed_8_digits()
                rng = np.random.RandomState(seed)

                out = self.sampler.run(
                    image,
                    int(steps),
                    int(max_dim),
                    progress=progress,
                    rng=rng,
                    cancel_event=cancel_event,
                )
            except RestorationError as e:
                logger.error(f"[Session] Restoration failed ({e.kind}): {e}")
                return Result.failure(e)
            except MemoryError as e:
                logger.error("[Session] OUT OF MEMORY during restoration")
                return Result.failure(ResourceExhaustion(f"Restoration ran out of memory: {e}"))

        return Result.success(
            RestoredImage(
                image=out.image,
                seed=seed,
                steps=int(steps),
                working_size=out.working_size,
                elapsed_s=out.elapsed_s,
            )
        )

    def status(self) -> dict:
        info = {
            "state": self._state.value,
            "error": str(self.last_error) if self.last_error else None,
            "schedule": self.schedule.summary() if self.schedule is not None else None,
            "encoder_providers": list(getattr(self.encoder, "providers", []) or []),
            "denoiser_providers": list(getattr(self.denoiser, "providers", []) or []),
        }
        return info
