"""
Error taxonomy for the restoration engine.

Lower layers raise these exceptions; the session boundary converts them into a
single Result value so callers never have to guess between a raised exception
and a None sentinel.

    RestorationError
      +-- ConfigurationError       invalid parameters, rejected before any model work
      +-- ResourceExhaustion       out of memory during load or inference (retryable by caller)
      +-- InferenceError           model execution failed for any other reason
      +-- AccelerationUnavailable  soft: logged, execution falls back to CPU
      +-- SessionStateError        operation not legal in the current session state
      +-- RestorationCancelled     cooperative cancellation observed between steps
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")

# onnxruntime surfaces allocator failures as generic runtime errors; these
# fragments identify them in the message text.
_OOM_MARKERS = (
    "out of memory",
    "failed to allocate",
    "bad_alloc",
    "cannot allocate memory",
    "memoryerror",
)


class RestorationError(Exception):
    """Base exception for all restoration engine errors."""

    kind = "restoration_error"


class ConfigurationError(RestorationError):
    """Invalid schedule or request parameters."""

    kind = "configuration"


class ResourceExhaustion(RestorationError):
    """Out-of-memory while loading a model or running inference."""

    kind = "resource_exhaustion"


class InferenceError(RestorationError):
    """Model execution failure that is not a memory problem."""

    kind = "inference"


class AccelerationUnavailable(RestorationError):
    """Requested execution provider could not be enabled."""

    kind = "acceleration_unavailable"


class SessionStateError(RestorationError):
    """Session is not in a state that allows the requested operation."""

    kind = "session_state"


class RestorationCancelled(RestorationError):
    """Caller asked the sampler to stop."""

    kind = "cancelled"


def is_out_of_memory(exc: BaseException) -> bool:
    """True if the exception looks like an allocator failure."""
    if isinstance(exc, (MemoryError, ResourceExhaustion)):
        return True
    msg = str(exc).lower()
    return any(marker in msg for marker in _OOM_MARKERS)


def classify_runtime_error(exc: BaseException, what: str) -> RestorationError:
    """
    Map an arbitrary exception raised by the inference runtime onto the taxonomy.

    Args:
        exc: Exception raised by onnxruntime (or a MemoryError)
        what: Short description of the failed action, used in the message

    Returns:
        ResourceExhaustion for allocator failures, InferenceError otherwise.
        RestorationError instances are returned unchanged.
    """
    if isinstance(exc, RestorationError):
        return exc
    if is_out_of_memory(exc):
        return ResourceExhaustion(f"{what}: out of memory ({exc})")
    return InferenceError(f"{what} failed: {exc}")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of a public session operation: either a value or a tagged error.

    Truthiness follows `ok`, so `if session.initialize():` reads naturally.
    """

    value: Optional[T] = None
    error: Optional[RestorationError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value, error=None)

    @classmethod
    def failure(cls, error: RestorationError) -> "Result[T]":
        return cls(value=None, error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    def __bool__(self) -> bool:
        return self.ok

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value
