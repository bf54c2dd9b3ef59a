"""
Process-owned inference runtime context.

One InferenceRuntime is constructed by the process and handed to every
RestorationSession. It owns execution-provider resolution, session options and
the memory probes used by the two-phase model load. There is no module-level
runtime instance.
"""

from __future__ import annotations

import gc
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple, Union

import onnxruntime as ort
import psutil

from backends.errors import (
    AccelerationUnavailable,
    ConfigurationError,
    classify_runtime_error,
    is_out_of_memory,
)

logger = logging.getLogger(__name__)

CPU_PROVIDER = "CPUExecutionProvider"

PROVIDER_ALIASES = {
    "cpu": CPU_PROVIDER,
    "nnapi": "NnapiExecutionProvider",
    "xnnpack": "XnnpackExecutionProvider",
    "qnn": "QNNExecutionProvider",
    "coreml": "CoreMLExecutionProvider",
    "cuda": "CUDAExecutionProvider",
    "tensorrt": "TensorrtExecutionProvider",
    "rocm": "ROCMExecutionProvider",
    "dml": "DmlExecutionProvider",
    "openvino": "OpenVINOExecutionProvider",
}


@dataclass
class RuntimeConfig:
    """Execution settings shared by every model session."""
    providers: List[str] = field(default_factory=lambda: ["nnapi", "cpu"])
    intra_op_threads: int = 4
    inter_op_threads: int = 4
    parallel: bool = True
    graph_optimization: str = "all"  # "disable" | "basic" | "extended" | "all"


def resolve_provider(name: Union[str, Tuple[str, dict]]) -> Union[str, Tuple[str, dict]]:
    """
    Normalize a provider spec to an onnxruntime provider name.

    Accepts short aliases ("nnapi", "cuda"), full names
    ("NnapiExecutionProvider") or (name, options) tuples.
    """
    if isinstance(name, tuple):
        base, opts = name
        return resolve_provider(base), dict(opts)

    if not isinstance(name, str):
        raise ConfigurationError(f"provider must be a string or (name, options) tuple; got {type(name)}")

    key = name.strip()
    if key.lower() in PROVIDER_ALIASES:
        return PROVIDER_ALIASES[key.lower()]
    if key.endswith("ExecutionProvider"):
        return key
    raise ConfigurationError(f"Unknown execution provider: {name!r}")


def _provider_name(p: Union[str, Tuple[str, dict]]) -> str:
    return p[0] if isinstance(p, tuple) else p


class InferenceRuntime:
    """
    Explicit replacement for a global inference environment.

    Sessions are created through `create_session()`, which tries the configured
    accelerators first and falls back to plain CPU execution when an
    accelerator cannot be enabled. The fallback is logged, never raised.
    """

    def __init__(self, config: Optional[RuntimeConfig] = None):
        self.config = config or RuntimeConfig()
        self._requested = [resolve_provider(p) for p in self.config.providers]
        self._providers: Optional[List[Any]] = None

    # ---------------------------
    # Providers
    # ---------------------------
    def available_providers(self) -> List[str]:
        return list(ort.get_available_providers())

    def resolve_providers(self) -> List[Any]:
        """
        Configured providers filtered to those this build of onnxruntime has.

        CPU is always appended last so there is a default execution path.
        """
        if self._providers is not None:
            return list(self._providers)

        available = set(self.available_providers())
        chosen: List[Any] = []
        for p in self._requested:
            pname = _provider_name(p)
            if pname in available:
                if pname not in [_provider_name(c) for c in chosen]:
                    chosen.append(p)
            else:
                self._note_unavailable(
                    AccelerationUnavailable(f"{pname} not available in this onnxruntime build")
                )
        if CPU_PROVIDER not in [_provider_name(c) for c in chosen]:
            chosen.append(CPU_PROVIDER)

        self._providers = chosen
        logger.info(f"[Runtime] Execution providers: {[_provider_name(c) for c in chosen]}")
        return list(chosen)

    @property
    def accelerated(self) -> bool:
        return any(_provider_name(p) != CPU_PROVIDER for p in self.resolve_providers())

    @staticmethod
    def _note_unavailable(err: AccelerationUnavailable) -> None:
        logger.warning(f"[Runtime] {err}; using default CPU execution")

    # ---------------------------
    # Sessions
    # ---------------------------
    def session_options(self) -> "ort.SessionOptions":
        so = ort.SessionOptions()
        so.intra_op_num_threads = int(self.config.intra_op_threads)
        so.inter_op_num_threads = int(self.config.inter_op_threads)
        so.execution_mode = (
            ort.ExecutionMode.ORT_PARALLEL if self.config.parallel else ort.ExecutionMode.ORT_SEQUENTIAL
        )
        levels = {
            "disable": ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
            "basic": ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
            "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
            "all": ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
        }
        level = str(self.config.graph_optimization).lower()
        if level not in levels:
            raise ConfigurationError(f"Unknown graph_optimization level: {self.config.graph_optimization!r}")
        so.graph_optimization_level = levels[level]
        return so

    def create_session(self, model: Union[str, bytes], name: str = "model") -> "ort.InferenceSession":
        """
        Create an inference session, falling back to CPU if acceleration fails.

        Raises:
            ResourceExhaustion if the model does not fit in memory
            InferenceError for any other load failure on the CPU path
        """
        providers = self.resolve_providers()
        try:
            return ort.InferenceSession(model, sess_options=self.session_options(), providers=providers)
        except Exception as e:
            if is_out_of_memory(e):
                raise classify_runtime_error(e, f"Loading {name}")
            if providers == [CPU_PROVIDER]:
                raise classify_runtime_error(e, f"Loading {name}")
            self._note_unavailable(
                AccelerationUnavailable(f"{name}: accelerated session failed ({e})")
            )

        try:
            return ort.InferenceSession(model, sess_options=self.session_options(), providers=[CPU_PROVIDER])
        except Exception as e:
            raise classify_runtime_error(e, f"Loading {name}")

    # ---------------------------
    # Memory
    # ---------------------------
    def reclaim(self) -> int:
        """Drop transient Python buffers; returns the number of collected objects."""
        return gc.collect()

    def available_memory_bytes(self) -> Optional[int]:
        """Available system memory, or None where the platform cannot report it."""
        try:
            return int(psutil.virtual_memory().available)
        except Exception as e:
            logger.debug(f"[Runtime] Memory query unavailable: {e}")
            return None

    def describe(self) -> dict:
        return {
            "onnxruntime": getattr(ort, "__version__", "unknown"),
            "requested": [_provider_name(p) for p in self._requested],
            "providers": [_provider_name(p) for p in self.resolve_providers()],
            "accelerated": self.accelerated,
        }
