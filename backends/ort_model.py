import logging
import os
import time
from typing import Any, List, Optional, Sequence

import numpy as np

from backends.errors import ConfigurationError, InferenceError, classify_runtime_error
from backends.runtime import CPU_PROVIDER, InferenceRuntime

logger = logging.getLogger(__name__)


class OrtModel:
    """Wrapper for running one ONNX model through the shared InferenceRuntime"""

    # Known-good input orders per model role
    KEY_ORDERS = {
        "encoder": ("image",),
        "denoiser": ("noisy_image", "lq_image", "timestep", "image_context", "degra_context"),
    }

    def __init__(
        self,
        model_path: str,
        runtime: InferenceRuntime,
        *,
        name: Optional[str] = None,
        input_order: Optional[Sequence[str]] = None,
        verbose_shapes: bool = False,
    ):
        """
        - model_path: path to a .onnx file
        - runtime: process-owned runtime context that creates the session
        - name: model role ("encoder" / "denoiser"), selects the default input order
        - input_order: explicit input order; overrides the role default
        - verbose_shapes: log output shapes on every call (disable for server)
        """
        self.model_path = model_path
        self.name = name or os.path.splitext(os.path.basename(model_path))[0]
        self.verbose_shapes = verbose_shapes
        self.input_order = tuple(input_order) if input_order else self.KEY_ORDERS.get(self.name)

        if not os.path.isfile(model_path):
            raise ConfigurationError(f"Missing model file: {model_path}")

        logger.info(f"[Model] Loading {self.name} from {model_path}")
        start = time.time()

        self.session = runtime.create_session(model_path, name=self.name)

        self.inference_time = 0.0
        size_mb = os.path.getsize(model_path) / 1024 / 1024
        logger.info(
            f"[Model] Done loading {self.name} ({size_mb:.1f}MB) on {self.providers}. "
            f"Took {time.time() - start:.1f} seconds."
        )

    @property
    def providers(self) -> List[str]:
        if self.session is None:
            return []
        return list(self.session.get_providers())

    @property
    def accelerated(self) -> bool:
        return any(p != CPU_PROVIDER for p in self.providers)

    @staticmethod
    def _prep(x: Any) -> Any:
        if isinstance(x, np.ndarray):
            # dtype safety: models are exported with float32 inputs
            if x.dtype in (np.float64, np.float16):
                x = x.astype(np.float32, copy=False)
            x = np.ascontiguousarray(x)
        return x

    def __call__(self, **kwargs) -> List[np.ndarray]:
        if self.session is None:
            raise InferenceError(f"{self.name} session is closed")

        # deterministic input ordering
        order = self.input_order or tuple(sorted(kwargs.keys()))
        missing = [k for k in order if k not in kwargs]
        if missing:
            raise InferenceError(f"{self.name}: missing inputs {missing}")
        feed = {k: self._prep(kwargs[k]) for k in order}

        start = time.time()
        try:
            results = self.session.run(None, feed)
        except Exception as e:
            raise classify_runtime_error(e, f"{self.name} inference")
        self.inference_time = time.time() - start

        if self.verbose_shapes:
            logger.info("%s out[0] shape=%s dtype=%s", self.name, results[0].shape, results[0].dtype)
        return results

    def close(self) -> None:
        # onnxruntime frees the session when the last reference goes away
        self.session = None
