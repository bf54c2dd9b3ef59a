from __future__ import annotations

from typing import Callable, List, Optional

import numpy as np

from backends.errors import InferenceError, RestorationError, classify_runtime_error
from backends.features import ContextEmbedding
from backends.tensor_codec import ImageTensor

DenoiserModel = Callable[..., List[np.ndarray]]


class DenoisingStepInvoker:
    """
    Predicts the noise residual for one reverse step.

    Inputs fed to the model:
      noisy_image   [1,3,H,W] float32
      lq_image      [1,3,H,W] float32
      timestep      [1]       int64
      image_context [1,C]     float32
      degra_context [1,C]     float32
    """

    def __init__(self, denoiser: Optional[DenoiserModel]):
        self.denoiser = denoiser

    def predict_noise(self, x: ImageTensor, lq: ImageTensor, t: int, ctx: ContextEmbedding) -> ImageTensor:
        if self.denoiser is None:
            raise InferenceError("Denoiser session is not loaded")
        x.require_same_shape(lq, "lq")

        feed = {
            "noisy_image": x.nchw(),
            "lq_image": lq.nchw(),
            "timestep": np.asarray([t], dtype=np.int64),
            "image_context": ctx.image_context.reshape(1, -1).astype(np.float32, copy=False),
            "degra_context": ctx.degradation_context.reshape(1, -1).astype(np.float32, copy=False),
        }

        try:
            outputs = self.denoiser(**feed)
        except RestorationError:
            raise
        except Exception as e:
            raise classify_runtime_error(e, f"Denoiser inference at t={t}")

        if not outputs:
            raise InferenceError("Denoiser returned no outputs")
        noise = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        if noise.size != x.size:
            raise InferenceError(
                f"Denoiser output has {noise.size} elements, expected {x.size} for shape {x.shape}"
            )
        return ImageTensor(noise, x.shape)
