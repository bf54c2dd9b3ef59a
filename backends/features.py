"""
Conditioning features from the degradation-aware CLIP image encoder.

The encoder emits one vector of length 2*C; the first half describes image
content, the second half the degradation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np
from PIL import Image

from backends.errors import InferenceError, RestorationError, classify_runtime_error
from backends.tensor_codec import image_to_tensor

logger = logging.getLogger(__name__)

CLIP_MEAN = (0.48145466, 0.4578275, 0.40821073)
CLIP_STD = (0.26862954, 0.26130258, 0.27577711)
CLIP_SIZE = 224
CONTEXT_DIM = 512

EncoderModel = Callable[..., List[np.ndarray]]


@dataclass(frozen=True)
class ContextEmbedding:
    image_context: np.ndarray
    degradation_context: np.ndarray

    @property
    def dim(self) -> int:
        return int(self.image_context.size)


class ConditioningFeatureExtractor:
    def __init__(
        self,
        encoder: Optional[EncoderModel],
        *,
        input_size: int = CLIP_SIZE,
        context_dim: Optional[int] = CONTEXT_DIM,
        input_name: str = "image",
    ):
        self.encoder = encoder
        self.input_size = int(input_size)
        self.context_dim = context_dim
        self.input_name = input_name

    def extract(self, image: Image.Image) -> ContextEmbedding:
        """
        Run the encoder once and split its output into (image, degradation) context.

        Raises:
            InferenceError if the encoder is unavailable, fails, or returns a
            vector that cannot be split into two C-length halves
            ResourceExhaustion if the encoder runs out of memory
        """
        if self.encoder is None:
            raise InferenceError("Encoder session is not loaded")

        size = (self.input_size, self.input_size)
        tensor = image_to_tensor(image, size=size, mean=CLIP_MEAN, std=CLIP_STD)

        try:
            outputs = self.encoder(**{self.input_name: tensor.nchw()})
        except RestorationError:
            raise
        except Exception as e:
            raise classify_runtime_error(e, "Encoder inference")

        if not outputs:
            raise InferenceError("Encoder returned no outputs")
        combined = np.asarray(outputs[0], dtype=np.float32).reshape(-1)

        if combined.size == 0 or combined.size % 2 != 0:
            raise InferenceError(f"Encoder output length {combined.size} cannot be split in halves")
        half = combined.size // 2
        if self.context_dim is not None and half != self.context_dim:
            raise InferenceError(f"Encoder context length {half}, expected {self.context_dim}")

        logger.debug(f"[Features] extracted contexts of dim {half}")
        return ContextEmbedding(
            image_context=combined[:half].copy(),
            degradation_context=combined[half:].copy(),
        )
