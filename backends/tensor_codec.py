"""
Pixel image <-> channel-first float tensor conversion.

Tensors are a single flat float32 buffer plus a (C, H, W) shape descriptor;
`offset()` computes the linear index so no nested arrays are ever built.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from PIL import Image

# Deterministic for a fixed input.
RESAMPLE = Image.BILINEAR


@dataclass
class ImageTensor:
    data: np.ndarray  # flat float32, length C*H*W
    shape: Tuple[int, int, int]  # (C, H, W)

    def __post_init__(self):
        self.data = np.ascontiguousarray(self.data, dtype=np.float32).reshape(-1)
        c, h, w = (int(v) for v in self.shape)
        self.shape = (c, h, w)
        if self.data.size != c * h * w:
            raise ValueError(f"buffer of {self.data.size} elements does not match shape {self.shape}")

    @property
    def channels(self) -> int:
        return self.shape[0]

    @property
    def height(self) -> int:
        return self.shape[1]

    @property
    def width(self) -> int:
        return self.shape[2]

    @property
    def size(self) -> int:
        return self.data.size

    def offset(self, c: int, y: int, x: int) -> int:
        _, h, w = self.shape
        return c * h * w + y * w + x

    def at(self, c: int, y: int, x: int) -> float:
        return float(self.data[self.offset(c, y, x)])

    def nchw(self) -> np.ndarray:
        """View as a batch-of-one [1, C, H, W] array (no copy)."""
        return self.data.reshape((1,) + self.shape)

    def copy(self) -> "ImageTensor":
        return ImageTensor(self.data.copy(), self.shape)

    def with_data(self, data: np.ndarray) -> "ImageTensor":
        return ImageTensor(data, self.shape)

    def require_same_shape(self, other: "ImageTensor", what: str = "tensor") -> None:
        if other.shape != self.shape:
            raise ValueError(f"{what} shape {other.shape} does not match {self.shape}")


def working_size(width: int, height: int, max_dim: int, multiple: int = 1) -> Tuple[int, int]:
    """
    Aspect-preserving size whose longest side is at most max_dim.

    Never upscales. With multiple > 1 each side is rounded down to a multiple
    of it (at least one multiple, so a side shorter than multiple grows to
    it), for denoisers with stride constraints. multiple may not exceed
    max_dim.
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"image size must be positive, got {width}x{height}")
    if max_dim <= 0:
        raise ValueError(f"max_dim must be positive, got {max_dim}")
    if multiple > max_dim:
        raise ValueError(f"multiple {multiple} exceeds max_dim {max_dim}")

    longest = max(width, height)
    if longest > max_dim:
        # Integer math keeps the longest side exactly max_dim.
        if width >= height:
            width, height = max_dim, max(1, height * max_dim // width)
        else:
            width, height = max(1, width * max_dim // height), max_dim

    if multiple > 1:
        width = max(multiple, (width // multiple) * multiple)
        height = max(multiple, (height // multiple) * multiple)
    return width, height


def resize(image: Image.Image, size: Tuple[int, int]) -> Image.Image:
    if image.size == tuple(size):
        return image
    return image.resize(tuple(size), RESAMPLE)


def image_to_tensor(
    image: Image.Image,
    size: Optional[Tuple[int, int]] = None,
    mean: Optional[Sequence[float]] = None,
    std: Optional[Sequence[float]] = None,
) -> ImageTensor:
    """
    Encode an image as a CHW tensor with values in [0, 1].

    Args:
        image: Source image (converted to RGB)
        size: Optional (width, height) to resample to first
        mean, std: Optional per-channel standardization (encoder input only)
    """
    img = image.convert("RGB")
    if size is not None:
        img = resize(img, size)

    hwc = np.asarray(img, dtype=np.float32) / 255.0
    chw = np.transpose(hwc, (2, 0, 1))

    if mean is not None or std is not None:
        m = np.asarray(mean if mean is not None else (0.0, 0.0, 0.0), dtype=np.float32).reshape(3, 1, 1)
        s = np.asarray(std if std is not None else (1.0, 1.0, 1.0), dtype=np.float32).reshape(3, 1, 1)
        chw = (chw - m) / s

    return ImageTensor(chw, chw.shape)


def tensor_to_image(tensor: ImageTensor) -> Image.Image:
    """Decode a [0, 1] CHW tensor to an RGB image; out-of-range values are clamped."""
    if tensor.channels != 3:
        raise ValueError(f"expected 3 channels, got {tensor.channels}")
    chw = np.clip(tensor.data.reshape(tensor.shape), 0.0, 1.0)
    hwc = np.transpose(chw, (1, 2, 0))
    u8 = np.rint(hwc * 255.0).astype(np.uint8)
    return Image.fromarray(np.ascontiguousarray(u8))
