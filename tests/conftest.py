"""
Shared fixtures: in-process stand-ins for the ONNX encoder and denoiser.

No model weights are needed; the fakes honour the model I/O contracts
(encoder -> [1, 2C], denoiser -> [1, 3, H, W]) and record how they were called.
"""

import threading
from unittest.mock import Mock

import numpy as np
import pytest
from PIL import Image

from backends.session import RestorationSession, SessionConfig


class FakeEncoder:
    """Returns a fixed [1, 2*dim] context vector."""

    def __init__(self, dim=512, output_len=None):
        self.dim = dim
        self.output_len = 2 * dim if output_len is None else output_len
        self.calls = []
        self.closed = False

    def __call__(self, **kwargs):
        self.calls.append(kwargs)
        vec = np.linspace(-1.0, 1.0, self.output_len, dtype=np.float32)
        return [vec.reshape(1, -1)]

    def close(self):
        self.closed = True


class FakeDenoiser:
    """Predicts a constant noise residual shaped like noisy_image."""

    def __init__(self, value=0.01, error=None):
        self.value = value
        self.error = error
        self.calls = []
        self.timesteps = []
        self.closed = False
        self.lock = threading.Lock()

    def __call__(self, **kwargs):
        with self.lock:
            self.calls.append(kwargs)
            self.timesteps.append(int(kwargs["timestep"][0]))
        if self.error is not None:
            raise self.error
        return [np.full(kwargs["noisy_image"].shape, self.value, dtype=np.float32)]

    def close(self):
        self.closed = True


@pytest.fixture
def fake_encoder():
    return FakeEncoder()


@pytest.fixture
def fake_denoiser():
    return FakeDenoiser()


@pytest.fixture
def fake_runtime():
    """Runtime stand-in: no onnxruntime, plenty of memory."""
    runtime = Mock()
    runtime.reclaim.return_value = 0
    runtime.available_memory_bytes.return_value = 8 * 1024 ** 3
    return runtime


@pytest.fixture
def session_config():
    return SessionConfig(
        encoder_path="/models/daclip_encoder_int8.onnx",
        denoiser_path="/models/unet_int8.onnx",
        load_backoff_s=0.0,
    )


@pytest.fixture
def make_session(fake_runtime, session_config):
    """Build a RestorationSession whose loader hands out the given fakes."""

    def _make(encoder=None, denoiser=None, config=None, runtime=None, loader=None):
        enc = encoder if encoder is not None else FakeEncoder()
        den = denoiser if denoiser is not None else FakeDenoiser()
        models = {"encoder": enc, "denoiser": den}

        def default_loader(role, path):
            return models[role]

        return RestorationSession(
            runtime or fake_runtime,
            config or session_config,
            model_loader=loader or default_loader,
            sleep=Mock(),
        )

    return _make


@pytest.fixture
def gray_image():
    return Image.new("RGB", (100, 100), (128, 128, 128))
