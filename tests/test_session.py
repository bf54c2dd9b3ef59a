"""
Functional tests for RestorationSession.

Tests lifecycle transitions, the two-phase load, failure handling and
request validation using fake models.
"""

import threading
from unittest.mock import Mock

import pytest

from backends.errors import (
    ConfigurationError,
    InferenceError,
    ResourceExhaustion,
    RestorationCancelled,
    SessionStateError,
)
from backends.session import SessionConfig, SessionState
from conftest import FakeDenoiser, FakeEncoder


class TestSessionLifecycle:
    def test_starts_uninitialized(self, make_session):
        session = make_session()
        assert session.state == SessionState.UNINITIALIZED
        assert not session.is_ready

    def test_initialize_loads_encoder_then_denoiser(self, make_session):
        order = []

        def loader(role, path):
            order.append((role, path))
            return FakeEncoder() if role == "encoder" else FakeDenoiser()

        session = make_session(loader=loader)
        result = session.initialize()

        assert result.ok
        assert session.state == SessionState.READY
        assert [r for r, _ in order] == ["encoder", "denoiser"]
        assert order[0][1].endswith("daclip_encoder_int8.onnx")
        assert session.schedule is not None and len(session.schedule) == 100

    def test_initialize_twice_is_noop(self, make_session):
        loader = Mock(side_effect=lambda role, path: FakeEncoder() if role == "encoder" else FakeDenoiser())
        session = make_session(loader=loader)
        assert session.initialize().ok
        assert session.initialize().ok
        assert loader.call_count == 2

    def test_two_phase_load_reclaims_and_backs_off(self, fake_runtime, make_session):
        config = SessionConfig(encoder_path="e.onnx", denoiser_path="d.onnx", load_backoff_s=0.25)
        session = make_session(config=config)
        session.initialize()

        fake_runtime.reclaim.assert_called_once()
        fake_runtime.available_memory_bytes.assert_called_once()
        session._sleep.assert_called_once_with(0.25)

    def test_release_is_idempotent(self, make_session):
        encoder, denoiser = FakeEncoder(), FakeDenoiser()
        session = make_session(encoder=encoder, denoiser=denoiser)
        session.initialize()

        session.release()
        session.release()

        assert session.state == SessionState.RELEASED
        assert encoder.closed and denoiser.closed

    def test_release_from_uninitialized(self, make_session):
        session = make_session()
        session.release()
        assert session.state == SessionState.RELEASED

    def test_initialize_after_release_fails(self, make_session):
        session = make_session()
        session.release()
        result = session.initialize()
        assert not result.ok
        assert isinstance(result.error, SessionStateError)


class TestSessionLoadFailures:
    def test_encoder_oom_moves_to_failed(self, make_session):
        def loader(role, path):
            raise MemoryError("failed to allocate 400MB")

        session = make_session(loader=loader)
        result = session.initialize()

        assert not result.ok
        assert result.error_kind == "resource_exhaustion"
        assert session.state == SessionState.FAILED
        assert session.encoder is None and session.denoiser is None

    def test_denoiser_oom_releases_encoder(self, make_session):
        encoder = FakeEncoder()

        def loader(role, path):
            if role == "encoder":
                return encoder
            raise RuntimeError("onnxruntime: Failed to allocate memory for requested buffer")

        session = make_session(loader=loader)
        result = session.initialize()

        assert isinstance(result.error, ResourceExhaustion)
        assert session.state == SessionState.FAILED
        assert encoder.closed

    def test_generic_load_error_is_inference_error(self, make_session):
        def loader(role, path):
            raise RuntimeError("Invalid model protobuf")

        result = make_session(loader=loader).initialize()
        assert isinstance(result.error, InferenceError)

    def test_memory_floor_refuses_phase_two(self, fake_runtime, make_session):
        fake_runtime.available_memory_bytes.return_value = 100 * 1024 * 1024
        config = SessionConfig(encoder_path="e.onnx", denoiser_path="d.onnx", load_backoff_s=0, min_free_mb=512)
        loader = Mock(side_effect=lambda role, path: FakeEncoder())

        session = make_session(config=config, loader=loader)
        result = session.initialize()

        assert isinstance(result.error, ResourceExhaustion)
        assert loader.call_count == 1  # denoiser never attempted

    def test_unknown_memory_does_not_block_load(self, fake_runtime, make_session):
        fake_runtime.available_memory_bytes.return_value = None
        config = SessionConfig(encoder_path="e.onnx", denoiser_path="d.onnx", load_backoff_s=0, min_free_mb=512)
        assert make_session(config=config).initialize().ok

    def test_bad_schedule_fails_before_loading(self, make_session):
        config = SessionConfig(encoder_path="e.onnx", denoiser_path="d.onnx", schedule_steps=1)
        loader = Mock()
        session = make_session(config=config, loader=loader)

        result = session.initialize()

        assert isinstance(result.error, ConfigurationError)
        assert session.state == SessionState.FAILED
        loader.assert_not_called()

    def test_retry_from_failed(self, make_session):
        attempts = {"n": 0}

        def loader(role, path):
            if role == "denoiser":
                attempts["n"] += 1
                if attempts["n"] == 1:
                    raise MemoryError()
                return FakeDenoiser()
            return FakeEncoder()

        session = make_session(loader=loader)
        assert not session.initialize().ok
        assert session.initialize().ok
        assert session.state == SessionState.READY


class TestSessionRestore:
    def test_restore_returns_image_and_metadata(self, make_session, gray_image):
        session = make_session()
        session.initialize()

        result = session.restore(gray_image, steps=10, max_dim=100, seed=42)

        assert result.ok
        restored = result.value
        assert restored.image.size == (100, 100)
        assert restored.seed == 42
        assert restored.steps == 10
        assert restored.working_size == (100, 100)

    def test_defaults_from_config(self, make_session, gray_image):
        denoiser = FakeDenoiser()
        session = make_session(denoiser=denoiser)
        session.initialize()

        restored = session.restore(gray_image).unwrap()

        assert restored.steps == 20
        assert len(denoiser.calls) == 20
        assert 0 <= restored.seed < 100_000_000

    def test_same_seed_same_pixels(self, make_session, gray_image):
        session = make_session()
        session.initialize()
        a = session.restore(gray_image, steps=5, max_dim=64, seed=7).unwrap()
        b = session.restore(gray_image, steps=5, max_dim=64, seed=7).unwrap()
        assert a.image.tobytes() == b.image.tobytes()

    @pytest.mark.parametrize("steps", [0, 101])
    def test_invalid_steps_no_model_calls(self, make_session, gray_image, steps):
        encoder, denoiser = FakeEncoder(), FakeDenoiser()
        session = make_session(encoder=encoder, denoiser=denoiser)
        session.initialize()

        result = session.restore(gray_image, steps=steps, max_dim=100)

        assert isinstance(result.error, ConfigurationError)
        assert encoder.calls == [] and denoiser.calls == []
        assert session.state == SessionState.READY

    def test_restore_on_failed_session(self, make_session, gray_image):
        denoiser = FakeDenoiser()

        def loader(role, path):
            if role == "denoiser":
                raise MemoryError()
            return FakeEncoder()

        session = make_session(loader=loader)
        session.initialize()

        result = session.restore(gray_image, steps=5, max_dim=64)
        assert isinstance(result.error, SessionStateError)
        assert denoiser.calls == []

    def test_restore_on_released_session(self, make_session, gray_image):
        encoder, denoiser = FakeEncoder(), FakeDenoiser()
        session = make_session(encoder=encoder, denoiser=denoiser)
        session.initialize()
        session.release()

        result = session.restore(gray_image, steps=5, max_dim=64)
        assert result.error_kind == "session_state"
        assert encoder.calls == [] and denoiser.calls == []

    def test_restore_before_initialize(self, make_session, gray_image):
        result = make_session().restore(gray_image, steps=5, max_dim=64)
        assert isinstance(result.error, SessionStateError)

    def test_lazy_session_loads_on_first_restore(self, make_session, gray_image):
        config = SessionConfig(encoder_path="e.onnx", denoiser_path="d.onnx", load_backoff_s=0, lazy=True)
        session = make_session(config=config)

        result = session.restore(gray_image, steps=3, max_dim=32)

        assert result.ok
        assert session.state == SessionState.READY

    def test_inference_oom_keeps_session_ready(self, make_session, gray_image):
        session = make_session(denoiser=FakeDenoiser(error=MemoryError("bad_alloc")))
        session.initialize()

        result = session.restore(gray_image, steps=3, max_dim=32)

        assert result.error_kind == "resource_exhaustion"
        assert session.state == SessionState.READY

    def test_cancel_is_reported_as_failure(self, make_session, gray_image):
        session = make_session()
        session.initialize()
        cancel = threading.Event()
        cancel.set()

        result = session.restore(gray_image, steps=3, max_dim=32, cancel_event=cancel)

        assert result.error_kind == "cancelled"
        with pytest.raises(RestorationCancelled):
            result.unwrap()

    def test_status(self, make_session):
        session = make_session()
        assert session.status()["state"] == "uninitialized"
        session.initialize()
        status = session.status()
        assert status["state"] == "ready"
        assert status["schedule"]["steps"] == 100
        assert status["error"] is None
