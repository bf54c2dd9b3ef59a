"""
HTTP tests for the restoration server.

The app runs its real lifespan (worker pool, job reaper) with a session
factory backed by fake models.
"""

import io
import queue
import time
from concurrent.futures import Future
from unittest.mock import Mock

import pytest
import yaml
from fastapi.testclient import TestClient
from PIL import Image

from backends.worker_pool import reset_worker_pool
from conftest import FakeDenoiser, FakeEncoder
from server import jobs, restore_server
from server.restore_config import RestoreConfigManager
from server.restore_server import create_app, status_for_error


@pytest.fixture
def restore_config(tmp_path):
    path = tmp_path / "restoration.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "model_root": str(tmp_path),
                "encoder": "daclip_encoder_int8.onnx",
                "denoiser": "unet_int8.onnx",
                "defaults": {"steps": 5, "max_size": 64},
                "limits": {"max_size": 256, "max_upload_pixels": 1_000_000},
            }
        )
    )
    return RestoreConfigManager(str(path))


@pytest.fixture
def make_client(restore_config, make_session):
    clients = []

    def _make(session_factory=None):
        reset_worker_pool()
        jobs.jobs_clear()
        default_factory = lambda: make_session(config=restore_config.session_config())
        app = create_app(config=restore_config, session_factory=session_factory or default_factory)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for c in clients:
        c.__exit__(None, None, None)
    reset_worker_pool()
    jobs.jobs_clear()


@pytest.fixture
def client(make_client):
    return make_client()


def png_bytes(size=(80, 60), color=(120, 90, 200)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def upload(data=None):
    return {"file": ("input.png", png_bytes() if data is None else data, "image/png")}


class TestRestoreEndpoint:
    def test_restore_png(self, client):
        resp = client.post("/restore", files=upload(), data={"steps": "4", "seed": "99"})

        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert resp.headers["X-Seed"] == "99"
        assert resp.headers["X-Steps"] == "4"
        assert resp.headers["X-Working-Size"] == "64x48"
        assert Image.open(io.BytesIO(resp.content)).size == (80, 60)

    def test_restore_defaults(self, client):
        resp = client.post("/restore", files=upload())
        assert resp.status_code == 200
        assert resp.headers["X-Steps"] == "5"

    def test_restore_jpeg(self, client):
        resp = client.post("/restore", files=upload(), data={"out_format": "jpeg", "quality": "80"})
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/jpeg"

    def test_same_seed_same_bytes(self, client):
        a = client.post("/restore", files=upload(), data={"steps": "3", "seed": "5"})
        b = client.post("/restore", files=upload(), data={"steps": "3", "seed": "5"})
        assert a.content == b.content

    @pytest.mark.parametrize(
        "data",
        [
            {"steps": "0"},
            {"steps": "101"},
            {"max_size": "512"},
            {"out_format": "gif"},
            {"quality": "0"},
        ],
    )
    def test_bad_parameters(self, client, data):
        assert client.post("/restore", files=upload(), data=data).status_code == 400

    def test_empty_upload(self, client):
        assert client.post("/restore", files=upload(b"")).status_code == 400

    def test_not_an_image(self, client):
        assert client.post("/restore", files=upload(b"definitely not a png")).status_code == 400

    def test_too_many_pixels(self, client):
        resp = client.post("/restore", files=upload(png_bytes(size=(1200, 1000))))
        assert resp.status_code == 400
        assert "max_upload_pixels" in resp.json()["detail"]


class TestErrorMapping:
    def test_failed_session_is_503(self, make_client, make_session):
        def loader(role, path):
            raise MemoryError()

        client = make_client(lambda: make_session(loader=loader))
        assert client.post("/restore", files=upload()).status_code == 503

    def test_inference_oom_is_507(self, make_client, make_session):
        client = make_client(lambda: make_session(denoiser=FakeDenoiser(error=MemoryError("bad_alloc"))))
        assert client.post("/restore", files=upload()).status_code == 507

    def test_inference_error_is_500(self, make_client, make_session):
        client = make_client(lambda: make_session(encoder=FakeEncoder(output_len=7)))
        assert client.post("/restore", files=upload()).status_code == 500

    def test_queue_full_is_429(self, client, monkeypatch):
        monkeypatch.setattr(client.app.state.pool, "submit_job", Mock(side_effect=queue.Full()))
        assert client.post("/restore", files=upload()).status_code == 429

    def test_deadline_is_504(self, client, monkeypatch):
        monkeypatch.setattr(restore_server, "REQUEST_TIMEOUT", 0.05)
        monkeypatch.setattr(client.app.state.pool, "submit_job", Mock(return_value=Future()))
        assert client.post("/restore", files=upload()).status_code == 504

    def test_status_table(self):
        from backends.errors import (
            ConfigurationError,
            InferenceError,
            ResourceExhaustion,
            RestorationCancelled,
            SessionStateError,
        )

        assert status_for_error(ConfigurationError("x")) == 400
        assert status_for_error(SessionStateError("x")) == 503
        assert status_for_error(ResourceExhaustion("x")) == 507
        assert status_for_error(RestorationCancelled("x")) == 409
        assert status_for_error(InferenceError("x")) == 500
        assert status_for_error(RuntimeError("x")) == 500


class TestAsyncJobs:
    def wait_for(self, client, job_id, timeout=10.0):
        deadline = time.time() + timeout
        while time.time() < deadline:
            job = client.get(f"/v1/restore/jobs/{job_id}").json()
            if job["status"] not in ("queued", "running"):
                return job
            time.sleep(0.02)
        raise AssertionError(f"job {job_id} did not finish")

    def test_job_lifecycle(self, client):
        resp = client.post("/v1/restore/jobs", files=upload(), data={"steps": "4", "seed": "3"})
        assert resp.status_code == 202
        job_id = resp.json()["job_id"]

        job = self.wait_for(client, job_id)
        assert job["status"] == "done"
        assert job["progress"]["completed"] == 4
        assert job["progress"]["total"] == 4
        assert job["progress"]["fraction"] == 1.0

        result = client.get(f"/v1/restore/jobs/{job_id}/result")
        assert result.status_code == 200
        assert result.headers["X-Seed"] == "3"
        assert Image.open(io.BytesIO(result.content)).size == (80, 60)

    def test_failed_job(self, make_client, make_session):
        client = make_client(lambda: make_session(denoiser=FakeDenoiser(error=RuntimeError("boom"))))
        job_id = client.post("/v1/restore/jobs", files=upload()).json()["job_id"]

        job = self.wait_for(client, job_id)
        assert job["status"] == "error"
        assert job["error_kind"] == "inference"
        assert client.get(f"/v1/restore/jobs/{job_id}/result").status_code == 409

    def test_result_not_ready(self, client):
        job_id = jobs.jobs_create()
        resp = client.get(f"/v1/restore/jobs/{job_id}/result")
        assert resp.status_code == 409
        assert resp.json()["detail"]["status"] == "queued"

    def test_unknown_job(self, client):
        assert client.get("/v1/restore/jobs/missing").status_code == 404
        assert client.get("/v1/restore/jobs/missing/result").status_code == 404
        assert client.post("/v1/restore/jobs/missing/cancel").status_code == 404

    def test_cancel_finished_job_is_noop(self, client):
        job_id = client.post("/v1/restore/jobs", files=upload(), data={"steps": "2"}).json()["job_id"]
        self.wait_for(client, job_id)
        resp = client.post(f"/v1/restore/jobs/{job_id}/cancel")
        assert resp.json() == {"job_id": job_id, "status": "done"}

    def test_job_queue_full(self, client, monkeypatch):
        monkeypatch.setattr(client.app.state.pool, "submit_job", Mock(side_effect=queue.Full()))
        assert client.post("/v1/restore/jobs", files=upload()).status_code == 429


class TestSessionRoutes:
    def test_status(self, client):
        resp = client.get("/api/session/status")
        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "ready"
        assert body["queue_size"] >= 0
        assert body["session"]["schedule"]["steps"] == 100

    def test_reload(self, client):
        resp = client.post("/api/session/reload")
        assert resp.status_code == 200
        assert resp.json() == {"state": "ready", "status": "reloaded"}

    def test_status_reports_config(self, client):
        config = client.get("/api/session/status").json()["config"]
        assert config["defaults"] == {"steps": 5, "max_size": 64}
        assert config["limits"]["max_size"] == 256

    def test_reload_rereads_config(self, client, restore_config):
        data = yaml.safe_load(restore_config.config_path.read_text())
        data["defaults"] = {"steps": 3, "max_size": 32}
        restore_config.config_path.write_text(yaml.safe_dump(data))

        assert client.post("/api/session/reload").status_code == 200

        resp = client.post("/restore", files=upload())
        assert resp.headers["X-Steps"] == "3"
        assert resp.headers["X-Working-Size"] == "32x24"

    def test_reload_rejects_invalid_config(self, client, restore_config):
        restore_config.config_path.write_text("")
        assert client.post("/api/session/reload").status_code == 400
        # Previous configuration stays active
        assert client.get("/api/session/status").json()["config"]["defaults"]["steps"] == 5

    def test_reload_failure(self, make_client, make_session):
        def loader(role, path):
            raise MemoryError()

        client = make_client(lambda: make_session(loader=loader))
        assert client.get("/api/session/status").json()["state"] == "failed"
        assert client.post("/api/session/reload").status_code == 507
