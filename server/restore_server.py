"""
restore_server.py: image restoration FastAPI server (single session, queued)

Key goals:
- One RestorationSession owned by the worker pool thread (restorations never overlap)
- Determinism: per-request seed -> np.RandomState, echoed back as X-Seed
- Queue backpressure (429 on overflow), request deadline (504)
- Typed engine errors mapped onto HTTP status codes
- Async jobs with progress polling for long restorations
- Clean startup/shutdown (FastAPI lifespan)

Env:
  RESTORE_CONFIG=restoration.yaml
  QUEUE_MAX=16
  REQUEST_TIMEOUT=300
  JOB_RESULT_TTL=600
"""

import io
import logging
import os
import queue
import threading
from concurrent.futures import Future, TimeoutError as FutureTimeout
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, Optional, Tuple

from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.responses import Response
from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from backends.errors import RestorationCancelled
from backends.session import RestoredImage
from backends.worker_factory import create_session_factory
from backends.worker_pool import RestoreJob, get_worker_pool, reset_worker_pool
from server import jobs
from server.restore_config import RestoreConfigManager, get_restore_config
from server.session_routes import router as session_router

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = float(os.environ.get("REQUEST_TIMEOUT", "300"))

# Engine error kind -> HTTP status
ERROR_STATUS = {
    "configuration": 400,
    "session_state": 503,
    "acceleration_unavailable": 503,
    "resource_exhaustion": 507,
    "cancelled": 409,
    "inference": 500,
}

MEDIA_TYPES = {"png": "image/png", "jpeg": "image/jpeg"}


# -----------------------------
# Response schema (HTTP)
# -----------------------------
class JobRef(BaseModel):
    job_id: str
    status: str


class JobProgress(BaseModel):
    completed: int = 0
    total: int = 0
    fraction: float = 0.0
    message: str = ""


class JobStatus(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str = Field(description="queued | running | done | error | canceled")
    created_at: float
    updated_at: float
    progress: JobProgress
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    heartbeat_at: Optional[float] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)


def status_for_error(e: BaseException) -> int:
    if isinstance(e, queue.Full):
        return 429
    if isinstance(e, FutureTimeout):
        return 504
    return ERROR_STATUS.get(getattr(e, "kind", None), 500)


def http_error(e: BaseException, what: str = "Restoration") -> HTTPException:
    status = status_for_error(e)
    if status == 429:
        return HTTPException(status_code=429, detail="Too many requests (queue full). Try again.")
    if status == 504:
        return HTTPException(status_code=504, detail=f"{what} timed out after {REQUEST_TIMEOUT:g}s")
    return HTTPException(status_code=status, detail=f"{what} failed: {e}")


def encode_image(image: Image.Image, out_format: str, quality: int) -> bytes:
    buf = io.BytesIO()
    if out_format == "jpeg":
        image.save(buf, format="JPEG", quality=int(quality))
    else:
        image.save(buf, format="PNG")
    return buf.getvalue()


def result_headers(restored: RestoredImage) -> Dict[str, str]:
    w, h = restored.working_size
    return {
        "Cache-Control": "no-store",
        "X-Seed": str(restored.seed),
        "X-Steps": str(restored.steps),
        "X-Working-Size": f"{w}x{h}",
        "X-Elapsed-S": f"{restored.elapsed_s:.3f}",
    }


def _check_format(out_format: str, quality: int) -> Tuple[str, int]:
    # Manual validation (FastAPI Form() doesn't enforce ge/le)
    out_format = (out_format or "png").lower().strip()
    if out_format == "jpg":
        out_format = "jpeg"
    if out_format not in MEDIA_TYPES:
        raise HTTPException(status_code=400, detail="out_format must be png or jpeg")
    if quality < 1 or quality > 100:
        raise HTTPException(status_code=400, detail="quality must be 1..100")
    return out_format, quality


def _decode_upload(data: bytes, config: RestoreConfigManager) -> Image.Image:
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError) as e:
        raise HTTPException(status_code=400, detail=f"Unreadable image: {e}")

    limit = config.config.limits.max_upload_pixels
    if img.width * img.height > limit:
        raise HTTPException(
            status_code=400,
            detail=f"Image too large: {img.width}x{img.height} exceeds max_upload_pixels={limit}",
        )
    return img.convert("RGB")


def _check_max_size(max_size: Optional[int], config: RestoreConfigManager) -> None:
    if max_size is None:
        return
    limit = config.config.limits.max_size
    if max_size > limit:
        raise HTTPException(status_code=400, detail=f"max_size must be <= {limit}")


def _submit(job: RestoreJob) -> Future:
    try:
        return get_worker_pool().submit_job(job)
    except queue.Full as e:
        raise http_error(e)


# -----------------------------
# App
# -----------------------------
def create_app(
    config: Optional[RestoreConfigManager] = None,
    session_factory: Optional[Callable] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        config: Restoration config; loaded from RESTORE_CONFIG on startup if None
        session_factory: Session factory for the worker pool; built from the
                         config if None (tests inject fakes here)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or get_restore_config()
        factory = session_factory or create_session_factory(cfg)
        app.state.config = cfg
        app.state.pool = get_worker_pool(factory, eager=not cfg.config.lazy)
        stop_reaper = jobs.start_jobs_reaper()
        logger.info(f"[Server] Ready (session state: {app.state.pool.get_session_state()})")

        yield

        stop_reaper.set()
        jobs.jobs_cancel_all()
        reset_worker_pool()
        logger.info("[Server] Shutdown complete")

    app = FastAPI(lifespan=lifespan, title="Image Restoration Service")
    app.include_router(session_router)

    @app.post("/restore", responses={200: {"content": {"image/png": {}, "image/jpeg": {}}}})
    def restore(
        file: UploadFile = File(...),
        steps: Optional[int] = Form(None),
        max_size: Optional[int] = Form(None),
        seed: Optional[int] = Form(None),
        out_format: str = Form("png"),
        quality: int = Form(92),
    ):
        cfg: RestoreConfigManager = app.state.config
        out_format, quality = _check_format(out_format, quality)
        _check_max_size(max_size, cfg)
        image = _decode_upload(file.file.read(), cfg)

        cancel = threading.Event()
        job = RestoreJob(image=image, steps=steps, max_size=max_size, seed=seed, cancel_event=cancel)
        fut = _submit(job)
        try:
            restored: RestoredImage = fut.result(timeout=REQUEST_TIMEOUT)
        except FutureTimeout as e:
            # Sampler stops at its next step
            fut.cancel()
            cancel.set()
            raise http_error(e)
        except Exception as e:
            raise http_error(e)

        return Response(
            content=encode_image(restored.image, out_format, quality),
            media_type=MEDIA_TYPES[out_format],
            headers=result_headers(restored),
        )

    # -----------------------------
    # Async jobs
    # -----------------------------
    @app.post("/v1/restore/jobs", status_code=202, response_model=JobRef)
    def create_restore_job(
        file: UploadFile = File(...),
        steps: Optional[int] = Form(None),
        max_size: Optional[int] = Form(None),
        seed: Optional[int] = Form(None),
        out_format: str = Form("png"),
        quality: int = Form(92),
    ):
        cfg: RestoreConfigManager = app.state.config
        out_format, quality = _check_format(out_format, quality)
        _check_max_size(max_size, cfg)
        image = _decode_upload(file.file.read(), cfg)

        cancel = threading.Event()
        job_id = jobs.jobs_create(
            {"steps": steps, "max_size": max_size, "seed": seed, "out_format": out_format,
             "input_size": f"{image.width}x{image.height}"},
            cancel_event=cancel,
        )

        job = RestoreJob(
            image=image,
            steps=steps,
            max_size=max_size,
            seed=seed,
            progress=jobs.progress_sink(job_id),
            cancel_event=cancel,
        )

        def on_done(fut: Future):
            # Each mark is a no-op once the reaper has already failed the job
            try:
                restored: RestoredImage = fut.result()
            except RestorationCancelled as e:
                jobs.jobs_mark_canceled(job_id, str(e))
                return
            except Exception as e:
                jobs.jobs_mark_error_if_running(job_id, str(e), kind=getattr(e, "kind", type(e).__name__))
                return
            content = encode_image(restored.image, out_format, quality)
            jobs.jobs_mark_done(job_id, content, MEDIA_TYPES[out_format], result_headers(restored))

        try:
            fut = get_worker_pool().submit_job(job)
        except queue.Full as e:
            jobs.jobs_mark_error_if_running(job_id, "Queue full")
            raise http_error(e)
        fut.add_done_callback(on_done)

        logger.info(f"[Server] Restore job {job_id} queued")
        return {"job_id": job_id, "status": "queued"}

    @app.get("/v1/restore/jobs/{job_id}", response_model=JobStatus)
    def get_restore_job(job_id: str):
        job = jobs.jobs_get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
        return job

    @app.get(
        "/v1/restore/jobs/{job_id}/result",
        responses={200: {"content": {"image/png": {}, "image/jpeg": {}}}},
    )
    def get_restore_job_result(job_id: str):
        job = jobs.jobs_get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
        result = jobs.jobs_result(job_id)
        if job["status"] != "done" or result is None:
            raise HTTPException(
                status_code=409,
                detail={"status": job["status"], "error": job.get("error")},
            )
        content, media_type, headers = result
        return Response(content=content, media_type=media_type, headers=headers)

    @app.post("/v1/restore/jobs/{job_id}/cancel", response_model=JobRef)
    def cancel_restore_job(job_id: str):
        job = jobs.jobs_get(job_id)
        if job is None:
            raise HTTPException(status_code=404, detail=f"Unknown job: {job_id}")
        if not jobs.jobs_cancel(job_id):
            return {"job_id": job_id, "status": job["status"]}
        logger.info(f"[Server] Cancel requested for job {job_id}")
        return {"job_id": job_id, "status": "canceling"}

    return app


app = create_app()
