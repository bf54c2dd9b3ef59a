"""
Session management API endpoints.

Status and reload for the single restoration session owned by the worker pool.
"""

import logging
import os
import queue

import yaml
from fastapi import APIRouter, HTTPException, Request

from backends.worker_pool import get_worker_pool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/session", tags=["session"])

RELOAD_TIMEOUT = float(os.environ.get("RELOAD_TIMEOUT", "300"))


@router.get("/status")
async def get_session_status(request: Request):
    """
    Get the current session state.

    Returns:
        Session state, last load error, schedule summary, queue size and
        the active configuration
    """
    pool = get_worker_pool()
    session = pool.session
    cfg = getattr(request.app.state, "config", None)

    return {
        "state": pool.get_session_state(),
        "queue_size": pool.get_queue_size(),
        "session": session.status() if session is not None else None,
        "config": cfg.to_dict() if cfg is not None else None,
    }


@router.post("/reload")
def reload_session(request: Request):
    """
    Re-read restoration.yaml and rebuild the session from it.

    Queued behind any pending restorations. Execution providers and thread
    counts belong to the process runtime and keep their startup values.
    """
    cfg = request.app.state.config
    try:
        cfg.reload()
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"[API] Config reload failed: {e}")
        raise HTTPException(status_code=400, detail=f"Invalid configuration: {e}")

    pool = get_worker_pool()
    try:
        fut = pool.reload(recreate=True)
    except queue.Full:
        raise HTTPException(status_code=429, detail="Too many requests (queue full). Try again.")

    try:
        result = fut.result(timeout=RELOAD_TIMEOUT)
    except Exception as e:
        logger.error(f"[API] Session reload failed: {e}")
        kind = getattr(e, "kind", None)
        status = 507 if kind == "resource_exhaustion" else 503
        raise HTTPException(status_code=status, detail=f"Reload failed: {e}")

    logger.info(f"[API] Session reloaded: {result}")
    return result
