"""
In-memory table of asynchronous restoration jobs.

Writers (progress sinks on the restore worker thread) and readers (HTTP
handlers) share one RLock; readers always get deep-copied snapshots.
Terminal states (done, error, canceled) are final: later writes are ignored.
"""

import copy
import logging
import os
import threading
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

STALE_S = 120         # running job without progress heartbeat for 120s => stale
HARD_S = 30 * 60      # 30 min hard cap
RESULT_TTL_S = float(os.environ.get("JOB_RESULT_TTL", "600"))  # finished jobs kept this long

TERMINAL = ("done", "error", "canceled")

JOBS_LOCK = threading.RLock()
JOBS: Dict[str, Dict[str, Any]] = {}
RESULTS: Dict[str, Tuple[bytes, str, Dict[str, str]]] = {}
CANCEL_EVENTS: Dict[str, threading.Event] = {}


def jobs_create(meta: Optional[Dict[str, Any]] = None, cancel_event: Optional[threading.Event] = None) -> str:
    now = time.time()
    job_id = uuid.uuid4().hex
    with JOBS_LOCK:
        JOBS[job_id] = {
            "id": job_id,
            "status": "queued",
            "created_at": now,
            "updated_at": now,
            "heartbeat_at": now,
            "progress": {"completed": 0, "total": 0, "fraction": 0.0, "message": "Queued"},
            "error": None,
            "meta": dict(meta or {}),
        }
        if cancel_event is not None:
            CANCEL_EVENTS[job_id] = cancel_event
    return job_id


def jobs_get(job_id: str) -> Optional[Dict[str, Any]]:
    with JOBS_LOCK:
        j = JOBS.get(job_id)
        # Return a snapshot so caller/serializer doesn't race with writers
        return copy.deepcopy(j) if j is not None else None


def jobs_update(job_id: str, patch: Dict[str, Any]) -> None:
    """Shallow merge patch into the top-level dict."""
    with JOBS_LOCK:
        j = JOBS.get(job_id)
        if j is None:
            return
        j.update(patch)
        j["updated_at"] = time.time()


def jobs_items_snapshot() -> List[Tuple[str, Dict[str, Any]]]:
    """(job_id, job_dict_copy) pairs, safe to iterate without the lock."""
    with JOBS_LOCK:
        return [(jid, copy.deepcopy(j)) for jid, j in JOBS.items()]


def jobs_mark_running(job_id: str) -> None:
    now = time.time()
    jobs_update(job_id, {"status": "running", "started_at": now, "heartbeat_at": now})


def _finish(job_id: str, patch: Dict[str, Any]) -> bool:
    """Move a live job to a terminal state; False if it was already finished."""
    with JOBS_LOCK:
        j = JOBS.get(job_id)
        if not j or j.get("status") in TERMINAL:
            return False
        now = time.time()
        j.update(patch)
        j["finished_at"] = now
        j["updated_at"] = now
        CANCEL_EVENTS.pop(job_id, None)
        return True


def jobs_mark_done(job_id: str, content: bytes, media_type: str, headers: Dict[str, str]) -> None:
    with JOBS_LOCK:
        if _finish(job_id, {"status": "done"}):
            RESULTS[job_id] = (content, media_type, dict(headers))


def jobs_mark_error_if_running(job_id: str, message: str, kind: Optional[str] = None) -> None:
    patch = {"status": "error", "error": message}
    if kind is not None:
        patch["error_kind"] = kind
    _finish(job_id, patch)


def jobs_mark_canceled(job_id: str, message: str) -> None:
    _finish(job_id, {"status": "canceled", "error": message})


def jobs_cancel(job_id: str) -> bool:
    """Signal a live job's cancel event; False when there is none to signal."""
    with JOBS_LOCK:
        ev = CANCEL_EVENTS.get(job_id)
    if ev is None:
        return False
    ev.set()
    return True


def jobs_cancel_all() -> None:
    with JOBS_LOCK:
        events = list(CANCEL_EVENTS.values())
    for ev in events:
        ev.set()


def jobs_result(job_id: str) -> Optional[Tuple[bytes, str, Dict[str, str]]]:
    with JOBS_LOCK:
        return RESULTS.get(job_id)


def jobs_clear() -> None:
    with JOBS_LOCK:
        JOBS.clear()
        RESULTS.clear()
        CANCEL_EVENTS.clear()


def progress_sink(job_id: str) -> Callable[[int, int, str], None]:
    """Progress callback that records sampler progress on the job and refreshes its heartbeat."""

    def sink(completed: int, total: int, message: str) -> None:
        now = time.time()
        fraction = (completed / total) if total else 0.0
        with JOBS_LOCK:
            j = JOBS.get(job_id)
            if j is None or j["status"] in TERMINAL:
                return
            if j["status"] == "queued":
                j["status"] = "running"
                j["started_at"] = now
            j["progress"] = {
                "completed": int(completed),
                "total": int(total),
                "fraction": round(fraction, 4),
                "message": message,
            }
            j["heartbeat_at"] = now
            j["updated_at"] = now

    return sink


# -----------------------------
# Reaper
# -----------------------------
def _reap(job_id: str, message: str) -> None:
    with JOBS_LOCK:
        ev = CANCEL_EVENTS.get(job_id)
        jobs_mark_error_if_running(job_id, message, kind="timeout")
    # Frees the worker at the sampler's next step
    if ev is not None:
        ev.set()


def evict_finished_jobs(now: Optional[float] = None) -> List[str]:
    """Drop finished jobs (and their results) older than RESULT_TTL_S."""
    now = time.time() if now is None else now
    evicted = []
    with JOBS_LOCK:
        for jid, j in list(JOBS.items()):
            if j.get("status") not in TERMINAL:
                continue
            finished = float(j.get("finished_at") or j.get("updated_at") or now)
            if now - finished > RESULT_TTL_S:
                del JOBS[jid]
                RESULTS.pop(jid, None)
                evicted.append(jid)
    if evicted:
        logger.info(f"[Jobs] Evicted {len(evicted)} finished jobs")
    return evicted


def reap_stale_jobs(now: Optional[float] = None) -> List[str]:
    """
    Fail timed-out or stalled jobs and signal their cancel events; returns the
    affected ids. Finished jobs past their TTL are evicted on the same pass.
    """
    now = time.time() if now is None else now
    reaped = []
    for jid, j in jobs_items_snapshot():
        status = j.get("status")
        if status not in ("queued", "running"):
            continue

        created = float(j.get("created_at") or now)
        hb = float(j.get("heartbeat_at") or j.get("updated_at") or created)

        if now - created > HARD_S:
            _reap(jid, "Job timed out (hard timeout).")
            reaped.append(jid)
        elif status == "running" and now - hb > STALE_S:
            _reap(jid, "Job stalled (no progress heartbeat).")
            reaped.append(jid)
    if reaped:
        logger.warning(f"[Jobs] Reaped {len(reaped)} stale jobs")
    evict_finished_jobs(now)
    return reaped


def _jobs_reaper_loop(stop: threading.Event, interval_s: float):
    while not stop.wait(interval_s):
        reap_stale_jobs()


def start_jobs_reaper(interval_s: float = 5.0) -> threading.Event:
    """Start the reaper thread; set the returned event to stop it."""
    stop = threading.Event()
    t = threading.Thread(target=_jobs_reaper_loop, args=(stop, interval_s), daemon=True, name="JobsReaper")
    t.start()
    return stop
