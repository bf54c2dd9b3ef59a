"""
Session factory wiring configuration into the engine.

Builds the process-owned InferenceRuntime once and hands it to every
RestorationSession the worker pool asks for.
"""

import logging
import os
from typing import TYPE_CHECKING, Callable, Optional

from backends.runtime import InferenceRuntime
from backends.session import RestorationSession

if TYPE_CHECKING:
    from server.restore_config import RestoreConfigManager

logger = logging.getLogger(__name__)


def check_model_files(encoder_path: str, denoiser_path: str) -> None:
    """
    Verify both model files exist before any load is attempted.

    Raises:
        RuntimeError naming the first missing file
    """
    for label, path in (("Encoder", encoder_path), ("Denoiser", denoiser_path)):
        if not path:
            raise RuntimeError(f"{label} model path is not configured")
        if not os.path.isfile(path):
            raise RuntimeError(f"{label} model not found at: {path}")


def create_session_factory(
    config: "RestoreConfigManager",
    runtime: Optional[InferenceRuntime] = None,
) -> Callable[[], RestorationSession]:
    """
    Create a zero-argument factory producing sessions from `config`.

    Args:
        config: Loaded restoration configuration
        runtime: Shared runtime; built from the config's runtime section if None

    Returns:
        Callable returning a new, uninitialized RestorationSession
    """
    runtime = runtime or InferenceRuntime(config.runtime_config())

    def factory() -> RestorationSession:
        session_cfg = config.session_config()
        try:
            check_model_files(session_cfg.encoder_path, session_cfg.denoiser_path)
        except RuntimeError as e:
            # The session reports the failure on initialize(); just make it visible early.
            logger.warning(f"[SessionFactory] {e}")
        session = RestorationSession(runtime, session_cfg)
        logger.info(
            f"[SessionFactory] Created session (T={session_cfg.schedule_steps}, "
            f"noise={session_cfg.noise}, lazy={session_cfg.lazy})"
        )
        return session

    return factory
