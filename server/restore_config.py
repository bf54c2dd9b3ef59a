"""
Restoration configuration management.

Loads and validates restoration.yaml containing:
- Model paths (model_root, encoder, denoiser)
- SDE schedule parameters
- Request defaults and limits
- Runtime (execution providers, threads) and load tuning

Environment variables override the file:
  RESTORE_CONFIG   path to the YAML file (default restoration.yaml)
  MODEL_ROOT       overrides model_root
  ENCODER_MODEL    overrides encoder
  DENOISER_MODEL   overrides denoiser
  ORT_PROVIDERS    comma-separated provider list, e.g. "nnapi,cpu"
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from backends.runtime import RuntimeConfig
from backends.session import SessionConfig

logger = logging.getLogger(__name__)

_TRUE = ("true", "yes", "on", "1")
_FALSE = ("false", "no", "off", "0")


def _as_bool(value: Any, name: str) -> bool:
    """YAML booleans, or their quoted spellings; anything else is an error."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        v = value.strip().lower()
        if v in _TRUE:
            return True
        if v in _FALSE:
            return False
    raise ValueError(f"restoration.yaml field '{name}' must be a boolean, got {value!r}")

DEFAULT_CONFIG_PATH = "restoration.yaml"


@dataclass
class ScheduleConfig:
    """SDE schedule parameters."""
    steps: int = 100
    max_sigma: float = 50.0 / 255.0
    eps: float = 0.005


@dataclass
class LimitsConfig:
    """Request limits enforced by the HTTP layer."""
    max_size: int = 1024
    max_upload_pixels: int = 24_000_000


@dataclass
class RestoreYAML:
    """Root configuration from restoration.yaml."""
    model_root: str
    encoder: str
    denoiser: str
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    default_steps: int = 20
    default_max_size: int = 384
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    load_backoff_s: float = 0.5
    min_free_mb: int = 0
    lazy: bool = False
    noise: str = "gaussian"
    size_multiple: int = 1

    # Resolved absolute paths (set after loading)
    encoder_path: Optional[str] = None
    denoiser_path: Optional[str] = None


class RestoreConfigManager:
    """
    Manages the restoration configuration.

    Responsibilities:
    - Load and validate restoration.yaml
    - Apply environment overrides
    - Resolve model paths relative to model_root
    - Build SessionConfig / RuntimeConfig for the engine
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to restoration.yaml. Defaults to $RESTORE_CONFIG
                         or restoration.yaml in the working directory.
        """
        self.config_path = Path(config_path or os.environ.get("RESTORE_CONFIG", DEFAULT_CONFIG_PATH))
        self.config: Optional[RestoreYAML] = None
        self._load_config()

    def _load_config(self):
        """Load and validate restoration.yaml."""
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"restoration.yaml not found at {self.config_path}. "
                f"Create this file to define the restoration models."
            )

        logger.info(f"[RestoreConfig] Loading configuration from {self.config_path}")

        with open(self.config_path, "r") as f:
            data = yaml.safe_load(f)

        if not data:
            raise ValueError("restoration.yaml is empty")
        if not isinstance(data, dict):
            raise ValueError("restoration.yaml must contain a mapping")

        cfg = self._parse(data)
        self._apply_env_overrides(cfg)
        self._resolve_paths(cfg)
        # Swap in whole so request handlers never see a half-built config
        self.config = cfg

        logger.info(f"[RestoreConfig] Model root: {self.config.model_root}")
        logger.info(f"[RestoreConfig] Encoder: {self.config.encoder_path}")
        logger.info(f"[RestoreConfig] Denoiser: {self.config.denoiser_path}")
        logger.info(f"[RestoreConfig] Providers: {self.config.runtime.providers}")

        self._validate_paths()

    @staticmethod
    def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
        section = data.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"restoration.yaml field '{name}' must be a mapping")
        return section

    def _parse(self, data: Dict[str, Any]) -> RestoreYAML:
        for key in ("model_root", "encoder", "denoiser"):
            if key not in data:
                raise ValueError(f"restoration.yaml missing required field: {key}")

        sched = self._section(data, "schedule")
        defaults = self._section(data, "defaults")
        limits = self._section(data, "limits")
        runtime = self._section(data, "runtime")
        loading = self._section(data, "loading")
        sampler = self._section(data, "sampler")

        providers = runtime.get("providers", ["nnapi", "cpu"])
        if isinstance(providers, str):
            providers = [p.strip() for p in providers.split(",") if p.strip()]

        cfg = RestoreYAML(
            model_root=str(data["model_root"]),
            encoder=str(data["encoder"]),
            denoiser=str(data["denoiser"]),
            schedule=ScheduleConfig(
                steps=int(sched.get("steps", 100)),
                max_sigma=float(sched.get("max_sigma", 50.0 / 255.0)),
                eps=float(sched.get("eps", 0.005)),
            ),
            default_steps=int(defaults.get("steps", 20)),
            default_max_size=int(defaults.get("max_size", 384)),
            limits=LimitsConfig(
                max_size=int(limits.get("max_size", 1024)),
                max_upload_pixels=int(limits.get("max_upload_pixels", 24_000_000)),
            ),
            runtime=RuntimeConfig(
                providers=list(providers),
                intra_op_threads=int(runtime.get("intra_op_threads", 4)),
                inter_op_threads=int(runtime.get("inter_op_threads", 4)),
                parallel=_as_bool(runtime.get("parallel", True), "runtime.parallel"),
                graph_optimization=str(runtime.get("graph_optimization", "all")),
            ),
            load_backoff_s=float(loading.get("backoff_s", 0.5)),
            min_free_mb=int(loading.get("min_free_mb", 0)),
            lazy=_as_bool(loading.get("lazy", False), "loading.lazy"),
            noise=str(sampler.get("noise", "gaussian")),
            size_multiple=int(sampler.get("size_multiple", 1)),
        )

        if not (1 <= cfg.default_steps <= cfg.schedule.steps):
            raise ValueError(
                f"defaults.steps={cfg.default_steps} must lie in 1..schedule.steps={cfg.schedule.steps}"
            )
        if cfg.default_max_size < 1 or cfg.default_max_size > cfg.limits.max_size:
            raise ValueError(
                f"defaults.max_size={cfg.default_max_size} must lie in 1..limits.max_size={cfg.limits.max_size}"
            )
        if cfg.size_multiple > cfg.default_max_size:
            raise ValueError(
                f"sampler.size_multiple={cfg.size_multiple} must not exceed defaults.max_size={cfg.default_max_size}"
            )
        return cfg

    @staticmethod
    def _apply_env_overrides(cfg: RestoreYAML):
        env_root = os.environ.get("MODEL_ROOT", "").strip()
        if env_root:
            cfg.model_root = env_root
        env_encoder = os.environ.get("ENCODER_MODEL", "").strip()
        if env_encoder:
            cfg.encoder = env_encoder
        env_denoiser = os.environ.get("DENOISER_MODEL", "").strip()
        if env_denoiser:
            cfg.denoiser = env_denoiser
        env_providers = os.environ.get("ORT_PROVIDERS", "").strip()
        if env_providers:
            cfg.runtime.providers = [p.strip() for p in env_providers.split(",") if p.strip()]

    @staticmethod
    def _resolve_paths(cfg: RestoreYAML):
        model_root = Path(cfg.model_root).expanduser()
        cfg.model_root = str(model_root)
        cfg.encoder_path = str(model_root / cfg.encoder)
        cfg.denoiser_path = str(model_root / cfg.denoiser)

    def _validate_paths(self):
        """Warn about missing model files."""
        errors = []
        if not Path(self.config.model_root).exists():
            errors.append(f"model_root does not exist: {self.config.model_root}")
        for label, path in (("encoder", self.config.encoder_path), ("denoiser", self.config.denoiser_path)):
            if not Path(path).exists():
                errors.append(f"{label} model not found: {path}")

        if errors:
            logger.warning("[RestoreConfig] Path validation warnings:")
            for error in errors:
                logger.warning(f"  - {error}")
            # Don't raise - the session reports the load failure itself

    def reload(self):
        """Reload configuration from disk."""
        logger.info("[RestoreConfig] Reloading configuration")
        self._load_config()

    def session_config(self) -> SessionConfig:
        c = self.config
        return SessionConfig(
            encoder_path=c.encoder_path,
            denoiser_path=c.denoiser_path,
            schedule_steps=c.schedule.steps,
            max_sigma=c.schedule.max_sigma,
            eps=c.schedule.eps,
            default_steps=c.default_steps,
            default_max_size=c.default_max_size,
            noise=c.noise,
            size_multiple=c.size_multiple,
            load_backoff_s=c.load_backoff_s,
            min_free_mb=c.min_free_mb,
            lazy=c.lazy,
        )

    def runtime_config(self) -> RuntimeConfig:
        return self.config.runtime

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        c = self.config
        return {
            "model_root": c.model_root,
            "encoder": c.encoder,
            "encoder_path": c.encoder_path,
            "denoiser": c.denoiser,
            "denoiser_path": c.denoiser_path,
            "schedule": {"steps": c.schedule.steps, "max_sigma": c.schedule.max_sigma, "eps": c.schedule.eps},
            "defaults": {"steps": c.default_steps, "max_size": c.default_max_size},
            "limits": {"max_size": c.limits.max_size, "max_upload_pixels": c.limits.max_upload_pixels},
            "runtime": {
                "providers": list(c.runtime.providers),
                "intra_op_threads": c.runtime.intra_op_threads,
                "inter_op_threads": c.runtime.inter_op_threads,
                "parallel": c.runtime.parallel,
                "graph_optimization": c.runtime.graph_optimization,
            },
            "loading": {"backoff_s": c.load_backoff_s, "min_free_mb": c.min_free_mb, "lazy": c.lazy},
            "sampler": {"noise": c.noise, "size_multiple": c.size_multiple},
        }


# Global instance (initialized on first use)
_config_manager: Optional[RestoreConfigManager] = None


def get_restore_config() -> RestoreConfigManager:
    """Get global restoration configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = RestoreConfigManager()
    return _config_manager


def reset_restore_config():
    """Drop the global instance (tests)."""
    global _config_manager
    _config_manager = None
