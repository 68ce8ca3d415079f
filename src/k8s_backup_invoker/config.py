from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class ControllerConfig:
    namespace: str = os.getenv("KBI_NAMESPACE", "")
    worker_threads: int = int(os.getenv("KBI_WORKER_THREADS", "2"))
    max_num_requeues: int = int(os.getenv("KBI_MAX_NUM_REQUEUES", "5"))
    requeue_delay_seconds: float = float(os.getenv("KBI_REQUEUE_DELAY_SECONDS", "5"))
    trigger_image: str = os.getenv("KBI_TRIGGER_IMAGE", "ghcr.io/kbi/k8s-backup-invoker:latest")
    image_pull_secrets: tuple[str, ...] = _env_list("KBI_IMAGE_PULL_SECRETS")
    scratch_dir: Path = Path(os.getenv("KBI_SCRATCH_DIR", "/tmp/kbi"))
    enable_openshift: bool = _env_flag("KBI_ENABLE_OPENSHIFT")
    smart_prefix: str = os.getenv("KBI_SMART_PREFIX", "")
    pod_name: str = os.getenv("POD_NAME", "")
    node_name: str = os.getenv("NODE_NAME", "")
    log_level: str = os.getenv("KBI_LOG_LEVEL", "INFO")


def ensure_directories(config: ControllerConfig) -> None:
    config.scratch_dir.mkdir(parents=True, exist_ok=True)
