from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    data_dir: Path
    db_path: Path
    uploads_dir: Path


DEFAULT_DATA_DIRNAME = ".casefolio"


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("CASEFOLIO_HOME")
    if home_raw:
        data_dir = Path(home_raw).expanduser().resolve()
    else:
        data_dir = root / DEFAULT_DATA_DIRNAME

    return AppPaths(
        project_root=root,
        data_dir=data_dir,
        db_path=data_dir / "casefolio.db",
        uploads_dir=data_dir / "uploads",
    )


@dataclass(frozen=True)
class PipelineSettings:
    worker_count: int = 2
    engine_count: int = 1
    ocr_language: str = "por"
    ocr_whitelist: str | None = None
    render_scale: float = 1.0
    job_attempts: int = 3
    job_backoff_seconds: float = 5.0
    default_priority: int = 5
    completed_keep: int = 100
    failed_keep: int = 500
    stall_timeout_seconds: float = 30.0
    heartbeat_seconds: float = 5.0
    poll_seconds: float = 1.0
    max_stalled: int = 1


def load_settings() -> PipelineSettings:
    defaults = PipelineSettings()
    whitelist = (os.getenv("CASEFOLIO_OCR_WHITELIST") or "").strip() or None
    return PipelineSettings(
        worker_count=_env_positive_int("CASEFOLIO_WORKERS", defaults.worker_count),
        engine_count=_env_positive_int("CASEFOLIO_OCR_ENGINES", defaults.engine_count),
        ocr_language=(os.getenv("CASEFOLIO_OCR_LANG") or "").strip() or defaults.ocr_language,
        ocr_whitelist=whitelist,
        render_scale=_env_positive_float("CASEFOLIO_RENDER_SCALE", defaults.render_scale),
        job_attempts=_env_positive_int("CASEFOLIO_JOB_ATTEMPTS", defaults.job_attempts),
        job_backoff_seconds=_env_non_negative_float(
            "CASEFOLIO_JOB_BACKOFF_SECONDS", defaults.job_backoff_seconds
        ),
        default_priority=_env_positive_int("CASEFOLIO_DEFAULT_PRIORITY", defaults.default_priority),
        completed_keep=_env_positive_int("CASEFOLIO_COMPLETED_KEEP", defaults.completed_keep),
        failed_keep=_env_positive_int("CASEFOLIO_FAILED_KEEP", defaults.failed_keep),
        stall_timeout_seconds=_env_positive_float(
            "CASEFOLIO_STALL_TIMEOUT_SECONDS", defaults.stall_timeout_seconds
        ),
        heartbeat_seconds=_env_positive_float("CASEFOLIO_HEARTBEAT_SECONDS", defaults.heartbeat_seconds),
        poll_seconds=_env_positive_float("CASEFOLIO_POLL_SECONDS", defaults.poll_seconds),
        max_stalled=_env_non_negative_int("CASEFOLIO_MAX_STALLED", defaults.max_stalled),
    )


def _env_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _env_non_negative_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return max(0, value)


def _env_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _env_non_negative_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(str(raw).strip())
    except (TypeError, ValueError):
        return default
    return max(0.0, value)
