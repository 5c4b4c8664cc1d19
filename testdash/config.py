"""Environment-driven settings for the run monitor."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


def _load_env_files() -> None:
    """Load environment variables from .env files.

    The current working directory is tried first, then the repository root, so the
    service behaves the same whether uvicorn is launched from the project root or elsewhere.
    Variables that are already set are never overridden.
    """
    load_dotenv(override=False)
    repo_root = Path(__file__).resolve().parents[1]
    root_env = repo_root / ".env"
    if root_env.exists():
        load_dotenv(dotenv_path=root_env, override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class MonitorSettings:
    history_limit: int = 100
    output_limit: int = 5000
    max_run_duration: Optional[float] = None
    cancel_grace: Optional[float] = 5.0
    subscriber_queue_size: int = 1000
    projects_root: Path = field(default_factory=lambda: Path("projects").resolve())
    allow_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173"])
    host: str = "127.0.0.1"
    port: int = 3001
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, load_files: bool = True) -> "MonitorSettings":
        if load_files:
            _load_env_files()
        cancel_grace = _env_float("RUN_CANCEL_GRACE", 5.0)
        if cancel_grace is not None and cancel_grace <= 0:
            cancel_grace = None
        max_duration = _env_float("RUN_MAX_DURATION", None)
        if max_duration is not None and max_duration <= 0:
            max_duration = None
        origins = os.getenv("ALLOW_ORIGINS", "http://localhost:5173").split(",")
        settings = cls(
            history_limit=_env_int("RUN_HISTORY_LIMIT", 100),
            output_limit=_env_int("RUN_OUTPUT_LIMIT", 5000),
            max_run_duration=max_duration,
            cancel_grace=cancel_grace,
            subscriber_queue_size=_env_int("SUBSCRIBER_QUEUE_SIZE", 1000),
            projects_root=Path(os.getenv("PLAYWRIGHT_PROJECTS_PATH", "projects")).expanduser().resolve(),
            allow_origins=[o.strip() for o in origins if o.strip()],
            host=os.getenv("API_HOST", "127.0.0.1"),
            port=_env_int("API_PORT", 3001),
            log_level=os.getenv("TESTDASH_LOG_LEVEL", "INFO").upper(),
        )
        if settings.history_limit < 1:
            raise ValueError("RUN_HISTORY_LIMIT must be at least 1")
        if settings.output_limit < 1:
            raise ValueError("RUN_OUTPUT_LIMIT must be at least 1")
        if settings.subscriber_queue_size < 1:
            raise ValueError("SUBSCRIBER_QUEUE_SIZE must be at least 1")
        return settings
