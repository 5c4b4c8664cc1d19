"""In-memory state of a single external command invocation."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional
from uuid import uuid4

DEFAULT_OUTPUT_LIMIT = 5000

# Exit code recorded when the process never produced one (spawn failure, cancellation).
NO_EXIT_CODE = -1


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_run_id() -> str:
    return f"run_{uuid4().hex}"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(eq=False)
class RunRecord:
    """State of one run: identity, inputs, captured output, and lifecycle.

    Output and log sequences are append-only and capped at ``output_limit`` entries each;
    once the cap is hit the oldest entries are discarded. After the record reaches a terminal
    status every append and transition becomes a no-op.
    """

    subject_name: str
    command: str
    args: List[str] = field(default_factory=list)
    context: Optional[str] = None
    output_limit: int = DEFAULT_OUTPUT_LIMIT
    id: str = field(default_factory=new_run_id)
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    exit_code: Optional[int] = None
    process_id: Optional[int] = None
    # Live OS process handle; never serialized.
    process: Any = field(default=None, repr=False)
    stdout: Deque[Dict[str, Any]] = field(init=False, repr=False)
    stderr: Deque[Dict[str, Any]] = field(init=False, repr=False)
    logs: Deque[Dict[str, Any]] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.args = list(self.args)
        self.stdout = deque(maxlen=self.output_limit)
        self.stderr = deque(maxlen=self.output_limit)
        self.logs = deque(maxlen=self.output_limit)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def duration_ms(self, now: Optional[datetime] = None) -> int:
        end = self.ended_at or now or utc_now()
        return int((end - self.started_at).total_seconds() * 1000)

    def append_output(self, stream: str, data: str) -> Optional[Dict[str, Any]]:
        """Record a chunk of process output; returns the stored entry, or None once terminal."""
        if self.is_terminal:
            return None
        if stream not in ("stdout", "stderr"):
            raise ValueError(f"Unknown output stream: {stream}")
        entry = {"stream": stream, "data": data, "timestamp": utc_now().isoformat()}
        (self.stdout if stream == "stdout" else self.stderr).append(entry)
        return entry

    def append_log(self, level: str, message: str) -> Optional[Dict[str, Any]]:
        if self.is_terminal:
            return None
        entry = {"level": level, "message": message, "timestamp": utc_now().isoformat()}
        self.logs.append(entry)
        return entry

    def finish(self, exit_code: int) -> bool:
        """Resolve the run from a process exit code. Returns False if already terminal."""
        if self.is_terminal:
            return False
        self.exit_code = exit_code
        self.ended_at = utc_now()
        self.status = RunStatus.COMPLETED if exit_code == 0 else RunStatus.FAILED
        self.process = None
        return True

    def mark_cancelled(self) -> bool:
        if self.is_terminal:
            return False
        self.exit_code = NO_EXIT_CODE
        self.ended_at = utc_now()
        self.status = RunStatus.CANCELLED
        return True

    def matches_text(self, needle: str) -> bool:
        """Case-insensitive substring match over command, subject, and log messages."""
        needle = needle.lower()
        if needle in self.command.lower() or needle in self.subject_name.lower():
            return True
        return any(needle in str(entry["message"]).lower() for entry in self.logs)

    def completion_payload(self, error: Optional[str] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "exitCode": self.exit_code,
            "endedAt": _iso(self.ended_at),
            "duration": self.duration_ms(),
        }
        if error is not None:
            payload["error"] = error
        return payload

    def cancellation_payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "endedAt": _iso(self.ended_at),
            "duration": self.duration_ms(),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "subjectName": self.subject_name,
            "command": self.command,
            "args": list(self.args),
            "context": self.context,
            "startedAt": _iso(self.started_at),
            "endedAt": _iso(self.ended_at),
            "status": self.status.value,
            "exitCode": self.exit_code,
            "duration": self.duration_ms(),
            "stdout": list(self.stdout),
            "stderr": list(self.stderr),
            "logs": list(self.logs),
            "processId": self.process_id,
        }
