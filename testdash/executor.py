# executor.py
"""Spawn external test tools and stream their output into run records."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import shlex
from typing import List, Mapping, Optional, Sequence, Set, Tuple

from .api.events import EventType, OutputBroadcaster, build_event
from .core.run_record import NO_EXIT_CODE, RunRecord

logger = logging.getLogger(__name__)

DEFAULT_READ_LIMIT = 1024 * 1024

_FAIL_RE = re.compile(r"✘|✗|\bFAIL(?:ED)?\b", re.IGNORECASE)
_PASS_RE = re.compile(r"✓|✔|\bPASS(?:ED)?\b", re.IGNORECASE)
_SKIP_RE = re.compile(r"\bSKIP(?:PED)?\b", re.IGNORECASE)
_RUNNING_RE = re.compile(r"\bRunning\b")
_ERROR_RE = re.compile(r"error", re.IGNORECASE)
_SENSITIVE_KEY_RE = re.compile(r"PASSWORD|SECRET|TOKEN|KEY", re.IGNORECASE)


def classify_output(stream: str, text: str) -> Optional[Tuple[str, str]]:
    """Best-effort annotation of an output chunk as (level, message).

    Only a narration aid for humans watching the run; the run status is decided by the
    exit code alone.
    """
    line = text.strip()
    if not line:
        return None
    if stream == "stderr":
        if _ERROR_RE.search(line):
            return "error", f"Process error: {line}"
        return None
    if _FAIL_RE.search(line):
        return "error", f"Test failed: {line}"
    if _PASS_RE.search(line):
        return "success", f"Test passed: {line}"
    if _SKIP_RE.search(line):
        return "warn", f"Test skipped: {line}"
    if _RUNNING_RE.search(line):
        return "info", f"Test execution started: {line}"
    return None


def mask_environment(environment: Optional[Mapping[str, Optional[str]]]) -> str:
    """Render env overrides as a ``KEY=value`` prefix with secrets masked."""
    parts = []
    for key, value in (environment or {}).items():
        if value is None or value == "":
            continue
        shown = "***" if _SENSITIVE_KEY_RE.search(key) else value
        parts.append(f"{key}={shown}")
    return " ".join(parts)


def build_process_env(overrides: Optional[Mapping[str, Optional[str]]] = None) -> dict:
    """Inherit the full parent environment; overrides win and a None value unsets the key."""
    env = os.environ.copy()
    for key, value in (overrides or {}).items():
        if value is None:
            env.pop(key, None)
        else:
            env[key] = str(value)
    return env


class ProcessRunner:
    """Runs the external command for a RunRecord and drives it to a terminal state.

    ``execute`` never raises for process-level problems. Spawn errors, non-zero exits and
    unexpected failures all end up as data on the record and as broadcast events.
    """

    def __init__(
        self,
        broadcaster: OutputBroadcaster,
        *,
        max_duration: Optional[float] = None,
        read_limit: int = DEFAULT_READ_LIMIT,
        cancel_grace: Optional[float] = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.max_duration = max_duration
        self.read_limit = read_limit
        self.cancel_grace = cancel_grace
        self._reapers: Set[asyncio.Task] = set()

    @property
    def reapers(self) -> List[asyncio.Task]:
        return list(self._reapers)

    def stop(self, record: RunRecord, process: asyncio.subprocess.Process, *, force: bool = False) -> None:
        """Signal ``process`` to exit: SIGKILL when forced, else SIGTERM then SIGKILL after ``cancel_grace``."""
        if process.returncode is not None:
            return
        try:
            if force:
                process.kill()
            else:
                process.terminate()
        except ProcessLookupError:
            return
        if force or not self.cancel_grace:
            return
        reaper = asyncio.get_running_loop().create_task(self._escalate(record.id, process, self.cancel_grace))
        self._reapers.add(reaper)
        reaper.add_done_callback(self._reapers.discard)

    async def _escalate(self, run_id: str, process: asyncio.subprocess.Process, grace: float) -> None:
        try:
            await asyncio.wait_for(asyncio.shield(process.wait()), grace)
        except asyncio.TimeoutError:
            logger.warning("Run %s ignored SIGTERM for %gs; killing PID %s", run_id, grace, process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                pass

    def log(self, record: RunRecord, level: str, message: str) -> None:
        entry = record.append_log(level, message)
        if entry is None:
            return
        self.broadcaster.publish(build_event(EventType.LOG_APPENDED, record.id, entry))

    def _handle_output(self, record: RunRecord, stream: str, text: str) -> None:
        entry = record.append_output(stream, text)
        if entry is None:
            logger.debug("Run %s is %s; dropped %d chars of %s", record.id, record.status.value, len(text), stream)
            return
        self.broadcaster.publish(build_event(EventType.OUTPUT_APPENDED, record.id, entry))
        derived = classify_output(stream, text)
        if derived:
            self.log(record, *derived)

    def _finalize(self, record: RunRecord, exit_code: int, error: Optional[str] = None) -> None:
        if record.is_terminal:
            logger.info("Run %s exited with code %s after being %s", record.id, exit_code, record.status.value)
            return
        self.log(record, "info", f"Process completed with exit code: {exit_code}")
        self.log(record, "info", f"Total execution time: {record.duration_ms()}ms")
        record.finish(exit_code)
        logger.info("Run %s finished: %s (exit code %s, %dms)", record.id, record.status.value, exit_code, record.duration_ms())
        self.broadcaster.publish(build_event(EventType.RUN_COMPLETED, record.id, record.completion_payload(error)))

    def _fail(self, record: RunRecord, message: str) -> None:
        self.log(record, "error", message)
        self._finalize(record, NO_EXIT_CODE, error=message)

    async def _pump(self, record: RunRecord, reader: Optional[asyncio.StreamReader], stream: str) -> None:
        if reader is None:
            return
        while True:
            try:
                chunk = await reader.readline()
            except ValueError:
                # Line longer than read_limit; asyncio discards the buffered part.
                logger.warning("Run %s: dropped an oversized %s line", record.id, stream)
                self.log(
                    record, "warn", f"Output truncated: a {stream} line exceeded {self.read_limit} bytes and was dropped"
                )
                continue
            if not chunk:
                break
            self._handle_output(record, stream, chunk.decode("utf-8", errors="replace"))

    async def _drain(self, record: RunRecord, process: asyncio.subprocess.Process) -> int:
        await asyncio.gather(
            self._pump(record, process.stdout, "stdout"),
            self._pump(record, process.stderr, "stderr"),
        )
        return await process.wait()

    async def execute(
        self,
        record: RunRecord,
        command: str,
        args: Sequence[str] = (),
        environment: Optional[Mapping[str, Optional[str]]] = None,
        working_directory: Optional[str] = None,
    ) -> RunRecord:
        if record.is_terminal:
            logger.info("Run %s is already %s; not spawning", record.id, record.status.value)
            return record

        argv = [*shlex.split(command), *args]
        if not argv:
            self._fail(record, "Process error: empty command")
            return record

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=working_directory,
                env=build_process_env(environment),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.read_limit,
            )
        except (OSError, ValueError) as exc:
            logger.warning("Run %s failed to spawn %s: %s", record.id, argv[0], exc)
            self._fail(record, f"Process error: {exc}")
            return record

        record.process = process
        record.process_id = process.pid
        logger.info("Run %s spawned PID %s in %s", record.id, process.pid, working_directory or os.getcwd())
        self.log(record, "info", f"Process started with PID: {process.pid}")
        if record.is_terminal:
            # Cancelled while the spawn was in flight.
            self.stop(record, process)

        try:
            if self.max_duration is None:
                exit_code = await self._drain(record, process)
            else:
                try:
                    exit_code = await asyncio.wait_for(self._drain(record, process), self.max_duration)
                except asyncio.TimeoutError:
                    self.log(record, "error", f"Run exceeded maximum duration of {self.max_duration:g}s")
                    if process.returncode is None:
                        process.kill()
                    exit_code = await process.wait()
            self._finalize(record, exit_code)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            self._fail(record, "Executor cancelled")
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Run %s: unexpected executor failure", record.id)
            if process.returncode is None:
                process.kill()
            self._fail(record, f"Executor failure: {exc}")
        finally:
            record.process = None
        return record
