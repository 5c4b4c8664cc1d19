"""Public operation surface for starting, cancelling and querying runs."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

from ..api.events import EventType, OutputBroadcaster, build_event
from ..core.run_record import RunRecord, RunStatus
from ..core.run_registry import RunRegistry
from ..executor import ProcessRunner, mask_environment

logger = logging.getLogger(__name__)


class RunControlError(Exception):
    """Raised when a run operation references a run in the wrong state."""


class RunNotFoundError(RunControlError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f'Run "{run_id}" does not exist')
        self.run_id = run_id


class RunNotRunningError(RunControlError):
    def __init__(self, run_id: str, status: RunStatus) -> None:
        super().__init__(f'Run "{run_id}" is not currently running (status: {status.value})')
        self.run_id = run_id
        self.status = status


class RunController:
    """Orchestrates the registry, the broadcaster and the process runner.

    Runs are independent: nothing here serializes or queues them, so a caller that wants
    at most one run per subject has to enforce that itself.
    """

    def __init__(
        self,
        registry: RunRegistry,
        broadcaster: OutputBroadcaster,
        runner: ProcessRunner,
        *,
        cancel_grace: Optional[float] = 5.0,
    ) -> None:
        self.registry = registry
        self.broadcaster = broadcaster
        self.runner = runner
        self.runner.cancel_grace = cancel_grace
        self._tasks: Dict[str, asyncio.Task] = {}
        self._in_flight: Dict[str, RunRecord] = {}

    @property
    def cancel_grace(self) -> Optional[float]:
        return self.runner.cancel_grace

    @cancel_grace.setter
    def cancel_grace(self, value: Optional[float]) -> None:
        self.runner.cancel_grace = value

    def start_run(
        self,
        subject_name: str,
        command: str,
        args: Sequence[str] = (),
        environment: Optional[Mapping[str, Optional[str]]] = None,
        context: Optional[str] = None,
        working_directory: Optional[str] = None,
    ) -> RunRecord:
        """Create a running record and launch its process in the background.

        Must be called from inside the event loop. Never fails because of the external
        command; a spawn failure shows up later as a failed record.
        """
        loop = asyncio.get_running_loop()
        record = self.registry.create(subject_name, command, args, context)
        self.broadcaster.publish(build_event(EventType.RUN_STARTED, record.id, record.to_dict()))

        env_prefix = mask_environment(environment)
        command_line = " ".join(part for part in (env_prefix, command, *args) if part)
        self.runner.log(record, "info", f"Starting test execution for project: {subject_name}")
        self.runner.log(record, "info", f"Command: {command_line}")
        if context:
            self.runner.log(record, "info", f"Environment: {context}")
        if working_directory:
            self.runner.log(record, "info", f"Working directory: {working_directory}")

        task = loop.create_task(
            self.runner.execute(record, command, args, environment, working_directory),
            name=f"run:{record.id}",
        )
        self._tasks[record.id] = task
        self._in_flight[record.id] = record
        task.add_done_callback(lambda _t, run_id=record.id: self._forget(run_id))
        logger.info("Started run %s for %s: %s", record.id, subject_name, command_line)
        return record

    def _forget(self, run_id: str) -> None:
        self._tasks.pop(run_id, None)
        self._in_flight.pop(run_id, None)

    def query(self, run_id: str) -> RunRecord:
        record = self.registry.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        return record

    def list_active(self) -> List[RunRecord]:
        return self.registry.list_active()

    def history(self, limit: int = 50) -> List[RunRecord]:
        return self.registry.history(limit)

    def search(
        self,
        query: Optional[str] = None,
        *,
        status: Optional[str] = None,
        subject_name: Optional[str] = None,
        started_after: Optional[datetime] = None,
        started_before: Optional[datetime] = None,
    ) -> List[RunRecord]:
        return self.registry.search(
            query,
            status=status,
            subject_name=subject_name,
            started_after=started_after,
            started_before=started_before,
        )

    def clear(self, older_than: Optional[datetime] = None) -> int:
        if older_than is None:
            cleared = self.registry.clear()
        else:
            cleared = self.registry.clear_older_than(older_than)
        logger.info("Cleared %d runs from history", cleared)
        return cleared

    def cancel(self, run_id: str) -> RunRecord:
        """Mark a running run cancelled and ask its process to stop.

        Bookkeeping flips immediately and ``run_cancelled`` is published. The process gets
        SIGTERM, then SIGKILL once ``cancel_grace`` seconds pass. Tools may ignore the
        first signal, so output can keep arriving for a while. It is dropped because the
        record is already terminal.
        """
        record = self.query(run_id)
        if record.status is not RunStatus.RUNNING:
            raise RunNotRunningError(run_id, record.status)
        self.runner.log(record, "warn", "Command cancelled by user")
        record.mark_cancelled()
        self.broadcaster.publish(build_event(EventType.RUN_CANCELLED, record.id, record.cancellation_payload()))
        logger.info("Cancelled run %s", record.id)
        self._terminate(record)
        return record

    def _terminate(self, record: RunRecord, force: bool = False) -> None:
        # No handle yet while the spawn is in flight; the runner stops it once spawned.
        if record.process is not None:
            self.runner.stop(record, record.process, force=force)

    async def wait(self, run_id: str) -> RunRecord:
        """Wait for the background execution of ``run_id`` to finish."""
        record = self.query(run_id)
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return record

    async def shutdown(self) -> None:
        """Cancel every running run, kill its process and wait for the executors to settle."""
        # Includes runs already evicted from the registry whose processes are still alive.
        for record in list(self._in_flight.values()):
            if record.is_terminal:
                self._terminate(record, force=True)
                continue
            self.runner.log(record, "warn", "Command cancelled: server shutting down")
            record.mark_cancelled()
            self.broadcaster.publish(build_event(EventType.RUN_CANCELLED, record.id, record.cancellation_payload()))
            self._terminate(record, force=True)
        pending = [*self._tasks.values(), *self.runner.reapers]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
