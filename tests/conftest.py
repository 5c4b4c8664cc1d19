"""Shared fixtures for run monitor tests."""

import shlex
import sys
from typing import Any, Dict, List

import pytest

from testdash.api.events import OutputBroadcaster, Subscription
from testdash.core.run_registry import RunRegistry
from testdash.executor import ProcessRunner
from testdash.services.run_controller import RunController

PYTHON = shlex.quote(sys.executable)


def drain(subscription: Subscription) -> List[Dict[str, Any]]:
    """Pull everything currently queued on a subscription."""
    events = []
    while subscription.pending():
        events.append(subscription.get_nowait())
    return events


def event_types(events: List[Dict[str, Any]]) -> List[str]:
    return [event["type"] for event in events if event is not None]


@pytest.fixture
def registry() -> RunRegistry:
    return RunRegistry(limit=10, output_limit=100)


@pytest.fixture
def broadcaster(registry: RunRegistry) -> OutputBroadcaster:
    return OutputBroadcaster(registry, queue_size=500)


@pytest.fixture
def runner(broadcaster: OutputBroadcaster) -> ProcessRunner:
    return ProcessRunner(broadcaster)


@pytest.fixture
def controller(registry, broadcaster, runner) -> RunController:
    return RunController(registry, broadcaster, runner, cancel_grace=1.0)
