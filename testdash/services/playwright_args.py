from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

PLAYWRIGHT_COMMAND = "npx playwright"


@dataclass
class PlaywrightInvocation:
    """Arguments and environment overrides for one ``npx playwright test`` run."""

    args: List[str]
    environment: Dict[str, Optional[str]] = field(default_factory=dict)
    command: str = PLAYWRIGHT_COMMAND


def _spec_path(file_name: str) -> str:
    # Playwright treats positional args as regexes; keep forward slashes so they match on Windows too.
    return posixpath.join("tests", file_name.replace("\\", "/"))


def build_playwright_invocation(
    selected_test_files: Sequence[str],
    website_url: Optional[str],
    *,
    username: Optional[str] = None,
    password: Optional[str] = None,
    execution_order: Sequence[str] = (),
    headed: bool = False,
) -> PlaywrightInvocation:
    """Translate a dashboard run request into Playwright CLI arguments.

    ``execution_order`` entries look like ``"login.spec.ts:should log in"``. When given, each
    one becomes the spec path plus a ``--grep`` for the test name, in that order. Otherwise
    every selected file is passed as a whole.

    Headed runs are pinned to a single worker with no timeout so the browser stays visible,
    and the environment is stripped of the usual headless switches.
    """
    if not selected_test_files:
        raise ValueError("Please select at least one test file to run")
    if not website_url:
        raise ValueError("Please provide a website URL")

    args: List[str] = ["test"]
    if headed:
        args.extend(["--headed", "--timeout=0", "--workers=1"])

    if execution_order:
        for entry in execution_order:
            file_name, _, test_name = entry.partition(":")
            args.append(_spec_path(file_name))
            if test_name:
                args.append(f"--grep={test_name}")
    else:
        args.extend(_spec_path(name) for name in selected_test_files)

    environment: Dict[str, Optional[str]] = {
        "LOCAL": website_url,
        "BASE_URL": website_url,
        "USERNAME": username or "",
        "PASSWORD": password or "",
    }
    if headed:
        environment.update(
            {
                "DISPLAY": os.environ.get("DISPLAY", ":0"),
                "PLAYWRIGHT_BROWSERS_PATH": os.environ.get("PLAYWRIGHT_BROWSERS_PATH", "0"),
                "PWDEBUG": "1",
                "PLAYWRIGHT_HEADLESS": "false",
                "CI": None,
                "HEADLESS": None,
            }
        )
    return PlaywrightInvocation(args=args, environment=environment)
