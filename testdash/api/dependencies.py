from __future__ import annotations

from fastapi import Request

from ..config import MonitorSettings
from ..services.run_controller import RunController


def get_controller(request: Request) -> RunController:
    return request.app.state.controller


def get_settings(request: Request) -> MonitorSettings:
    return request.app.state.settings
