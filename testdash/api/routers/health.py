from __future__ import annotations

import os

from fastapi import APIRouter, Depends

from ..dependencies import get_controller
from ...core.run_record import utc_now
from ...services.run_controller import RunController


router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthcheck(controller: RunController = Depends(get_controller)):
    return {
        "status": "ok",
        "service": "testdash",
        "version": os.getenv("APP_VERSION", "dev"),
        "timestamp": utc_now().isoformat(),
        "activeConnections": controller.broadcaster.subscriber_count,
        "runCount": len(controller.registry),
        "activeRuns": len(controller.list_active()),
    }
