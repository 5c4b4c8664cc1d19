from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ..config import MonitorSettings
from ..core.run_registry import RunRegistry
from ..executor import ProcessRunner
from ..services.run_controller import RunController
from .events import OutputBroadcaster
from .routers import health as r_health
from .routers import projects as r_projects
from .routers import runs as r_runs

logger = logging.getLogger(__name__)


# Custom log filter to suppress noisy status polling
class StatusPollFilter(logging.Filter):
    QUIET_PATHS = ("/api/runs/active", "/healthz")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        return not any(path in message for path in self.QUIET_PATHS)


# Apply filter to uvicorn access logger
logging.getLogger("uvicorn.access").addFilter(StatusPollFilter())


def build_controller(settings: MonitorSettings) -> RunController:
    registry = RunRegistry(limit=settings.history_limit, output_limit=settings.output_limit)
    broadcaster = OutputBroadcaster(registry, queue_size=settings.subscriber_queue_size)
    runner = ProcessRunner(broadcaster, max_duration=settings.max_run_duration)
    return RunController(registry, broadcaster, runner, cancel_grace=settings.cancel_grace)


def create_app(settings: Optional[MonitorSettings] = None) -> FastAPI:
    settings = settings or MonitorSettings.from_env()
    controller = build_controller(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Run monitor ready; projects root: %s", settings.projects_root)
        try:
            yield
        finally:
            await controller.shutdown()

    app = FastAPI(title="Test Run Monitor", version="0.2.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.controller = controller

    # CORS for local React dev server; adjust via env ALLOW_ORIGINS if needed
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.websocket("/ws/runs")
    async def run_event_stream(websocket: WebSocket) -> None:
        await websocket.accept()
        broadcaster = controller.broadcaster
        subscription = broadcaster.subscribe()
        try:
            while True:
                message = await subscription.get()
                if message is None:
                    # Dropped for falling behind; let the client reconnect for a fresh snapshot.
                    await websocket.close(code=1013)
                    break
                await websocket.send_json(message)
        except WebSocketDisconnect:
            logger.debug("Subscriber %s went away", subscription.id)
        except RuntimeError as exc:
            # Send on a socket the transport already considers closed.
            logger.debug("Subscriber %s transport failed: %s", subscription.id, exc)
        finally:
            broadcaster.unsubscribe(subscription)

    app.include_router(r_health.router)
    app.include_router(r_runs.router)
    app.include_router(r_projects.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=app.state.settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("testdash.api.main:app", host=app.state.settings.host, port=app.state.settings.port, reload=False)
