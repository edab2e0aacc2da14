from __future__ import annotations

import logging
from pathlib import Path

from fastapi import FastAPI

from haven import config
from haven.connections import BackendFactory, backend_for
from haven.routes import router
from haven.storage import Storage

logger = logging.getLogger(__name__)


def create_app(
    data_dir: Path | None = None,
    *,
    backends: BackendFactory = backend_for,
    deadline: float | None = None,
) -> FastAPI:
    resolved = data_dir or config.data_dir()
    storage = Storage(resolved)

    app = FastAPI(title="Haven Stories")
    app.state.storage = storage
    app.state.app_state = storage.load()
    app.state.backends = backends
    app.state.deadline = deadline if deadline is not None else config.turn_deadline()
    app.include_router(router, prefix="/api")
    logger.info("Haven Stories serving data from %s", resolved)
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
