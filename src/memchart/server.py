"""HTTP export surface.

Routes:
- GET /        JSON snapshot document
- GET /csv     CSV rows with header
- GET /healthz liveness probe

Handlers are plain ``def`` functions, so Starlette runs them in its
threadpool. They only ever read a copy of the table.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterator

import structlog
import uvicorn
from fastapi import FastAPI
from fastapi.responses import Response

from memchart.export import render_csv, render_json
from memchart.table import SnapshotTable

log = structlog.get_logger()


def create_app(table: SnapshotTable) -> FastAPI:
    """Build the FastAPI application serving views of table."""
    app = FastAPI(title="memchart", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/")
    def snapshot_json() -> Response:
        """Current snapshot as JSON."""
        return Response(render_json(table.snapshot_view()) + "\n", media_type="application/json")

    @app.get("/csv")
    def snapshot_csv() -> Response:
        """Current snapshot as CSV."""
        return Response(render_csv(table.snapshot_view()), media_type="text/csv")

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "ok", "processes": len(table)}

    return app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the daemon."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class ExportServer:
    """uvicorn server running inside the daemon's event loop."""

    def __init__(self, table: SnapshotTable, host: str = "0.0.0.0", port: int = 7777) -> None:
        self.host = host
        self.port = port
        self.app = create_app(table)
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start serving in a background task and wait until bound.

        Raises:
            RuntimeError: The server exited during startup (e.g. port in use).
        """
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_config=None,
            access_log=False,
            lifespan="off",
        )
        self._server = _EmbeddedServer(config)
        self._task = asyncio.create_task(self._serve(self._server))

        while not self._server.started:
            if self._task.done():
                self._task = None
                raise RuntimeError(f"HTTP server failed to start on {self.host}:{self.port}")
            await asyncio.sleep(0.05)

        log.info("http_server_started", host=self.host, port=self.port)

    async def _serve(self, server: uvicorn.Server) -> None:
        # uvicorn calls sys.exit() when it cannot bind
        try:
            await server.serve()
        except SystemExit as e:
            log.error("http_server_exited", host=self.host, port=self.port, code=e.code)

    async def stop(self) -> None:
        """Ask uvicorn to exit and wait for it."""
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._server = None
        self._task = None
        log.info("http_server_stopped")
