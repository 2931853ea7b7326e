"""Readiness HTTP endpoint for the agent's own Kubernetes probes."""

from __future__ import annotations

import logging
from threading import Thread
from typing import Callable

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Response

from consul_mesh.client import MeshRegistry
from healthsync.controller import Controller, ControllerState

LOG = logging.getLogger(__name__)


def create_app(controller: Controller, registry: Callable[[], MeshRegistry]) -> FastAPI:
    """Build the app serving ``GET /health/ready``.

    The agent is ready while the controller is running and the Consul agent
    can reach a server leader.
    """

    app = FastAPI(title="healthsync agent")

    @app.get("/health/ready", status_code=204)
    def ready() -> Response:
        if controller.state is not ControllerState.RUNNING:
            raise HTTPException(status_code=500, detail="controller is not running")
        try:
            leader = registry().leader()
        except (httpx.HTTPError, ValueError) as exc:
            LOG.error("[GET /health/ready] error getting leader status: %s", exc)
            raise HTTPException(status_code=500, detail="Consul is unreachable")
        if not leader:
            raise HTTPException(status_code=500, detail="Consul has no leader")
        return Response(status_code=204)

    return app


class ReadinessServer(Thread):
    """Serve the readiness app with uvicorn from a daemon thread."""

    def __init__(self, app: FastAPI, host: str, port: int) -> None:
        super().__init__(name="healthsync-readiness", daemon=True)
        self._server = uvicorn.Server(
            uvicorn.Config(app, host=host, port=port, log_level="warning", access_log=False)
        )
        self._address = f"{host}:{port}"

    def run(self) -> None:
        LOG.info("listening on %s", self._address)
        try:
            self._server.run()
        except Exception:
            LOG.exception("readiness server failed")

    def stop(self) -> None:
        self._server.should_exit = True
        self.join(timeout=5.0)
