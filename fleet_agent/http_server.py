"""Local HTTP endpoint for on-host health checks.

Only ``/health`` and ``/metrics`` carry data; ``/stats`` and ``/containers``
answer 501 until their contract is defined.
"""

from __future__ import annotations

import socket
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import uvicorn
from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse

from fleet_agent.metrics import get_metrics
from fleet_agent.version import __version__, get_commit

if TYPE_CHECKING:
    from fleet_agent.main import FleetAgent


def create_app(agent: FleetAgent) -> FastAPI:
    app = FastAPI(title="Fleet Agent", version=__version__)

    @app.get("/health")
    def health():
        """Basic liveness check."""
        return {
            "status": "ok",
            "agent_id": agent.agent_id,
            "version": __version__,
            "commit": get_commit(),
            "channel_state": agent.channel.state.value,
            "log_followers": agent.logs.active(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/stats")
    def stats():
        return JSONResponse(status_code=501, content={"detail": "not implemented"})

    @app.get("/containers")
    def containers():
        return JSONResponse(status_code=501, content={"detail": "not implemented"})

    @app.get("/metrics")
    def metrics():
        body, content_type = get_metrics()
        return Response(content=body, media_type=content_type)

    return app


def bind_socket(host: str, port: int) -> socket.socket:
    """Bind the listening socket up front so bind failures surface at startup.

    Raises:
        OSError: if the address is unavailable
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


def build_server(app: FastAPI) -> uvicorn.Server:
    config = uvicorn.Config(app, log_config=None, access_log=False, lifespan="off")
    return uvicorn.Server(config)
