"""
FastAPI-powered read-only status surface.

Serves JSON views of the aggregated status, the device rows, stream URLs,
recent motion events, recent log lines and a redacted copy of the device
document. Requests forwarded through an ingress proxy carry their public
prefix in ``X-Ingress-Path``; it is stripped before routing.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import uvicorn
from fastapi import FastAPI, Query

from ...core.aggregator import StatusAggregator
from ...core.contracts import BaseModule, ModuleConfig
from ...core.history import LOG_CAPACITY, MOTION_CAPACITY, MessageLog, MotionEventLog

logger = logging.getLogger(__name__)

INGRESS_HEADER = b"x-ingress-path"
DEFAULT_LOG_LIMIT = 100


class IngressPathMiddleware:
    """Strip the ``X-Ingress-Path`` prefix from the request path."""

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Any, send: Any) -> None:
        if scope["type"] == "http":
            prefix = ""
            for key, value in scope.get("headers", ()):
                if key.lower() == INGRESS_HEADER:
                    prefix = value.decode("latin-1").rstrip("/")
                    break
            path = scope.get("path", "")
            if prefix and path.startswith(prefix):
                stripped = path[len(prefix) :] or "/"
                if stripped.startswith("/"):
                    scope = dict(scope)
                    scope["path"] = stripped
                    scope["raw_path"] = stripped.encode("utf-8")
        await self.app(scope, receive, send)


class StatusApi(BaseModule):
    """Expose the status snapshot and the bounded histories over HTTP."""

    name = "modules.dashboard.status_api"

    def __init__(
        self,
        *,
        aggregator: StatusAggregator,
        motion_log: MotionEventLog,
        message_log: MessageLog,
        config_factory: Callable[..., uvicorn.Config] | None = None,
        server_factory: Callable[[uvicorn.Config], uvicorn.Server] | None = None,
    ) -> None:
        super().__init__()
        self._aggregator = aggregator
        self._motion_log = motion_log
        self._message_log = message_log
        self._host = "0.0.0.0"  # nosec B104 - addon ingress needs all interfaces
        self._port = 8099
        self._serve_api = True
        self._motion_limit = MOTION_CAPACITY
        self._log_limit = LOG_CAPACITY
        self._app: FastAPI | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None
        self._config_factory = config_factory or uvicorn.Config
        self._server_factory = server_factory or uvicorn.Server

    async def configure(self, config: ModuleConfig) -> None:
        await super().configure(config)
        options = config.options
        self._host = options.get("host", self._host)
        self._port = int(options.get("port", self._port))
        self._serve_api = bool(options.get("serve_api", self._serve_api))
        self._motion_limit = int(options.get("motion_limit", self._motion_limit))
        self._log_limit = int(options.get("log_limit", self._log_limit))

    async def start(self) -> None:
        self._app = self._build_app()
        if not self._serve_api:
            logger.info("StatusApi running in embedded-only mode (no HTTP server).")
            return
        config = self._config_factory(
            app=self._app,
            host=self._host,
            port=self._port,
            loop="asyncio",
            lifespan="on",
            log_level="warning",
            # Access logs would be mirrored into the message log on every poll.
            access_log=False,
        )
        self._server = self._server_factory(config)
        self._server_task = asyncio.create_task(self._server.serve(), name=f"{self.name}-server")
        logger.info("StatusApi listening on http://%s:%s", self._host, self._port)

    async def stop(self) -> None:
        if self._server_task:
            self._server.should_exit = True  # type: ignore[union-attr]
            await asyncio.wait([self._server_task], timeout=1)
            self._server_task = None
        self._server = None

    @property
    def app(self) -> FastAPI:
        if self._app is None:
            raise RuntimeError("StatusApi has not been started or configured yet.")
        return self._app

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="bridgewatch Status API", version="0.1.0")
        app.add_middleware(IngressPathMiddleware)

        @app.get("/health")
        async def health() -> dict[str, str]:
            return {"status": "ok"}

        @app.get("/api/status")
        async def status() -> dict[str, Any]:
            snapshot = await self._aggregator.snapshot()
            document = self._aggregator.config_store.load()
            services: dict[str, Any] = {"mqtt": snapshot.broker.model_dump(mode="json")}
            for name, service in snapshot.services.items():
                services[name] = service.model_dump(mode="json", exclude_none=True)
            return {
                "host_ip": snapshot.host_ip,
                "services": services,
                "onvif_credentials": {
                    "username": document.onvif_username,
                    "password": document.onvif_password,
                },
                "timestamp": snapshot.timestamp.isoformat(),
            }

        @app.get("/api/cameras")
        async def cameras() -> list[dict[str, Any]]:
            snapshot = await self._aggregator.snapshot()
            return [row.model_dump(mode="json") for row in snapshot.devices]

        @app.get("/api/streams")
        async def streams() -> list[dict[str, Any]]:
            return [item.model_dump(mode="json") for item in self._aggregator.stream_endpoints()]

        @app.get("/api/motion")
        async def motion() -> list[dict[str, Any]]:
            events = self._motion_log.recent_entries(self._motion_limit)
            return [event.model_dump(mode="json", exclude={"schema_version"}) for event in events]

        @app.get("/api/logs")
        async def logs(limit: int = Query(default=DEFAULT_LOG_LIMIT)) -> list[dict[str, Any]]:
            bounded = min(max(limit, 0), self._log_limit)
            return [line.model_dump(mode="json") for line in self._message_log.recent_entries(bounded)]

        @app.get("/api/config")
        async def config() -> dict[str, Any]:
            return self._aggregator.config_view()

        return app


__all__ = ["IngressPathMiddleware", "StatusApi"]
