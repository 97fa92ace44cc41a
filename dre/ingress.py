"""Listeners for externally reachable services.

Every external Service is published on its own port from the node-port
range. A small FastAPI app bound to that port forwards each request to the
next Ready endpoint of the service.
"""
from __future__ import annotations

from threading import Lock, Thread

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response

from .db import log_event
from .errors import NoHealthyBackends
from .router import ServiceRouter
from .runtime import Endpoint
from .settings import settings

# Headers that must not be forwarded hop-to-hop.
HOP_HEADERS = {"connection", "keep-alive", "transfer-encoding", "te", "upgrade", "host", "content-length"}

METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


async def forward(
    request: Request, target: Endpoint, path: str, transport: httpx.AsyncBaseTransport | None = None
) -> Response:
    """Relay one request to an endpoint and hand back its response."""
    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_HEADERS}
    try:
        async with httpx.AsyncClient(timeout=settings.gateway_timeout_s, transport=transport) as client:
            upstream = await client.request(
                request.method,
                f"{target.base_url}/{path}",
                params=dict(request.query_params),
                content=await request.body(),
                headers=headers,
            )
    except httpx.HTTPError as e:
        raise HTTPException(status_code=502, detail=f"Upstream {target.instance_id} failed: {type(e).__name__}")
    out_headers = {k: v for k, v in upstream.headers.items() if k.lower() not in HOP_HEADERS | {"content-encoding"}}
    return Response(content=upstream.content, status_code=upstream.status_code, headers=out_headers)


def create_service_app(router: ServiceRouter, service: str, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    app = FastAPI(title=f"service/{service}", docs_url=None, redoc_url=None, openapi_url=None)

    @app.api_route("/{path:path}", methods=METHODS)
    async def relay(path: str, request: Request) -> Response:
        try:
            target = router.select_backend(service)
        except NoHealthyBackends as e:
            raise HTTPException(status_code=503, detail=str(e))
        return await forward(request, target, path, transport)

    return app


class ExternalIngress:
    """Runs one uvicorn server per published external port."""

    def __init__(self, router: ServiceRouter, host: str | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.router = router
        self.host = host or settings.ingress_host
        self.transport = transport
        self._servers: dict[str, tuple[int, uvicorn.Server, Thread]] = {}
        self._lock = Lock()

    def sync(self, published: dict[str, int]) -> list[str]:
        """Start listeners for newly published ports and stop withdrawn ones."""
        actions = []
        with self._lock:
            for name, (port, server, _) in list(self._servers.items()):
                if published.get(name) != port:
                    server.should_exit = True
                    del self._servers[name]
                    actions.append(f"close service/{name}:{port}")
            for name, port in published.items():
                if name in self._servers:
                    continue
                self._servers[name] = self._serve(name, port)
                actions.append(f"listen service/{name}:{port}")
        return actions

    def _serve(self, name: str, port: int) -> tuple[int, uvicorn.Server, Thread]:
        config = uvicorn.Config(
            create_service_app(self.router, name, self.transport), host=self.host, port=port, log_level="warning"
        )
        server = uvicorn.Server(config)

        def run() -> None:
            try:
                server.run()
            except SystemExit:
                # uvicorn exits when it cannot bind the port.
                pass
            if not server.started:
                log_event("ERROR", f"Could not listen on port {port}", resource=f"service/{name}")

        thr = Thread(target=run, daemon=True, name=f"ingress-{name}")
        thr.start()
        log_event("INFO", f"Listening on {self.host}:{port}", resource=f"service/{name}")
        return port, server, thr

    def server(self, name: str) -> uvicorn.Server | None:
        with self._lock:
            entry = self._servers.get(name)
            return entry[1] if entry else None

    def stop(self) -> None:
        with self._lock:
            for _, server, _ in self._servers.values():
                server.should_exit = True
            self._servers.clear()
