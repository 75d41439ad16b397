from __future__ import annotations

import ipaddress
from threading import Lock, Thread
from urllib.parse import urlsplit

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response

from .db import log_event
from .gateway import PRODUCTION, TEST, NoHealthyBackends, TrafficRouter
from .settings import settings

# Hop-by-hop headers are never forwarded.
_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "host",
    "content-length",
}


def is_internal_target(base_url: str) -> bool:
    """Docker-network names and private/loopback addresses count as internal."""
    host = urlsplit(base_url).hostname or ""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return "." not in host and host != ""
    return ip.is_private or ip.is_loopback


def make_listener_app(router: TrafficRouter, service: str, binding: str, timeout_s: float | None = None) -> FastAPI:
    """HTTP entry point for one binding of a service (production or test listener)."""
    timeout_s = timeout_s if timeout_s is not None else settings.gateway_timeout_s
    app = FastAPI(title=f"{service} {binding} listener")

    @app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"])
    async def forward(path: str, request: Request) -> Response:
        try:
            base = router.select_target(service, binding)
        except NoHealthyBackends as e:
            raise HTTPException(status_code=503, detail=str(e))
        if not settings.allow_external_targets and not is_internal_target(base):
            raise HTTPException(status_code=502, detail="Refusing to forward to an external target.")

        headers = {k: v for k, v in request.headers.items() if k.lower() not in _HOP_HEADERS}
        try:
            async with httpx.AsyncClient(timeout=timeout_s, follow_redirects=False) as client:
                upstream = await client.request(
                    request.method,
                    f"{base}/{path}",
                    params=request.query_params,
                    content=await request.body(),
                    headers=headers,
                )
        except httpx.HTTPError as e:
            raise HTTPException(status_code=502, detail=f"Upstream error: {type(e).__name__}")

        out_headers = {k: v for k, v in upstream.headers.items() if k.lower() not in _HOP_HEADERS | {"content-encoding"}}
        out_headers["x-bgd-binding"] = binding
        return Response(content=upstream.content, status_code=upstream.status_code, headers=out_headers)

    return app


class ListenerPool:
    """Runs one uvicorn server per (service, binding) in background threads."""

    def __init__(self, router: TrafficRouter, host: str = "0.0.0.0"):
        self.router = router
        self.host = host
        self._servers: dict[tuple[str, str], uvicorn.Server] = {}
        self._lock = Lock()

    def ensure(self, service: str, production_port: int, test_port: int) -> None:
        for binding, port in ((PRODUCTION, production_port), (TEST, test_port)):
            with self._lock:
                if (service, binding) in self._servers:
                    continue
                config = uvicorn.Config(
                    make_listener_app(self.router, service, binding), host=self.host, port=port, log_level="warning"
                )
                server = uvicorn.Server(config)
                self._servers[(service, binding)] = server
            Thread(target=server.run, daemon=True).start()
            log_event("INFO", f"{binding} listener for '{service}' on :{port}", service_name=service)

    def shutdown(self) -> None:
        with self._lock:
            for server in self._servers.values():
                server.should_exit = True
            self._servers.clear()
