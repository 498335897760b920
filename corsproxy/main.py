# corsproxy/main.py
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import Response
from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from corsproxy import __version__, proxy
from corsproxy.config import settings
from corsproxy.cors import ALLOWED_METHODS, CORSHeadersMiddleware
from corsproxy.errors import ProxyError, proxy_error_handler, unhandled_error_handler

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        verify=settings.verify_tls,
        max_redirects=settings.max_redirects,
        timeout=httpx.Timeout(settings.proxy_timeout, read=None),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # One pooled client for every proxied request.
    app.state.http_client = create_http_client()
    logger.info("HTTP client initialised (environment=%s)", settings.environment)

    yield

    await app.state.http_client.aclose()
    logger.info("HTTP client closed")


class RequestIdMiddleware:
    """Propagate or generate an X-Request-ID header for end-to-end tracing."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        req_id = Headers(scope=scope).get("x-request-id") or str(uuid.uuid4())
        scope.setdefault("state", {})["request_id"] = req_id

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)["x-request-id"] = req_id
            await send(message)

        await self.app(scope, receive, send_with_id)


app = FastAPI(title="CORS Proxy Server", version=__version__, lifespan=lifespan)
app.state.started_at = time.monotonic()
app.add_exception_handler(ProxyError, proxy_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)
app.add_middleware(RequestIdMiddleware)
# Added last so it is outermost: error responses get the headers too.
app.add_middleware(CORSHeadersMiddleware)


@app.get("/")
async def usage(request: Request) -> dict[str, Any]:
    base = str(request.base_url).rstrip("/")
    return {
        "message": "CORS Proxy Server",
        "usage": {
            "description": "Add your target URL after the base URL",
            "examples": [
                f"{base}/https://api.github.com/users/octocat",
                f"{base}/https://httpbin.org/json",
                f"{base}/https://jsonplaceholder.typicode.com/posts/1",
            ],
            "methods": f"Supports {', '.join(ALLOWED_METHODS)}",
            "cors": "CORS headers automatically added to all responses",
        },
    }


@app.api_route("/health", methods=["GET", "HEAD"])
async def health(request: Request) -> dict[str, Any]:
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": time.monotonic() - request.app.state.started_at,
    }


@app.api_route("/{target_url:path}", methods=list(ALLOWED_METHODS))
async def catchall(target_url: str, request: Request) -> Response:
    return await proxy.forward(request)
