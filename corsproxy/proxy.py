# corsproxy/proxy.py
import asyncio
import logging

import httpx
from fastapi import Request
from fastapi.responses import Response
from starlette.requests import ClientDisconnect

from corsproxy import router
from corsproxy.config import settings
from corsproxy.errors import (
    Exchange,
    InternalFailure,
    RequestTooLarge,
    Stage,
    TargetUnreachable,
    classify,
    describe,
)
from corsproxy.headers import sanitize_request_headers
from corsproxy.relay import RelayResponse

logger = logging.getLogger(__name__)

_BODYLESS_METHODS = {"GET", "HEAD"}


def _raw_path(request: Request) -> str:
    """Request path exactly as the caller sent it, percent-encoding intact."""
    raw = request.scope.get("raw_path")
    if not raw:
        return request.url.path
    return raw.decode("latin-1").split("?", 1)[0]


async def _read_body(request: Request, max_body: int) -> bytes:
    # Enforce body size limit before reading into memory.
    content_length = request.headers.get("content-length", "")
    if content_length.isdigit() and int(content_length) > max_body:
        raise RequestTooLarge(f"Request body exceeds {max_body} bytes")

    body = await request.body()
    if len(body) > max_body:
        raise RequestTooLarge(f"Request body exceeds {max_body} bytes")
    return body


async def send_upstream(
    client: httpx.AsyncClient,
    method: str,
    target: router.TargetURL,
    headers: dict[str, str],
    body: bytes | None,
    timeout: float,
) -> httpx.Response:
    """Issue the outbound request and return once the final response's headers arrive.

    The body is left unread (``stream=True``). ``timeout`` covers connecting,
    redirects and waiting for headers; body reads are not time-limited.
    """
    upstream_request = client.build_request(
        method=method,
        url=target.url,
        headers=headers,
        content=body,
        timeout=httpx.Timeout(timeout, read=None),
    )
    try:
        return await asyncio.wait_for(
            client.send(upstream_request, stream=True, follow_redirects=True),
            timeout,
        )
    except asyncio.TimeoutError as exc:
        raise TargetUnreachable(
            f"Destination did not respond within {timeout:g}s",
            target=str(target),
            detail=describe(exc),
        ) from exc


async def forward(request: Request) -> Response:
    exchange = Exchange(method=request.method)
    try:
        exchange.advance(Stage.EXTRACTING)
        target = router.extract_target(_raw_path(request), request.url.query)
        exchange.target = target

        body = None
        if request.method not in _BODYLESS_METHODS:
            body = await _read_body(request, settings.max_body_bytes)
        headers = sanitize_request_headers(request.headers.items(), target)

        exchange.advance(Stage.FORWARDING)
        upstream = await send_upstream(
            request.app.state.http_client,
            request.method,
            target,
            headers,
            body,
            settings.proxy_timeout,
        )
        exchange.advance(Stage.RELAYING)
    except Exception as exc:
        error = exchange.fail(classify(exc, exchange.stage, exchange.target))
        if isinstance(exc, ClientDisconnect):
            logger.info("Caller disconnected during %s %s", request.method, request.url.path)
        elif error.status_code < 500:
            logger.info("Rejected %s %s: %s", request.method, request.url.path, error.message)
        else:
            logger.error(
                "%s %s failed (%s): %s",
                request.method, exchange.target, error.kind, error.message,
                exc_info=isinstance(error, InternalFailure),
            )
        if error is exc:
            raise
        raise error from exc

    if upstream.status_code >= 500:
        logger.warning("Upstream error %s for %s %s", upstream.status_code, request.method, target)

    return RelayResponse(upstream, exchange, chunk_size=settings.chunk_size)
