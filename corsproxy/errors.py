# corsproxy/errors.py
import asyncio
import logging
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.requests import ClientDisconnect

from corsproxy.config import settings
from corsproxy.cors import apply_cors

logger = logging.getLogger(__name__)

EXAMPLE_TARGET = "https://api.example.com"


class Stage(str, Enum):
    """Lifecycle of one proxied request."""

    RECEIVED = "received"
    EXTRACTING = "extracting"
    FORWARDING = "forwarding"
    RELAYING = "relaying"
    COMPLETED = "completed"
    FAILED = "failed"


class ProxyError(Exception):
    """Base for every failure that is reported to the caller as a JSON body."""

    kind = "InternalFailure"
    status_code = 500

    def __init__(self, message: str, target: str | None = None, detail: str | None = None):
        super().__init__(message)
        self.message = message
        self.target = target
        self.detail = detail

    def to_dict(self, production: bool = False, base_url: str = "") -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.target is not None:
            body["target"] = self.target
        if self.detail and not production:
            body["detail"] = self.detail
        return body


class InvalidTarget(ProxyError):
    kind = "InvalidTarget"
    status_code = 400

    def __init__(self, received: str, message: str = "URL must start with http:// or https://"):
        super().__init__(message)
        self.received = received

    def to_dict(self, production: bool = False, base_url: str = "") -> dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "example": f"{base_url}/{EXAMPLE_TARGET}",
            "received": self.received,
        }


class TargetUnreachable(ProxyError):
    kind = "TargetUnreachable"


class StreamFailure(ProxyError):
    kind = "StreamFailure"


class RequestTooLarge(ProxyError):
    kind = "RequestTooLarge"
    status_code = 413


class InternalFailure(ProxyError):
    kind = "InternalFailure"

    def __init__(self, message: str = "An unexpected error occurred",
                 target: str | None = None, detail: str | None = None,
                 stack: list[str] | None = None):
        super().__init__(message, target=target, detail=detail)
        self.stack = stack

    @classmethod
    def from_exception(cls, exc: BaseException, target: str | None = None) -> "InternalFailure":
        return cls(
            target=target,
            detail=f"{type(exc).__name__}: {exc}",
            stack=traceback.format_exception(type(exc), exc, exc.__traceback__),
        )

    def to_dict(self, production: bool = False, base_url: str = "") -> dict[str, Any]:
        body = super().to_dict(production, base_url)
        if self.stack and not production:
            body["stack"] = self.stack
        return body


# Failures of the outbound call itself: connect, TLS, timeout, redirects, and
# URLs that httpx only rejects once it tries to open a connection.
_UPSTREAM_ERRORS = (httpx.HTTPError, httpx.InvalidURL, asyncio.TimeoutError, OSError)
_STREAM_ERRORS = (httpx.HTTPError, OSError)


def describe(exc: BaseException) -> str:
    """Human-readable message for an I/O exception; some carry no text."""
    text = str(exc).strip()
    if text:
        return text
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return "Timed out waiting for the destination"
    return type(exc).__name__


def classify(exc: BaseException, stage: Stage, target: Any = None) -> ProxyError:
    """Map an exception raised during ``stage`` to the error the caller sees."""
    if isinstance(exc, ProxyError):
        return exc
    target_str = str(target) if target is not None else None
    if isinstance(exc, ClientDisconnect):
        return StreamFailure("Caller disconnected before the request body was read", target=target_str)
    if stage is Stage.FORWARDING and isinstance(exc, _UPSTREAM_ERRORS):
        return TargetUnreachable(describe(exc), target=target_str, detail=type(exc).__name__)
    if stage is Stage.RELAYING and isinstance(exc, _STREAM_ERRORS):
        return StreamFailure(describe(exc), target=target_str, detail=type(exc).__name__)
    return InternalFailure.from_exception(exc, target=target_str)


_TRANSITIONS = {
    Stage.RECEIVED: {Stage.EXTRACTING},
    Stage.EXTRACTING: {Stage.FORWARDING},
    Stage.FORWARDING: {Stage.RELAYING},
    Stage.RELAYING: {Stage.COMPLETED},
}


@dataclass
class Exchange:
    """State of one request as it moves through the proxy pipeline."""

    method: str
    target: Any = None
    stage: Stage = Stage.RECEIVED
    error: ProxyError | None = None
    bytes_sent: int = 0

    @property
    def finished(self) -> bool:
        return self.stage in (Stage.COMPLETED, Stage.FAILED)

    def advance(self, stage: Stage) -> None:
        if stage not in _TRANSITIONS.get(self.stage, ()):
            raise InternalFailure(
                target=str(self.target) if self.target is not None else None,
                detail=f"Invalid lifecycle transition {self.stage.value} -> {stage.value}",
            )
        self.stage = stage

    def complete(self, bytes_sent: int) -> None:
        self.advance(Stage.COMPLETED)
        self.bytes_sent = bytes_sent

    def fail(self, error: ProxyError) -> ProxyError:
        self.stage = Stage.FAILED
        self.error = error
        return error


def error_response(exc: ProxyError, base_url: str = "") -> JSONResponse:
    return JSONResponse(
        exc.to_dict(production=settings.is_production, base_url=base_url.rstrip("/")),
        status_code=exc.status_code,
    )


async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return error_response(exc, base_url=str(request.base_url))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    # Runs from ServerErrorMiddleware, outside the CORS middleware.
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    response = error_response(InternalFailure.from_exception(exc), base_url=str(request.base_url))
    apply_cors(response.headers)
    return response
