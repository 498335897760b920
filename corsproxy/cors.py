# corsproxy/cors.py
from starlette.datastructures import MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

ALLOWED_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD")

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": ", ".join(ALLOWED_METHODS),
    "access-control-allow-headers": "*",
}


def apply_cors(headers: MutableHeaders) -> None:
    """Set the CORS headers, replacing whatever the destination sent."""
    for name, value in CORS_HEADERS.items():
        headers[name] = value


class CORSHeadersMiddleware:
    """Stamp CORS headers on every response and answer preflights directly.

    Starlette's CORSMiddleware only annotates requests that carry an Origin
    header; a browser-facing proxy needs the headers unconditionally, error
    responses included.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        if scope["method"] == "OPTIONS":
            response = Response(status_code=200, headers=CORS_HEADERS)
            await response(scope, receive, send)
            return

        async def send_with_cors(message: Message) -> None:
            if message["type"] == "http.response.start":
                apply_cors(MutableHeaders(scope=message))
            await send(message)

        await self.app(scope, receive, send_with_cors)
