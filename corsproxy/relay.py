# corsproxy/relay.py
import logging
from functools import partial
from typing import AsyncIterator

import anyio
import httpx
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from corsproxy.errors import Exchange, Stage, StreamFailure, classify, error_response
from corsproxy.headers import content_encodings, filter_response_headers, is_decodable

logger = logging.getLogger(__name__)


class RelayResponse(Response):
    """Streams an open upstream ``httpx.Response`` to the caller.

    One chunk is read, written, and only then is the next one read, so a slow
    caller pauses the destination instead of filling memory. The first chunk
    is fetched before the status line goes out; a failure up to that point
    can still be reported as a JSON error. After that the status is
    committed and a failure can only end the connection. The caller is
    watched for a hang-up throughout, including the wait for the first chunk.
    """

    def __init__(self, upstream: httpx.Response, exchange: Exchange, chunk_size: int = 64 * 1024) -> None:
        self.upstream = upstream
        self.exchange = exchange
        self.chunk_size = chunk_size
        self.status_code = upstream.status_code
        self.background = None
        self.media_type = None

        encoding = upstream.headers.get("content-encoding")
        # Undecodable encodings travel as-is, declaration included.
        self.passthrough = bool(content_encodings(encoding)) and not is_decodable(encoding)
        pairs = [(k.decode("latin-1"), v.decode("latin-1")) for k, v in upstream.headers.raw]
        self.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1"))
            for name, value in filter_response_headers(pairs, decode=not self.passthrough and bool(encoding))
        ]
        self.headers_sent = False
        self.bytes_sent = 0

    def _iter_body(self) -> AsyncIterator[bytes]:
        if self.passthrough:
            return self.upstream.aiter_raw(self.chunk_size)
        return self.upstream.aiter_bytes(self.chunk_size)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        body = self._iter_body()
        async with anyio.create_task_group() as task_group:

            async def wrap(func) -> None:
                await func()
                task_group.cancel_scope.cancel()

            task_group.start_soon(wrap, partial(self._pump, scope, receive, send, body))
            await wrap(partial(self._listen_for_disconnect, receive))

        if not self.exchange.finished:
            self.exchange.fail(StreamFailure("Caller disconnected before the response completed",
                                             target=str(self.exchange.target)))
            logger.info("Caller disconnected from %s after %d bytes", self.exchange.target, self.bytes_sent)

    async def _pump(self, scope: Scope, receive: Receive, send: Send, body: AsyncIterator[bytes]) -> None:
        try:
            try:
                first = await anext(body, None)
            except Exception as exc:
                error = self.exchange.fail(classify(exc, Stage.RELAYING, self.exchange.target))
                logger.error("Relay of %s failed before any bytes were sent: %s", self.exchange.target, error.message)
                await error_response(error)(scope, receive, send)
                return
            await self._stream(send, first, body)
        finally:
            with anyio.CancelScope(shield=True):
                await self.upstream.aclose()

    async def _stream(self, send: Send, first: bytes | None, body: AsyncIterator[bytes]) -> None:
        try:
            await send({"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers})
            self.headers_sent = True
            if first is not None:
                await self._write(send, first)
                async for chunk in body:
                    await self._write(send, chunk)
            await send({"type": "http.response.body", "body": b"", "more_body": False})
        except Exception as exc:
            # The status line is committed: returning without the final body
            # message makes the server drop the connection, which is the only
            # signal left to the caller.
            error = self.exchange.fail(classify(exc, Stage.RELAYING, self.exchange.target))
            logger.warning(
                "Relay of %s aborted after %d bytes: %s",
                self.exchange.target, self.bytes_sent, error.message,
            )
        else:
            self.exchange.complete(self.bytes_sent)
            logger.info(
                "%s %s -> %d (%d bytes)",
                self.exchange.method, self.exchange.target, self.status_code, self.bytes_sent,
            )

    async def _write(self, send: Send, chunk: bytes) -> None:
        await send({"type": "http.response.body", "body": chunk, "more_body": True})
        self.bytes_sent += len(chunk)

    async def _listen_for_disconnect(self, receive: Receive) -> None:
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
