# corsproxy/server.py
import asyncio
import logging
import signal
import sys

import uvicorn

from corsproxy.config import Settings, settings
from corsproxy.main import app

logger = logging.getLogger(__name__)


class _GracefulServer(uvicorn.Server):
    def handle_exit(self, sig: int, frame) -> None:
        logger.info("%s received, shutting down gracefully", signal.Signals(sig).name)
        super().handle_exit(sig, frame)


class ProxyServer:
    """The listening socket and its shutdown handling.

    ``serve()`` binds, accepts connections until ``stop()`` is called or
    SIGINT/SIGTERM arrives, then stops accepting and waits for in-flight
    relays (up to ``graceful_shutdown_timeout`` seconds when set).
    """

    def __init__(self, asgi_app=app, cfg: Settings = settings) -> None:
        self.settings = cfg
        self.config = uvicorn.Config(
            asgi_app,
            host=cfg.host,
            port=cfg.port,
            log_level=cfg.log_level.lower(),
            access_log=True,
            lifespan="on",
            timeout_graceful_shutdown=cfg.graceful_shutdown_timeout,
        )
        self._server = _GracefulServer(self.config)

    @property
    def started(self) -> bool:
        return self._server.started

    @property
    def stopping(self) -> bool:
        return self._server.should_exit

    async def serve(self) -> None:
        logger.info("CORS Proxy Server running on %s:%d", self.settings.host, self.settings.port)
        await self._server.serve()
        logger.info("Server stopped")

    def stop(self) -> None:
        """Stop accepting new connections; in-flight relays drain first."""
        self._server.should_exit = True

    def run(self) -> None:
        asyncio.run(self.serve())


def main() -> None:
    server = ProxyServer()
    try:
        server.run()
    except Exception as e:
        logger.error("Server error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
