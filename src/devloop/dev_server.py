"""Server-Sent-Events channel pushing reload notifications to browsers."""

from __future__ import annotations

import asyncio
import contextlib
import json
import socket
from typing import TYPE_CHECKING, Any, Final

from sse_starlette.sse import EventSourceResponse
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route
import uvicorn

from devloop.log import get_logger


if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.requests import Request


logger = get_logger(__name__)

INTERVAL = 10.0
_CLOSE: Final = object()

RELOAD: Final = {"action": "reload"}
COMPLETED: Final = {"status": "completed"}


class DevServer:
    """Long-lived push channel to connected browser clients.

    Every client holds one event stream on `path`. `send()` broadcasts a JSON
    payload to all of them and an idle `null` payload goes out every
    `interval` seconds so proxies neither buffer nor time out the stream.
    """

    def __init__(
        self,
        port: int,
        *,
        interval: float = INTERVAL,
        path: str = "/__devloop__",
        host: str = "127.0.0.1",
    ) -> None:
        self.port = port
        self.host = host
        self.path = path
        self.interval = interval
        self.clients: set[asyncio.Queue[Any]] = set()
        self.app = self._create_app()
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task[None] | None = None
        self._keepalive_task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None
        self._closed = False

    def _create_app(self) -> Starlette:
        middleware = [
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET"],
                allow_headers=["Cache-Control"],
            )
        ]
        return Starlette(
            routes=[Route(self.path, endpoint=self._handle_events, methods=["GET"])],
            middleware=middleware,
        )

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}{self.path}"

    async def start(self) -> None:
        """Bind the port and start serving."""
        if self._server is not None or self._closed:
            return
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise
        self._socket = sock

        config = uvicorn.Config(
            self.app,
            log_level="warning",
            lifespan="off",
            timeout_graceful_shutdown=1,
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve([sock]))
        while not self._server.started:
            if self._server_task.done():
                # surfaces the startup error
                await self._server_task
                break
            await asyncio.sleep(0.01)
        if self._closed:
            return
        self._keepalive_task = asyncio.create_task(self._keepalive())
        logger.info("Live-reload channel listening", url=self.url)

    async def _handle_events(self, request: Request) -> EventSourceResponse:
        return EventSourceResponse(
            self._stream(),
            headers={
                "Cache-Control": "no-cache, no-transform",
                "X-Accel-Buffering": "no",
            },
        )

    async def _stream(self) -> AsyncGenerator[dict[str, str]]:
        queue: asyncio.Queue[Any] = asyncio.Queue()
        self.clients.add(queue)
        logger.debug("Client connected", clients=len(self.clients))
        try:
            while True:
                message = await queue.get()
                if message is _CLOSE:
                    return
                yield {"data": message}
        finally:
            self.clients.discard(queue)
            logger.debug("Client disconnected", clients=len(self.clients))

    def send(self, data: Any) -> None:
        """Broadcast a JSON-serializable payload to all connected clients."""
        message = json.dumps(data)
        for queue in list(self.clients):
            queue.put_nowait(message)

    async def _keepalive(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.send(None)

    async def close(self) -> None:
        """Stop the keep-alive, end all client streams and shut the server down."""
        if self._closed:
            return
        self._closed = True
        if self._keepalive_task is not None:
            self._keepalive_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._keepalive_task
        for queue in list(self.clients):
            queue.put_nowait(_CLOSE)
        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await asyncio.wait_for(self._server_task, timeout=5.0)
            except TimeoutError:
                logger.debug("Live-reload channel did not stop in time")
            except Exception:  # noqa: BLE001
                logger.debug("Live-reload channel shutdown failed", exc_info=True)
        if self._socket is not None:
            with contextlib.suppress(OSError):
                self._socket.close()
        logger.debug("Live-reload channel closed", port=self.port)

    async def __aenter__(self) -> DevServer:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
