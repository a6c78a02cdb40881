"""TCP port probing and allocation."""

from __future__ import annotations

import asyncio
from collections.abc import Collection
import contextlib
import socket
import time

from devloop.exceptions import (
    NoFreePortError,
    PortUnavailableError,
    ServerNotListeningError,
)
from devloop.log import get_logger


logger = get_logger(__name__)

DEFAULT_APP_PORT = 3000
DEFAULT_DEV_PORT = 10000
# Chrome looks for debugging targets on 9222 and 9229 by default
DEFAULT_DEVTOOLS_PORT = 9222
MAX_ATTEMPTS = 100


def _try_bind(port: int, host: str) -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, port))
    except OSError:
        return False
    else:
        return True
    finally:
        sock.close()


async def is_available(port: int, host: str = "127.0.0.1") -> bool:
    """Check whether a port can be bound by binding it and releasing it again."""
    return await asyncio.to_thread(_try_bind, port, host)


async def find_available(
    start: int,
    *,
    exclude: Collection[int] = (),
    max_attempts: int = MAX_ATTEMPTS,
    host: str = "127.0.0.1",
) -> int:
    """Find the first free port at or above `start`.

    Args:
        start: First port to probe
        exclude: Ports already handed out, skipped without probing
        max_attempts: Number of ports probed before giving up
        host: Interface to probe

    Returns:
        A port that was free at probe time

    Raises:
        NoFreePortError: If none of the probed ports is free
    """
    for port in range(start, min(start + max_attempts, 65536)):
        if port in exclude:
            continue
        if await is_available(port, host):
            return port
        logger.debug("Port busy", port=port)
    raise NoFreePortError(start, max_attempts)


async def wait_for_port(
    port: int,
    *,
    host: str = "127.0.0.1",
    timeout: float = 5.0,
    interval: float = 0.1,
) -> None:
    """Poll until something accepts TCP connections on the port.

    Raises:
        ServerNotListeningError: If the port did not accept a connection in time
    """
    deadline = time.monotonic() + timeout
    while True:
        try:
            _reader, writer = await asyncio.open_connection(host, port)
        except OSError:
            if time.monotonic() >= deadline:
                raise ServerNotListeningError(port, timeout) from None
            await asyncio.sleep(interval)
        else:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()
            return


async def ensure_available(port: int, host: str = "127.0.0.1") -> int:
    """Return the port if it is free.

    Raises:
        PortUnavailableError: If something is already bound to it
    """
    if not await is_available(port, host):
        raise PortUnavailableError(port)
    return port
