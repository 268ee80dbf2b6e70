"""
aiohttp session factory for routeguard's outbound notifications.

The webhook event sink is the only HTTP caller. Its deliveries are best
effort, so sessions get short timeouts and a routeguard User-Agent.

Usage:
    async with create_client_session(timeout=EVENT_TIMEOUT) as session:
        async with session.post(url, json=payload) as resp:
            resp.raise_for_status()
"""

from __future__ import annotations

import aiohttp
from aiohttp import ClientTimeout

from routeguard.__version__ import __version__

__all__ = [
    "DEFAULT_TIMEOUT",
    "EVENT_TIMEOUT",
    "USER_AGENT",
    "create_client_session",
]

DEFAULT_TIMEOUT = ClientTimeout(total=30, connect=10, sock_read=20)

# A slow receiver must not hold up routing
EVENT_TIMEOUT = ClientTimeout(total=5, connect=2, sock_read=3)

USER_AGENT = f"routeguard/{__version__}"


def create_client_session(
    timeout: ClientTimeout | None = None,
    headers: dict[str, str] | None = None,
    **kwargs,
) -> aiohttp.ClientSession:
    """Create a ClientSession with a bounded timeout.

    Args:
        timeout: Uses DEFAULT_TIMEOUT if not specified.
        headers: Merged over the default User-Agent header.
        **kwargs: Passed through to ClientSession.
    """
    return aiohttp.ClientSession(
        timeout=timeout or DEFAULT_TIMEOUT,
        headers={"User-Agent": USER_AGENT, **(headers or {})},
        **kwargs,
    )
