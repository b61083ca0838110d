"""Upstream JSON-RPC forwarding for methods the provider does not handle.

Anything that is neither answered locally nor delegated to the host goes
to a remote JSON-RPC node over HTTP.
"""

from __future__ import annotations

import logging
from typing import Any, Self

import aiohttp

from inpage_provider.error import ProviderRpcError
from inpage_provider.types import JSONRPC_VERSION

logger = logging.getLogger(__name__)


class HttpForwarder:
    """HTTP JSON-RPC client for the configured remote endpoint.

    The session is opened lazily on the first call, or eagerly when used
    as an async context manager.
    """

    def __init__(self, url: str, timeout: float = 30.0) -> None:
        """Initialize the forwarder.

        Args:
            url: The JSON-RPC endpoint (e.g., "https://mainnet.example.org/rpc")
            timeout: Request timeout in seconds
        """
        self.url = url
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        self._ensure_session()
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def call(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Forward a request and return the response envelope.

        Args:
            payload: Request with ``id``, ``method`` and ``params``

        Returns:
            The remote ``{"jsonrpc", "id", "result"}`` response

        Raises:
            ProviderRpcError: UPSTREAM_FAILURE on transport errors, non-2xx
                responses, unparseable bodies, or a remote ``error`` member
        """
        body = {
            "jsonrpc": JSONRPC_VERSION,
            "id": payload.get("id"),
            "method": payload["method"],
            "params": payload.get("params", []),
        }
        session = self._ensure_session()

        try:
            async with session.post(self.url, json=body) as response:
                response.raise_for_status()
                data = await response.json(content_type=None)
        except aiohttp.ClientResponseError as e:
            msg = f"RPC HTTP {e.status}: {e.message}"
            raise ProviderRpcError.upstream_failure(msg) from e
        except (aiohttp.ClientError, TimeoutError) as e:
            msg = f"Transport error: {e or type(e).__name__}"
            raise ProviderRpcError.upstream_failure(msg) from e
        except ValueError as e:
            msg = f"Invalid JSON from upstream: {e}"
            raise ProviderRpcError.upstream_failure(msg) from e

        if not isinstance(data, dict):
            msg = f"Unexpected upstream response: {data!r}"
            raise ProviderRpcError.upstream_failure(msg)

        if data.get("error") is not None:
            raise ProviderRpcError.from_remote(data["error"])

        return data

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None


def create_forwarder(url: str, **kwargs: Any) -> HttpForwarder:
    """Factory function to create a forwarder for ``url``.

    Examples:
        >>> forwarder = create_forwarder("https://mainnet.example.org/rpc")
        >>> forwarder = create_forwarder("http://127.0.0.1:8545", timeout=5.0)
    """
    if url.startswith(("http://", "https://")):
        timeout = kwargs.get("timeout", 30.0)
        return HttpForwarder(url, timeout=timeout)
    msg = f"Unsupported URL scheme: {url}"
    raise ValueError(msg)
