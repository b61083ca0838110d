"""Host bridge between the provider and the native wallet application.

Outbound messages are fire-and-forget: the bridge hands
``{"id", "method", "params"}`` to a sink and returns immediately. The host
answers later through ``deliver_result``/``deliver_error`` (or
``handle_message`` for raw JSON), which settle the matching pending call.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from inpage_provider.error import ProviderRpcError

if TYPE_CHECKING:
    from collections.abc import Callable

    from inpage_provider.registry import PendingCallRegistry
    from inpage_provider.types import MessageSink, RequestId

logger = logging.getLogger(__name__)

# Handlers the host understands
HOST_HANDLERS = frozenset(
    {
        "signPersonalMessage",
        "signMessage",
        "ecRecover",
        "signTypedMessage",
        "signTransaction",
        "requestAccounts",
        "watchAsset",
        "addEthereumChain",
        "switchEthereumChain",
    }
)

# Allowed before an address is known, since it is what establishes one
BOOTSTRAP_HANDLER = "requestAccounts"


class HostBridge:
    """Routes requests to the host application and its answers back."""

    def __init__(
        self,
        sink: MessageSink,
        registry: PendingCallRegistry,
        is_ready: Callable[[], bool],
    ) -> None:
        """Initialize the bridge.

        Args:
            sink: Outbound channel to the host
            registry: Registry holding the callers waiting for the host
            is_ready: Returns True once the provider has an address
        """
        self._sink = sink
        self._registry = registry
        self._is_ready = is_ready

    def send(self, handler: str, request_id: RequestId, params: Any) -> bool:
        """Hand a request to the host.

        The pending call for ``request_id`` must already be registered. If
        the provider is not ready, or the sink fails, that call is rejected
        instead and nothing crosses the boundary.

        Returns:
            True if the message was posted
        """
        if handler not in HOST_HANDLERS:
            msg = f"Unknown host handler: {handler}"
            raise ValueError(msg)

        if not (self._is_ready() or handler == BOOTSTRAP_HANDLER):
            logger.debug("Provider not ready, refusing %s id=%s", handler, request_id)
            self._registry.reject(request_id, ProviderRpcError.not_ready())
            return False

        message = {"id": request_id, "method": handler, "params": params}
        try:
            self._sink.post_message(message)
        except Exception as e:
            logger.exception("Host sink failed for %s id=%s", handler, request_id)
            error = ProviderRpcError.host_error(f"failed to reach host: {e}")
            self._registry.reject(request_id, error)
            return False
        return True

    def deliver_result(self, request_id: RequestId, raw_result: Any) -> bool:
        """Deliver a result from the host. Unknown ids are logged and ignored."""
        logger.debug("<== host result id=%s: %r", request_id, raw_result)
        return self._registry.resolve(request_id, raw_result)

    def deliver_error(self, request_id: RequestId, raw_error: Any) -> bool:
        """Deliver an error from the host. Unknown ids are logged and ignored."""
        logger.debug("<== host error id=%s: %r", request_id, raw_error)
        return self._registry.reject(request_id, ProviderRpcError.from_host(raw_error))

    def handle_message(self, raw: str | bytes | dict[str, Any]) -> bool:
        """Deliver a JSON message ``{"id", "result"}`` or ``{"id", "error"}``.

        Malformed messages are logged and dropped.

        Returns:
            True if a pending call was settled
        """
        if isinstance(raw, bytes | str):
            try:
                raw = json.loads(raw)
            except ValueError:
                logger.warning("Dropping malformed host message: %r", raw[:200])
                return False

        match raw:
            case {"id": request_id} if not _is_wire_id(request_id):
                logger.warning("Dropping host message with invalid id: %r", raw)
                return False
            case {"id": request_id, "error": error} if error is not None:
                return self.deliver_error(_coerce_id(request_id), error)
            case {"id": request_id, "result": result}:
                return self.deliver_result(_coerce_id(request_id), result)
            case _:
                logger.warning("Dropping unrecognized host message: %r", raw)
                return False


def _is_wire_id(request_id: Any) -> bool:
    return isinstance(request_id, int | float | str) and not isinstance(
        request_id, bool
    )


def _coerce_id(request_id: Any) -> Any:
    """Hosts sometimes echo numeric ids back as strings."""
    if isinstance(request_id, str) and request_id.isdigit():
        return int(request_id)
    return request_id


class QueueSink:
    """Sink that queues outbound messages for an in-process host."""

    def __init__(self, maxsize: int = 0) -> None:
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize)

    def post_message(self, message: dict[str, Any]) -> None:
        """Queue a message without blocking."""
        self.queue.put_nowait(message)

    async def next_message(self, timeout: float | None = None) -> dict[str, Any]:
        """Wait for the next outbound message."""
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)
