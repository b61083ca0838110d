"""Provider implementation exposed to page scripts.

The provider mirrors the standard in-page Ethereum provider surface:
``request()`` for modern callers, plus the legacy ``send``/``send_async``
shims and ``enable()``. All of them funnel into the same method router.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Self

from inpage_provider.bridge import HostBridge
from inpage_provider.error import ErrorCode, ProviderRpcError
from inpage_provider.ids import IdCorrelator
from inpage_provider.registry import DuplicateIdPolicy, PendingCallRegistry
from inpage_provider.router import MethodClass, MethodRouter, classify
from inpage_provider.types import (
    ProviderState,
    RequestKind,
    ResultShape,
    RpcRequest,
    make_envelope,
)
from inpage_provider.upstream import create_forwarder

if TYPE_CHECKING:
    from inpage_provider.types import Forwarder, MessageSink, RequestId

logger = logging.getLogger(__name__)

Listener = Callable[[Any], None]
Callback = Callable[[Exception | None, Any], None]


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for the provider."""

    address: str = ""
    chain_id: int = 1
    rpc_url: str | None = None
    is_debug: bool = False
    timeout: float | None = None  # Seconds before a host call expires (None: never)
    rpc_timeout: float = 30.0  # Upstream HTTP timeout in seconds
    duplicate_id_policy: DuplicateIdPolicy = DuplicateIdPolicy.OVERWRITE

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ProviderConfig:
        """Build a config from the host's camelCase configuration object."""
        policy = data.get("duplicateIdPolicy", DuplicateIdPolicy.OVERWRITE.value)
        timeout = data.get("timeout")
        return ProviderConfig(
            address=data.get("address") or "",
            chain_id=int(data.get("chainId", 1)),
            rpc_url=data.get("rpcUrl"),
            is_debug=bool(data.get("isDebug", False)),
            timeout=float(timeout) if timeout is not None else None,
            rpc_timeout=float(data.get("rpcTimeout", 30.0)),
            duplicate_id_policy=DuplicateIdPolicy(policy),
        )


class Provider:
    """In-page JSON-RPC provider backed by a host wallet application.

    The id correlator and pending call registry are owned by the instance.
    Both can be injected for testing; by default they are created from the
    config. Likewise the forwarder defaults to an HTTP client for
    ``config.rpc_url``.
    """

    def __init__(
        self,
        config: ProviderConfig,
        sink: MessageSink,
        *,
        forwarder: Forwarder | None = None,
        correlator: IdCorrelator | None = None,
        registry: PendingCallRegistry | None = None,
    ) -> None:
        self.state = ProviderState()
        self.correlator = correlator or IdCorrelator()
        self.registry = registry or PendingCallRegistry(
            self.correlator,
            timeout=config.timeout,
            duplicate_policy=config.duplicate_id_policy,
        )
        self.bridge = HostBridge(sink, self.registry, lambda: self.state.ready)
        self._router = MethodRouter(
            self.state, self.correlator, self.registry, self.bridge, forwarder
        )
        self._owns_forwarder = forwarder is None
        self._retired_forwarders: list[Forwarder] = []
        self._listeners: dict[str, list[Listener]] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._connected = False

        self.set_config(config)
        self._connected = True
        self.emit("connect", {"chainId": self.state.chain_id})

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.close()

    # State

    @property
    def address(self) -> str:
        return self.state.address

    @property
    def selected_address(self) -> str:
        return self.state.address

    @property
    def chain_id(self) -> str:
        return self.state.chain_id

    @property
    def network_version(self) -> str | None:
        return self.state.network_version

    @property
    def ready(self) -> bool:
        return self.state.ready

    @property
    def is_debug(self) -> bool:
        return self.state.is_debug

    @property
    def forwarder(self) -> Forwarder | None:
        return self._router.forwarder

    def set_address(self, address: str | None) -> None:
        """Set the wallet address; emits ``accountsChanged`` when it changes."""
        lower_address = (address or "").lower()
        changed = lower_address != self.state.address
        self.state.address = lower_address
        if changed and self._connected:
            self.emit("accountsChanged", self.state.accounts())

    def set_config(self, config: ProviderConfig) -> None:
        """Apply a (re)configuration from the host."""
        previous_chain = self.state.chain_id
        self.config = config
        self.state.is_debug = config.is_debug
        self.set_address(config.address)
        self.state.chain_id = hex(config.chain_id)
        self.state.network_version = str(config.chain_id)

        if self._owns_forwarder:
            current = self._router.forwarder
            self._router.forwarder = (
                create_forwarder(config.rpc_url, timeout=config.rpc_timeout)
                if config.rpc_url
                else None
            )
            if current is not None:
                self._retired_forwarders.append(current)
                self._close_idle_forwarders()

        if self._connected and previous_chain != self.state.chain_id:
            self.emit("chainChanged", self.state.chain_id)

    # Request surface

    async def request(self, payload: dict[str, Any] | RpcRequest) -> Any:
        """Send a request and return the bare result.

        Raises:
            ProviderRpcError: If the request fails
        """
        if self.is_debug:
            logger.debug("use request")
        request = RpcRequest.from_payload(payload)
        try:
            return await self._router.dispatch(request, ResultShape.UNWRAPPED)
        finally:
            self._close_idle_forwarders()

    def is_connected(self) -> bool:
        """Deprecated: listen to the ``connect`` event instead."""
        return True

    async def enable(self) -> Any:
        """Deprecated: use ``request({"method": "eth_requestAccounts"})``."""
        return await self.request({"method": "eth_requestAccounts", "params": []})

    def send(
        self, payload: str | dict[str, Any], callback: Callback | None = None
    ) -> Any:
        """Deprecated synchronous send.

        With a callback this behaves like :meth:`send_async`. Without one
        only LOCAL methods can be answered: a method string gets the bare
        value back, a payload dict gets a JSON-RPC envelope.

        Raises:
            ProviderRpcError: UNSUPPORTED_METHOD for anything that needs a
                round trip
        """
        if callback is not None:
            self.send_async(payload, callback)
            return None

        request = RpcRequest.from_payload(payload)
        if self.is_debug:
            logger.debug("send %s", request.to_json())
        if classify(request.method) is not MethodClass.LOCAL:
            msg = (
                f"Provider does not support calling {request.method} synchronously "
                "without a callback, pass a callback to call it asynchronously"
            )
            raise ProviderRpcError(
                ErrorCode.UNSUPPORTED_METHOD, msg, {"method": request.method}
            )

        result = self._router.answer_local(request.method)
        if request.kind is RequestKind.STRING:
            return result
        return make_envelope(request.id, result)

    def send_async(
        self,
        payload: dict[str, Any] | list[dict[str, Any]],
        callback: Callback,
    ) -> asyncio.Task[None]:
        """Deprecated callback-style send; accepts a single payload or a batch.

        ``callback(error, result)`` is invoked exactly once. Batches resolve
        to a list of envelopes, or the first error.
        """

        async def run() -> None:
            try:
                if isinstance(payload, list):
                    result: Any = await asyncio.gather(
                        *(self._dispatch_wrapped(p) for p in payload)
                    )
                else:
                    result = await self._dispatch_wrapped(payload)
            except Exception as e:
                self._invoke(callback, e, None)
            else:
                self._invoke(callback, None, result)

        return self._spawn(run())

    async def call(self, method: str, *params: Any) -> Any:
        """Call ``method`` with positional params and return the bare result."""
        response = await self._dispatch_wrapped(
            {"jsonrpc": "2.0", "method": method, "params": list(params)}
        )
        return response["result"]

    async def _dispatch_wrapped(self, payload: dict[str, Any]) -> Any:
        request = RpcRequest.from_payload(payload)
        try:
            return await self._router.dispatch(request, ResultShape.WRAPPED)
        finally:
            self._close_idle_forwarders()

    def _close_idle_forwarders(self) -> None:
        """Close replaced forwarders that no request is waiting on."""
        if not self._retired_forwarders:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Without a loop nothing has opened a session yet; close() handles it
            return
        for forwarder in list(self._retired_forwarders):
            if not self._router.in_flight(forwarder):
                self._retired_forwarders.remove(forwarder)
                self._spawn(forwarder.close())

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _invoke(callback: Callback, error: Exception | None, result: Any) -> None:
        try:
            callback(error, result)
        except Exception:
            logger.exception("send_async callback raised")

    # Host inbound surface

    def deliver_result(self, request_id: RequestId, result: Any) -> bool:
        """Called by the host with the result of a delegated request."""
        return self.bridge.deliver_result(request_id, result)

    def deliver_error(self, request_id: RequestId, error: Any) -> bool:
        """Called by the host with the error of a delegated request."""
        return self.bridge.deliver_error(request_id, error)

    def handle_host_message(self, raw: str | bytes | dict[str, Any]) -> bool:
        """Called by the host with a raw JSON response message."""
        return self.bridge.handle_message(raw)

    # Events

    def on(self, event: str, listener: Listener) -> None:
        """Subscribe ``listener`` to ``event``."""
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: str, listener: Listener) -> None:
        """Unsubscribe ``listener`` from ``event``."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: str, data: Any) -> None:
        """Notify listeners of ``event``. A failing listener does not stop the rest."""
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(data)
            except Exception:
                logger.exception("Listener for %s raised", event)

    # Lifecycle

    async def close(self) -> None:
        """Reject everything in flight and release the upstream connection."""
        error = ProviderRpcError.disconnected()
        rejected = self.registry.reject_all(error)
        if rejected:
            logger.debug("Rejected %s pending calls on close", rejected)

        if self._owns_forwarder and self._router.forwarder is not None:
            self._retired_forwarders.append(self._router.forwarder)
            self._router.forwarder = None
        for forwarder in self._retired_forwarders:
            await forwarder.close()
        self._retired_forwarders.clear()

        if self._connected:
            self._connected = False
            self.emit("disconnect", error.to_dict())
