"""Method routing for the in-page provider.

Every JSON-RPC method falls into one of four classes:
- LOCAL: answered immediately from the provider state
- HOST: delegated to the wallet application through the host bridge
- UNSUPPORTED: filters and subscriptions, rejected outright
- UPSTREAM: everything else, forwarded to the remote JSON-RPC node
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections import Counter
from collections.abc import Callable
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any

from inpage_provider.error import ProviderRpcError
from inpage_provider.registry import shape_result
from inpage_provider.types import (
    ProviderState,
    ResultShape,
    RpcRequest,
    make_envelope,
)

if TYPE_CHECKING:
    from inpage_provider.bridge import HostBridge
    from inpage_provider.ids import IdCorrelator
    from inpage_provider.registry import PendingCallRegistry
    from inpage_provider.types import Forwarder

logger = logging.getLogger(__name__)

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]*")


class MethodClass(Enum):
    """How a method is satisfied."""

    LOCAL = "local"
    HOST = "host"
    UNSUPPORTED = "unsupported"
    UPSTREAM = "upstream"


# Host message builders: request -> (handler name, params object)
HostMessageBuilder = Callable[[RpcRequest], tuple[str, Any]]


def _param(request: RpcRequest, index: int) -> Any:
    params = request.params
    if not isinstance(params, list | tuple) or len(params) <= index:
        msg = f"{request.method} expects at least {index + 1} params"
        raise ProviderRpcError.invalid_params(msg, {"params": params})
    return params[index]


def _message_to_bytes(message: Any) -> bytes:
    """Decode a hex string or byte sequence, or return b"" if it is neither."""
    if isinstance(message, str):
        digits = message.removeprefix("0x")
        if not _HEX_DIGITS.fullmatch(digits):
            return b""
        # An odd trailing nibble is dropped
        return bytes.fromhex(digits[: len(digits) - len(digits) % 2])
    if isinstance(message, bytes | bytearray | list | tuple):
        try:
            return bytes(message)
        except (TypeError, ValueError):
            return b""
    return b""


def _to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def _text_to_hex(message: Any) -> str:
    if not isinstance(message, str):
        msg = f"Cannot sign message of type {type(message).__name__}"
        raise ProviderRpcError.invalid_params(msg)
    return _to_hex(message.encode("utf-8"))


def build_eth_sign(request: RpcRequest) -> tuple[str, Any]:
    message = _param(request, 1)
    buffer = _message_to_bytes(message)
    data = _to_hex(buffer) if buffer else _text_to_hex(message)
    try:
        buffer.decode("utf-8")
    except UnicodeDecodeError:
        return "signMessage", {"raw": message, "data": data}
    return "signPersonalMessage", {"raw": message, "data": data}


def build_personal_sign(request: RpcRequest) -> tuple[str, Any]:
    message = _param(request, 0)
    if _message_to_bytes(message):
        return "signPersonalMessage", {"raw": message, "data": message}
    return "signPersonalMessage", {"raw": message, "data": _text_to_hex(message)}


def build_ec_recover(request: RpcRequest) -> tuple[str, Any]:
    return "ecRecover", {
        "signature": _param(request, 1),
        "message": _param(request, 0),
    }


def build_sign_typed_data(request: RpcRequest, version: str) -> tuple[str, Any]:
    """Typed data is hashed by the host; only the parsed structure is sent."""
    raw = _param(request, 1)
    if isinstance(raw, dict):
        data, raw = raw, json.dumps(raw)
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            msg = f"Invalid typed data: {e}"
            raise ProviderRpcError.invalid_params(msg) from e
    return "signTypedMessage", {"raw": raw, "data": data, "version": version}


def build_send_transaction(request: RpcRequest) -> tuple[str, Any]:
    return "signTransaction", _param(request, 0)


def build_request_accounts(request: RpcRequest) -> tuple[str, Any]:
    return "requestAccounts", {}


def build_watch_asset(request: RpcRequest) -> tuple[str, Any]:
    params = request.params
    # EIP-747 sends an object; some dapps wrap it in a list
    if isinstance(params, list) and params and isinstance(params[0], dict):
        params = params[0]
    options = params.get("options") if isinstance(params, dict) else None
    if not isinstance(options, dict) or "address" not in options:
        msg = "wallet_watchAsset requires options.address"
        raise ProviderRpcError.invalid_params(msg, {"params": request.params})
    return "watchAsset", {
        "type": params.get("type"),
        "contract": options["address"],
        "symbol": options.get("symbol"),
        "decimals": options.get("decimals") or 0,
    }


def build_add_chain(request: RpcRequest) -> tuple[str, Any]:
    return "addEthereumChain", _param(request, 0)


def build_switch_chain(request: RpcRequest) -> tuple[str, Any]:
    return "switchEthereumChain", _param(request, 0)


LOCAL_METHODS: dict[str, Callable[[ProviderState], Any]] = {
    "eth_accounts": ProviderState.accounts,
    "cfx_accounts": ProviderState.accounts,
    "eth_coinbase": lambda state: state.address,
    "cfx_coinbase": lambda state: state.address,
    "net_version": lambda state: state.network_version,
    "eth_chainId": lambda state: state.chain_id,
    "cfx_chainId": lambda state: state.chain_id,
}

HOST_METHODS: dict[str, HostMessageBuilder] = {
    "eth_sign": build_eth_sign,
    "cfx_sign": build_eth_sign,
    "personal_sign": build_personal_sign,
    "personal_ecRecover": build_ec_recover,
    "eth_signTypedData": partial(build_sign_typed_data, version="v3"),
    "cfx_signTypedData": partial(build_sign_typed_data, version="v3"),
    "eth_signTypedData_v3": partial(build_sign_typed_data, version="v3"),
    "cfx_signTypedData_v3": partial(build_sign_typed_data, version="v3"),
    "eth_signTypedData_v4": partial(build_sign_typed_data, version="v4"),
    "cfx_signTypedData_v4": partial(build_sign_typed_data, version="v4"),
    "eth_sendTransaction": build_send_transaction,
    "cfx_sendTransaction": build_send_transaction,
    "eth_requestAccounts": build_request_accounts,
    "cfx_requestAccounts": build_request_accounts,
    "wallet_watchAsset": build_watch_asset,
    "wallet_addEthereumChain": build_add_chain,
    "wallet_switchEthereumChain": build_switch_chain,
}

UNSUPPORTED_METHODS = frozenset(
    {
        "eth_newFilter",
        "eth_newBlockFilter",
        "eth_newPendingTransactionFilter",
        "eth_uninstallFilter",
        "eth_subscribe",
    }
)


def classify(method: str) -> MethodClass:
    """Classify a method name (case-sensitive)."""
    if method in LOCAL_METHODS:
        return MethodClass.LOCAL
    if method in HOST_METHODS:
        return MethodClass.HOST
    if method in UNSUPPORTED_METHODS:
        return MethodClass.UNSUPPORTED
    return MethodClass.UPSTREAM


class MethodRouter:
    """Dispatches requests to the local state, the host, or the upstream node."""

    def __init__(
        self,
        state: ProviderState,
        correlator: IdCorrelator,
        registry: PendingCallRegistry,
        bridge: HostBridge,
        forwarder: Forwarder | None = None,
    ) -> None:
        self.state = state
        self.forwarder = forwarder
        self._correlator = correlator
        self._registry = registry
        self._bridge = bridge
        self._in_flight: Counter[Forwarder] = Counter()

    def in_flight(self, forwarder: Forwarder) -> int:
        """Number of requests currently awaiting ``forwarder``."""
        return self._in_flight[forwarder]

    def answer_local(self, method: str) -> Any:
        """Answer a LOCAL method from the provider state."""
        return LOCAL_METHODS[method](self.state)

    async def dispatch(
        self,
        request: RpcRequest,
        result_shape: ResultShape = ResultShape.WRAPPED,
    ) -> Any:
        """Dispatch a request and wait for its result.

        The request id is normalized in place first, so after this call
        starts ``request.id`` is always numeric.

        Args:
            request: The request to dispatch
            result_shape: Whether the caller expects an envelope or a bare value

        Returns:
            The shaped result

        Raises:
            ProviderRpcError: If the method is unsupported, the provider is not
                ready, the host or upstream reports an error, or the call times out
        """
        self._correlator.normalize(request)
        if self.state.is_debug:
            logger.debug("==> dispatch %s", request.to_json())

        match classify(request.method):
            case MethodClass.LOCAL:
                original_id = self._correlator.restore(request.id)
                value = self.answer_local(request.method)
                return shape_result(result_shape, original_id, value)

            case MethodClass.UNSUPPORTED:
                self._correlator.discard(request.id)
                logger.debug("Refusing unsupported method %s", request.method)
                raise ProviderRpcError.unsupported_method(request.method)

            case MethodClass.HOST:
                return await self._dispatch_host(request, result_shape)

            case MethodClass.UPSTREAM:
                return await self._forward(request, result_shape)

    async def _dispatch_host(
        self, request: RpcRequest, result_shape: ResultShape
    ) -> Any:
        try:
            handler, params = HOST_METHODS[request.method](request)
            future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
            self._registry.register(request.id, future, result_shape, request.method)
        except ProviderRpcError:
            self._correlator.discard(request.id)
            raise

        if self.state.is_debug:
            logger.debug("==> host %s id=%s params=%s", handler, request.id, params)
        self._bridge.send(handler, request.id, params)
        return await future

    async def _forward(self, request: RpcRequest, result_shape: ResultShape) -> Any:
        forwarder = self.forwarder
        if forwarder is None:
            self._correlator.discard(request.id)
            msg = f"No upstream RPC endpoint configured for {request.method}"
            raise ProviderRpcError.upstream_failure(msg)

        self._in_flight[forwarder] += 1
        try:
            response = await forwarder.call(request.to_json())
        finally:
            self._in_flight[forwarder] -= 1
            if not self._in_flight[forwarder]:
                del self._in_flight[forwarder]
            original_id = self._correlator.restore(request.id)

        if self.state.is_debug:
            logger.debug("<== rpc response %s", response)
        if response.get("error") is not None:
            raise ProviderRpcError.from_remote(response["error"])
        result = response.get("result")
        if result_shape is ResultShape.UNWRAPPED:
            return result
        return make_envelope(original_id, result)
