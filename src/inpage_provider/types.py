"""Core type definitions for the in-page provider."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeAlias

from inpage_provider.error import ProviderRpcError

JSONRPC_VERSION = "2.0"

RequestId: TypeAlias = int | float | str | None


def is_numeric_id(value: Any) -> bool:
    """Check if a request id is a native number (bools are not)."""
    return isinstance(value, int | float) and not isinstance(value, bool)


class ResultShape(Enum):
    """How a result is handed back to the caller."""

    WRAPPED = "wrapped"  # {"jsonrpc": "2.0", "id": ..., "result": ...}
    UNWRAPPED = "unwrapped"  # bare result value


class RequestKind(Enum):
    """Calling convention of a legacy payload, decided once at the boundary."""

    STRING = "string"  # send("eth_accounts")
    OBJECT = "object"  # send({"method": "eth_accounts", ...})


@dataclass
class RpcRequest:
    """A JSON-RPC call issued by the page."""

    method: str
    params: Any = field(default_factory=list)
    id: RequestId = None
    kind: RequestKind = RequestKind.OBJECT

    @staticmethod
    def from_payload(payload: Any) -> RpcRequest:
        """Build a request from a method string or a JSON-RPC payload dict.

        Raises:
            ProviderRpcError: If the payload has no usable method
        """
        match payload:
            case RpcRequest():
                return payload
            case str() if payload:
                return RpcRequest(method=payload, kind=RequestKind.STRING)
            case {"method": str(method), **rest} if method:
                params = rest.get("params")
                return RpcRequest(
                    method=method,
                    params=[] if params is None else params,
                    id=rest.get("id"),
                )
            case _:
                msg = f"Invalid request payload: {payload!r}"
                raise ProviderRpcError.invalid_params(msg)

    def to_json(self) -> dict[str, Any]:
        """Convert to a JSON-RPC request object."""
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        }


@dataclass
class ProviderState:
    """Wallet state every routing decision reads from."""

    address: str = ""
    chain_id: str = "0x1"
    network_version: str | None = "1"
    is_debug: bool = False

    @property
    def ready(self) -> bool:
        """A provider is ready once it knows the wallet address."""
        return bool(self.address)

    def accounts(self) -> list[str]:
        return [self.address] if self.address else []


def make_envelope(request_id: RequestId, result: Any) -> dict[str, Any]:
    """Wrap a result in a JSON-RPC response envelope."""
    return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}


class MessageSink(Protocol):
    """Protocol for the outbound channel to the host application."""

    def post_message(self, message: dict[str, Any]) -> None:
        """Hand a message to the host. Must not block.

        Args:
            message: ``{"id": int, "method": handler, "params": object}``
        """
        ...


class Forwarder(Protocol):
    """Protocol for the upstream JSON-RPC client."""

    async def call(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Send a JSON-RPC request and return the response envelope.

        Raises:
            ProviderRpcError: If the call fails
        """
        ...

    async def close(self) -> None:
        """Release any connection resources."""
        ...
