"""Error types for the in-page provider."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCode(Enum):
    """Provider error kinds."""

    NOT_READY = "not_ready"
    UNSUPPORTED_METHOD = "unsupported_method"
    CALLBACK_NOT_FOUND = "callback_not_found"
    UPSTREAM_FAILURE = "upstream_failure"
    DUPLICATE_ID = "duplicate_id"
    TIMEOUT = "timeout"
    HOST_ERROR = "host_error"
    INVALID_PARAMS = "invalid_params"
    DISCONNECTED = "disconnected"
    INTERNAL = "internal"

    def __str__(self) -> str:
        return self.value

    @property
    def rpc_code(self) -> int:
        """Numeric code reported to page scripts (EIP-1193 / JSON-RPC)."""
        return _RPC_CODES[self]


_RPC_CODES: dict[ErrorCode, int] = {
    ErrorCode.NOT_READY: 4100,
    ErrorCode.UNSUPPORTED_METHOD: 4200,
    ErrorCode.DISCONNECTED: 4900,
    ErrorCode.INVALID_PARAMS: -32602,
    ErrorCode.CALLBACK_NOT_FOUND: -32603,
    ErrorCode.UPSTREAM_FAILURE: -32603,
    ErrorCode.DUPLICATE_ID: -32603,
    ErrorCode.TIMEOUT: -32603,
    ErrorCode.HOST_ERROR: -32603,
    ErrorCode.INTERNAL: -32603,
}


@dataclass(frozen=True)
class ProviderRpcError(Exception):
    """Provider error with code, message, and optional data."""

    code: ErrorCode
    message: str
    data: Any | None = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Render as a JSON-RPC error object.

        Upstream failures that carry the remote error object are relayed
        unchanged.
        """
        if self.code is ErrorCode.UPSTREAM_FAILURE and isinstance(self.data, dict):
            return dict(self.data)
        error: dict[str, Any] = {"code": self.code.rpc_code, "message": self.message}
        if self.data is not None:
            error["data"] = self.data
        return error

    @staticmethod
    def from_host(raw: Any) -> ProviderRpcError:
        """Convert an error delivered by the host application.

        The host may send a plain string, a ``{code, message, data}`` object,
        an exception, or nothing at all.
        """
        match raw:
            case ProviderRpcError():
                return raw
            case Exception():
                return ProviderRpcError.host_error(str(raw))
            case {"message": message, **rest}:
                return ProviderRpcError(
                    ErrorCode.HOST_ERROR, str(message), rest or None
                )
            case None | "":
                return ProviderRpcError.host_error("error is undefined")
            case _:
                return ProviderRpcError.host_error(str(raw))

    @staticmethod
    def not_ready(message: str = "provider is not ready") -> ProviderRpcError:
        """Create a NOT_READY error."""
        return ProviderRpcError(ErrorCode.NOT_READY, message)

    @staticmethod
    def unsupported_method(method: str) -> ProviderRpcError:
        """Create an UNSUPPORTED_METHOD error for ``method``."""
        msg = f"Provider does not support calling {method}, use your own solution"
        return ProviderRpcError(ErrorCode.UNSUPPORTED_METHOD, msg, {"method": method})

    @staticmethod
    def callback_not_found(request_id: Any) -> ProviderRpcError:
        """Create a CALLBACK_NOT_FOUND error."""
        return ProviderRpcError(
            ErrorCode.CALLBACK_NOT_FOUND, f"callback id: {request_id} not found"
        )

    @staticmethod
    def upstream_failure(message: str, data: Any | None = None) -> ProviderRpcError:
        """Create an UPSTREAM_FAILURE error."""
        return ProviderRpcError(ErrorCode.UPSTREAM_FAILURE, message, data)

    @staticmethod
    def from_remote(error: Any) -> ProviderRpcError:
        """Create an UPSTREAM_FAILURE error from a JSON-RPC ``error`` member."""
        message = error.get("message") if isinstance(error, dict) else error
        return ProviderRpcError.upstream_failure(str(message), error)

    @staticmethod
    def duplicate_id(request_id: Any) -> ProviderRpcError:
        """Create a DUPLICATE_ID error."""
        return ProviderRpcError(
            ErrorCode.DUPLICATE_ID, f"request id {request_id} is already in flight"
        )

    @staticmethod
    def timeout(request_id: Any, seconds: float) -> ProviderRpcError:
        """Create a TIMEOUT error."""
        return ProviderRpcError(
            ErrorCode.TIMEOUT,
            f"request id {request_id} timed out after {seconds:g}s",
        )

    @staticmethod
    def host_error(message: str, data: Any | None = None) -> ProviderRpcError:
        """Create a HOST_ERROR error."""
        return ProviderRpcError(ErrorCode.HOST_ERROR, message, data)

    @staticmethod
    def invalid_params(message: str, data: Any | None = None) -> ProviderRpcError:
        """Create an INVALID_PARAMS error."""
        return ProviderRpcError(ErrorCode.INVALID_PARAMS, message, data)

    @staticmethod
    def disconnected(message: str = "provider is disconnected") -> ProviderRpcError:
        """Create a DISCONNECTED error."""
        return ProviderRpcError(ErrorCode.DISCONNECTED, message)

    @staticmethod
    def internal(message: str, data: Any | None = None) -> ProviderRpcError:
        """Create an INTERNAL error."""
        return ProviderRpcError(ErrorCode.INTERNAL, message, data)
