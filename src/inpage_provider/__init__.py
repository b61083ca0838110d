"""In-page wallet provider - Python implementation

This module provides a JSON-RPC provider that answers account queries
locally, delegates signing to a host wallet application over an
asynchronous bridge, and forwards everything else to a remote node.
"""

from inpage_provider.bridge import HostBridge, QueueSink
from inpage_provider.error import ErrorCode, ProviderRpcError
from inpage_provider.ids import IdCorrelator, IdGenerator
from inpage_provider.provider import Provider, ProviderConfig
from inpage_provider.registry import DuplicateIdPolicy, PendingCallRegistry
from inpage_provider.router import MethodClass, MethodRouter, classify
from inpage_provider.types import ResultShape, RpcRequest
from inpage_provider.upstream import HttpForwarder, create_forwarder

__version__ = "0.1.0"

__all__ = [
    # Provider
    "Provider",
    "ProviderConfig",
    # Correlation
    "IdCorrelator",
    "IdGenerator",
    "PendingCallRegistry",
    "DuplicateIdPolicy",
    # Routing
    "MethodRouter",
    "MethodClass",
    "classify",
    "RpcRequest",
    "ResultShape",
    # Transports
    "HostBridge",
    "QueueSink",
    "HttpForwarder",
    "create_forwarder",
    # Errors
    "ProviderRpcError",
    "ErrorCode",
]
