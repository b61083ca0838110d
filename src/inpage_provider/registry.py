"""Pending call tracking for the in-page provider."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from inpage_provider.error import ProviderRpcError
from inpage_provider.types import ResultShape, make_envelope

if TYPE_CHECKING:
    from inpage_provider.ids import IdCorrelator
    from inpage_provider.types import RequestId

logger = logging.getLogger(__name__)


class DuplicateIdPolicy(Enum):
    """What to do when a numeric id is registered while still in flight."""

    OVERWRITE = "overwrite"  # replace the entry; the first caller never settles
    REJECT = "reject"  # refuse the second registration with DUPLICATE_ID


@dataclass
class PendingCall:
    """Entry in the pending call registry."""

    future: asyncio.Future[Any]
    result_shape: ResultShape
    method: str = ""
    created_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = None


def shape_result(shape: ResultShape, request_id: RequestId, value: Any) -> Any:
    """Apply a result shape to a value on its way back to the caller."""
    if shape is ResultShape.UNWRAPPED:
        return value
    if isinstance(value, dict) and "jsonrpc" in value and "result" in value:
        value = value["result"]
    return make_envelope(request_id, value)


class PendingCallRegistry:
    """Registry of calls waiting for a result from the host application.

    Every entry is settled at most once: it is removed from the registry
    before its future is completed, so a second delivery for the same id
    only finds an empty slot.
    """

    def __init__(
        self,
        correlator: IdCorrelator,
        *,
        timeout: float | None = None,
        duplicate_policy: DuplicateIdPolicy = DuplicateIdPolicy.OVERWRITE,
    ) -> None:
        """Initialize the registry.

        Args:
            correlator: Correlator used to restore caller ids on settlement
            timeout: Seconds before an unanswered call is rejected (None waits forever)
            duplicate_policy: Behavior when an in-flight id is registered again
        """
        self._correlator = correlator
        self.timeout = timeout
        self.duplicate_policy = duplicate_policy
        self._entries: dict[RequestId, PendingCall] = {}

    def register(
        self,
        request_id: RequestId,
        future: asyncio.Future[Any],
        result_shape: ResultShape,
        method: str = "",
    ) -> None:
        """Register a pending call.

        Raises:
            ProviderRpcError: DUPLICATE_ID if the id is in flight and the
                policy is REJECT
        """
        if request_id in self._entries:
            if self.duplicate_policy is DuplicateIdPolicy.REJECT:
                raise ProviderRpcError.duplicate_id(request_id)
            logger.warning(
                "Overwriting pending call id=%s (%s); the previous caller is orphaned",
                request_id,
                self._entries[request_id].method,
            )

        entry = PendingCall(future, result_shape, method)
        if self.timeout is not None:
            entry.timer = future.get_loop().call_later(
                self.timeout, self._expire, request_id, entry
            )
        self._entries[request_id] = entry

    def resolve(self, request_id: RequestId, value: Any) -> bool:
        """Resolve a pending call. Returns True if a caller was found."""
        entry = self._pop(request_id)
        if entry is None:
            return False

        original_id = self._correlator.restore(request_id)
        result = shape_result(entry.result_shape, original_id, value)
        self._settle(entry, request_id, result=result)
        return True

    def reject(self, request_id: RequestId, error: Exception) -> bool:
        """Reject a pending call. Returns True if a caller was found."""
        entry = self._pop(request_id)
        if entry is None:
            return False

        self._correlator.discard(request_id)
        self._settle(entry, request_id, error=error)
        return True

    def has(self, request_id: RequestId) -> bool:
        """Check if a call is pending for ``request_id``."""
        try:
            return request_id in self._entries
        except TypeError:
            return False

    def pending_ids(self) -> list[RequestId]:
        """Ids of all outstanding calls."""
        return list(self._entries)

    def reject_all(self, error: Exception) -> int:
        """Reject every outstanding call. Returns the number rejected."""
        entries = list(self._entries.items())
        self._entries.clear()
        for request_id, entry in entries:
            self._cancel_timer(entry)
            self._correlator.discard(request_id)
            self._settle(entry, request_id, error=error)
        return len(entries)

    def __len__(self) -> int:
        return len(self._entries)

    def _pop(self, request_id: RequestId) -> PendingCall | None:
        try:
            entry = self._entries.pop(request_id, None)
        except TypeError:
            # Unhashable ids can never match a pending call
            entry = None
        if entry is None:
            logger.warning("%s", ProviderRpcError.callback_not_found(request_id))
            return None
        self._cancel_timer(entry)
        return entry

    def _expire(self, request_id: RequestId, entry: PendingCall) -> None:
        """Timer callback: reject a call nobody answered."""
        # An overwritten entry is no longer in the table but still expires.
        if self._entries.get(request_id) is entry:
            del self._entries[request_id]
            self._correlator.discard(request_id)
        logger.warning(
            "Pending call id=%s (%s) timed out after %ss",
            request_id,
            entry.method,
            self.timeout,
        )
        self._settle(
            entry,
            request_id,
            error=ProviderRpcError.timeout(request_id, self.timeout or 0.0),
        )

    @staticmethod
    def _cancel_timer(entry: PendingCall) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    @staticmethod
    def _settle(
        entry: PendingCall,
        request_id: RequestId,
        result: Any = None,
        error: Exception | None = None,
    ) -> None:
        if entry.future.done():
            # The caller cancelled or an overwritten entry already expired
            logger.debug("Caller for id=%s is gone, dropping settlement", request_id)
            return
        if error is not None:
            entry.future.set_exception(error)
        else:
            entry.future.set_result(result)
