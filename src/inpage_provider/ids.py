"""Request id correlation for the in-page provider.

Page scripts may send ids that are strings, missing, or reused. Everything
that crosses the host boundary is tracked by a numeric id instead:
- Numeric ids supplied by the caller are kept as they are
- Missing ids get a freshly generated number
- Non-numeric ids are swapped for a synthetic number, and the original is
  remembered until the response is delivered
"""

from __future__ import annotations

import random
import threading
import time
from typing import TYPE_CHECKING, Final

from inpage_provider.types import RequestId, is_numeric_id

if TYPE_CHECKING:
    from inpage_provider.types import RpcRequest


class IdGenerator:
    """Thread-safe generator of numeric request ids.

    Ids are a millisecond timestamp plus a random offset below 1000, clamped
    so that every id is greater than the previous one.
    """

    def __init__(self) -> None:
        self._last: int = 0
        self._lock: Final = threading.Lock()

    def next_id(self) -> int:
        """Generate a new id."""
        candidate = int(time.time() * 1000) + random.randrange(1000)
        with self._lock:
            self._last = max(candidate, self._last + 1)
            return self._last


class IdCorrelator:
    """Maps synthetic numeric ids back to the ids the caller supplied."""

    def __init__(self, generator: IdGenerator | None = None) -> None:
        self._generator = generator or IdGenerator()
        self._original_ids: dict[int, RequestId] = {}

    def normalize(self, request: RpcRequest) -> None:
        """Give ``request`` a numeric id, recording the original if needed."""
        if request.id is None:
            request.id = self._generator.next_id()
            return
        if not is_numeric_id(request.id):
            synthetic = self._generator.next_id()
            self._original_ids[synthetic] = request.id
            request.id = synthetic

    def restore(self, numeric_id: RequestId) -> RequestId:
        """Pop the original id for ``numeric_id``.

        Returns the input unchanged when there is no mapping, either because
        the caller's id was already numeric or the mapping was consumed.
        """
        if numeric_id in self._original_ids:
            return self._original_ids.pop(numeric_id)  # type: ignore[arg-type]
        return numeric_id

    def discard(self, numeric_id: RequestId) -> None:
        """Forget the mapping for ``numeric_id`` if there is one."""
        self._original_ids.pop(numeric_id, None)  # type: ignore[arg-type]

    def contains(self, numeric_id: RequestId) -> bool:
        """Check if a mapping exists for ``numeric_id``."""
        return numeric_id in self._original_ids

    def clear(self) -> None:
        """Clear all mappings."""
        self._original_ids.clear()

    def __len__(self) -> int:
        return len(self._original_ids)
