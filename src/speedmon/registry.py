"""Process-wide set of in-flight measurement request ids, for diagnostics only."""

from __future__ import annotations

import logging
import threading
from typing import FrozenSet, Set

LOGGER = logging.getLogger(__name__)


class InFlightRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._ids: Set[str] = set()

    def add(self, request_id: str) -> None:
        with self._lock:
            self._ids.add(request_id)
            count = len(self._ids)
        LOGGER.info(f"[{request_id}] Measurement started ({count} in flight)")

    def discard(self, request_id: str) -> None:
        with self._lock:
            self._ids.discard(request_id)
            count = len(self._ids)
        LOGGER.info(f"[{request_id}] Measurement finished ({count} in flight)")

    def snapshot(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._ids)

    def __contains__(self, request_id: str) -> bool:
        with self._lock:
            return request_id in self._ids

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)


IN_FLIGHT = InFlightRegistry()
