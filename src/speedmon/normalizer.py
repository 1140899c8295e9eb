"""
Progress normalization.

The tool reports a 0-1 progress fraction per phase. Each phase owns a
sub-range of the overall 0-100 scale; the ranges overlap by a few points
because the tool's phase counters are not perfectly ordered in wall-clock
time. The normalizer keeps the overall value non-decreasing and emits
nothing once the `complete` phase has been reached.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional

from .measurement import ProgressEvent, as_number, bandwidth_to_mbps, subobject

LOGGER = logging.getLogger(__name__)

PHASE_RANGES = {
    "connecting": (0.0, 25.0),
    "ping": (5.0, 30.0),
    "download": (20.0, 70.0),
    "upload": (60.0, 95.0),
    "complete": (100.0, 100.0),
}

# testStart carries no fraction; it lands at 5% of the overall scale
CONNECTING_FRACTION = 0.2


def scale_progress(phase: str, fraction: Any) -> float:
    low, high = PHASE_RANGES[phase]
    try:
        f = float(fraction)
    except (TypeError, ValueError):
        f = 0.0
    if not math.isfinite(f):
        f = 0.0
    f = max(0.0, min(1.0, f))
    return low + f * (high - low)


class ProgressNormalizer:
    """
    Consumes tool-native events one at a time and emits at most one
    `ProgressEvent` per event.
    """

    def __init__(self):
        self._progress = 0.0
        self._download = 0.0
        self._upload = 0.0
        self._ping = 0.0
        self._complete = False

    @property
    def complete(self) -> bool:
        return self._complete

    @property
    def progress(self) -> float:
        return self._progress

    def _emit(self, phase: str, fraction: Any) -> ProgressEvent:
        self._progress = max(self._progress, scale_progress(phase, fraction))
        return ProgressEvent(
            phase=phase,
            progress=self._progress,
            download=self._download,
            upload=self._upload,
            ping=self._ping,
        )

    def consume(self, event: Dict[str, Any]) -> Optional[ProgressEvent]:
        if self._complete or not isinstance(event, dict):
            return None

        kind = event.get("type")
        body = event.get(kind) if isinstance(kind, str) else None
        body = body if isinstance(body, dict) else {}

        if kind == "testStart":
            return self._emit("connecting", CONNECTING_FRACTION)
        if kind == "ping":
            self._ping = as_number(body.get("latency"))
            return self._emit("ping", body.get("progress"))
        if kind == "download":
            self._download = bandwidth_to_mbps(body.get("bandwidth"))
            return self._emit("download", body.get("progress"))
        if kind == "upload":
            self._upload = bandwidth_to_mbps(body.get("bandwidth"))
            return self._emit("upload", body.get("progress"))
        if kind == "result":
            return self.finish(
                download=bandwidth_to_mbps(subobject(event, "download").get("bandwidth")),
                upload=bandwidth_to_mbps(subobject(event, "upload").get("bandwidth")),
                ping=as_number(subobject(event, "ping").get("latency")),
            )

        LOGGER.debug(f"Ignoring tool event of type {kind!r}")
        return None

    def start(self) -> ProgressEvent:
        """The initial `connecting` event sent before the tool says anything."""
        return self._emit("connecting", CONNECTING_FRACTION)

    def finish(self, download: float, upload: float, ping: float) -> Optional[ProgressEvent]:
        if self._complete:
            return None
        self._complete = True
        self._download, self._upload, self._ping = download, upload, ping
        self._progress = 100.0
        return ProgressEvent("complete", 100.0, download, upload, ping)

