"""
Exceptions raised before a measurement is allowed to start.

Failures that happen *while* the tool runs are not exceptions; they travel
as `speedmon.outcome.Terminal` values so that fatal and recoverable kinds
are told apart by type instead of by message.
"""

from __future__ import annotations

from typing import Optional


class SpeedmonError(RuntimeError):
    """Base class for every condition surfaced by speedmon."""


class OutsideWindow(SpeedmonError):
    """No testing window is active for the caller's zone."""

    def __init__(self, timezone_name: str, message: str):
        super().__init__(message)
        self.timezone_name = timezone_name


class DetectionFailed(SpeedmonError):
    """The identity-detection facility could not name a provider."""

    suggestion = "Check your internet connection and try again"


class IdentityMismatch(SpeedmonError):
    """Strict validation found the claimed and detected providers unrelated."""

    def __init__(
        self,
        claimed: str,
        detected: str,
        resolution=None,
        suggested_identity: Optional[str] = None,
    ):
        super().__init__(
            f"ISP mismatch detected: selected {claimed!r}, detected {detected!r}. "
            "The speed test was stopped to prevent incorrect data collection."
        )
        self.claimed = claimed
        self.detected = detected
        self.resolution = resolution
        self.suggested_identity = suggested_identity


class OfficeNotFound(SpeedmonError):
    """The target office is not known to the office directory."""


class StreamAlreadyActive(SpeedmonError):
    """A consumer was asked to open a second stream while one is running."""


class StoreError(SpeedmonError):
    """The result store rejected a write."""
