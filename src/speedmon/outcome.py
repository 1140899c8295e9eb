"""
Tagged union of everything the supervisor can report for one measurement.

`Progress` carries a normalized event; `Terminal` ends the measurement and
names its kind. Recoverable conditions (protocol noise on stderr) never
become outcomes at all: they are logged where they are classified.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

from .measurement import MeasurementResult, ProgressEvent


class TerminalKind(Enum):
    COMPLETED = "completed"
    TOOL_ERROR = "tool_error"
    NETWORK_UNAVAILABLE = "network_unavailable"
    SOCKET_ERROR = "socket_error"
    UNKNOWN_TOOL_ERROR = "unknown_tool_error"
    TIMEOUT = "timeout"
    PARSE_FAILURE = "parse_failure"
    EXIT_FAILURE = "exit_failure"
    SPAWN_FAILED = "spawn_failed"
    CANCELLED = "cancelled"


NETWORK_UNAVAILABLE_MESSAGE = (
    "Unable to connect to speedtest servers. Please check your internet connection."
)
SOCKET_ERROR_MESSAGE = (
    "Network socket error. This could be due to firewall restrictions or network "
    "configuration. Please try again or contact your network administrator."
)
UNKNOWN_TOOL_ERROR_MESSAGE = (
    "Speedtest CLI encountered an unknown error. This may be temporary - "
    "please try again in a few moments."
)
PARSE_FAILURE_MESSAGE = "Failed to parse speed test results"


def exit_failure_message(code: Optional[int]) -> str:
    if code == 1:
        return "Speedtest CLI error. Please check your internet connection."
    if code == 2:
        return "No speedtest servers available. Please try again later."
    return f"Speed test failed with code: {code}"


@dataclass(frozen=True)
class Progress:
    event: ProgressEvent


@dataclass(frozen=True)
class Terminal:
    """
    Final outcome of a measurement.

    Attributes:
        kind: what ended the measurement.
        message: human-readable text for error kinds.
        result: shaped figures, only for COMPLETED.
        retryable: True when trying again soon is likely to help.
        network_error: True for local network/firewall problems.
    """

    kind: TerminalKind
    message: str = ""
    result: Optional[MeasurementResult] = None
    retryable: bool = False
    network_error: bool = False

    @property
    def succeeded(self) -> bool:
        return self.kind is TerminalKind.COMPLETED

    def to_payload(self) -> Dict[str, Any]:
        """Wire `error` message for failure kinds."""
        if self.succeeded:
            raise ValueError("A completed terminal is sent as a result, not an error")
        payload: Dict[str, Any] = {"type": "error", "error": self.message, "kind": self.kind.value}
        if self.retryable:
            payload["retryable"] = True
        if self.network_error:
            payload["networkError"] = True
        return payload


Outcome = Union[Progress, Terminal]
