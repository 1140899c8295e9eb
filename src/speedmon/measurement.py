"""
Measurement domain model.

Defines the request, progress, result and persisted-record dataclasses, plus
`shape_result`, the single function that turns a tool result object into a
`MeasurementResult`. Both the streaming completion path and the full-buffer
fallback go through `shape_result`, so the two can never disagree.
"""

from __future__ import annotations

import json
import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Raw tool bandwidth is bytes per second; displayed figures are megabits.
MBPS_MULTIPLIER = 8 / 1_000_000
MAX_RAW_BANDWIDTH = 1e15

PHASES = ("connecting", "ping", "download", "upload", "complete")


def as_number(value: Any) -> float:
    """Coerce to a finite, non-negative float; anything else becomes 0."""
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def bandwidth_to_mbps(raw: Any) -> float:
    """
    Convert a raw tool bandwidth figure to Mbps. Negative, non-finite and
    implausibly large (> 1e15) values are clamped to 0.
    """
    number = as_number(raw)
    if number > MAX_RAW_BANDWIDTH:
        return 0.0
    return number * MBPS_MULTIPLIER


def new_request_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class MeasurementRequest:
    """
    One invocation of the live measurement stream.

    Attributes:
        office_id: target office identifier.
        claimed_identity: provider the caller says it is measuring, if any.
        section: grouping label for the result, if any.
        identity_validated: True when the claimed identity passed pre-flight.
        timezone: caller's IANA zone name.
        request_id: opaque identifier, unique per attempt.
    """

    office_id: str
    claimed_identity: Optional[str] = None
    section: Optional[str] = None
    identity_validated: bool = False
    timezone: str = "UTC"
    request_id: str = field(default_factory=new_request_id)

    def __post_init__(self):
        if not self.office_id or not str(self.office_id).strip():
            raise ValueError("office_id must be a non-empty string")
        if self.claimed_identity is not None and not self.claimed_identity.strip():
            self.claimed_identity = None
        if self.section is not None and not self.section.strip():
            self.section = None
        self.timezone = (self.timezone or "UTC").strip() or "UTC"


@dataclass(frozen=True)
class ProgressEvent:
    """
    A normalized progress update.

    Attributes:
        phase: one of connecting, ping, download, upload, complete.
        progress: overall progress on the 0-100 scale.
        download: current download throughput in Mbps.
        upload: current upload throughput in Mbps.
        ping: current latency in ms.
    """

    phase: str
    progress: float
    download: float = 0.0
    upload: float = 0.0
    ping: float = 0.0

    def __post_init__(self):
        if self.phase not in PHASES:
            raise ValueError(f"Unknown phase: {self.phase!r}")
        if not 0 <= self.progress <= 100:
            raise ValueError(f"progress must be within 0-100, got {self.progress!r}")

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "progress",
            "stage": self.phase,
            "progress": round(self.progress, 2),
            "download": round(self.download, 2),
            "upload": round(self.upload, 2),
            "ping": round(self.ping, 2),
        }


@dataclass(frozen=True)
class MeasurementResult:
    """
    Final figures of one measurement, shaped from the tool's result object.

    Attributes:
        download / upload: throughput in Mbps.
        ping / jitter: latency figures in ms.
        packet_loss: percentage reported by the tool (0 when absent).
        server_id / server_name / server_location: measurement server.
        client_ip: external address seen by the tool.
        result_url: shareable result URL, when the tool provides one.
        detected_identity: provider reported by the tool, if any.
        raw: the tool's result object, kept for audit.
    """

    download: float
    upload: float
    ping: float
    jitter: float = 0.0
    packet_loss: float = 0.0
    server_id: Optional[str] = None
    server_name: Optional[str] = None
    server_location: str = "Unknown"
    client_ip: str = "Unknown"
    result_url: Optional[str] = None
    detected_identity: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "type": "result",
            "stage": "complete",
            "progress": 100,
            "download": round(self.download, 2),
            "upload": round(self.upload, 2),
            "ping": round(self.ping, 2),
            "jitter": round(self.jitter, 2),
            "packetLoss": self.packet_loss,
            "serverId": self.server_id,
            "serverName": self.server_name,
            "clientIp": self.client_ip,
            "serverLocation": self.server_location,
            "resultUrl": self.result_url,
            "complete": True,
            "rawData": json.dumps(self.raw),
        }


def subobject(obj: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = obj.get(key)
    return value if isinstance(value, dict) else {}


def shape_result(tool_json: Dict[str, Any]) -> MeasurementResult:
    """
    Build a `MeasurementResult` from a tool result object. Missing or
    malformed figures become 0 rather than raising.
    """
    if not isinstance(tool_json, dict):
        raise ValueError(f"Tool result must be a JSON object, got {type(tool_json).__name__}")

    ping = subobject(tool_json, "ping")
    server = subobject(tool_json, "server")
    interface = subobject(tool_json, "interface")
    client = subobject(tool_json, "client")
    share = subobject(tool_json, "result")

    server_id = server.get("id")
    detected = tool_json.get("isp") or interface.get("externalIsp") or client.get("isp")

    return MeasurementResult(
        download=bandwidth_to_mbps(subobject(tool_json, "download").get("bandwidth")),
        upload=bandwidth_to_mbps(subobject(tool_json, "upload").get("bandwidth")),
        ping=as_number(ping.get("latency")),
        jitter=as_number(ping.get("jitter")),
        packet_loss=as_number(tool_json.get("packetLoss")),
        server_id=str(server_id) if server_id is not None else None,
        server_name=server.get("name"),
        server_location=server.get("location") or "Unknown",
        client_ip=interface.get("externalIp") or "Unknown",
        result_url=share.get("url"),
        detected_identity=str(detected).strip() if detected else None,
        raw=tool_json,
    )


def last_json_object(buffer: str) -> Optional[Dict[str, Any]]:
    """
    Return the last complete JSON object in an accumulated tool output
    buffer that can stand as a final result: an object without a progress
    `type`, or one typed "result". Falls back to decoding the whole buffer
    for tools that pretty-print a single object.
    """
    def _is_final(obj: Any) -> bool:
        return isinstance(obj, dict) and obj.get("type", "result") == "result" and "error" not in obj

    for line in reversed(buffer.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            continue
        if _is_final(obj):
            return obj

    stripped = buffer.strip()
    start, end = stripped.find("{"), stripped.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        obj = json.loads(stripped[start : end + 1])
    except json.JSONDecodeError:
        return None
    return obj if _is_final(obj) else None


@dataclass(frozen=True)
class ResultRecord:
    """
    The single row written per completed measurement.

    Attributes:
        office_id: target office.
        download / upload / ping / jitter / packet_loss: final figures.
        isp: resolved canonical provider identity.
        server_id / server_name: measurement server.
        raw_data: JSON audit blob (tool output + section, claimed identity, metadata).
    """

    office_id: str
    download: float
    upload: float
    ping: float
    jitter: float
    packet_loss: float
    isp: str
    server_id: Optional[str]
    server_name: Optional[str]
    raw_data: str
