"""
Client side of the live measurement stream.

High level
----------
- `reduce(state, message)` is a pure transition function over
  `ConsumerState`; every wire message is one transition.
- `PreflightValidator` asks the server which provider it detects for us and
  checks the claimed provider against it in strict mode.
- `StreamConsumer` runs pre-flight when needed, opens the stream with
  `requests`, feeds each decoded message to `reduce`, and guarantees the
  final state is terminal (complete, errored or cancelled).

Display clamps
--------------
Progress is clamped into the stage's display range (connecting 0-25,
ping 5-30, download 20-70, upload 60-95) and never goes backwards, even when
a late event from an earlier stage arrives.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, Optional

import requests

from .detection import ServiceLookupError, request_json
from .errors import DetectionFailed, IdentityMismatch, StreamAlreadyActive
from .identity import DEFAULT_RESOLVER, UNKNOWN_IDENTITY, IdentityResolution, IdentityResolver
from .measurement import as_number
from .transport import parse_sse_lines

LOGGER = logging.getLogger(__name__)

STAGES = ("connecting", "ping", "download", "upload", "complete")
STAGE_INDEX = {stage: i for i, stage in enumerate(STAGES)}
DISPLAY_RANGES = {
    "connecting": (0.0, 25.0),
    "ping": (5.0, 30.0),
    "download": (20.0, 70.0),
    "upload": (60.0, 95.0),
}

COMPLETE = "complete"
ERRORED = "errored"
CANCELLED = "cancelled"
TERMINAL_STATES = frozenset({COMPLETE, ERRORED, CANCELLED})

INTERRUPTED_MESSAGE = "Connection to speed test failed - test was interrupted"
DETECTION_FAILED_MESSAGE = "Unable to detect your ISP. Please verify your connection or try again."


# ------------------------------------------------------------------------------
# State machine
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class ConsumerState:
    """
    What the observer currently shows.

    Attributes:
        status: a stage name, or one of errored / cancelled.
        progress: displayed 0-100 progress.
        download / upload / ping: latest figures.
        result: the `result` message, once complete.
        error: human-readable error, once errored.
        error_payload: the full `error` message (kind, flags, suggestion).
    """

    status: str = "connecting"
    progress: float = 0.0
    download: float = 0.0
    upload: float = 0.0
    ping: float = 0.0
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_payload: Optional[Dict[str, Any]] = None

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATES


def errored(state: ConsumerState, message: str, payload: Optional[Dict[str, Any]] = None) -> ConsumerState:
    if state.terminal:
        return state
    return replace(state, status=ERRORED, error=message, error_payload=payload or {"type": "error", "error": message})


def cancelled(state: ConsumerState) -> ConsumerState:
    if state.terminal:
        return state
    return replace(state, status=CANCELLED)


def reduce(state: ConsumerState, message: Dict[str, Any]) -> ConsumerState:
    if state.terminal or not isinstance(message, dict):
        return state

    kind = message.get("type")
    if kind == "progress":
        stage = message.get("stage") or "connecting"
        if stage not in DISPLAY_RANGES:
            LOGGER.debug(f"Ignoring progress for stage {stage!r}")
            return state
        low, high = DISPLAY_RANGES[stage]
        shown = max(low, min(high, as_number(message.get("progress"))))
        index = max(STAGE_INDEX.get(state.status, 0), STAGE_INDEX[stage])
        return replace(
            state,
            status=STAGES[index],
            progress=max(state.progress, shown),
            download=as_number(message.get("download")),
            upload=as_number(message.get("upload")),
            ping=as_number(message.get("ping")),
        )

    if kind == "result":
        return replace(
            state,
            status=COMPLETE,
            progress=100.0,
            download=as_number(message.get("download")),
            upload=as_number(message.get("upload")),
            ping=as_number(message.get("ping")),
            result=message,
        )

    if kind == "error":
        return errored(state, str(message.get("error") or "Speed test failed"), message)

    LOGGER.warning(f"Unknown message type received: {kind!r}")
    return state


# ------------------------------------------------------------------------------
# Pre-flight validation
# ------------------------------------------------------------------------------


class PreflightValidator:
    """
    Strict claimed-vs-detected check performed before a stream is opened.

    Detection first asks the lookup services directly from this host, when a
    `local_detector` is given, and reports the answer to the server; the
    server's own lookup is only used when the direct lookup finds nothing.

    Raises `DetectionFailed` when neither can name our provider and
    `IdentityMismatch` when the claimed provider does not match; the latter
    carries `suggested_identity` when the detected provider corresponds to
    another provider configured for the office.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        resolver: IdentityResolver = DEFAULT_RESOLVER,
        timeout: float = 10.0,
        local_detector=None,
    ):
        self._url = f"{base_url.rstrip('/')}/api/speedtest/detect-isp"
        self._session = session or requests.Session()
        self._resolver = resolver
        self._timeout = timeout
        self._local_detector = local_detector

    def _report_local(self, detected: str) -> str:
        try:
            payload = request_json(
                self._url,
                timeout=self._timeout,
                attempts=1,
                session=self._session,
                body={"clientDetectedISP": detected},
            )
        except ServiceLookupError as e:
            LOGGER.warning(f"Could not report detected provider to the server: {e}")
            return detected
        confirmed = str(payload.get("detectedISP") or "").strip()
        if not confirmed or confirmed == UNKNOWN_IDENTITY:
            return detected
        return confirmed

    def detect(self) -> str:
        if self._local_detector is not None:
            local = self._local_detector.detect()
            if local and local != UNKNOWN_IDENTITY:
                return self._report_local(local)
            LOGGER.info("Direct provider lookup found nothing, asking the server")

        try:
            payload = request_json(self._url, timeout=self._timeout, attempts=1, session=self._session)
        except ServiceLookupError as e:
            raise DetectionFailed(f"Failed to detect ISP: {e}") from e
        detected = str(payload.get("detectedISP") or "").strip()
        if not detected or detected == UNKNOWN_IDENTITY:
            raise DetectionFailed(DETECTION_FAILED_MESSAGE)
        return detected

    def validate(self, claimed: str, configured: Iterable[str] = ()) -> IdentityResolution:
        detected = self.detect()
        resolution = self._resolver.validate(claimed, detected, relaxed=False)
        LOGGER.info(
            f"Pre-flight: claimed {claimed!r}, detected {detected!r}, confidence {resolution.confidence}"
        )
        if not resolution.allow_proceed:
            suggested = self._resolver.suggest_configured(detected, configured)
            raise IdentityMismatch(claimed, detected, resolution=resolution, suggested_identity=suggested)
        return resolution


def mismatch_payload(error: IdentityMismatch) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "type": "error",
        "error": str(error),
        "kind": "identity_mismatch",
        "selectedISP": error.claimed,
        "detectedISP": error.detected,
        "suggestedAction": "Please select the correct ISP and try again",
    }
    if error.suggested_identity:
        payload["suggestedIdentity"] = error.suggested_identity
    return payload


# ------------------------------------------------------------------------------
# Stream consumer
# ------------------------------------------------------------------------------


class StreamConsumer:
    """
    Opens one live measurement stream at a time and reduces its messages.

    Parameters
    ----------
    base_url : str
        Server root, e.g. "http://localhost:8000".
    session : requests.Session, optional
        Carries the caller-identity headers.
    preflight : PreflightValidator, optional
        Used when a claimed identity is given and not already validated.
    timeout : float
        Connect/read timeout; must exceed the server's measurement timeout.
    """

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        preflight: Optional[PreflightValidator] = None,
        timeout: float = 330.0,
    ):
        self._url = f"{base_url.rstrip('/')}/api/speedtest/live"
        self._session = session or requests.Session()
        self._preflight = preflight
        self._timeout = timeout
        self._guard = threading.Lock()
        self._active = False
        self._cancel_requested = False
        self._response: Optional[requests.Response] = None
        self.state = ConsumerState()

    @property
    def active(self) -> bool:
        return self._active

    def _update(self, state: ConsumerState, on_update: Optional[Callable[[ConsumerState], None]]) -> None:
        self.state = state
        if on_update is not None:
            on_update(state)

    def run(
        self,
        office_id: str,
        claimed_identity: Optional[str] = None,
        section: Optional[str] = None,
        identity_validated: bool = False,
        timezone: str = "UTC",
        configured: Iterable[str] = (),
        on_update: Optional[Callable[[ConsumerState], None]] = None,
    ) -> ConsumerState:
        with self._guard:
            if self._active:
                raise StreamAlreadyActive("A speed test stream is already running for this consumer")
            self._active = True
            self._cancel_requested = False
        try:
            self._update(ConsumerState(), on_update)

            if claimed_identity and not identity_validated and self._preflight is not None:
                try:
                    self._preflight.validate(claimed_identity, configured)
                except IdentityMismatch as e:
                    self._update(errored(self.state, str(e), mismatch_payload(e)), on_update)
                    return self.state
                except DetectionFailed as e:
                    payload = {"type": "error", "error": str(e), "kind": "detection_failed", "suggestion": e.suggestion}
                    self._update(errored(self.state, str(e), payload), on_update)
                    return self.state
                identity_validated = True

            if self._cancel_requested:
                self._update(cancelled(self.state), on_update)
                return self.state

            params = {"officeId": office_id, "timezone": timezone}
            if claimed_identity:
                params["selectedISP"] = claimed_identity
            if section:
                params["selectedSection"] = section
            if identity_validated and claimed_identity:
                params["useValidatedISP"] = "true"

            self._consume(params, on_update)
            return self.state
        finally:
            response, self._response = self._response, None
            if response is not None:
                response.close()
            with self._guard:
                self._active = False

    def _consume(self, params: Dict[str, str], on_update) -> None:
        try:
            response = self._session.get(self._url, params=params, stream=True, timeout=self._timeout)
            self._response = response
            if self._cancel_requested:
                response.close()
                self._update(cancelled(self.state), on_update)
                return
            if response.status_code != 200:
                try:
                    body = response.json()
                except ValueError:
                    body = {}
                message = body.get("error") if isinstance(body, dict) else None
                payload = {"type": "error", "error": message or f"HTTP {response.status_code}", "status": response.status_code}
                if isinstance(body, dict):
                    payload.update({k: v for k, v in body.items() if k != "error"})
                self._update(errored(self.state, payload["error"], payload), on_update)
                return

            if response.encoding is None:
                response.encoding = "utf-8"
            for message in parse_sse_lines(response.iter_lines(decode_unicode=True)):
                if self._cancel_requested:
                    break
                self._update(reduce(self.state, message), on_update)
                if self.state.terminal:
                    return
        except requests.RequestException as e:
            if not self._cancel_requested:
                LOGGER.warning(f"Stream failed: {e}")

        if self._cancel_requested:
            self._update(cancelled(self.state), on_update)
        elif not self.state.terminal:
            self._update(errored(self.state, INTERRUPTED_MESSAGE), on_update)

    def cancel(self) -> None:
        """Stop consuming; closing the response makes the server stop the tool."""
        self._cancel_requested = True
        self.state = cancelled(self.state)
        response = self._response
        if response is not None:
            response.close()
