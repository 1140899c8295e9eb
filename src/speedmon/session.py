"""
One live measurement, from the first progress frame to the persisted record.

`MeasurementSession.stream()` is what the HTTP layer iterates. It registers
the request, sends an initial `connecting` frame, and runs the supervisor on
a separate task whose outcomes are forwarded to the transport. Leaving the
iteration before the terminal frame (observer disconnect) cancels the
supervisor synchronously, which signals the tool.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Optional

from .config import Settings
from .identity import DEFAULT_RESOLVER, EXACT_MATCH, UNKNOWN_IDENTITY, IdentityResolution, IdentityResolver
from .measurement import MeasurementRequest, MeasurementResult
from .offices import Office, resolve_provider
from .outcome import Outcome, Progress
from .persistence import PersistenceGuard
from .registry import IN_FLIGHT, InFlightRegistry
from .supervisor import ToolSupervisor
from .transport import StreamTransport

LOGGER = logging.getLogger(__name__)

INTERNAL_ERROR_MESSAGE = "Speed test failed unexpectedly. Please try again."


class MeasurementSession:
    def __init__(
        self,
        request: MeasurementRequest,
        office: Office,
        settings: Settings,
        store,
        detector=None,
        resolver: IdentityResolver = DEFAULT_RESOLVER,
        registry: InFlightRegistry = IN_FLIGHT,
        client_ip: Optional[str] = None,
    ):
        self.request = request
        self.office = office
        self._detector = detector
        self._resolver = resolver
        self._registry = registry
        self._client_ip = client_ip
        self.transport = StreamTransport(request.request_id, on_disconnect=self._on_disconnect)
        self.supervisor = ToolSupervisor(settings, self._sink, request.request_id)
        self.guard = PersistenceGuard(store, request, office, resolver)
        self.initial_detected: Optional[str] = None
        self.save_outcome = None
        self._driver: Optional[asyncio.Task] = None
        self._terminal_sent = False
        self._started_at = time.monotonic()

    @property
    def driver(self) -> Optional[asyncio.Task]:
        return self._driver

    def _log(self, level: int, message: str) -> None:
        LOGGER.log(level, f"[{self.request.request_id}] {message}")

    def _on_disconnect(self) -> None:
        self.supervisor.cancel()

    @property
    def _prevalidated(self) -> bool:
        return bool(self.request.identity_validated and self.request.claimed_identity)

    # --------------------------------------------------------------------------
    # Stream
    # --------------------------------------------------------------------------

    async def stream(self) -> AsyncIterator[str]:
        self._registry.add(self.request.request_id)
        self._started_at = time.monotonic()
        self.transport.emit(self.supervisor.normalizer.start().to_payload())
        self._driver = asyncio.ensure_future(self._drive())
        try:
            async for frame in self.transport.frames():
                yield frame
        finally:
            if not self.transport.closed:
                self.transport.disconnect()

    async def _drive(self) -> None:
        try:
            if self._detector is not None and not self._prevalidated:
                detected = await asyncio.to_thread(self._detector.detect, self._client_ip)
                if detected and detected != UNKNOWN_IDENTITY:
                    self.initial_detected = detected
                self._log(logging.INFO, f"Initial provider detection: {detected!r}")
            if self.supervisor.finished:
                self._log(logging.INFO, "Cancelled before the measurement tool was started")
                return
            await self.supervisor.run()
        except Exception:
            LOGGER.exception(f"[{self.request.request_id}] Measurement failed")
            self.supervisor.cancel()
            if not self._terminal_sent:
                self._terminal_sent = True
                self.transport.emit({"type": "error", "error": INTERNAL_ERROR_MESSAGE})
        finally:
            self.transport.close()
            self._registry.discard(self.request.request_id)

    # --------------------------------------------------------------------------
    # Outcome dispatch
    # --------------------------------------------------------------------------

    async def _sink(self, outcome: Outcome) -> None:
        if isinstance(outcome, Progress):
            self.transport.emit(outcome.event.to_payload())
            return
        self._terminal_sent = True
        if outcome.succeeded:
            await self._complete(outcome.result)
        else:
            self._log(logging.WARNING, f"Measurement ended with {outcome.kind.value}: {outcome.message}")
            self.transport.emit(outcome.to_payload())
        self.transport.close()

    def detected_identity(self, result: MeasurementResult) -> str:
        if self._prevalidated:
            return self.request.claimed_identity
        return self.initial_detected or result.detected_identity or "Unknown ISP"

    def identity_validation(self, detected: str) -> Optional[IdentityResolution]:
        claimed = self.request.claimed_identity
        if not claimed:
            return None
        provider = resolve_provider(self.office, claimed)
        claimed_name = provider.name if provider else claimed
        if self.request.identity_validated:
            return IdentityResolution(
                claimed=claimed_name,
                detected=detected,
                claimed_canonical=self._resolver.canonicalize(claimed_name),
                detected_canonical=self._resolver.canonicalize(detected),
                confidence=EXACT_MATCH,
                is_match=True,
                allow_proceed=True,
            )
        return self._resolver.validate(claimed_name, detected, relaxed=True)

    async def _complete(self, result: MeasurementResult) -> None:
        detected = self.detected_identity(result)
        payload = result.to_payload()
        payload["ispName"] = detected
        validation = self.identity_validation(detected)
        if validation is not None:
            payload["ispValidation"] = validation.to_payload()
        self.transport.emit(payload)

        duration_ms = int((time.monotonic() - self._started_at) * 1000)
        self.save_outcome = await asyncio.to_thread(
            self.guard.try_save, result, self.initial_detected or result.detected_identity, duration_ms
        )
