"""
Exactly-once persistence of a completed measurement.

`PersistenceGuard.try_save` is safe to call from both the streaming and the
fallback completion paths, from any thread: the first call sets the latch
under a lock and writes; every later call is a logged no-op.

Identity precedence for the persisted record
--------------------------------------------
1) claimed identity flagged as pre-validated, used as given (a provider id is
   turned into its display name),
2) claimed identity resolved against the office's providers, canonicalized,
3) detected identity, canonicalized,
4) the office's default identity, canonicalized.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from .errors import StoreError
from .identity import DEFAULT_RESOLVER, UNKNOWN_IDENTITY, IdentityResolver
from .measurement import MeasurementRequest, MeasurementResult, ResultRecord
from .offices import Office, provider_display_name, resolve_provider

LOGGER = logging.getLogger(__name__)

DEFAULT_SECTION = "General"


@dataclass(frozen=True)
class SaveOutcome:
    saved: bool
    record_id: Optional[int] = None
    identity: Optional[str] = None


def resolve_persisted_identity(
    request: MeasurementRequest,
    office: Office,
    detected_identity: Optional[str],
    resolver: IdentityResolver = DEFAULT_RESOLVER,
) -> str:
    claimed = request.claimed_identity
    if claimed:
        provider = resolve_provider(office, claimed)
        if request.identity_validated:
            return provider_display_name(provider) if provider else claimed.strip()
        name = provider.name if provider else claimed
        return resolver.canonicalize(name)

    if detected_identity and detected_identity != UNKNOWN_IDENTITY:
        return resolver.canonicalize(detected_identity)

    return resolver.canonicalize(office.default_identity())


def audit_blob(
    request: MeasurementRequest,
    result: MeasurementResult,
    duration_ms: Optional[int] = None,
) -> str:
    """The tool's raw result plus section, claimed identity and test metadata."""
    enhanced = dict(result.raw)
    enhanced["section"] = request.section or DEFAULT_SECTION
    enhanced["selectedISP"] = request.claimed_identity
    enhanced["testMetadata"] = {
        "requestId": request.request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "testDuration": duration_ms,
    }
    return json.dumps(enhanced)


class PersistenceGuard:
    """
    Per-request write-once guard around the result store.

    Parameters
    ----------
    store : object
        Anything exposing `create_measurement_result(ResultRecord) -> int`.
    request : MeasurementRequest
    office : Office
    resolver : IdentityResolver
    """

    def __init__(self, store, request: MeasurementRequest, office: Office, resolver: IdentityResolver = DEFAULT_RESOLVER):
        self._store = store
        self._request = request
        self._office = office
        self._resolver = resolver
        self._lock = threading.Lock()
        self._latched = False

    @property
    def latched(self) -> bool:
        return self._latched

    def try_save(
        self,
        result: MeasurementResult,
        detected_identity: Optional[str] = None,
        duration_ms: Optional[int] = None,
    ) -> SaveOutcome:
        rid = self._request.request_id
        with self._lock:
            if self._latched:
                LOGGER.info(f"[{rid}] Result already saved, skipping duplicate completion")
                return SaveOutcome(saved=False)
            self._latched = True

        identity = resolve_persisted_identity(self._request, self._office, detected_identity, self._resolver)
        record = ResultRecord(
            office_id=self._office.id,
            download=result.download,
            upload=result.upload,
            ping=result.ping,
            jitter=result.jitter,
            packet_loss=result.packet_loss,
            isp=identity,
            server_id=result.server_id,
            server_name=result.server_name,
            raw_data=audit_blob(self._request, result, duration_ms),
        )
        try:
            record_id = self._store.create_measurement_result(record)
        except StoreError as e:
            LOGGER.error(f"[{rid}] {e}")
            return SaveOutcome(saved=False, identity=identity)

        LOGGER.info(
            f"[{rid}] Saved result {record_id} for office {self._office.id}: "
            f"ISP {identity!r}, section {self._request.section or DEFAULT_SECTION!r}"
        )
        return SaveOutcome(saved=True, record_id=record_id, identity=identity)
