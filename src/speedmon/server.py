"""
HTTP surface.

`create_app()` builds the FastAPI application; every collaborator (result
store, office directory, detector, clock) can be injected, and defaults are
built from `Settings`. `app_from_env()` is the uvicorn factory used by
`speedmon serve`.

Caller identity comes from an upstream session layer as two headers:
X-User-Role (required, "ADMIN" may target any office) and X-User-Office.
"""

from __future__ import annotations

import logging
import platform
import sys
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from .config import Settings
from .detection import IdentityDetector, client_address
from .errors import OfficeNotFound, OutsideWindow
from .identity import IdentityResolver, resolver_from_settings
from .measurement import MeasurementRequest
from .offices import JsonOfficeDirectory
from .registry import IN_FLIGHT, InFlightRegistry
from .session import MeasurementSession
from .store import SQLiteResultStore
from .supervisor import tool_version
from .timewindow import WINDOW_LABELS, TimeSlot, current_slot, require_slot

LOGGER = logging.getLogger(__name__)

ADMIN_ROLE = "ADMIN"
MAX_PLAUSIBLE_MBPS = 10000
MAX_PLAUSIBLE_PING_MS = 1000

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ------------------------------------------------------------------------------
# Request / response models
# ------------------------------------------------------------------------------


class Caller(BaseModel):
    role: str
    office_id: Optional[str] = None

    def may_access(self, office_id: str) -> bool:
        return self.role == ADMIN_ROLE or self.office_id == office_id


class ResultFigures(BaseModel):
    download: float
    upload: float
    ping: float


class ValidateBody(BaseModel):
    selectedISP: Optional[str] = None
    detectedISP: Optional[str] = None
    testResult: Optional[ResultFigures] = None


class DetectBody(BaseModel):
    clientDetectedISP: Optional[str] = None


def current_caller(request: Request) -> Caller:
    role = request.headers.get("x-user-role")
    if not role:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return Caller(role=role.strip().upper(), office_id=request.headers.get("x-user-office") or None)


# ------------------------------------------------------------------------------
# Application factory
# ------------------------------------------------------------------------------


def create_app(
    settings: Optional[Settings] = None,
    store=None,
    offices=None,
    detector=None,
    clock: Callable[[], datetime] = _utcnow,
    resolver: Optional[IdentityResolver] = None,
    registry: InFlightRegistry = IN_FLIGHT,
) -> FastAPI:
    settings = settings or Settings()
    if store is None:
        store = SQLiteResultStore(settings.db_path)
        store.initialize()
    offices = offices if offices is not None else JsonOfficeDirectory(settings.offices_file)
    detector = detector if detector is not None else IdentityDetector(settings)
    resolver = resolver or resolver_from_settings(settings)

    app = FastAPI(
        title="speedmon",
        description="Live bandwidth measurement streaming and result capture.",
        version="0.1.0",
    )
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry

    @app.exception_handler(HTTPException)
    async def _http_error(request: Request, exc: HTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.exception_handler(OutsideWindow)
    async def _outside_window(request: Request, exc: OutsideWindow):
        return JSONResponse(
            {
                "error": str(exc),
                "currentTime": clock().isoformat(),
                "timezone": exc.timezone_name,
                "message": "Using your local time for validation",
            },
            status_code=400,
        )

    @app.exception_handler(OfficeNotFound)
    async def _office_not_found(request: Request, exc: OfficeNotFound):
        return JSONResponse({"error": str(exc)}, status_code=404)

    @app.get("/api/speedtest/live")
    async def live(
        request: Request,
        officeId: Optional[str] = Query(None, description="Target office identifier."),
        selectedISP: Optional[str] = Query(None, description="Claimed provider id or name."),
        selectedSection: Optional[str] = Query(None, description="Grouping label for the result."),
        useValidatedISP: bool = Query(False, description="The claimed provider passed pre-flight validation."),
        tz: str = Query("UTC", alias="timezone", description="Caller IANA time zone."),
        caller: Caller = Depends(current_caller),
    ):
        if not officeId:
            raise HTTPException(status_code=400, detail="officeId is required")
        if not caller.may_access(officeId):
            LOGGER.info(f"Forbidden: caller office {caller.office_id} does not match {officeId}")
            raise HTTPException(status_code=403, detail="Forbidden")

        slot = require_slot(tz, now=clock(), server_timezone=settings.app_timezone)
        office = offices.get(officeId)
        if office is None:
            raise OfficeNotFound(f"Office not found: {officeId}")

        measurement = MeasurementRequest(
            office_id=officeId,
            claimed_identity=selectedISP,
            section=selectedSection,
            identity_validated=useValidatedISP,
            timezone=tz,
        )
        LOGGER.info(
            f"[{measurement.request_id}] Live measurement for office {officeId} in {slot.value} window "
            f"(ISP {selectedISP!r}, section {selectedSection!r}, validated {useValidatedISP})"
        )
        session = MeasurementSession(
            measurement,
            office,
            settings,
            store,
            detector=detector,
            resolver=resolver,
            registry=registry,
            client_ip=client_address(request.headers),
        )
        return StreamingResponse(session.stream(), media_type="text/event-stream", headers=STREAM_HEADERS)

    @app.get("/api/speedtest/detect-isp")
    async def detect_isp(request: Request, caller: Caller = Depends(current_caller)):
        client_ip = client_address(request.headers)
        detected = await run_in_threadpool(detector.detect, client_ip)
        return {
            "detectedISP": detected,
            "clientIP": client_ip,
            "timestamp": clock().isoformat(),
            "method": "client-side-detection",
        }

    @app.post("/api/speedtest/detect-isp")
    async def detect_isp_provided(request: Request, body: DetectBody, caller: Caller = Depends(current_caller)):
        provided = (body.clientDetectedISP or "").strip()
        if provided and not detector.is_ignored(provided):
            return {"detectedISP": provided, "timestamp": clock().isoformat(), "method": "client-provided"}

        client_ip = client_address(request.headers)
        detected = await run_in_threadpool(detector.detect, client_ip)
        return {
            "detectedISP": detected,
            "clientIP": client_ip,
            "timestamp": clock().isoformat(),
            "method": "server-side-fallback",
        }

    @app.post("/api/speedtest/validate")
    def validate(body: ValidateBody):
        if not body.selectedISP or not body.detectedISP or body.testResult is None:
            raise HTTPException(status_code=400, detail="Missing required fields")

        resolution = resolver.validate(body.selectedISP, body.detectedISP, relaxed=True)
        figures = body.testResult
        plausible = (
            0 <= figures.download <= MAX_PLAUSIBLE_MBPS
            and 0 <= figures.upload <= MAX_PLAUSIBLE_MBPS
            and 0 <= figures.ping <= MAX_PLAUSIBLE_PING_MS
        )
        if not plausible:
            return JSONResponse(
                {
                    "error": "Invalid test results detected",
                    "validation": {
                        "isMatch": False,
                        "confidence": 0,
                        "allowProceed": False,
                        "reason": "Test results appear to be invalid or manipulated",
                    },
                },
                status_code=400,
            )

        validation = resolution.to_payload()
        return {
            "success": True,
            "validation": validation,
            "validatedResult": {
                **figures.model_dump(),
                "serverValidatedAt": clock().isoformat(),
                "ispValidation": validation,
                "testType": "client-side-validated",
                "selectedISPNormalized": resolution.claimed_canonical,
                "detectedISPNormalized": resolution.detected_canonical,
            },
            "allowProceed": resolution.allow_proceed,
        }

    @app.get("/api/time")
    def time_info(
        tz: Optional[str] = Query(None, alias="timezone"),
        caller: Caller = Depends(current_caller),
    ):
        now = clock()
        zone_name = tz or settings.app_timezone
        slot = current_slot(zone_name, now=now, server_timezone=settings.app_timezone)
        return {
            "currentTime": now.isoformat(),
            "currentTimeSlot": slot.value if slot else None,
            "timezone": zone_name,
            "serverTime": _utcnow().isoformat(),
            "timeSlots": {s.value.lower(): WINDOW_LABELS[s] for s in TimeSlot},
        }

    @app.get("/api/health/speedtest")
    async def health():
        started = _utcnow()
        version = await tool_version(settings)
        duration_ms = int((_utcnow() - started).total_seconds() * 1000)
        environment = {
            "platform": sys.platform,
            "arch": platform.machine(),
            "python_version": platform.python_version(),
        }
        if version is None:
            return JSONResponse(
                {
                    "status": "unhealthy",
                    "speedtest_cli": "not_available",
                    "error": f"{settings.command} --version did not succeed",
                    "check_duration_ms": duration_ms,
                    "in_flight": len(registry),
                    "in_flight_requests": sorted(registry.snapshot()),
                    "timestamp": clock().isoformat(),
                    "environment": environment,
                },
                status_code=503,
            )
        return {
            "status": "healthy",
            "speedtest_cli": "available",
            "cli_info": {"version": version, "path": settings.command},
            "check_duration_ms": duration_ms,
            "in_flight": len(registry),
            "in_flight_requests": sorted(registry.snapshot()),
            "timestamp": clock().isoformat(),
            "environment": environment,
        }

    return app


def app_from_env() -> FastAPI:
    """uvicorn factory: `uvicorn --factory speedmon.server:app_from_env`."""
    return create_app(Settings.from_env())
