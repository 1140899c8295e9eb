"""
HTTP tests via FastAPI's TestClient. The live stream runs the scripted fake
tool; the office directory, store and detector are in-memory fakes.
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from speedmon.config import Settings
from speedmon.registry import InFlightRegistry
from speedmon.server import create_app
from speedmon.transport import parse_sse_lines

# 04:30 UTC is 12:30 in Manila (NOON window) and outside every window in UTC
NOON_IN_MANILA = datetime(2026, 10, 19, 4, 30, tzinfo=timezone.utc)

USER = {"X-User-Role": "USER", "X-User-Office": "office-1"}
ADMIN = {"X-User-Role": "ADMIN"}


@pytest.fixture
def detector(make_detector):
    return make_detector("PLDT Inc.")


@pytest.fixture
def make_client(tool_settings, store, offices, detector):
    def _make(mode="happy", settings=None, registry=None):
        app = create_app(
            settings=settings or tool_settings(mode),
            store=store,
            offices=offices,
            detector=detector,
            clock=lambda: NOON_IN_MANILA,
            registry=registry if registry is not None else InFlightRegistry(),
        )
        return TestClient(app)

    return _make


def live_params(**extra):
    params = {"officeId": "office-1", "timezone": "Asia/Manila"}
    params.update(extra)
    return params


# ------------------------------------------------------------------------------
# /api/speedtest/live
# ------------------------------------------------------------------------------


def test_live_requires_caller(make_client):
    resp = make_client().get("/api/speedtest/live", params=live_params())
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_live_requires_office(make_client):
    resp = make_client().get("/api/speedtest/live", params={"timezone": "Asia/Manila"}, headers=USER)
    assert resp.status_code == 400


def test_live_rejects_other_office(make_client, store):
    headers = {"X-User-Role": "USER", "X-User-Office": "office-2"}
    resp = make_client().get("/api/speedtest/live", params=live_params(), headers=headers)
    assert resp.status_code == 403
    assert store.records == []


def test_live_outside_window(make_client, store, detector):
    resp = make_client().get("/api/speedtest/live", params=live_params(timezone="UTC"), headers=USER)
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"].startswith("Testing is only allowed")
    assert body["timezone"] == "UTC"
    assert "currentTime" in body
    assert store.records == []
    assert detector.calls == []


def test_live_unknown_office(make_client):
    resp = make_client().get("/api/speedtest/live", params=live_params(officeId="nowhere"), headers=ADMIN)
    assert resp.status_code == 404


def test_live_streams_and_saves_one_record(make_client, store):
    headers = dict(USER, **{"X-Forwarded-For": "203.0.113.7"})
    resp = make_client().get("/api/speedtest/live", params=live_params(selectedISP="PLDT"), headers=headers)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    assert resp.headers["cache-control"] == "no-cache"

    messages = list(parse_sse_lines(resp.text.split("\n")))
    assert messages[0]["stage"] == "connecting"
    assert messages[-1]["type"] == "result"
    assert messages[-1]["download"] == pytest.approx(91.2)
    assert messages[-1]["upload"] == pytest.approx(38.7)
    assert messages[-1]["ispValidation"]["confidence"] == 100

    assert len(store.records) == 1
    assert store.records[0].isp == "PLDT"
    assert store.records[0].office_id == "office-1"


def test_live_admin_may_target_any_office(make_client, store):
    resp = make_client("network").get("/api/speedtest/live", params=live_params(), headers=ADMIN)
    messages = list(parse_sse_lines(resp.text.split("\n")))
    assert messages[-1]["type"] == "error"
    assert store.records == []


# ------------------------------------------------------------------------------
# Identity detection and validation
# ------------------------------------------------------------------------------


def test_detect_isp_uses_forwarded_address(make_client, detector):
    headers = dict(USER, **{"X-Forwarded-For": "198.51.100.4, 10.0.0.1"})
    resp = make_client().get("/api/speedtest/detect-isp", headers=headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["detectedISP"] == "PLDT Inc."
    assert body["clientIP"] == "198.51.100.4"
    assert body["method"] == "client-side-detection"
    assert detector.calls == ["198.51.100.4"]


def test_detect_isp_requires_caller(make_client):
    assert make_client().get("/api/speedtest/detect-isp").status_code == 401


def test_detect_isp_accepts_client_answer(make_client, detector):
    resp = make_client().post("/api/speedtest/detect-isp", json={"clientDetectedISP": "Globe Telecom"}, headers=USER)
    assert resp.json()["method"] == "client-provided"
    assert resp.json()["detectedISP"] == "Globe Telecom"
    assert detector.calls == []


def test_detect_isp_ignores_hosting_answer(make_client, detector):
    resp = make_client().post("/api/speedtest/detect-isp", json={"clientDetectedISP": "Railway Corp"}, headers=USER)
    assert resp.json()["method"] == "server-side-fallback"
    assert resp.json()["detectedISP"] == "PLDT Inc."
    assert len(detector.calls) == 1


def test_validate_shared_infrastructure(make_client):
    body = {
        "selectedISP": "Converge",
        "detectedISP": "PLDT Inc.",
        "testResult": {"download": 91.2, "upload": 38.7, "ping": 13.9},
    }
    resp = make_client().post("/api/speedtest/validate", json=body)
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is True
    assert payload["allowProceed"] is True
    assert payload["validation"]["confidence"] == 60
    assert payload["validatedResult"]["selectedISPNormalized"] == "Converge"
    assert payload["validatedResult"]["detectedISPNormalized"] == "PLDT"
    assert payload["validatedResult"]["testType"] == "client-side-validated"


def test_validate_rejects_implausible_figures(make_client):
    body = {
        "selectedISP": "PLDT",
        "detectedISP": "PLDT",
        "testResult": {"download": 20000, "upload": 38.7, "ping": 13.9},
    }
    resp = make_client().post("/api/speedtest/validate", json=body)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid test results detected"
    assert resp.json()["validation"]["allowProceed"] is False


def test_validate_missing_fields(make_client):
    resp = make_client().post("/api/speedtest/validate", json={"selectedISP": "PLDT"})
    assert resp.status_code == 400
    assert resp.json() == {"error": "Missing required fields"}


# ------------------------------------------------------------------------------
# Time and health
# ------------------------------------------------------------------------------


def test_time_reports_slot_in_caller_zone(make_client):
    resp = make_client().get("/api/time", params={"timezone": "Asia/Manila"}, headers=USER)
    assert resp.status_code == 200
    body = resp.json()
    assert body["currentTimeSlot"] == "NOON"
    assert body["timezone"] == "Asia/Manila"
    assert body["timeSlots"]["afternoon"] == "1:00 PM - 6:00 PM"


def test_time_outside_windows(make_client):
    body = make_client().get("/api/time", params={"timezone": "UTC"}, headers=USER).json()
    assert body["currentTimeSlot"] is None


def test_health_reports_tool_version(make_client):
    resp = make_client().get("/api/health/speedtest")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert "Speedtest" in body["cli_info"]["version"]
    assert body["in_flight"] == 0
    assert body["in_flight_requests"] == []


def test_health_without_tool(make_client):
    settings = Settings(tool_command=("/nonexistent/speedtest-binary",))
    resp = make_client(settings=settings).get("/api/health/speedtest")
    assert resp.status_code == 503
    assert resp.json()["speedtest_cli"] == "not_available"


def test_health_lists_in_flight_requests(make_client):
    registry = InFlightRegistry()
    registry.add("office-2-1")
    registry.add("office-1-1")
    body = make_client(registry=registry).get("/api/health/speedtest").json()
    assert body["in_flight"] == 2
    assert body["in_flight_requests"] == ["office-1-1", "office-2-1"]
