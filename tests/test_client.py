"""
Tests for the client-side stream consumer, its reducer and pre-flight
validation. No network: requests sessions are replaced by Mocks.
"""

from unittest.mock import Mock

import pytest
import requests

from speedmon.client import (
    CANCELLED,
    COMPLETE,
    ERRORED,
    INTERRUPTED_MESSAGE,
    ConsumerState,
    PreflightValidator,
    StreamConsumer,
    reduce,
)
from speedmon.config import Settings
from speedmon.detection import client_detector
from speedmon.errors import DetectionFailed, IdentityMismatch, StreamAlreadyActive
from speedmon.identity import UNKNOWN_IDENTITY
from speedmon.transport import encode_event

BASE_URL = "http://speedmon.test"

RESULT = {"type": "result", "download": 91.2, "upload": 38.7, "ping": 13.9, "progress": 100}


def stream_response(*messages, status_code=200):
    wire = "".join(encode_event(m) for m in messages)
    response = Mock(status_code=status_code, encoding=None)
    response.iter_lines.return_value = iter(wire.split("\n"))
    return response


def error_response(status_code, body):
    response = Mock(status_code=status_code)
    response.json.return_value = body
    return response


def progress(stage, value, **figures):
    return {"type": "progress", "stage": stage, "progress": value, **figures}


# ------------------------------------------------------------------------------
# reduce
# ------------------------------------------------------------------------------


def test_reduce_clamps_into_stage_range_and_never_regresses():
    state = ConsumerState()
    state = reduce(state, progress("connecting", 5))
    state = reduce(state, progress("download", 10, download=40.0))
    assert state.status == "download"
    assert state.progress == 20.0
    assert state.download == 40.0

    state = reduce(state, progress("download", 65))
    # late ping event: stage does not go back, progress does not decrease
    state = reduce(state, progress("ping", 28))
    assert state.status == "download"
    assert state.progress == 65.0

    state = reduce(state, progress("upload", 99))
    assert state.progress == 95.0


def test_reduce_terminal_states_absorb_everything():
    done = reduce(ConsumerState(), RESULT)
    assert done.status == COMPLETE
    assert done.progress == 100.0
    assert reduce(done, {"type": "error", "error": "late"}) is done
    assert reduce(done, progress("upload", 70)) is done

    failed = reduce(ConsumerState(), {"type": "error", "error": "boom"})
    assert failed.status == ERRORED
    assert failed.error == "boom"
    assert reduce(failed, RESULT) is failed


def test_reduce_ignores_unknown_messages():
    state = ConsumerState()
    assert reduce(state, {"type": "heartbeat"}) is state
    assert reduce(state, progress("complete", 100)) is state
    assert reduce(state, "not a message") is state


# ------------------------------------------------------------------------------
# PreflightValidator
# ------------------------------------------------------------------------------


def preflight_with(answer):
    session = Mock()
    session.get.return_value = Mock(status_code=200, json=lambda: {"detectedISP": answer})
    return PreflightValidator(BASE_URL, session=session), session


def test_preflight_accepts_matching_identity():
    preflight, session = preflight_with("PLDT Inc.")
    resolution = preflight.validate("PLDT")
    assert resolution.confidence == 100
    assert session.get.call_args[0][0] == f"{BASE_URL}/api/speedtest/detect-isp"


def test_preflight_mismatch_suggests_configured_provider():
    preflight, _ = preflight_with("Globe Telecom Inc")
    with pytest.raises(IdentityMismatch) as excinfo:
        preflight.validate("PLDT", configured=["PLDT", "Globe"])
    assert excinfo.value.suggested_identity == "Globe"
    assert str(excinfo.value).startswith("ISP mismatch detected")


@pytest.mark.parametrize("answer", ["", UNKNOWN_IDENTITY])
def test_preflight_detection_failure(answer):
    preflight, _ = preflight_with(answer)
    with pytest.raises(DetectionFailed):
        preflight.validate("PLDT")


def test_preflight_network_failure():
    session = Mock()
    session.get.side_effect = requests.ConnectionError("refused")
    with pytest.raises(DetectionFailed):
        PreflightValidator(BASE_URL, session=session).detect()


def direct_lookup(*answers):
    lookup = Mock()
    lookup.get.side_effect = [Mock(status_code=200, json=Mock(return_value=a)) for a in answers]
    settings = Settings(detection_services=("https://lookup.test/json/",), detection_timeout=1.0)
    return client_detector(settings, session=lookup)


def test_preflight_direct_lookup_wins_over_unknown_server_answer():
    session = Mock()
    session.get.return_value = Mock(status_code=200, json=lambda: {"detectedISP": UNKNOWN_IDENTITY})
    session.post.return_value = Mock(
        status_code=200, json=lambda: {"detectedISP": "Globe Telecom", "method": "client-provided"}
    )
    preflight = PreflightValidator(BASE_URL, session=session, local_detector=direct_lookup({"org": "Globe Telecom"}))

    assert preflight.validate("Globe").confidence == 100
    assert session.post.call_args.kwargs["json"] == {"clientDetectedISP": "Globe Telecom"}
    session.get.assert_not_called()


def test_preflight_keeps_direct_answer_when_server_unreachable():
    session = Mock()
    session.post.side_effect = requests.ConnectionError("refused")
    preflight = PreflightValidator(BASE_URL, session=session, local_detector=direct_lookup({"org": "Converge ICT"}))
    assert preflight.detect() == "Converge ICT"
    session.get.assert_not_called()


def test_preflight_hosting_answer_falls_back_to_server():
    session = Mock()
    session.get.return_value = Mock(status_code=200, json=lambda: {"detectedISP": "PLDT Inc."})
    preflight = PreflightValidator(BASE_URL, session=session, local_detector=direct_lookup({"org": "Amazon AWS"}))

    assert preflight.detect() == "PLDT Inc."
    session.post.assert_not_called()
    assert session.get.call_args[0][0] == f"{BASE_URL}/api/speedtest/detect-isp"


# ------------------------------------------------------------------------------
# StreamConsumer
# ------------------------------------------------------------------------------


def test_consumer_reaches_complete():
    session = Mock()
    session.get.return_value = stream_response(
        progress("connecting", 5), progress("ping", 18, ping=13.9), progress("download", 45, download=91.2), RESULT
    )
    seen = []

    final = StreamConsumer(BASE_URL, session=session).run("office-1", on_update=seen.append)

    assert final.status == COMPLETE
    assert final.download == pytest.approx(91.2)
    assert [s.status for s in seen][-1] == COMPLETE
    params = session.get.call_args.kwargs["params"]
    assert params == {"officeId": "office-1", "timezone": "UTC"}
    assert session.get.call_args.kwargs["stream"] is True


def test_stream_ending_early_is_an_interruption():
    session = Mock()
    session.get.return_value = stream_response(progress("connecting", 5), progress("ping", 10))
    final = StreamConsumer(BASE_URL, session=session).run("office-1")
    assert final.status == ERRORED
    assert final.error == INTERRUPTED_MESSAGE


def test_rejected_stream_surfaces_server_error():
    session = Mock()
    session.get.return_value = error_response(
        400, {"error": "Testing is only allowed during designated time slots", "timezone": "UTC"}
    )
    final = StreamConsumer(BASE_URL, session=session).run("office-1")
    assert final.status == ERRORED
    assert final.error.startswith("Testing is only allowed")
    assert final.error_payload["status"] == 400
    assert final.error_payload["timezone"] == "UTC"


def test_connection_failure_is_an_interruption():
    session = Mock()
    session.get.side_effect = requests.ConnectionError("refused")
    final = StreamConsumer(BASE_URL, session=session).run("office-1")
    assert final.status == ERRORED
    assert final.error == INTERRUPTED_MESSAGE


def test_second_run_while_active_is_rejected():
    session = Mock()
    session.get.return_value = stream_response(progress("connecting", 5), RESULT)
    consumer = StreamConsumer(BASE_URL, session=session)
    rejected = []

    def on_update(state):
        if not rejected:
            with pytest.raises(StreamAlreadyActive):
                consumer.run("office-1")
            rejected.append(True)

    assert consumer.run("office-1", on_update=on_update).status == COMPLETE
    assert rejected == [True]
    assert not consumer.active
    assert session.get.call_count == 1


def test_preflight_mismatch_never_opens_the_stream():
    preflight = Mock()
    preflight.validate.side_effect = IdentityMismatch("PLDT", "Globe", suggested_identity="Globe")
    session = Mock()

    final = StreamConsumer(BASE_URL, session=session, preflight=preflight).run(
        "office-1", claimed_identity="PLDT", configured=["PLDT", "Globe"]
    )

    assert final.status == ERRORED
    assert final.error_payload["kind"] == "identity_mismatch"
    assert final.error_payload["suggestedIdentity"] == "Globe"
    session.get.assert_not_called()


def test_preflight_pass_marks_identity_validated():
    preflight = Mock()
    session = Mock()
    session.get.return_value = stream_response(RESULT)

    StreamConsumer(BASE_URL, session=session, preflight=preflight).run(
        "office-1", claimed_identity="PLDT", section="Admin", timezone="Asia/Manila"
    )

    preflight.validate.assert_called_once_with("PLDT", ())
    assert session.get.call_args.kwargs["params"] == {
        "officeId": "office-1",
        "timezone": "Asia/Manila",
        "selectedISP": "PLDT",
        "selectedSection": "Admin",
        "useValidatedISP": "true",
    }


def test_already_validated_identity_skips_preflight():
    preflight = Mock()
    session = Mock()
    session.get.return_value = stream_response(RESULT)
    StreamConsumer(BASE_URL, session=session, preflight=preflight).run(
        "office-1", claimed_identity="globe", identity_validated=True
    )
    preflight.validate.assert_not_called()


def test_cancel_during_stream():
    session = Mock()
    session.get.return_value = stream_response(progress("connecting", 5), progress("ping", 10), RESULT)
    consumer = StreamConsumer(BASE_URL, session=session)

    def on_update(state):
        if state.status == "ping":
            consumer.cancel()

    final = consumer.run("office-1", on_update=on_update)
    assert final.status == CANCELLED


def test_cancel_before_response_is_assigned():
    session = Mock()
    response = stream_response(progress("connecting", 5), RESULT)
    consumer = StreamConsumer(BASE_URL, session=session)

    def cancel_then_respond(*args, **kwargs):
        consumer.cancel()
        return response

    session.get.side_effect = cancel_then_respond
    seen = []

    final = consumer.run("office-1", on_update=seen.append)

    assert final.status == CANCELLED
    assert COMPLETE not in [s.status for s in seen]
    response.close.assert_called()
    response.iter_lines.assert_not_called()
