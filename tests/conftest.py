import os
import sys
import threading

import pytest

from speedmon.config import Settings
from speedmon.identity import UNKNOWN_IDENTITY
from speedmon.offices import InMemoryOfficeDirectory, Office


@pytest.fixture(scope="session")
def fpath_test_dir() -> str:
    """
    Path to `tests/data/` folder.
    """
    return os.path.join(os.path.dirname(__file__), "data")


@pytest.fixture(scope="session")
def fpath_fake_tool(fpath_test_dir: str) -> str:
    return os.path.join(fpath_test_dir, "fake_speedtest.py")


@pytest.fixture
def tool_settings(fpath_fake_tool: str):
    """
    Factory for `Settings` that run the scripted fake tool in a given mode,
    with short timeouts suitable for tests.
    """

    def _make(mode: str = "happy", **overrides) -> Settings:
        values = dict(
            tool_command=(sys.executable, fpath_fake_tool, mode),
            timeout=15.0,
            kill_grace=1.0,
            detection_services=(),
        )
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def office() -> Office:
    return Office(
        id="office-1",
        name="Makati Branch",
        isp="PLDT",
        isps=["PLDT", "Globe (Backup Line)"],
        section_isps={"Admin": ["Converge"]},
    )


@pytest.fixture
def offices(office: Office) -> InMemoryOfficeDirectory:
    return InMemoryOfficeDirectory([office])


class RecordingStore:
    """In-memory result store that records every write."""

    def __init__(self):
        self.records = []
        self._lock = threading.Lock()

    def create_measurement_result(self, record) -> int:
        with self._lock:
            self.records.append(record)
            return len(self.records)


class FakeDetector:
    """Detector returning a fixed answer and remembering the addresses it was asked about."""

    def __init__(self, answer: str = UNKNOWN_IDENTITY, ignore=("railway",)):
        self.answer = answer
        self.ignore = ignore
        self.calls = []

    def is_ignored(self, organization: str) -> bool:
        return any(token in organization.lower() for token in self.ignore)

    def detect(self, client_ip=None) -> str:
        self.calls.append(client_ip)
        return self.answer


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def make_detector():
    return FakeDetector
