import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Pin runtime configuration before any imports that might initialize it
os.environ.setdefault("SESSION_STORE", "memory")
os.environ.setdefault("SESSION_REFRESH_IN_BACKGROUND", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authsession.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeClock:
    """Manually advanced clock so expiry arithmetic never waits on wall time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
