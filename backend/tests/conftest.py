import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# The API module builds its orchestrator at import time; keep it off the repo data dir.
os.environ.setdefault(
    "MARKETPLACE_DB_PATH",
    os.path.join(tempfile.mkdtemp(prefix="barbermatch-tests-"), "marketplace.sqlite3"),
)

from barbermatch.models import GeoPoint
from barbermatch.services.clock import FrozenClock
from barbermatch.services.notification_store import NotificationStore
from barbermatch.services.request_orchestrator import build_orchestrator

TEL_AVIV = GeoPoint(latitude=32.0853, longitude=34.7818)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def notifications():
    return NotificationStore()


@pytest.fixture
def engine(tmp_path, clock, notifications):
    return build_orchestrator(str(tmp_path / "marketplace.sqlite3"), clock=clock, notifications=notifications)


@pytest.fixture
def open_request(engine):
    return engine.create_request(
        customer_id="cust_1",
        service_ids=["haircut", "beard_trim"],
        location=TEL_AVIV,
        address="12 Dizengoff St, Tel Aviv",
    )
