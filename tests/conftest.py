import sys
from pathlib import Path

import pytest
import pytest_asyncio


# Ensure project root is on sys.path so `services.*` / `tools.*` imports work
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))


# Explicitly enable pytest-asyncio plugin for async tests/fixtures
pytest_plugins = ("pytest_asyncio",)


from core.errors import FetchError, TransportError
from models.schemas import CourseData, DeliveryReceipt, SubscriptionCriteria, SubscriptionUpdate
from services.notification_service import NotificationService
from services.subscription_store import SubscriptionStore


PHONE = "+15195550101"


class FakeTransport:
    """Records deliveries instead of talking to Twilio."""

    channel = "sms"

    def __init__(self):
        self.deliveries = []
        self.fail_with = None

    async def deliver(self, destination, body):
        if self.fail_with is not None:
            raise self.fail_with
        self.deliveries.append((destination, body))
        return DeliveryReceipt(channel="sms", destination=destination, sid=f"SM{len(self.deliveries)}", status="queued")


class FakeCourseSource:
    """Serves canned course data per (institution, course, term); can be told to fail per course."""

    def __init__(self):
        self.courses = {}
        self.failures = {}
        self.calls = []

    def set_sections(self, institution_key, course_key, term_key, sections):
        self.courses[(institution_key, course_key, term_key)] = CourseData.model_validate({"sections": sections})

    def fail(self, institution_key, course_key, term_key, message="upstream unavailable"):
        self.failures[(institution_key, course_key, term_key)] = FetchError(message)

    async def fetch_course_slots(self, institution_key, course_key, term_key):
        key = (institution_key, course_key, term_key)
        self.calls.append(key)
        if key in self.failures:
            raise self.failures[key]
        return self.courses.get(key)


def section(section_id, available, capacity, meetings=None):
    return {"id": section_id, "available": available, "capacity": capacity, "meetings": meetings or []}


@pytest_asyncio.fixture()
async def store(tmp_path):
    """File-backed SQLite store, fresh for every test."""
    s = SubscriptionStore(f"sqlite+aiosqlite:///{tmp_path / 'slotty.db'}", echo=False, run_retention_sec=3600)
    await s.open()
    yield s
    await s.close()


@pytest.fixture()
def transport():
    return FakeTransport()


@pytest.fixture()
def notifier(transport):
    return NotificationService(transport, app_name="Slotty")


@pytest.fixture()
def course_source():
    return FakeCourseSource()


@pytest.fixture()
def make_subscription(store):
    """Create a subscription and (by default) mark it verified, like a confirmed subscriber."""

    async def _make(course_key="CIS*2750", section_key=None, institution_key="guelph", term_key="F26",
                    contact=PHONE, verified=True, enabled=True):
        criteria = SubscriptionCriteria(
            institution_key=institution_key,
            course_key=course_key,
            section_key=section_key,
            term_key=term_key,
        )
        sub = await store.create(criteria, contact, enabled=enabled)
        if verified:
            sub = await store.update(SubscriptionUpdate(verified=True), subscription_id=sub.id)
        return sub

    return _make


@pytest.fixture()
def transport_error():
    return TransportError("carrier rejected message", code=30003)
