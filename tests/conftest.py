from datetime import datetime, timedelta, timezone

import pytest

from schemas import GeoPoint, Identity
from service import AttendanceService


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


ORIGIN = GeoPoint(latitude=0.0, longitude=0.0)
NEAR = GeoPoint(latitude=0.0, longitude=0.00003)  # ~3.3 m east of ORIGIN
FAR = GeoPoint(latitude=0.0, longitude=0.0005)  # ~55 m east of ORIGIN


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    return AttendanceService(clock=clock, radius_meters=5.0, max_location_age_seconds=None)


@pytest.fixture
def teacher():
    return Identity(userId="t1", role="teacher", displayName="Ms. Rivera")


@pytest.fixture
def student():
    return Identity(userId="s1", role="student", displayName="Alice")


@pytest.fixture
def session(service, teacher):
    return service.create_session(teacher, "t1", ORIGIN, 15)


@pytest.fixture
def anyio_backend():
    return "asyncio"
