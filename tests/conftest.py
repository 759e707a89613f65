"""Shared fixtures for the work permit tests."""

from datetime import datetime, timedelta, timezone

import pytest

from dcpermit.app.data_store import LocalSqlitePermitStore
from dcpermit.app.permit_models import ExternalPersonnel, InternalPersonnel, WorkPermitRequest
from dcpermit.app.permit_service import PermitLifecycleManager


NOW = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sqlite_store(tmp_path):
    return LocalSqlitePermitStore(tmp_path / "data")


@pytest.fixture
def manager(sqlite_store, clock):
    return PermitLifecycleManager(sqlite_store, clock=clock)


@pytest.fixture
def make_request():
    def _make(**overrides) -> WorkPermitRequest:
        values = {
            "reason": "Install new server rack",
            "entry_date_time": datetime(2024, 5, 2, 9, 30, tzinfo=timezone.utc),
            "personnel": (
                InternalPersonnel(personnel_id="p-1", employee_id="123456"),
                ExternalPersonnel(
                    personnel_id="p-2",
                    full_name="Somchai Jaidee",
                    company="Rack Vendor Co.",
                    national_id="1100000000001",
                ),
            ),
            "equipment_in": "- Server Dell R740 S/N: XXXXX",
            "equipment_out": "",
        }
        values.update(overrides)
        return WorkPermitRequest(**values)

    return _make
