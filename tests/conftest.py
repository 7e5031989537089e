from datetime import datetime, timedelta, timezone

import pytest

from fabtrack import FabricationService, StageKind
from fabtrack.storage import ShopDatabase
from fabtrack.store import SettingsStore, WorkOrderStore

T0 = datetime(2024, 3, 4, 14, 5, 9, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stale_paths():
    return []


@pytest.fixture
def service(clock, stale_paths):
    return FabricationService(clock=clock, on_stale=stale_paths.extend)


@pytest.fixture
def database(tmp_path):
    db = ShopDatabase(str(tmp_path / "shop.sqlite3"))
    yield db
    db.close()


@pytest.fixture
def sqlite_service(database, clock):
    return FabricationService(
        WorkOrderStore.from_database(database),
        SettingsStore.from_database(database),
        clock=clock,
    )


@pytest.fixture
def full_order(service):
    """A work order asking for scanning, design and print."""

    return service.create_work_order(
        "Lakeside Instruments",
        "Sensor bracket",
        [StageKind.PRINT, StageKind.SCANNING, StageKind.DESIGN],
    )


def stages_of(service, work_order):
    return service.store.list_stages_for_work_order(work_order.id)
