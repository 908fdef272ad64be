"""Test config and shared fixtures."""
import pytest
from typing import AsyncGenerator, List, Tuple

from datacore.config import Settings
from datacore.logging import LogConfig
from datacore.repository import UnitOfWork
from datacore.store import InMemoryDatabase, InMemoryStore, Write
from datacore.store.memory import ConstraintViolation
from datacore.tracking import CascadePolicy, EntityStateTracker
from tests.models import Department, Employee, Project


EMPLOYEE_NAMES = [
    "Mira", "Anton", "Zoe", "Bruno", "Lena", "Omar", "Ines", "Karl", "Yara",
    "Dmitri", "Eva", "Felix", "Gita", "Hugo", "Ivo", "Jana", "Kemal", "Lars",
    "Nina", "Otto", "Pia", "Quinn", "Rosa", "Sven", "Tara",
]


class FlakyDatabase(InMemoryDatabase):
    """In-memory database whose writes fail when fail_when(write) is true."""

    def __init__(self):
        super().__init__()
        self.fail_when = None

    def _apply_write(self, staged, write: Write) -> None:
        if self.fail_when is not None and self.fail_when(write):
            raise ConstraintViolation(f"Injected failure for {write.kind.value} {write.key}")
        super()._apply_write(staged, write)


class RecordingStore(InMemoryStore):
    """InMemoryStore that keeps every batch it was asked to execute."""

    def __init__(self, database=None, latency: float = 0.0):
        super().__init__(database, latency)
        self.batches: List[List[Write]] = []

    async def execute_batch(self, writes):
        self.batches.append(list(writes))
        return await super().execute_batch(writes)


@pytest.fixture(scope="session", autouse=True)
def quiet_logging():
    """Keep test output readable."""
    LogConfig.setup_logging(level="WARNING", to_file=False)


@pytest.fixture
def employee_rows() -> List[Tuple[int, str, int, int]]:
    """(id, name, age, department_id) for the 25 seeded employees."""
    return [
        (i, name, 20 + (i * 7) % 30, (i % 3) + 1)
        for i, name in enumerate(EMPLOYEE_NAMES, start=1)
    ]


@pytest.fixture
def database(employee_rows) -> InMemoryDatabase:
    """Database with 3 departments, 25 employees and 3 projects."""
    db = FlakyDatabase()
    db.seed(
        Department(id=1, name="Engineering"),
        Department(id=2, name="Sales"),
        Department(id=3, name="Research"),
    )
    db.seed(*[
        Employee(id=i, name=name, age=age, department_id=dept)
        for i, name, age, dept in employee_rows
    ])
    db.seed(
        Project(id=1, title="Compiler", budget=100, department_id=1),
        Project(id=2, title="Runtime", budget=250, department_id=1),
        Project(id=3, title="Outreach", budget=40, department_id=2),
    )
    return db


@pytest.fixture
def store(database) -> RecordingStore:
    return RecordingStore(database)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        APP_ENV="testing",
        DEFAULT_CASCADE_POLICY="restrict",
        STORE_TIMEOUT_SECONDS=None,
        AUTO_DETECT_CHANGES=True,
    )


@pytest.fixture
async def uow(store, test_settings) -> AsyncGenerator[UnitOfWork, None]:
    """Unit of work over the seeded database."""
    unit = UnitOfWork(store, settings=test_settings)
    yield unit
    await unit.dispose()


@pytest.fixture
def tracker() -> EntityStateTracker:
    return EntityStateTracker(default_cascade=CascadePolicy.RESTRICT)


@pytest.fixture
def cascading_tracker() -> EntityStateTracker:
    return EntityStateTracker(default_cascade=CascadePolicy.CASCADE)
