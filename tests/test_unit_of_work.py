"""
Unit of work tests: repository cache, atomic commit, rollback, dispose and the async context manager.
"""
import asyncio
import pytest

from datacore.config import Settings
from datacore.exceptions import SessionDisposedError, StoreFailure
from datacore.repository import Repository, UnitOfWork
from datacore.specification import Specification
from datacore.store import InMemoryStore, WriteKind
from datacore.store.memory import ConstraintViolation
from datacore.tracking import CascadePolicy, EntityState
from tests.models import Department, Employee, Project


class TestRepositoryCache:
    """One repository per entity type and unit of work"""

    @pytest.mark.asyncio
    async def test_same_repository_for_same_type(self, uow):
        assert uow.repository(Employee) is uow.repository(Employee)
        assert uow.repository(Employee) is not uow.repository(Department)

    @pytest.mark.asyncio
    async def test_repositories_share_the_session_tracker(self, uow):
        assert uow.repository(Employee).tracker is uow.tracker
        assert uow.repository(Department).store is uow.store

    @pytest.mark.asyncio
    async def test_separate_units_have_separate_caches(self, store, test_settings):
        first = UnitOfWork(store, settings=test_settings)
        second = UnitOfWork(store, settings=test_settings)

        assert first.repository(Employee) is not second.repository(Employee)
        assert first.session_id != second.session_id

    @pytest.mark.asyncio
    async def test_register_after_creation_fails(self, uow):
        uow.repository(Employee)
        with pytest.raises(ValueError):
            uow.register_repository(Employee, Repository)

    def test_store_is_required(self):
        with pytest.raises(ValueError):
            UnitOfWork()

    @pytest.mark.asyncio
    async def test_from_store(self, store, test_settings):
        unit = await UnitOfWork.from_store(store, settings=test_settings)
        assert unit.store is store
        assert unit.tracker.default_cascade == CascadePolicy.RESTRICT

    @pytest.mark.asyncio
    async def test_cascade_policy_from_settings(self, store):
        unit = UnitOfWork(store, settings=Settings(DEFAULT_CASCADE_POLICY="cascade"))
        assert unit.tracker.default_cascade == CascadePolicy.CASCADE


class TestCommit:
    """Atomic commit"""

    @pytest.mark.asyncio
    async def test_add_commit_get_round_trip(self, uow, store, database):
        """After commit the instance is Unchanged and served from the identity map"""
        repo = uow.repository(Employee)
        employee = await repo.add(Employee(id=100, name="Uma", age=29, department_id=1))

        written = await uow.commit()

        assert written == 1
        assert uow.tracker.state_of(employee) == EntityState.UNCHANGED
        assert await repo.get_by_id(100) is employee
        assert store.round_trips["get"] == 0
        assert database.fetch(Employee, 100) == {"id": 100, "name": "Uma", "age": 29, "department_id": 1}

    @pytest.mark.asyncio
    async def test_one_batch_per_commit(self, uow, store, database):
        employees = uow.repository(Employee)
        await employees.add(Employee(id=100, name="Uma", age=29, department_id=1))
        changed = await employees.get_by_id(2)
        changed.age = 35
        await employees.remove(3)

        assert await uow.commit() == 3

        assert store.round_trips["execute_batch"] == 1
        (batch,) = store.batches
        assert [w.kind for w in batch] == [WriteKind.INSERT, WriteKind.UPDATE, WriteKind.DELETE]
        assert batch[1].key == {"id": 2}
        assert batch[1].values == {"age": 35}
        assert database.fetch(Employee, 2)["age"] == 35
        assert database.fetch(Employee, 3) is None

    @pytest.mark.asyncio
    async def test_failed_batch_changes_nothing(self, uow, database):
        """[Added A, Modified B, Deleted C] with B's write failing: no entry transitions"""
        employees = uow.repository(Employee)
        added = await employees.add(Employee(id=100, name="Uma", age=29, department_id=1))
        modified = await employees.get_by_id(2)
        modified.age = 35
        deleted = await employees.remove(3)
        database.fail_when = lambda write: write.kind == WriteKind.UPDATE

        with pytest.raises(StoreFailure) as exc_info:
            await uow.commit()

        assert exc_info.value.code == 503
        assert isinstance(exc_info.value.__cause__, ConstraintViolation)
        assert uow.tracker.state_of(added) == EntityState.ADDED
        assert uow.tracker.state_of(modified) == EntityState.MODIFIED
        assert uow.tracker.state_of(deleted) == EntityState.DELETED
        assert database.fetch(Employee, 100) is None
        assert database.fetch(Employee, 2)["age"] == 34
        assert database.fetch(Employee, 3) is not None

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, uow, database):
        employees = uow.repository(Employee)
        added = await employees.add(Employee(id=100, name="Uma", age=29, department_id=1))
        database.fail_when = lambda write: True

        with pytest.raises(StoreFailure):
            await uow.commit()

        database.fail_when = None
        assert await uow.commit() == 1
        assert uow.tracker.state_of(added) == EntityState.UNCHANGED

    @pytest.mark.asyncio
    async def test_inserts_respect_foreign_keys(self, uow, database):
        """Children added before their parent are still written after it"""
        employee = await uow.repository(Employee).add(Employee(id=100, name="Uma", age=29, department_id=10))
        await uow.repository(Department).add(Department(id=10, name="Legal"))

        assert await uow.commit() == 2

        assert database.fetch(Department, 10)["name"] == "Legal"
        assert uow.tracker.state_of(employee) == EntityState.UNCHANGED

    @pytest.mark.asyncio
    async def test_cascade_delete_commits_children_first(self, store, database):
        unit = UnitOfWork(store, cascade_policy=CascadePolicy.CASCADE)
        staff = await unit.repository(Employee).query(Specification(criteria=lambda e: e.department_id == 3))

        department = await unit.repository(Department).remove(3)
        assert all(unit.tracker.state_of(e) == EntityState.DELETED for e in staff)

        assert await unit.commit() == len(staff) + 1

        assert database.fetch(Department, 3) is None
        assert len(database.rows(Employee)) == 25 - len(staff)
        assert unit.tracker.state_of(department) == EntityState.DETACHED
        await unit.dispose()

    @pytest.mark.asyncio
    async def test_declared_cascade_for_projects(self, uow, database):
        """Projects cascade; the department's untracked employees still block it in the store"""
        await uow.repository(Project).query()
        department = await uow.repository(Department).remove(2)
        projects = uow.tracker.entries(EntityState.DELETED)
        assert [e.entity.id for e in projects if e.entity_type is Project] == [3]

        with pytest.raises(StoreFailure):
            await uow.commit()

        assert uow.tracker.state_of(department) == EntityState.DELETED
        assert database.fetch(Project, 3) is not None

    @pytest.mark.asyncio
    async def test_reassigned_project_survives_cascade(self, uow, database):
        """A project moved to another department is updated, not deleted with its old one"""
        database.seed(Department(id=4, name="Legal"))
        database.seed(Project(id=10, title="Audit", budget=80, department_id=4))
        departments = uow.repository(Department)
        (department,) = await departments.query(Specification(criteria=lambda d: d.id == 4, includes=["projects"]))
        department.projects[0].department_id = 2

        await departments.remove(department)
        assert await uow.commit() == 2

        assert database.fetch(Department, 4) is None
        assert database.fetch(Project, 10)["department_id"] == 2

    @pytest.mark.asyncio
    async def test_reassigned_staff_does_not_restrict_delete(self, uow, database):
        departments = uow.repository(Department)
        (department,) = await departments.query(Specification(criteria=lambda d: d.id == 3, includes=["employees"]))
        staff = list(department.employees)
        for employee in staff:
            employee.department_id = 2

        await departments.remove(department)
        assert await uow.commit() == len(staff) + 1

        assert database.fetch(Department, 3) is None
        assert all(database.fetch(Employee, e.id)["department_id"] == 2 for e in staff)

    @pytest.mark.asyncio
    async def test_commit_without_changes(self, uow, store):
        await uow.repository(Employee).get_by_id(1)

        assert await uow.commit() == 0
        assert store.round_trips["execute_batch"] == 0

    @pytest.mark.asyncio
    async def test_reverted_edit_writes_nothing(self, uow, store):
        employee = await uow.repository(Employee).get_by_id(1)
        employee.age = 60
        assert uow.has_changes() is True
        employee.age = 27

        assert await uow.commit() == 0
        assert uow.tracker.state_of(employee) == EntityState.UNCHANGED
        assert store.round_trips["execute_batch"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_commit_leaves_no_partial_write(self, database, test_settings):
        slow = InMemoryStore(database, latency=0.5)
        unit = UnitOfWork(slow, settings=test_settings)
        employee = await unit.repository(Employee).add(Employee(id=100, name="Uma", age=29, department_id=1))

        task = asyncio.create_task(unit.commit())
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert unit.tracker.state_of(employee) == EntityState.ADDED
        assert database.fetch(Employee, 100) is None
        await unit.dispose()

    @pytest.mark.asyncio
    async def test_commit_timeout_is_a_store_failure(self, database):
        slow = InMemoryStore(database, latency=0.5)
        unit = UnitOfWork(slow, settings=Settings(STORE_TIMEOUT_SECONDS=0.01))
        employee = await unit.repository(Employee).add(Employee(id=100, name="Uma", age=29, department_id=1))

        with pytest.raises(StoreFailure) as exc_info:
            await unit.commit()

        assert isinstance(exc_info.value.__cause__, asyncio.TimeoutError)
        assert unit.tracker.state_of(employee) == EntityState.ADDED
        assert database.fetch(Employee, 100) is None
        await unit.dispose()

    @pytest.mark.asyncio
    async def test_read_timeout_is_a_store_failure(self, database):
        unit = UnitOfWork(InMemoryStore(database, latency=0.5), settings=Settings(STORE_TIMEOUT_SECONDS=0.01))

        with pytest.raises(StoreFailure):
            await unit.repository(Employee).get_by_id(1)
        assert len(unit.tracker) == 0
        await unit.dispose()


class TestRollback:

    @pytest.mark.asyncio
    async def test_rollback_discards_pending_work(self, uow, database):
        employees = uow.repository(Employee)
        added = await employees.add(Employee(id=100, name="Uma", age=29))
        modified = await employees.get_by_id(2)
        modified.name = "Toni"
        deleted = await employees.remove(3)

        await uow.rollback()

        assert uow.tracker.state_of(added) == EntityState.DETACHED
        assert modified.name == "Anton"
        assert uow.tracker.state_of(modified) == EntityState.UNCHANGED
        assert uow.tracker.state_of(deleted) == EntityState.UNCHANGED
        assert uow.has_changes() is False
        assert await uow.commit() == 0


class TestDispose:

    @pytest.mark.asyncio
    async def test_use_after_dispose_fails(self, uow, store):
        repo = uow.repository(Employee)
        await repo.get_by_id(1)
        entry = uow.tracker.find(Employee, 1)

        await uow.dispose()

        assert uow.disposed is True
        assert store.closed is True
        with pytest.raises(SessionDisposedError) as exc_info:
            uow.repository(Employee)
        assert exc_info.value.code == 410
        with pytest.raises(SessionDisposedError):
            await repo.get_by_id(1)
        with pytest.raises(SessionDisposedError):
            await repo.query()
        with pytest.raises(SessionDisposedError):
            await uow.commit()
        with pytest.raises(SessionDisposedError):
            entry.state

    @pytest.mark.asyncio
    async def test_dispose_is_idempotent(self, uow):
        await uow.dispose()
        await uow.dispose()
        assert uow.disposed is True


class TestContextManager:
    """async with: commit on success, rollback on error, dispose always"""

    @pytest.mark.asyncio
    async def test_clean_exit_commits(self, store, database, test_settings):
        async with UnitOfWork(store, settings=test_settings) as unit:
            await unit.repository(Employee).add(Employee(id=100, name="Uma", age=29, department_id=1))

        assert unit.disposed is True
        assert database.fetch(Employee, 100) is not None

    @pytest.mark.asyncio
    async def test_error_rolls_back(self, store, database, test_settings):
        with pytest.raises(RuntimeError):
            async with UnitOfWork(store, settings=test_settings) as unit:
                await unit.repository(Employee).add(Employee(id=100, name="Uma", age=29, department_id=1))
                raise RuntimeError("boom")

        assert unit.disposed is True
        assert database.fetch(Employee, 100) is None

    @pytest.mark.asyncio
    async def test_failed_commit_on_exit_still_disposes(self, store, database, test_settings):
        database.fail_when = lambda write: True

        with pytest.raises(StoreFailure):
            async with UnitOfWork(store, settings=test_settings) as unit:
                await unit.repository(Employee).add(Employee(id=100, name="Uma", age=29, department_id=1))

        assert unit.disposed is True
        assert store.closed is True
