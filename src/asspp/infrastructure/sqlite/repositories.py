from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from src.asspp.domain.exceptions import (
    StorageError,
    TaskAlreadyExistsError,
    TaskConflictError,
    TaskNotFoundError,
)
from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_filter import TaskFilter
from src.asspp.domain.models.task_state import TaskState
from src.asspp.domain.models.task_update import TaskUpdate
from src.asspp.domain.repositories import TaskStoreRepository
from src.asspp.infrastructure.sqlite.mappers import OrmMapper
from src.asspp.infrastructure.sqlite.orm import SqliteOrm, TaskRow


class SqliteTaskStore(TaskStoreRepository):
    """SQLite-backed task storage using SQLAlchemy async sessions."""

    def __init__(self, orm: SqliteOrm, *, page_size: int = 100) -> None:
        self._orm = orm
        self._page_size = page_size

    async def open(self) -> None:
        try:
            await self._orm.create_schema()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to prepare task database: {exc}") from exc

    async def close(self) -> None:
        await self._orm.dispose()

    async def create(self, task: Task) -> None:
        """Persist a new task."""
        try:
            async with self._orm.session_factory() as session:
                async with session.begin():
                    session.add(OrmMapper.to_task_row(task))
        except IntegrityError:
            raise TaskAlreadyExistsError(task.id) from None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to create task '{task.id}': {exc}") from exc

    async def get(self, task_id: str) -> Task:
        """Fetch a task by id."""
        try:
            async with self._orm.session_factory() as session:
                row = await session.get(TaskRow, task_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read task '{task_id}': {exc}") from exc
        if row is None:
            raise TaskNotFoundError(task_id)
        return OrmMapper.to_domain_task(row)

    async def update(self, task_id: str, expected_state: TaskState, update: TaskUpdate) -> Task:
        """Apply ``update`` if the row is still in ``expected_state``."""
        current = await self.get(task_id)
        if current.state != expected_state:
            raise TaskConflictError(task_id, expected_state.value, current.state.value)
        updated = update.apply(current, datetime.now(UTC))
        try:
            async with self._orm.session_factory() as session:
                async with session.begin():
                    # Every transition changes the state, so the state predicate turns
                    # the write into a compare-and-set against concurrent writers.
                    result = await session.execute(
                        sql_update(TaskRow)
                        .where(TaskRow.id == task_id, TaskRow.state == expected_state)
                        .values(**OrmMapper.to_row_values(updated))
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        state = await session.scalar(
                            select(TaskRow.state).where(TaskRow.id == task_id)
                        )
                        if state is None:
                            raise TaskNotFoundError(task_id)
                        raise TaskConflictError(task_id, expected_state.value, state.value)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to update task '{task_id}': {exc}") from exc
        return updated

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> AsyncIterator[Task]:
        """Yield matching tasks page by page, oldest first."""
        task_filter = task_filter or TaskFilter()
        statement = select(TaskRow)
        if task_filter.owner is not None:
            statement = statement.where(TaskRow.owner == task_filter.owner)
        if task_filter.states is not None:
            statement = statement.where(TaskRow.state.in_(list(task_filter.states)))
        if task_filter.created_after is not None:
            statement = statement.where(TaskRow.created_at >= task_filter.created_after)
        if task_filter.created_before is not None:
            statement = statement.where(TaskRow.created_at < task_filter.created_before)
        statement = statement.order_by(TaskRow.created_at, TaskRow.id)

        emitted = 0
        offset = 0
        while task_filter.limit is None or emitted < task_filter.limit:
            page_size = self._page_size
            if task_filter.limit is not None:
                page_size = min(page_size, task_filter.limit - emitted)
            try:
                async with self._orm.session_factory() as session:
                    result = await session.execute(statement.limit(page_size).offset(offset))
                    rows = result.scalars().all()
            except SQLAlchemyError as exc:
                raise StorageError(f"Failed to list tasks: {exc}") from exc
            if not rows:
                return
            for row in rows:
                emitted += 1
                yield OrmMapper.to_domain_task(row)
            offset += len(rows)

    async def delete(self, task_id: str, expected_state: TaskState | None = None) -> None:
        statement = delete(TaskRow).where(TaskRow.id == task_id)
        if expected_state is not None:
            statement = statement.where(TaskRow.state == expected_state)
        try:
            async with self._orm.session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        statement.execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        return
                    current = await session.scalar(
                        select(TaskRow.state).where(TaskRow.id == task_id)
                    )
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete task '{task_id}': {exc}") from exc
        if current is None:
            raise TaskNotFoundError(task_id)
        raise TaskConflictError(task_id, expected_state.value, current.value)
