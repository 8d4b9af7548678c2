"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from branch_deployer.deploy.errors import StoreFailure, TaskNotFoundError, ValidationError
from branch_deployer.deploy.models import (
    ACTIVE_STATUSES,
    DeployTaskUpdate,
    DeployTaskView,
    TaskStatus,
)
from branch_deployer.storage.alembic_runner import upgrade_head
from branch_deployer.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from branch_deployer.storage.sqlmodel_models import DeployTask

MAX_BRANCH_LENGTH = 255


class DeployTaskRepository:
    """Task store facade; the only writer of task rows."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations; safe to call on an initialized database."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise StoreFailure(f"Schema migration failed: {error}") from error

    def create_task(self, branch: str | None) -> DeployTaskView:
        """Insert a pending task for ``branch``."""

        normalized = (branch or "").strip()
        if not normalized:
            raise ValidationError("branch is required")
        if len(normalized) > MAX_BRANCH_LENGTH:
            raise ValidationError(f"branch must be at most {MAX_BRANCH_LENGTH} characters")
        if any(not char.isprintable() for char in normalized):
            raise ValidationError("branch must not contain control characters")

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = DeployTask(
                branch=normalized,
                status=TaskStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: int) -> DeployTaskView:
        with self._session() as session:
            row = session.exec(select(DeployTask).where(DeployTask.id == task_id)).one_or_none()
            if row is None:
                raise TaskNotFoundError(task_id)
            return _to_task_view(row)

    def list_tasks(self) -> list[DeployTaskView]:
        with self._session() as session:
            rows = session.exec(select(DeployTask).order_by(col(DeployTask.id).asc())).all()
            return [_to_task_view(row) for row in rows]

    def update_task(self, task_id: int, update: DeployTaskUpdate) -> None:
        """Apply score and status as independent point updates.

        A failure between the two writes leaves the first one applied.
        ``deploying`` is reserved for the dispatcher's claim, and
        ``deployed`` is refused while another task is active.
        """

        if update.is_empty:
            raise ValidationError("status or score is required")
        if update.status == TaskStatus.DEPLOYING:
            raise ValidationError("status 'deploying' is set only by the dispatcher")

        if update.score is not None:
            self._update_field(task_id, score=update.score)
        if update.status is not None:
            self._set_status(task_id, update.status)

    def find_active(self) -> DeployTaskView | None:
        """Return the task currently deploying or deployed, if any."""

        with self._session() as session:
            row = _find_active_row(session)
            return _to_task_view(row) if row is not None else None

    def claim_next_pending(self) -> DeployTaskView | None:
        """Atomically move the oldest pending task to ``deploying``.

        Returns ``None`` when nothing is pending or when another task is
        still active. The active check and the claim share one transaction.
        """

        while True:
            with self._session() as session:
                if _find_active_row(session) is not None:
                    return None

                candidate = session.exec(
                    select(DeployTask)
                    .where(DeployTask.status == TaskStatus.PENDING.value)
                    .order_by(col(DeployTask.id).asc())
                    .limit(1)
                    .with_for_update(),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(DeployTask)
                    .where(
                        col(DeployTask.id) == candidate.id,
                        col(DeployTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(
                        status=TaskStatus.DEPLOYING.value,
                        updated_at=to_db_datetime(utc_now()),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()
                claimed = session.exec(
                    select(DeployTask).where(DeployTask.id == candidate.id),
                ).one()
                return _to_task_view(claimed)

    def mark_deployed(self, task_id: int) -> bool:
        """Move a deploying task to ``deployed``; False if it changed meanwhile."""

        return self._transition(task_id, TaskStatus.DEPLOYING, TaskStatus.DEPLOYED)

    def mark_deploy_failed(self, task_id: int) -> bool:
        """Move a deploying task to ``deploy_failed``; False if it changed meanwhile."""

        return self._transition(task_id, TaskStatus.DEPLOYING, TaskStatus.DEPLOY_FAILED)

    def recover_interrupted(self) -> list[int]:
        """Fail every task left ``deploying`` by a previous process."""

        with self._session() as session:
            rows = session.exec(
                select(DeployTask)
                .where(DeployTask.status == TaskStatus.DEPLOYING.value)
                .order_by(col(DeployTask.id).asc()),
            ).all()
            task_ids = [row.id for row in rows if row.id is not None]
            if not task_ids:
                return []
            session.exec(
                sa_update(DeployTask)
                .where(
                    col(DeployTask.id).in_(task_ids),
                    col(DeployTask.status) == TaskStatus.DEPLOYING.value,
                )
                .values(
                    status=TaskStatus.DEPLOY_FAILED.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()
            return task_ids

    def _transition(self, task_id: int, status_from: TaskStatus, status_to: TaskStatus) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_update(DeployTask)
                .where(
                    col(DeployTask.id) == task_id,
                    col(DeployTask.status) == status_from.value,
                )
                .values(
                    status=status_to.value,
                    updated_at=to_db_datetime(utc_now()),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def _update_field(self, task_id: int, **values: object) -> None:
        with self._session() as session:
            result = session.exec(
                sa_update(DeployTask)
                .where(col(DeployTask.id) == task_id)
                .values(updated_at=to_db_datetime(utc_now()), **values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFoundError(task_id)
            session.commit()

    def _set_status(self, task_id: int, status: TaskStatus) -> None:
        with self._session() as session:
            if status == TaskStatus.DEPLOYED:
                active = _find_active_row(session)
                if active is not None and active.id != task_id:
                    raise ValidationError(
                        f"task {active.id} is already {active.status}; "
                        "finish or cancel it before marking another task deployed",
                    )
            result = session.exec(
                sa_update(DeployTask)
                .where(col(DeployTask.id) == task_id)
                .values(status=status.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise TaskNotFoundError(task_id)
            session.commit()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise StoreFailure(f"Task store operation failed: {error}") from error


def _find_active_row(session: Session) -> DeployTask | None:
    return session.exec(
        select(DeployTask)
        .where(col(DeployTask.status).in_([status.value for status in ACTIVE_STATUSES]))
        .order_by(col(DeployTask.id).asc())
        .limit(1),
    ).one_or_none()


def _to_task_view(row: DeployTask) -> DeployTaskView:
    if row.id is None:
        raise RuntimeError("Task row has no id; it was not flushed.")
    return DeployTaskView(
        id=row.id,
        branch=row.branch,
        status=TaskStatus(row.status),
        score=row.score,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
