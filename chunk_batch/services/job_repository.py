"""
JobRepository -- durable store of job runs and step checkpoints.

Contract:
    ``create_job_execution`` / ``update_job_execution`` / ``get_job_execution``
    / ``find_job_executions`` for job runs; ``create_step_execution`` /
    ``update_step_execution`` / ``load_last_step_execution`` /
    ``get_step_executions`` for step progress.

Architecture: chunk_batch/services.  Two implementations:
    ``InMemoryJobRepository``   -- dict-backed, per-row locks.
    ``SqlAlchemyJobRepository`` -- ORM-backed; every call runs inside
        ``transaction_manager.scope()`` and therefore joins the chunk
        executor's scope when called during a chunk commit.

Invariants enforced:
    - Write-ahead ordering: the executor persists the checkpoint inside the
      chunk's scope, before it fetches the next page.
    - Finalized step executions are never updated
      (InvalidStepTransitionError).
    - ``last_committed_key`` never moves backwards
      (CheckpointRegressionError).
    - ``seq`` values come from ``SequenceAllocator`` counter rows, so
      executions created concurrently in separate sessions never collide.
    - Writes to one step execution are serialized; unrelated rows never
      share a lock.

Failure modes:
    - Store errors (SQLAlchemyError) surface as CheckpointError.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Iterator, Protocol
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from chunk_batch.domain.types import (
    JobExecution,
    JobStatus,
    StepExecution,
    StepStatus,
)
from chunk_batch.models.execution import JobExecutionModel, StepExecutionModel
from chunk_batch.services.sequences import (
    JOB_EXECUTION_SEQUENCE,
    STEP_EXECUTION_SEQUENCE,
    SequenceAllocator,
)
from chunk_batch.services.transactions import SessionTransactionManager
from chunk_kernel.domain.clock import Clock, SystemClock
from chunk_kernel.exceptions import (
    BatchKernelError,
    CheckpointError,
    CheckpointRegressionError,
    InvalidStepTransitionError,
    JobExecutionNotFoundError,
    StepExecutionNotFoundError,
)
from chunk_kernel.logging_config import get_logger

logger = get_logger("batch.job_repository")


class JobRepository(Protocol):
    """Protocol for job-state stores."""

    def create_job_execution(
        self,
        job_name: str,
        instance_key: str,
        correlation_id: str | None = None,
    ) -> JobExecution: ...

    def update_job_execution(self, execution: JobExecution) -> JobExecution: ...

    def get_job_execution(self, job_execution_id: UUID) -> JobExecution: ...

    def find_job_executions(
        self, job_name: str, instance_key: str,
    ) -> tuple[JobExecution, ...]: ...

    def create_step_execution(
        self,
        job_execution_id: UUID,
        step_name: str,
        start_key: Any = None,
    ) -> StepExecution: ...

    def update_step_execution(self, execution: StepExecution) -> StepExecution: ...

    def load_last_step_execution(
        self, job_name: str, instance_key: str, step_name: str,
    ) -> StepExecution | None: ...

    def get_step_executions(
        self, job_execution_id: UUID,
    ) -> tuple[StepExecution, ...]: ...


def _comparable(key: Any) -> Any:
    # Composite keys come back from JSON columns as lists.
    return tuple(key) if isinstance(key, list) else key


def validate_step_update(current: StepExecution, new: StepExecution) -> None:
    """Reject updates to finalized rows and backward checkpoint moves."""
    if current.is_final:
        raise InvalidStepTransitionError(
            str(current.step_execution_id),
            current.status.value,
            new.status.value,
        )
    old_key = _comparable(current.last_committed_key)
    new_key = _comparable(new.last_committed_key)
    if old_key is None or new_key == old_key:
        return
    if new_key is None:
        raise CheckpointRegressionError(current.step_name, old_key, new_key)
    try:
        regressed = new_key < old_key
    except TypeError as exc:
        raise CheckpointError(
            current.step_name, f"keys {old_key!r} and {new_key!r} are not comparable",
        ) from exc
    if regressed:
        raise CheckpointRegressionError(current.step_name, old_key, new_key)


# =============================================================================
# In-memory
# =============================================================================


class InMemoryJobRepository:
    """Dict-backed repository.  Safe for concurrent steps in one process."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._index_lock = threading.Lock()
        self._row_locks: dict[UUID, threading.Lock] = {}
        self._jobs: dict[UUID, JobExecution] = {}
        self._steps: dict[UUID, StepExecution] = {}
        # step_execution_id / job_execution_id in creation order
        self._job_order: list[UUID] = []
        self._step_order: list[UUID] = []

    # -------------------------------------------------------------------------
    # Job executions
    # -------------------------------------------------------------------------

    def create_job_execution(
        self,
        job_name: str,
        instance_key: str,
        correlation_id: str | None = None,
    ) -> JobExecution:
        execution = JobExecution(
            job_execution_id=uuid4(),
            job_name=job_name,
            instance_key=instance_key,
            status=JobStatus.STARTING,
            started_at=self._clock.now(),
            correlation_id=correlation_id,
        )
        with self._index_lock:
            self._jobs[execution.job_execution_id] = execution
            self._job_order.append(execution.job_execution_id)
        return execution

    def update_job_execution(self, execution: JobExecution) -> JobExecution:
        with self._index_lock:
            if execution.job_execution_id not in self._jobs:
                raise JobExecutionNotFoundError(str(execution.job_execution_id))
            stored = replace(execution, step_executions=())
            self._jobs[execution.job_execution_id] = stored
        return self.get_job_execution(execution.job_execution_id)

    def get_job_execution(self, job_execution_id: UUID) -> JobExecution:
        with self._index_lock:
            execution = self._jobs.get(job_execution_id)
            if execution is None:
                raise JobExecutionNotFoundError(str(job_execution_id))
        return replace(
            execution, step_executions=self.get_step_executions(job_execution_id),
        )

    def find_job_executions(
        self, job_name: str, instance_key: str,
    ) -> tuple[JobExecution, ...]:
        with self._index_lock:
            ids = [
                job_id for job_id in self._job_order
                if self._jobs[job_id].job_name == job_name
                and self._jobs[job_id].instance_key == instance_key
            ]
        return tuple(self.get_job_execution(job_id) for job_id in ids)

    # -------------------------------------------------------------------------
    # Step executions
    # -------------------------------------------------------------------------

    def create_step_execution(
        self,
        job_execution_id: UUID,
        step_name: str,
        start_key: Any = None,
    ) -> StepExecution:
        execution = StepExecution(
            step_execution_id=uuid4(),
            job_execution_id=job_execution_id,
            step_name=step_name,
            status=StepStatus.STARTING,
            start_key=start_key,
            last_committed_key=start_key,
            started_at=self._clock.now(),
        )
        with self._index_lock:
            if job_execution_id not in self._jobs:
                raise JobExecutionNotFoundError(str(job_execution_id))
            self._steps[execution.step_execution_id] = execution
            self._step_order.append(execution.step_execution_id)
            self._row_locks[execution.step_execution_id] = threading.Lock()
        return execution

    def update_step_execution(self, execution: StepExecution) -> StepExecution:
        with self._index_lock:
            row_lock = self._row_locks.get(execution.step_execution_id)
        if row_lock is None:
            raise StepExecutionNotFoundError(str(execution.step_execution_id))

        with row_lock:
            validate_step_update(self._steps[execution.step_execution_id], execution)
            self._steps[execution.step_execution_id] = execution
        return execution

    def load_last_step_execution(
        self, job_name: str, instance_key: str, step_name: str,
    ) -> StepExecution | None:
        with self._index_lock:
            for step_id in reversed(self._step_order):
                step = self._steps[step_id]
                job = self._jobs[step.job_execution_id]
                if (
                    step.step_name == step_name
                    and job.job_name == job_name
                    and job.instance_key == instance_key
                ):
                    return step
        return None

    def get_step_executions(
        self, job_execution_id: UUID,
    ) -> tuple[StepExecution, ...]:
        with self._index_lock:
            return tuple(
                self._steps[step_id] for step_id in self._step_order
                if self._steps[step_id].job_execution_id == job_execution_id
            )


# =============================================================================
# SQLAlchemy
# =============================================================================


class SqlAlchemyJobRepository:
    """ORM-backed repository.

    Non-goals:
        - Does NOT open sessions itself -- every call goes through the
          transaction manager's scope (joining the executor's chunk scope
          when one is open).
    """

    def __init__(
        self,
        transaction_manager: SessionTransactionManager,
        clock: Clock | None = None,
    ):
        self._tx = transaction_manager
        self._clock = clock or SystemClock()
        self._sequences = SequenceAllocator()

    @contextmanager
    def _store(self, subject: str) -> Iterator[Any]:
        """Open (or join) a scope and translate store errors."""
        try:
            with self._tx.scope() as session:
                yield session
        except BatchKernelError:
            raise
        except SQLAlchemyError as exc:
            logger.error(
                "job_repository_store_failed",
                extra={"subject": subject, "error": str(exc)},
            )
            raise CheckpointError(subject, str(exc)) from exc

    # -------------------------------------------------------------------------
    # Job executions
    # -------------------------------------------------------------------------

    def create_job_execution(
        self,
        job_name: str,
        instance_key: str,
        correlation_id: str | None = None,
    ) -> JobExecution:
        execution = JobExecution(
            job_execution_id=uuid4(),
            job_name=job_name,
            instance_key=instance_key,
            status=JobStatus.STARTING,
            started_at=self._clock.now(),
            correlation_id=correlation_id,
        )
        with self._store(job_name) as session:
            model = JobExecutionModel.from_dto(
                execution,
                seq=self._sequences.next_value(session, JOB_EXECUTION_SEQUENCE),
            )
            session.add(model)
            session.flush()
        return execution

    def update_job_execution(self, execution: JobExecution) -> JobExecution:
        with self._store(execution.job_name) as session:
            model = session.execute(
                select(JobExecutionModel)
                .where(JobExecutionModel.id == execution.job_execution_id)
                .with_for_update()
            ).scalar_one_or_none()
            if model is None:
                raise JobExecutionNotFoundError(str(execution.job_execution_id))
            model.status = execution.status.value
            model.started_at = execution.started_at
            model.ended_at = execution.ended_at
            model.exit_message = execution.exit_message
            session.flush()
            return model.to_dto()

    def get_job_execution(self, job_execution_id: UUID) -> JobExecution:
        with self._store(str(job_execution_id)) as session:
            model = session.get(JobExecutionModel, job_execution_id)
            if model is None:
                raise JobExecutionNotFoundError(str(job_execution_id))
            return model.to_dto()

    def find_job_executions(
        self, job_name: str, instance_key: str,
    ) -> tuple[JobExecution, ...]:
        with self._store(job_name) as session:
            models = session.execute(
                select(JobExecutionModel)
                .where(
                    JobExecutionModel.job_name == job_name,
                    JobExecutionModel.instance_key == instance_key,
                )
                .order_by(JobExecutionModel.seq)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    # -------------------------------------------------------------------------
    # Step executions
    # -------------------------------------------------------------------------

    def create_step_execution(
        self,
        job_execution_id: UUID,
        step_name: str,
        start_key: Any = None,
    ) -> StepExecution:
        execution = StepExecution(
            step_execution_id=uuid4(),
            job_execution_id=job_execution_id,
            step_name=step_name,
            status=StepStatus.STARTING,
            start_key=start_key,
            last_committed_key=start_key,
            started_at=self._clock.now(),
        )
        with self._store(step_name) as session:
            if session.get(JobExecutionModel, job_execution_id) is None:
                raise JobExecutionNotFoundError(str(job_execution_id))
            session.add(StepExecutionModel.from_dto(
                execution,
                seq=self._sequences.next_value(session, STEP_EXECUTION_SEQUENCE),
            ))
            session.flush()
        return execution

    def update_step_execution(self, execution: StepExecution) -> StepExecution:
        with self._store(execution.step_name) as session:
            model = session.execute(
                select(StepExecutionModel)
                .where(StepExecutionModel.id == execution.step_execution_id)
                .with_for_update()
            ).scalar_one_or_none()
            if model is None:
                raise StepExecutionNotFoundError(str(execution.step_execution_id))
            validate_step_update(model.to_dto(), execution)
            model.apply(execution)
            session.flush()
        return execution

    def load_last_step_execution(
        self, job_name: str, instance_key: str, step_name: str,
    ) -> StepExecution | None:
        with self._store(step_name) as session:
            model = session.execute(
                select(StepExecutionModel)
                .join(
                    JobExecutionModel,
                    StepExecutionModel.job_execution_id == JobExecutionModel.id,
                )
                .where(
                    JobExecutionModel.job_name == job_name,
                    JobExecutionModel.instance_key == instance_key,
                    StepExecutionModel.step_name == step_name,
                )
                .order_by(StepExecutionModel.seq.desc())
                .limit(1)
            ).scalar_one_or_none()
            return model.to_dto() if model is not None else None

    def get_step_executions(
        self, job_execution_id: UUID,
    ) -> tuple[StepExecution, ...]:
        with self._store(str(job_execution_id)) as session:
            models = session.execute(
                select(StepExecutionModel)
                .where(StepExecutionModel.job_execution_id == job_execution_id)
                .order_by(StepExecutionModel.seq)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)
