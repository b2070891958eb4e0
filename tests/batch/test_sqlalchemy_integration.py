"""
End-to-end tests over in-memory SQLite.

The pays table is the source, high_value_pays the sink, and the job
repository lives in the same database.  Validates that a chunk's rows and
its checkpoint commit or roll back together, and that restarts resume from
the durable checkpoint without duplicate writes.
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import delete, func, select

from chunk_batch.domain.types import JobStatus, StepStatus
from chunk_batch.jobs.base import Job, StepBuilder
from chunk_batch.jobs.pay_jobs import (
    HIGH_VALUE_PAY_ARCHIVE_JOB,
    HighValuePayModel,
    PayModel,
    archive_pay,
    build_high_value_pay_archive_job,
    high_value_pay_reader,
)
from chunk_batch.items.writers import SqlAlchemyItemWriter
from chunk_batch.models.execution import StepExecutionModel
from chunk_batch.services.job_launcher import JobLauncher
from chunk_batch.services.job_repository import SqlAlchemyJobRepository
from chunk_batch.services.transactions import SessionTransactionManager
from chunk_kernel.exceptions import CheckpointError

from conftest import SimulatedCrash


@pytest.fixture
def tx(session_factory):
    return SessionTransactionManager(session_factory)


@pytest.fixture
def sql_repository(tx, clock):
    return SqlAlchemyJobRepository(tx, clock=clock)


@pytest.fixture
def sql_launcher(sql_repository, clock):
    return JobLauncher(sql_repository, clock=clock)


@pytest.fixture
def pays(session_factory):
    """25 pays at or above 2000 (odd ids) interleaved with 25 below."""
    tx_time = datetime(2024, 6, 1, tzinfo=timezone.utc)
    with session_factory() as session:
        session.add_all([
            PayModel(
                id=i,
                amount=2000 + i if i % 2 else 1000,
                tx_name=f"trade-{i}",
                tx_date_time=tx_time,
            )
            for i in range(1, 51)
        ])
        session.commit()
    return [i for i in range(1, 51) if i % 2]


def _archived_ids(session_factory):
    with session_factory() as session:
        return list(session.scalars(
            select(HighValuePayModel.pay_id).order_by(HighValuePayModel.pay_id)
        ))


def _stored_step(session_factory, step_name):
    with session_factory() as session:
        model = session.scalars(
            select(StepExecutionModel)
            .where(StepExecutionModel.step_name == step_name)
            .order_by(StepExecutionModel.seq.desc())
        ).first()
        return model.to_dto()


class CrashingMapper:
    """Maps pays until ``crash_at`` is reached, then dies."""

    def __init__(self, crash_at: int):
        self._crash_at = crash_at

    def __call__(self, pay):
        if pay.id >= self._crash_at:
            raise SimulatedCrash()
        return archive_pay(pay)


def _archive_job(tx, mapper, chunk_size=10) -> Job:
    step = (
        StepBuilder("high_value_pay_archive_step")
        .chunk(chunk_size)
        .reader(high_value_pay_reader(tx))
        .writer(SqlAlchemyItemWriter(tx, mapper=mapper))
        .transaction_manager(tx)
        .build()
    )
    return Job.sequential(HIGH_VALUE_PAY_ARCHIVE_JOB, step)


# =============================================================================
# Happy path
# =============================================================================


class TestArchiveJob:
    def test_archives_every_high_value_pay(self, tx, sql_launcher, session_factory, pays):
        execution = sql_launcher.start(build_high_value_pay_archive_job(tx), "2024-06-01")

        assert execution.status == JobStatus.COMPLETED
        assert _archived_ids(session_factory) == pays

        step = execution.step("high_value_pay_archive_step")
        assert step.read_count == 25
        assert step.write_count == 25
        assert step.commit_count == 3
        assert step.last_committed_key == pays[-1]

    def test_job_execution_is_durable(self, tx, sql_launcher, sql_repository, pays):
        execution = sql_launcher.start(build_high_value_pay_archive_job(tx), "a")

        found = sql_repository.find_job_executions(HIGH_VALUE_PAY_ARCHIVE_JOB, "a")
        assert [e.job_execution_id for e in found] == [execution.job_execution_id]
        assert found[0].status == JobStatus.COMPLETED


# =============================================================================
# Atomic chunk
# =============================================================================


class FailingCheckpointRepository(SqlAlchemyJobRepository):
    """Raises inside the chunk scope when recording commit N."""

    def __init__(self, tx, clock, fail_on_commit):
        super().__init__(tx, clock)
        self._fail_on_commit = fail_on_commit

    def update_step_execution(self, execution):
        if execution.commit_count == self._fail_on_commit and not execution.is_final:
            raise CheckpointError(execution.step_name, "checkpoint store unavailable")
        return super().update_step_execution(execution)


class TestAtomicChunk:
    def test_checkpoint_failure_rolls_back_chunk_rows(self, tx, clock, session_factory, pays):
        repository = FailingCheckpointRepository(tx, clock, fail_on_commit=2)
        launcher = JobLauncher(repository, clock=clock)

        execution = launcher.start(build_high_value_pay_archive_job(tx), "a")

        assert execution.status == JobStatus.FAILED
        # Chunk 2 was written and then rolled back with its checkpoint.
        assert _archived_ids(session_factory) == pays[:10]
        stored = _stored_step(session_factory, "high_value_pay_archive_step")
        assert stored.status == StepStatus.FAILED
        assert stored.last_committed_key == pays[9]

    def test_write_failure_rolls_back_and_restart_completes(
        self, tx, sql_launcher, session_factory, pays,
    ):
        blocker = pays[12]
        with session_factory() as session:
            session.add(HighValuePayModel(pay_id=blocker, amount=1, tx_name="manual"))
            session.commit()

        job = build_high_value_pay_archive_job(tx)
        first = sql_launcher.start(job, "a")

        assert first.status == JobStatus.FAILED
        step = first.step("high_value_pay_archive_step")
        assert step.last_committed_key == pays[9]
        assert step.failure_count == 1
        assert _archived_ids(session_factory) == sorted(pays[:10] + [blocker])

        with session_factory() as session:
            session.execute(delete(HighValuePayModel).where(HighValuePayModel.tx_name == "manual"))
            session.commit()

        second = sql_launcher.restart(job, "a")

        assert second.status == JobStatus.COMPLETED
        resumed = second.step("high_value_pay_archive_step")
        assert resumed.start_key == pays[9]
        assert resumed.write_count == 15
        assert _archived_ids(session_factory) == pays


# =============================================================================
# Crash resume
# =============================================================================


class TestCrashResume:
    def test_restart_resumes_from_durable_checkpoint(
        self, tx, sql_launcher, sql_repository, session_factory, pays,
    ):
        crash_at = pays[20]
        with pytest.raises(SimulatedCrash):
            sql_launcher.start(_archive_job(tx, CrashingMapper(crash_at)), "a")

        stale = sql_repository.load_last_step_execution(
            HIGH_VALUE_PAY_ARCHIVE_JOB, "a", "high_value_pay_archive_step",
        )
        assert stale.status == StepStatus.RUNNING
        assert stale.last_committed_key == pays[19]
        assert _archived_ids(session_factory) == pays[:20]

        execution = sql_launcher.restart(build_high_value_pay_archive_job(tx), "a")

        assert execution.status == JobStatus.COMPLETED
        assert execution.step("high_value_pay_archive_step").start_key == pays[19]
        archived = _archived_ids(session_factory)
        assert archived == pays
        with session_factory() as session:
            assert session.scalar(
                select(func.count()).select_from(HighValuePayModel)
            ) == len(pays)

    def test_new_instance_collides_with_archived_rows(
        self, tx, sql_launcher, session_factory, pays,
    ):
        job = build_high_value_pay_archive_job(tx)
        sql_launcher.start(job, "a")

        # A new instance re-reads from the start and hits the unique pay_id.
        duplicate = sql_launcher.start(job, "b")

        assert duplicate.status == JobStatus.FAILED
        assert _archived_ids(session_factory) == pays
