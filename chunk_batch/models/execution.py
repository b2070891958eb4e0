"""
ORM models for job and step execution persistence.

Contract:
    JobExecutionModel and StepExecutionModel persist job runs and per-step
    progress (status, counts, checkpoint key).  Each has ``to_dto()`` /
    ``from_dto()`` round-trip methods.

Architecture: chunk_batch/models. Imports from chunk_kernel.db.base only.

Invariants enforced:
    - ``last_committed_key`` / ``start_key`` are stored as JSON so integer,
      string and composite (list) keys survive a round trip.
    - Lookups of "last execution of a step" order by ``seq``, a per-table
      integer drawn from a locked counter row (``SequenceCounterModel``),
      never by wall-clock time.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from chunk_kernel.db.base import Base, TrackedBase, UUIDString

if TYPE_CHECKING:
    from chunk_batch.domain.types import JobExecution, StepExecution


class JobExecutionModel(TrackedBase):
    """Persistent job run."""

    __tablename__ = "batch_job_executions"

    __table_args__ = (
        Index("ix_batch_job_executions_instance", "job_name", "instance_key"),
        Index("ix_batch_job_executions_status", "status"),
    )

    seq: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    instance_key: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    correlation_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    exit_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    steps: Mapped[list["StepExecutionModel"]] = relationship(
        "StepExecutionModel",
        back_populates="job_execution",
        foreign_keys="StepExecutionModel.job_execution_id",
        order_by="StepExecutionModel.seq",
    )

    def to_dto(self, include_steps: bool = True) -> JobExecution:
        from chunk_batch.domain.types import JobExecution, JobStatus

        return JobExecution(
            job_execution_id=self.id,
            job_name=self.job_name,
            instance_key=self.instance_key,
            status=JobStatus(self.status),
            started_at=self.started_at,
            ended_at=self.ended_at,
            correlation_id=self.correlation_id,
            exit_message=self.exit_message,
            step_executions=(
                tuple(s.to_dto() for s in self.steps) if include_steps else ()
            ),
        )

    @classmethod
    def from_dto(cls, dto: JobExecution, seq: int) -> JobExecutionModel:
        return cls(
            id=dto.job_execution_id,
            seq=seq,
            job_name=dto.job_name,
            instance_key=dto.instance_key,
            status=dto.status.value,
            started_at=dto.started_at,
            ended_at=dto.ended_at,
            correlation_id=dto.correlation_id,
            exit_message=dto.exit_message,
        )


class StepExecutionModel(TrackedBase):
    """Persistent step run and its checkpoint."""

    __tablename__ = "batch_step_executions"

    __table_args__ = (
        Index("ix_batch_step_executions_job", "job_execution_id"),
        Index("ix_batch_step_executions_step", "step_name"),
    )

    seq: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    job_execution_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("batch_job_executions.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    read_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    rollback_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    start_key: Mapped[Any] = mapped_column(JSON, nullable=True)
    last_committed_key: Mapped[Any] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    ended_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    exit_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    job_execution: Mapped["JobExecutionModel"] = relationship(
        "JobExecutionModel",
        back_populates="steps",
        foreign_keys=[job_execution_id],
    )

    def to_dto(self) -> StepExecution:
        from chunk_batch.domain.types import StepExecution, StepStatus

        return StepExecution(
            step_execution_id=self.id,
            job_execution_id=self.job_execution_id,
            step_name=self.step_name,
            status=StepStatus(self.status),
            read_count=self.read_count,
            write_count=self.write_count,
            skip_count=self.skip_count,
            commit_count=self.commit_count,
            failure_count=self.failure_count,
            rollback_count=self.rollback_count,
            start_key=self.start_key,
            last_committed_key=self.last_committed_key,
            started_at=self.started_at,
            ended_at=self.ended_at,
            exit_message=self.exit_message,
        )

    @classmethod
    def from_dto(cls, dto: StepExecution, seq: int) -> StepExecutionModel:
        model = cls(id=dto.step_execution_id, seq=seq, job_execution_id=dto.job_execution_id)
        model.apply(dto)
        return model

    def apply(self, dto: StepExecution) -> None:
        """Copy the mutable fields of ``dto`` onto this row."""
        self.step_name = dto.step_name
        self.status = dto.status.value
        self.read_count = dto.read_count
        self.write_count = dto.write_count
        self.skip_count = dto.skip_count
        self.commit_count = dto.commit_count
        self.failure_count = dto.failure_count
        self.rollback_count = dto.rollback_count
        self.start_key = dto.start_key
        self.last_committed_key = dto.last_committed_key
        self.started_at = dto.started_at
        self.ended_at = dto.ended_at
        self.exit_message = dto.exit_message


class SequenceCounterModel(Base):
    """Named counter row that allocates ``seq`` values.

    One row per sequence name; ``SequenceAllocator`` increments it under a
    row lock, so concurrent inserts never read the same value.
    """

    __tablename__ = "batch_sequence_counters"

    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    current_value: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
