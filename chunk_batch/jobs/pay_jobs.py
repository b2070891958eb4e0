"""
Sample jobs over the ``pays`` table.

``high_value_pay_job`` pages through pays with ``amount >= threshold`` in id
order, ten at a time, and logs each one.  ``high_value_pay_archive_job``
copies the same pays into ``high_value_pays`` through the shared transaction
scope, so each archived chunk commits together with its checkpoint.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, select
from sqlalchemy.orm import Mapped, mapped_column

from chunk_batch.items.readers import SqlAlchemyPagingItemReader
from chunk_batch.items.writers import LoggingItemWriter, SqlAlchemyItemWriter
from chunk_batch.jobs.base import Job, JobBuilder, StepBuilder
from chunk_batch.services.transactions import SessionTransactionManager
from chunk_config.schema import JobConfig, StepConfig
from chunk_kernel.db.base import Base

HIGH_VALUE_PAY_JOB = "high_value_pay_job"
HIGH_VALUE_PAY_ARCHIVE_JOB = "high_value_pay_archive_job"
DEFAULT_THRESHOLD = 2000
DEFAULT_CHUNK_SIZE = 10


class PayModel(Base):
    """A payment transaction."""

    __tablename__ = "pays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_name: Mapped[str] = mapped_column(String(200), nullable=False)
    tx_date_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return (
            f"Pay(id={self.id}, amount={self.amount}, "
            f"tx_name={self.tx_name!r}, tx_date_time={self.tx_date_time})"
        )


class HighValuePayModel(Base):
    """Archived copy of a pay at or above the threshold."""

    __tablename__ = "high_value_pays"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pay_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    tx_name: Mapped[str] = mapped_column(String(200), nullable=False)


def high_value_pay_reader(
    tx: SessionTransactionManager,
    threshold: int = DEFAULT_THRESHOLD,
) -> SqlAlchemyPagingItemReader:
    return SqlAlchemyPagingItemReader(
        session_factory=tx.session_factory,
        statement=select(PayModel).where(PayModel.amount >= threshold),
        key_column=PayModel.id,
    )


def archive_pay(pay: PayModel) -> HighValuePayModel:
    return HighValuePayModel(pay_id=pay.id, amount=pay.amount, tx_name=pay.tx_name)


def _step_config(
    step_name: str,
    chunk_size: int,
    config: JobConfig | None,
) -> StepConfig:
    if config is not None:
        return config.step_config(step_name)
    return StepConfig(chunk_size=chunk_size)


def build_high_value_pay_job(
    tx: SessionTransactionManager,
    threshold: int = DEFAULT_THRESHOLD,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    config: JobConfig | None = None,
) -> Job:
    """Log every pay with ``amount >= threshold``, in id order.

    ``config`` (usually loaded from YAML) overrides ``chunk_size`` and the
    job-level policy when given.
    """
    step_name = "high_value_pay_step"
    step = (
        StepBuilder(step_name)
        .config(_step_config(step_name, chunk_size, config))
        .reader(high_value_pay_reader(tx, threshold))
        .writer(LoggingItemWriter("batch.jobs.pay"))
        .transaction_manager(tx)
        .build()
    )
    return JobBuilder(HIGH_VALUE_PAY_JOB, config).start(step).build()


def build_high_value_pay_archive_job(
    tx: SessionTransactionManager,
    threshold: int = DEFAULT_THRESHOLD,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    config: JobConfig | None = None,
) -> Job:
    step_name = "high_value_pay_archive_step"
    step = (
        StepBuilder(step_name)
        .config(_step_config(step_name, chunk_size, config))
        .reader(high_value_pay_reader(tx, threshold))
        .writer(SqlAlchemyItemWriter(tx, mapper=archive_pay))
        .transaction_manager(tx)
        .build()
    )
    return JobBuilder(HIGH_VALUE_PAY_ARCHIVE_JOB, config).start(step).build()
