"""
SequenceAllocator -- ``seq`` values for execution rows via counter rows.

Contract:
    ``next_value(session, name)`` returns the next value of the named
    sequence inside the caller's transaction.  The repository uses one
    sequence per execution table.

Invariants enforced:
    - Values come from a counter row incremented in place, never from an
      aggregate ``max(seq) + 1`` read, so concurrent steps creating
      executions in their own sessions get distinct values.
    - The increment runs before the read, so the counter row is write-locked
      (row lock on server databases, the database write lock on SQLite)
      until the caller's transaction ends.  A rollback returns the value.

Failure modes:
    - IntegrityError when two sessions create the same counter at once:
      the losing insert is rolled back to a savepoint and the increment is
      retried against the winner's row.
"""

from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chunk_batch.models.execution import SequenceCounterModel
from chunk_kernel.logging_config import get_logger

logger = get_logger("batch.sequences")

JOB_EXECUTION_SEQUENCE = "job_execution"
STEP_EXECUTION_SEQUENCE = "step_execution"


class SequenceAllocator:
    """Allocates strictly increasing integers per sequence name."""

    def next_value(self, session: Session, name: str) -> int:
        if not self._increment(session, name):
            savepoint = session.begin_nested()
            try:
                session.add(SequenceCounterModel(name=name, current_value=1))
                session.flush()
                savepoint.commit()
                logger.debug("sequence_allocated", extra={"sequence_name": name, "value": 1})
                return 1
            except IntegrityError:
                logger.debug("sequence_counter_race_retry", extra={"sequence_name": name})
                savepoint.rollback()
                self._increment(session, name)

        value = session.execute(
            select(SequenceCounterModel.current_value)
            .where(SequenceCounterModel.name == name)
        ).scalar_one()
        logger.debug("sequence_allocated", extra={"sequence_name": name, "value": value})
        return value

    @staticmethod
    def _increment(session: Session, name: str) -> bool:
        result = session.execute(
            update(SequenceCounterModel)
            .where(SequenceCounterModel.name == name)
            .values(current_value=SequenceCounterModel.current_value + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
