"""
chunk_batch.domain.types -- Pure frozen dataclasses for the chunk engine.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections.  Snapshots are never mutated in place: the executor
derives the next snapshot with the helper methods below and hands it to the
job repository, which is the only component that persists it.

Invariants enforced:
    - ``StepExecution.last_committed_key`` only changes through
      ``with_chunk_committed()`` (called after a successful commit).
    - Finalized executions refuse further transitions.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterable, Iterator
from uuid import UUID

from chunk_kernel.exceptions import InvalidStepTransitionError


# =============================================================================
# Status enums
# =============================================================================


class StepStatus(str, Enum):
    """Step execution lifecycle status."""

    STARTING = "starting"  # Created, no chunk yet
    RUNNING = "running"  # First chunk begun
    COMPLETED = "completed"  # Reader exhausted, all chunks committed
    FAILED = "failed"  # Fatal error or failure threshold reached
    STOPPED = "stopped"  # Stop requested, honored at a chunk boundary

    @property
    def is_final(self) -> bool:
        return self in _FINAL_STATUSES


class JobStatus(str, Enum):
    """Job execution lifecycle status."""

    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"  # Every step COMPLETED
    FAILED = "failed"  # At least one step FAILED (or never ran after one did)
    STOPPED = "stopped"  # Stopped at a chunk boundary

    @property
    def is_final(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.STOPPED)


_FINAL_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.STOPPED}
)


class ChunkExecutorState(str, Enum):
    """States of the per-step chunk loop."""

    IDLE = "idle"
    READING = "reading"
    ACCUMULATING = "accumulating"
    COMMITTING = "committing"
    FINALIZING = "finalizing"
    DONE = "done"


# =============================================================================
# Page / Chunk
# =============================================================================


@dataclass(frozen=True)
class PageEntry:
    """One source record and the ordering key it was read with."""

    key: Any
    item: Any


@dataclass(frozen=True)
class Page:
    """Ordered records returned by one ``fetch_page`` call.

    An empty page is the reader's only exhaustion signal.
    """

    entries: tuple[PageEntry, ...] = ()

    @classmethod
    def of(cls, items: Iterable[Any], key: Callable[[Any], Any]) -> Page:
        """Build a page from items, deriving each key with ``key``."""
        return cls(tuple(PageEntry(key(item), item) for item in items))

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def last_key(self) -> Any:
        return self.entries[-1].key if self.entries else None

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[PageEntry]:
        return iter(self.entries)


EMPTY_PAGE = Page()


@dataclass(frozen=True)
class Chunk:
    """A unit of atomic write + checkpoint.

    ``source`` holds every record consumed to build the chunk (skipped ones
    included); ``items`` holds the processed survivors handed to the writer.
    """

    source: tuple[PageEntry, ...]
    items: tuple[Any, ...]

    @property
    def read_count(self) -> int:
        return len(self.source)

    @property
    def write_count(self) -> int:
        return len(self.items)

    @property
    def skip_count(self) -> int:
        return len(self.source) - len(self.items)

    @property
    def last_source_key(self) -> Any:
        return self.source[-1].key if self.source else None


# =============================================================================
# Execution DTOs
# =============================================================================


@dataclass(frozen=True)
class StepExecution:
    """Immutable snapshot of one run of one step.

    ``start_key`` is the cursor the run resumed from (``None`` for a fresh
    start); ``last_committed_key`` is the durable checkpoint.
    """

    step_execution_id: UUID
    job_execution_id: UUID
    step_name: str
    status: StepStatus = StepStatus.STARTING
    read_count: int = 0
    write_count: int = 0
    skip_count: int = 0
    commit_count: int = 0
    failure_count: int = 0
    rollback_count: int = 0
    start_key: Any = None
    last_committed_key: Any = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    exit_message: str | None = None

    @property
    def is_final(self) -> bool:
        return self.status.is_final

    def _require_open(self, target: StepStatus) -> None:
        if self.is_final:
            raise InvalidStepTransitionError(
                str(self.step_execution_id), self.status.value, target.value,
            )

    def mark_running(self) -> StepExecution:
        self._require_open(StepStatus.RUNNING)
        return replace(self, status=StepStatus.RUNNING)

    def with_chunk_committed(self, chunk: Chunk) -> StepExecution:
        """Snapshot after ``chunk`` commits: counts and checkpoint advance."""
        self._require_open(StepStatus.RUNNING)
        return replace(
            self,
            read_count=self.read_count + chunk.read_count,
            write_count=self.write_count + chunk.write_count,
            skip_count=self.skip_count + chunk.skip_count,
            commit_count=self.commit_count + 1,
            last_committed_key=(
                chunk.last_source_key
                if chunk.source
                else self.last_committed_key
            ),
        )

    def with_chunk_failure(self) -> StepExecution:
        self._require_open(self.status)
        return replace(
            self,
            failure_count=self.failure_count + 1,
            rollback_count=self.rollback_count + 1,
        )

    def finalize(
        self,
        status: StepStatus,
        ended_at: datetime,
        exit_message: str | None = None,
    ) -> StepExecution:
        if not status.is_final:
            raise InvalidStepTransitionError(
                str(self.step_execution_id), self.status.value, status.value,
            )
        self._require_open(status)
        return replace(
            self, status=status, ended_at=ended_at, exit_message=exit_message,
        )


@dataclass(frozen=True)
class JobExecution:
    """Immutable snapshot of one run of a job instance.

    ``instance_key`` names the logical run; a restart creates a new
    JobExecution for the same ``(job_name, instance_key)``.
    """

    job_execution_id: UUID
    job_name: str
    instance_key: str
    status: JobStatus = JobStatus.STARTING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    correlation_id: str | None = None
    exit_message: str | None = None
    step_executions: tuple[StepExecution, ...] = ()

    def step(self, step_name: str) -> StepExecution | None:
        """Return this run's execution of ``step_name`` (None if not run)."""
        for execution in self.step_executions:
            if execution.step_name == step_name:
                return execution
        return None


def derive_job_status(
    step_statuses: dict[str, StepStatus | None],
    stopped: bool = False,
) -> JobStatus:
    """Aggregate final step statuses into a job status.

    ``step_statuses`` maps every step of the job to the status of its final
    execution, or ``None`` for steps that never ran.  ``stopped`` is True
    when a stop request ended the run, including one that landed between
    stages while every step that ran had COMPLETED.

    COMPLETED only if all steps are COMPLETED; any FAILED makes the job
    FAILED; a STOPPED step or a stop request makes it STOPPED.
    """
    statuses = list(step_statuses.values())
    if statuses and all(s == StepStatus.COMPLETED for s in statuses):
        return JobStatus.COMPLETED
    if any(s == StepStatus.FAILED for s in statuses):
        return JobStatus.FAILED
    if stopped or any(s == StepStatus.STOPPED for s in statuses):
        return JobStatus.STOPPED
    return JobStatus.FAILED
