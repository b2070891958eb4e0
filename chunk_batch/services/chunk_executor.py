"""
ChunkExecutor -- read/process/write loop for one step.

Contract:
    ``execute(step_execution)`` drives the step's reader -> processor ->
    writer in chunks of ``chunk_size`` processed items and returns the
    finalized StepExecution (COMPLETED, FAILED or STOPPED).

Architecture: chunk_batch/services.  Imports from chunk_batch.domain,
    chunk_batch.jobs (Step), chunk_batch.services.job_repository and the
    kernel.

State machine (``ChunkExecutorState``):
    IDLE -> READING -> ACCUMULATING -> COMMITTING -> (READING | FINALIZING)
    FINALIZING -> DONE

Invariants enforced:
    - One transaction scope per chunk wraps exactly the writer call and the
      checkpoint update.  The executor adopts the new snapshot only after
      the scope exits cleanly, so ``last_committed_key`` never reflects an
      uncommitted chunk.
    - The checkpoint is persisted before the next page is fetched.
    - Records reach the writer in reader order, chunk by chunk.  Page keys
      must strictly increase (ReadError otherwise).
    - A chunk holds at most ``page_size`` skipped records, so the
      checkpoint advances through long filtered-out runs.
    - A stop request is honored only between chunks.
    - A failed chunk is rebuilt from the records it consumed (replayed from
      memory, not re-read) when a retry is allowed.

Failure policy:
    A chunk failure (ProcessError or WriteError) rolls the chunk back and
    increments ``failure_count``.  The chunk is retried while
    ``failure_count < failure_threshold`` and the chunk's own retries
    ``< retry_limit``; otherwise the step FAILS.  ReadError and
    CheckpointError fail the step immediately.

Non-goals:
    - No parallelism inside a step.
    - No timeouts -- writers and repositories own their timeout policy.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Any

from chunk_batch.domain.types import (
    Chunk,
    ChunkExecutorState,
    PageEntry,
    StepExecution,
    StepStatus,
)
from chunk_batch.jobs.base import Step
from chunk_batch.services.job_repository import JobRepository
from chunk_kernel.domain.clock import Clock, SystemClock
from chunk_kernel.exceptions import (
    CheckpointError,
    ProcessError,
    ReadError,
    WriteError,
)
from chunk_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.chunk_executor")


class _RecordStream:
    """Page-buffered cursor over a reader, with replay for chunk retries."""

    def __init__(self, step: Step, after_key: Any):
        self._reader = step.reader
        self._step_name = step.name
        self._page_size = step.config.effective_page_size
        self._cursor = after_key
        self._pending: deque[PageEntry] = deque()
        self._exhausted = False
        self.pages_read = 0

    @property
    def needs_fetch(self) -> bool:
        return not self._pending and not self._exhausted

    @property
    def drained(self) -> bool:
        return not self._pending and self._exhausted

    def fetch(self) -> None:
        try:
            page = self._reader.fetch_page(self._cursor, self._page_size)
        except ReadError:
            raise
        except Exception as exc:
            raise ReadError(self._step_name, self._cursor, str(exc)) from exc

        if page is None or page.is_empty:
            self._exhausted = True
            return
        if len(page) > self._page_size:
            raise ReadError(
                self._step_name, self._cursor,
                f"page of {len(page)} exceeds page_size {self._page_size}",
            )

        previous = self._cursor
        for entry in page:
            if previous is not None and not entry.key > previous:
                raise ReadError(
                    self._step_name, self._cursor,
                    f"key {entry.key!r} does not follow {previous!r}",
                )
            previous = entry.key

        self._pending.extend(page.entries)
        self._cursor = page.last_key
        self.pages_read += 1

    def pop(self) -> PageEntry | None:
        return self._pending.popleft() if self._pending else None

    def replay(self, entries: tuple[PageEntry, ...] | list[PageEntry]) -> None:
        """Put consumed entries back in front, preserving their order."""
        self._pending.extendleft(reversed(entries))


class ChunkExecutor:
    """Runs one step to a final status.

    Contract:
        - ``execute()`` accepts a STARTING execution created by the job
          repository (fresh, or resumed with ``last_committed_key`` set).
        - ``request_stop()`` may be called from any thread.

    Non-goals:
        - Does NOT create step executions -- the launcher does.
        - Does NOT catch BaseException (KeyboardInterrupt, process kill):
          the durable record then stays RUNNING and restart resumes from
          the last checkpoint.
    """

    def __init__(
        self,
        step: Step,
        repository: JobRepository,
        clock: Clock | None = None,
        stop_event: threading.Event | None = None,
    ):
        self._step = step
        self._repository = repository
        self._clock = clock or SystemClock()
        self._stop_event = stop_event or threading.Event()
        self._state = ChunkExecutorState.IDLE

    @property
    def state(self) -> ChunkExecutorState:
        return self._state

    @property
    def step(self) -> Step:
        return self._step

    def request_stop(self) -> None:
        """Ask the step to stop at the next chunk boundary."""
        self._stop_event.set()
        logger.info("step_stop_requested", extra={"step": self._step.name})

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    def execute(self, execution: StepExecution) -> StepExecution:
        with LogContext.bind(
            step_name=self._step.name,
            step_execution_id=str(execution.step_execution_id),
        ):
            return self._run(execution)

    def _run(self, execution: StepExecution) -> StepExecution:
        start_time = time.monotonic()
        config = self._step.config
        self._set_state(ChunkExecutorState.IDLE)

        logger.info(
            "step_started",
            extra={
                "step": self._step.name,
                "start_key": execution.last_committed_key,
                "chunk_size": config.chunk_size,
                "page_size": config.effective_page_size,
                "failure_threshold": config.failure_threshold,
                "retry_limit": config.retry_limit,
            },
        )

        if self._stop_event.is_set():
            return self._finalize(
                execution, StepStatus.STOPPED, "stop requested before first chunk",
                start_time,
            )

        try:
            execution = self._persist(execution.mark_running())
        except CheckpointError as exc:
            return self._finalize(execution, StepStatus.FAILED, str(exc), start_time)

        stream = _RecordStream(self._step, execution.last_committed_key)
        chunk_retries = 0

        while True:
            if stream.drained:
                return self._finalize(execution, StepStatus.COMPLETED, None, start_time)
            if self._stop_event.is_set():
                return self._finalize(
                    execution, StepStatus.STOPPED, "stop requested", start_time,
                )

            try:
                chunk = self._accumulate(stream)
            except ReadError as exc:
                logger.error("step_read_failed", exc_info=True)
                return self._finalize(execution, StepStatus.FAILED, str(exc), start_time)
            except ProcessError as exc:
                failure = exc
            else:
                if chunk is None:
                    return self._finalize(
                        execution, StepStatus.COMPLETED, None, start_time,
                    )
                try:
                    execution = self._commit(execution, chunk)
                    chunk_retries = 0
                    continue
                except CheckpointError as exc:
                    logger.error("chunk_checkpoint_failed", exc_info=True)
                    return self._finalize(
                        execution, StepStatus.FAILED, str(exc), start_time,
                    )
                except WriteError as exc:
                    stream.replay(chunk.source)
                    failure = exc

            # Chunk rolled back (ProcessError or WriteError)
            try:
                execution = self._persist(execution.with_chunk_failure())
            except CheckpointError as exc:
                return self._finalize(execution, StepStatus.FAILED, str(exc), start_time)

            can_retry = (
                execution.failure_count < config.failure_threshold
                and chunk_retries < config.retry_limit
            )
            logger.warning(
                "chunk_rolled_back",
                extra={
                    "error_code": failure.code,
                    "error": str(failure),
                    "failure_count": execution.failure_count,
                    "chunk_retries": chunk_retries,
                    "will_retry": can_retry,
                },
            )
            if not can_retry:
                return self._finalize(
                    execution, StepStatus.FAILED, str(failure), start_time,
                )
            chunk_retries += 1
            logger.info("chunk_retry", extra={"attempt": chunk_retries})

    # -------------------------------------------------------------------------
    # Chunk phases
    # -------------------------------------------------------------------------

    def _next_entry(self, stream: _RecordStream) -> PageEntry | None:
        if stream.needs_fetch:
            self._set_state(ChunkExecutorState.READING)
            stream.fetch()
            self._set_state(ChunkExecutorState.ACCUMULATING)
        return stream.pop()

    def _accumulate(self, stream: _RecordStream) -> Chunk | None:
        """Consume records until ``chunk_size`` survivors or exhaustion.

        A chunk also closes once ``page_size`` of its records were skipped,
        so it may commit with no items.  Returns None when no record was
        consumed.
        """
        self._set_state(ChunkExecutorState.READING)
        chunk_size = self._step.config.chunk_size
        skip_limit = self._step.config.effective_page_size
        source: list[PageEntry] = []
        items: list[Any] = []

        while len(items) < chunk_size and len(source) - len(items) < skip_limit:
            entry = self._next_entry(stream)
            if entry is None:
                break
            self._set_state(ChunkExecutorState.ACCUMULATING)
            source.append(entry)
            try:
                result = self._process(entry)
            except ProcessError:
                stream.replay(source)
                raise
            if result is not None:
                items.append(result)

        if not source:
            return None
        return Chunk(source=tuple(source), items=tuple(items))

    def _process(self, entry: PageEntry) -> Any | None:
        try:
            return self._step.processor.process(entry.item)
        except ProcessError:
            raise
        except Exception as exc:
            raise ProcessError(self._step.name, entry.key, str(exc)) from exc

    def _commit(self, execution: StepExecution, chunk: Chunk) -> StepExecution:
        """Write the chunk and persist the checkpoint in one scope."""
        self._set_state(ChunkExecutorState.COMMITTING)
        updated = execution.with_chunk_committed(chunk)
        try:
            with self._step.transaction_manager.scope():
                if chunk.items:
                    self._write(chunk)
                self._repository.update_step_execution(updated)
        except (WriteError, CheckpointError):
            raise
        except Exception as exc:
            raise CheckpointError(self._step.name, str(exc)) from exc

        logger.info(
            "chunk_committed",
            extra={
                "commit_count": updated.commit_count,
                "chunk_read": chunk.read_count,
                "chunk_written": chunk.write_count,
                "chunk_skipped": chunk.skip_count,
                "last_committed_key": updated.last_committed_key,
            },
        )
        return updated

    def _write(self, chunk: Chunk) -> None:
        try:
            self._step.writer.write(list(chunk.items))
        except WriteError:
            raise
        except Exception as exc:
            raise WriteError(self._step.name, chunk.write_count, str(exc)) from exc

    # -------------------------------------------------------------------------
    # Repository helpers
    # -------------------------------------------------------------------------

    def _persist(self, execution: StepExecution) -> StepExecution:
        """Persist a snapshot outside of a chunk commit."""
        try:
            with self._step.transaction_manager.scope():
                return self._repository.update_step_execution(execution)
        except CheckpointError:
            raise
        except Exception as exc:
            raise CheckpointError(self._step.name, str(exc)) from exc

    def _finalize(
        self,
        execution: StepExecution,
        status: StepStatus,
        exit_message: str | None,
        start_time: float,
    ) -> StepExecution:
        self._set_state(ChunkExecutorState.FINALIZING)
        final = execution.finalize(status, self._clock.now(), exit_message)
        try:
            final = self._persist(final)
        except CheckpointError as exc:
            # Durable row stays non-final; a restart resumes from its checkpoint.
            logger.error("step_finalize_not_persisted", exc_info=True)
            if status != StepStatus.FAILED:
                final = execution.finalize(
                    StepStatus.FAILED, self._clock.now(), str(exc),
                )

        self._set_state(ChunkExecutorState.DONE)
        log = logger.info if final.status == StepStatus.COMPLETED else logger.warning
        log(
            "step_finished",
            extra={
                "status": final.status.value,
                "read_count": final.read_count,
                "write_count": final.write_count,
                "skip_count": final.skip_count,
                "commit_count": final.commit_count,
                "failure_count": final.failure_count,
                "last_committed_key": final.last_committed_key,
                "exit_message": final.exit_message,
                "duration_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
        return final

    def _set_state(self, state: ChunkExecutorState) -> None:
        if state != self._state:
            self._state = state
            logger.debug("executor_state", extra={"state": state.value})
