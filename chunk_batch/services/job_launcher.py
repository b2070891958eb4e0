"""
JobLauncher -- runs a Job's stages and aggregates the job status.

Contract:
    ``start(job, instance_key)``   first run of a job instance.
    ``restart(job, instance_key)`` new JobExecution for an instance whose last
        run did not complete: COMPLETED steps are skipped, every other step
        resumes from its last committed key.
    ``stop(job_execution_id)``     stop request, honored at chunk boundaries.

Architecture: chunk_batch/services.  One ChunkExecutor per step.  A stage
    with several steps runs them on a ThreadPoolExecutor; stages run in
    order.

Invariants enforced:
    - At most one in-process run per (job_name, instance_key)
      (JobAlreadyRunningError).
    - Job status is derived from the final status of every step:
      COMPLETED only if all steps COMPLETED.
    - With ``halt_on_failure`` a FAILED step prevents later stages from
      starting.  A stop always prevents later stages from starting.

Non-goals:
    - No cross-process locking: a RUNNING row left by a dead process is
      treated as stale and resumed on restart.
"""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any
from uuid import UUID, uuid4

from chunk_batch.domain.types import (
    JobExecution,
    JobStatus,
    StepExecution,
    StepStatus,
    derive_job_status,
)
from chunk_batch.jobs.base import Job, Step
from chunk_batch.services.chunk_executor import ChunkExecutor
from chunk_batch.services.job_repository import JobRepository
from chunk_kernel.domain.clock import Clock, SystemClock
from chunk_kernel.exceptions import (
    JobAlreadyRunningError,
    JobExecutionNotFoundError,
    JobInstanceAlreadyCompleteError,
    JobInstanceAlreadyExistsError,
)
from chunk_kernel.logging_config import LogContext, get_logger

logger = get_logger("batch.job_launcher")


class JobLauncher:
    """Starts, restarts and stops job executions."""

    def __init__(self, repository: JobRepository, clock: Clock | None = None):
        self._repository = repository
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._running: set[tuple[str, str]] = set()
        self._stop_events: dict[UUID, threading.Event] = {}

    @property
    def repository(self) -> JobRepository:
        return self._repository

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def start(
        self,
        job: Job,
        instance_key: str,
        correlation_id: str | None = None,
    ) -> JobExecution:
        """Run a job instance for the first time.

        Raises:
            JobInstanceAlreadyExistsError: If the instance already ran; use
                ``restart()`` instead.
        """
        existing = self._repository.find_job_executions(job.name, instance_key)
        if existing:
            raise JobInstanceAlreadyExistsError(
                job.name, instance_key, str(existing[-1].job_execution_id),
            )
        return self._launch(job, instance_key, resume=False, correlation_id=correlation_id)

    def restart(
        self,
        job: Job,
        instance_key: str,
        correlation_id: str | None = None,
    ) -> JobExecution:
        """Resume a job instance whose last execution did not complete.

        Raises:
            JobExecutionNotFoundError: If the instance never ran.
            JobInstanceAlreadyCompleteError: If its last execution completed.
        """
        existing = self._repository.find_job_executions(job.name, instance_key)
        if not existing:
            raise JobExecutionNotFoundError(f"{job.name}/{instance_key}")
        if existing[-1].status == JobStatus.COMPLETED:
            raise JobInstanceAlreadyCompleteError(job.name, instance_key)
        return self._launch(job, instance_key, resume=True, correlation_id=correlation_id)

    def stop(self, job_execution_id: UUID) -> bool:
        """Request a stop.  Returns False if the execution is not running here."""
        with self._lock:
            event = self._stop_events.get(job_execution_id)
        if event is None:
            return False
        event.set()
        logger.info(
            "job_stop_requested",
            extra={"job_execution_id": str(job_execution_id)},
        )
        return True

    def running_executions(self) -> tuple[UUID, ...]:
        with self._lock:
            return tuple(self._stop_events)

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _launch(
        self,
        job: Job,
        instance_key: str,
        resume: bool,
        correlation_id: str | None,
    ) -> JobExecution:
        instance = (job.name, instance_key)
        with self._lock:
            if instance in self._running:
                raise JobAlreadyRunningError(job.name, instance_key)
            self._running.add(instance)
        try:
            return self._run(job, instance_key, resume, correlation_id or str(uuid4()))
        finally:
            with self._lock:
                self._running.discard(instance)

    def _run(
        self,
        job: Job,
        instance_key: str,
        resume: bool,
        correlation_id: str,
    ) -> JobExecution:
        start_time = time.monotonic()
        execution = self._repository.create_job_execution(
            job.name, instance_key, correlation_id,
        )
        job_execution_id = execution.job_execution_id
        stop_event = threading.Event()
        with self._lock:
            self._stop_events[job_execution_id] = stop_event

        with LogContext.bind(
            correlation_id=correlation_id,
            job_name=job.name,
            job_execution_id=str(job_execution_id),
        ):
            try:
                execution = self._repository.update_job_execution(
                    replace(execution, status=JobStatus.RUNNING),
                )
                logger.info(
                    "job_started",
                    extra={
                        "instance_key": instance_key,
                        "restart": resume,
                        "stage_count": len(job.stages),
                        "step_count": len(job.steps),
                    },
                )

                results = self._run_stages(job, execution, resume, stop_event)
                status = derive_job_status(
                    {name: (r.status if r else None) for name, r in results.items()},
                    stopped=stop_event.is_set(),
                )
                execution = self._repository.update_job_execution(replace(
                    execution,
                    status=status,
                    ended_at=self._clock.now(),
                    exit_message=_exit_message(results),
                ))
            except Exception as exc:
                logger.exception("job_failed_unexpectedly")
                self._record_failure(execution, exc)
                raise
            finally:
                with self._lock:
                    self._stop_events.pop(job_execution_id, None)

            log = logger.info if status == JobStatus.COMPLETED else logger.warning
            log(
                "job_finished",
                extra={
                    "status": status.value,
                    "instance_key": instance_key,
                    "duration_ms": int((time.monotonic() - start_time) * 1000),
                },
            )

        return self._repository.get_job_execution(job_execution_id)

    def _record_failure(self, execution: JobExecution, exc: Exception) -> None:
        """Mark the job FAILED; a store error here must not mask ``exc``."""
        try:
            self._repository.update_job_execution(replace(
                execution,
                status=JobStatus.FAILED,
                ended_at=self._clock.now(),
                exit_message=str(exc),
            ))
        except Exception:
            # The row stays RUNNING and is resumed as stale on restart.
            logger.error("job_failure_not_persisted", exc_info=True)

    def _run_stages(
        self,
        job: Job,
        execution: JobExecution,
        resume: bool,
        stop_event: threading.Event,
    ) -> dict[str, StepExecution | None]:
        """Run stages in order; returns each step's final execution (or None)."""
        results: dict[str, StepExecution | None] = {step.name: None for step in job.steps}

        for index, stage in enumerate(job.stages):
            if stop_event.is_set():
                logger.info("job_stopped_before_stage", extra={"stage": index})
                break

            results.update(self._run_stage(job, execution, stage, resume, stop_event))

            stage_statuses = [results[step.name].status for step in stage]
            if StepStatus.STOPPED in stage_statuses:
                break
            if StepStatus.FAILED in stage_statuses and job.halt_on_failure:
                logger.warning(
                    "job_halted",
                    extra={"stage": index, "remaining_stages": len(job.stages) - index - 1},
                )
                break

        return results

    def _run_stage(
        self,
        job: Job,
        execution: JobExecution,
        stage: tuple[Step, ...],
        resume: bool,
        stop_event: threading.Event,
    ) -> dict[str, StepExecution]:
        results: dict[str, StepExecution] = {}
        pending: list[tuple[Step, Any]] = []

        for step in stage:
            previous = (
                self._repository.load_last_step_execution(
                    job.name, execution.instance_key, step.name,
                )
                if resume else None
            )
            if previous is not None and previous.status == StepStatus.COMPLETED:
                logger.info(
                    "step_skipped_completed",
                    extra={
                        "step": step.name,
                        "step_execution_id": str(previous.step_execution_id),
                    },
                )
                results[step.name] = previous
                continue
            start_key = previous.last_committed_key if previous is not None else None
            if previous is not None:
                logger.info(
                    "step_resumed",
                    extra={
                        "step": step.name,
                        "previous_status": previous.status.value,
                        "start_key": start_key,
                    },
                )
            pending.append((step, start_key))

        if len(pending) <= 1 or job.max_parallel_steps == 1:
            for step, start_key in pending:
                results[step.name] = self._run_step(execution, step, start_key, stop_event)
            return results

        workers = min(job.max_parallel_steps, len(pending))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"{job.name}-step",
        ) as pool:
            futures = {
                step.name: pool.submit(
                    contextvars.copy_context().run,
                    self._run_step, execution, step, start_key, stop_event,
                )
                for step, start_key in pending
            }
            for step_name, future in futures.items():
                results[step_name] = future.result()
        return results

    def _run_step(
        self,
        execution: JobExecution,
        step: Step,
        start_key: Any,
        stop_event: threading.Event,
    ) -> StepExecution:
        step_execution = self._repository.create_step_execution(
            execution.job_execution_id, step.name, start_key,
        )
        executor = ChunkExecutor(step, self._repository, self._clock, stop_event)
        return executor.execute(step_execution)


def _exit_message(results: dict[str, StepExecution | None]) -> str | None:
    for name, result in results.items():
        if result is not None and result.status == StepStatus.FAILED:
            return f"step {name} failed: {result.exit_message}"
    return None
