"""
BatchOrchestrator -- wiring container for the chunk batch engine.

Contract:
    Composes the JobRegistry, the JobRepository, the TransactionManager and
    a JobLauncher.  Single place where the engine's dependencies are built.

Architecture: chunk_batch (top-level).  The canonical entry point for
    registering and running jobs.

Invariants enforced:
    - Every component receives the same Clock.
    - The job repository and SQL-backed steps share one
      SessionTransactionManager, so chunk writes and checkpoints commit in
      the same transaction.
"""

from __future__ import annotations

from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from chunk_batch.domain.types import JobExecution
from chunk_batch.jobs.base import Job, JobRegistry
from chunk_batch.jobs.pay_jobs import (
    build_high_value_pay_archive_job,
    build_high_value_pay_job,
)
from chunk_batch.services.job_launcher import JobLauncher
from chunk_batch.services.job_repository import (
    InMemoryJobRepository,
    JobRepository,
    SqlAlchemyJobRepository,
)
from chunk_batch.services.transactions import (
    InMemoryTransactionManager,
    SessionTransactionManager,
    TransactionManager,
)
from chunk_config.schema import JobConfig
from chunk_kernel.db.engine import (
    create_tables,
    get_session_factory,
    init_engine_from_url,
)
from chunk_kernel.domain.clock import Clock, SystemClock
from chunk_kernel.logging_config import get_logger

logger = get_logger("batch.orchestrator")


def _default_job_registry(
    tx: SessionTransactionManager,
    job_configs: dict[str, JobConfig] | None = None,
) -> JobRegistry:
    """Create a JobRegistry pre-loaded with the pay sample jobs."""
    configs = job_configs or {}
    registry = JobRegistry()
    for job_name, build in (
        ("high_value_pay_job", build_high_value_pay_job),
        ("high_value_pay_archive_job", build_high_value_pay_archive_job),
    ):
        registry.register(build(tx, config=configs.get(job_name)))
    return registry


class BatchOrchestrator:
    """Wiring container for the batch engine.

    Contract:
        - ``from_session_factory()`` creates a SQL-backed orchestrator with
          the sample jobs registered.
        - ``in_memory()`` creates an orchestrator with an in-memory
          repository and an empty registry (tests, ad-hoc runs).
        - ``run_job()`` / ``restart_job()`` / ``stop_job()`` go through one
          shared JobLauncher.

        - ``from_url()`` initializes the process engine, creates the
          registered tables and then behaves like ``from_session_factory()``.

    Non-goals:
        - ``from_session_factory()`` does NOT create tables.
        - Does NOT schedule runs -- callers decide when to launch.
    """

    def __init__(
        self,
        repository: JobRepository,
        registry: JobRegistry,
        clock: Clock | None = None,
        transaction_manager: TransactionManager | None = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._clock = clock or SystemClock()
        self._tx = transaction_manager or InMemoryTransactionManager()
        self._launcher = self.create_launcher()

    # -------------------------------------------------------------------------
    # Factories
    # -------------------------------------------------------------------------

    @classmethod
    def from_session_factory(
        cls,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
        registry: JobRegistry | None = None,
        job_configs: dict[str, JobConfig] | None = None,
    ) -> BatchOrchestrator:
        """Create a fully wired, SQL-backed orchestrator.

        Args:
            session_factory: Callable returning new sessions (a sessionmaker).
            clock: Optional clock for deterministic testing.
            registry: Optional pre-configured registry.  If None, the pay
                sample jobs are registered.
            job_configs: Optional per-job configuration (by job name) used
                when building the default registry.
        """
        effective_clock = clock or SystemClock()
        tx = SessionTransactionManager(session_factory)
        return cls(
            repository=SqlAlchemyJobRepository(tx, clock=effective_clock),
            registry=(
                registry if registry is not None
                else _default_job_registry(tx, job_configs)
            ),
            clock=effective_clock,
            transaction_manager=tx,
        )

    @classmethod
    def from_url(
        cls,
        database_url: str,
        clock: Clock | None = None,
        registry: JobRegistry | None = None,
        job_configs: dict[str, JobConfig] | None = None,
    ) -> BatchOrchestrator:
        """Create a SQL-backed orchestrator on a fresh process engine.

        Execution, sequence and pay tables are registered by this module's
        imports, so ``create_tables()`` covers them.  Replaces any engine
        created by an earlier ``init_engine_from_url()`` call.
        """
        init_engine_from_url(database_url)
        create_tables()
        return cls.from_session_factory(
            get_session_factory(),
            clock=clock,
            registry=registry,
            job_configs=job_configs,
        )

    @classmethod
    def in_memory(
        cls,
        clock: Clock | None = None,
        registry: JobRegistry | None = None,
    ) -> BatchOrchestrator:
        effective_clock = clock or SystemClock()
        return cls(
            repository=InMemoryJobRepository(clock=effective_clock),
            registry=registry if registry is not None else JobRegistry(),
            clock=effective_clock,
            transaction_manager=InMemoryTransactionManager(),
        )

    def create_launcher(self) -> JobLauncher:
        """Create a JobLauncher wired with the orchestrator's repository and clock."""
        return JobLauncher(self._repository, clock=self._clock)

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def register(self, job: Job) -> None:
        self._registry.register(job)

    def run_job(
        self,
        job_name: str,
        instance_key: str,
        correlation_id: str | None = None,
    ) -> JobExecution:
        job = self._registry.get(job_name)
        logger.info(
            "job_launch_requested",
            extra={"job": job_name, "instance_key": instance_key},
        )
        return self._launcher.start(job, instance_key, correlation_id=correlation_id)

    def restart_job(
        self,
        job_name: str,
        instance_key: str,
        correlation_id: str | None = None,
    ) -> JobExecution:
        job = self._registry.get(job_name)
        logger.info(
            "job_restart_requested",
            extra={"job": job_name, "instance_key": instance_key},
        )
        return self._launcher.restart(job, instance_key, correlation_id=correlation_id)

    def stop_job(self, job_execution_id: UUID) -> bool:
        return self._launcher.stop(job_execution_id)

    def get_job_execution(self, job_execution_id: UUID) -> JobExecution:
        return self._repository.get_job_execution(job_execution_id)

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def repository(self) -> JobRepository:
        return self._repository

    @property
    def transaction_manager(self) -> TransactionManager:
        return self._tx

    @property
    def launcher(self) -> JobLauncher:
        return self._launcher
