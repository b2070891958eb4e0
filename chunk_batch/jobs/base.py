"""
Job and Step definitions, builders, and JobRegistry.

Contract:
    ``Step`` binds one reader, one optional processor and one writer to a
    ``StepConfig`` and a transaction manager -- explicit constructor
    injection, no runtime lookup.
    ``Job`` is an ordered sequence of stages; each stage holds one or more
    independent steps (several steps in one stage run concurrently).
    ``JobRegistry`` stores jobs keyed by name.

Invariants enforced:
    - Step names are unique within a job (they key the checkpoints).
    - A job has at least one step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from chunk_batch.items.base import ItemProcessor, ItemWriter, PagedItemReader
from chunk_batch.items.processors import PassThroughItemProcessor
from chunk_batch.services.transactions import (
    InMemoryTransactionManager,
    TransactionManager,
)
from chunk_config.schema import JobConfig, StepConfig
from chunk_kernel.exceptions import DuplicateStepNameError, JobNotRegisteredError


# =============================================================================
# Step / Job
# =============================================================================


@dataclass(frozen=True)
class Step:
    """One reader -> processor -> writer pipeline."""

    name: str
    reader: PagedItemReader
    writer: ItemWriter
    processor: ItemProcessor = field(default_factory=PassThroughItemProcessor)
    config: StepConfig = field(default_factory=StepConfig)
    transaction_manager: TransactionManager = field(
        default_factory=InMemoryTransactionManager,
    )


@dataclass(frozen=True)
class Job:
    """Ordered stages of steps executed as one logical run."""

    name: str
    stages: tuple[tuple[Step, ...], ...]
    halt_on_failure: bool = True
    max_parallel_steps: int = 4

    def __post_init__(self) -> None:
        if not self.stages or not all(self.stages):
            raise ValueError(f"Job {self.name} must have at least one step per stage")
        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise DuplicateStepNameError(self.name, step.name)
            seen.add(step.name)

    @classmethod
    def sequential(cls, name: str, *steps: Step, **options: Any) -> Job:
        """A job whose steps run one after another."""
        return cls(name=name, stages=tuple((step,) for step in steps), **options)

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(step for stage in self.stages for step in stage)


# =============================================================================
# Builders
# =============================================================================


class StepBuilder:
    """Fluent construction of a Step.

    Usage::

        step = (
            StepBuilder("high_value_pay_step")
            .chunk(10)
            .reader(reader)
            .writer(writer)
            .build()
        )
    """

    def __init__(self, name: str):
        self._name = name
        self._reader: PagedItemReader | None = None
        self._processor: ItemProcessor | None = None
        self._writer: ItemWriter | None = None
        self._config = StepConfig()
        self._tx: TransactionManager | None = None

    def chunk(self, chunk_size: int, page_size: int | None = None) -> StepBuilder:
        self._config = StepConfig(
            chunk_size=chunk_size,
            page_size=page_size,
            failure_threshold=self._config.failure_threshold,
            retry_limit=self._config.retry_limit,
        )
        return self

    def fault_tolerance(self, failure_threshold: int, retry_limit: int) -> StepBuilder:
        self._config = StepConfig(
            chunk_size=self._config.chunk_size,
            page_size=self._config.page_size,
            failure_threshold=failure_threshold,
            retry_limit=retry_limit,
        )
        return self

    def config(self, config: StepConfig) -> StepBuilder:
        self._config = config
        return self

    def reader(self, reader: PagedItemReader) -> StepBuilder:
        self._reader = reader
        return self

    def processor(self, processor: ItemProcessor) -> StepBuilder:
        self._processor = processor
        return self

    def writer(self, writer: ItemWriter) -> StepBuilder:
        self._writer = writer
        return self

    def transaction_manager(self, tx: TransactionManager) -> StepBuilder:
        self._tx = tx
        return self

    def build(self) -> Step:
        if self._reader is None or self._writer is None:
            raise ValueError(f"Step {self._name} needs a reader and a writer")
        return Step(
            name=self._name,
            reader=self._reader,
            writer=self._writer,
            processor=self._processor or PassThroughItemProcessor(),
            config=self._config,
            transaction_manager=self._tx or InMemoryTransactionManager(),
        )


class JobBuilder:
    """Fluent construction of a Job: ``start`` / ``next`` / ``split``."""

    def __init__(self, name: str, config: JobConfig | None = None):
        self._name = name
        self._stages: list[tuple[Step, ...]] = []
        self._config = config

    def start(self, step: Step) -> JobBuilder:
        if self._stages:
            raise ValueError(f"Job {self._name} already started")
        self._stages.append((step,))
        return self

    def next(self, step: Step) -> JobBuilder:
        self._stages.append((step,))
        return self

    def split(self, *steps: Step) -> JobBuilder:
        """Add a stage whose steps run concurrently."""
        self._stages.append(tuple(steps))
        return self

    def build(self) -> Job:
        if self._config is None:
            return Job(name=self._name, stages=tuple(self._stages))
        return Job(
            name=self._name,
            stages=tuple(self._stages),
            halt_on_failure=self._config.halt_on_failure,
            max_parallel_steps=self._config.max_parallel_steps,
        )


# =============================================================================
# JobRegistry
# =============================================================================


class JobRegistry:
    """Registry mapping job names to Job definitions.

    Contract:
        - ``register()`` adds a job; raises ValueError on duplicate.
        - ``get()`` retrieves by name; raises JobNotRegisteredError if missing.
        - ``list_jobs()`` returns all registered names, sorted.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    def register(self, job: Job) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' is already registered")
        self._jobs[job.name] = job

    def get(self, job_name: str) -> Job:
        try:
            return self._jobs[job_name]
        except KeyError:
            raise JobNotRegisteredError(job_name, self.list_jobs()) from None

    def list_jobs(self) -> tuple[str, ...]:
        return tuple(sorted(self._jobs))

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, job_name: str) -> bool:
        return job_name in self._jobs
