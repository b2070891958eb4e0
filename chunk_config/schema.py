"""
Step and job configuration schema.

Human-authored YAML is parsed into these frozen dataclasses by
``chunk_config.loader``.  Hosts may also build them directly in code.

    StepConfig  = how one step chunks, pages, and tolerates failures
    JobConfig   = job-level policy plus per-step overrides
"""

from __future__ import annotations

from dataclasses import dataclass, field

from chunk_kernel.exceptions import InvalidStepConfigError

DEFAULT_CHUNK_SIZE = 10


def _is_count(value: object) -> bool:
    # bool is an int subclass; YAML `true` must not read as 1.
    return isinstance(value, int) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# Step configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepConfig:
    """Chunking and fault-tolerance settings for one step.

    ``page_size`` defaults to ``chunk_size``.  ``failure_threshold`` is the
    number of failed chunk attempts after which the step fails;
    ``retry_limit`` caps the retries of any single chunk.  The defaults are
    fail-fast: the first failed chunk ends the step.
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    page_size: int | None = None
    failure_threshold: int = 1
    retry_limit: int = 0

    def __post_init__(self) -> None:
        if not _is_count(self.chunk_size) or self.chunk_size <= 0:
            raise InvalidStepConfigError(
                "chunk_size", self.chunk_size, "must be a positive integer",
            )
        if self.page_size is not None and (
            not _is_count(self.page_size) or self.page_size <= 0
        ):
            raise InvalidStepConfigError(
                "page_size", self.page_size, "must be a positive integer",
            )
        if not _is_count(self.failure_threshold) or self.failure_threshold < 1:
            raise InvalidStepConfigError(
                "failure_threshold", self.failure_threshold, "must be >= 1",
            )
        if not _is_count(self.retry_limit) or self.retry_limit < 0:
            raise InvalidStepConfigError(
                "retry_limit", self.retry_limit, "must be >= 0",
            )

    @property
    def effective_page_size(self) -> int:
        return self.page_size if self.page_size is not None else self.chunk_size


# ---------------------------------------------------------------------------
# Job configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class JobConfig:
    """Job-level policy and per-step configuration."""

    name: str
    halt_on_failure: bool = True
    max_parallel_steps: int = 4
    default_step: StepConfig = field(default_factory=StepConfig)
    steps: dict[str, StepConfig] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.halt_on_failure, bool):
            raise InvalidStepConfigError(
                "halt_on_failure", self.halt_on_failure, "must be true or false",
            )
        if not _is_count(self.max_parallel_steps) or self.max_parallel_steps < 1:
            raise InvalidStepConfigError(
                "max_parallel_steps", self.max_parallel_steps, "must be a positive integer",
            )

    def step_config(self, step_name: str) -> StepConfig:
        """Return the step's own config, or the job default."""
        return self.steps.get(step_name, self.default_step)
