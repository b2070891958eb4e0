"""
chunk_config -- configuration for chunk-oriented batch jobs.

Responsibility:
    Provides the typed configuration surface of the engine: ``StepConfig``
    (chunk_size, page_size, failure_threshold, retry_limit) and
    ``JobConfig`` (halt_on_failure, max_parallel_steps, per-step overrides),
    plus YAML loading.

Architecture position:
    Configuration -- sits above ``chunk_kernel`` and below ``chunk_batch``.
    The kernel never imports from ``chunk_config``.
"""

from chunk_config.loader import (
    load_job_config,
    load_yaml_file,
    parse_job_config,
    parse_step_config,
)
from chunk_config.schema import DEFAULT_CHUNK_SIZE, JobConfig, StepConfig

__all__ = [
    "DEFAULT_CHUNK_SIZE",
    "JobConfig",
    "StepConfig",
    "load_job_config",
    "load_yaml_file",
    "parse_job_config",
    "parse_step_config",
]
