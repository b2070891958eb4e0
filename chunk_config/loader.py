"""
Configuration Loader (``chunk_config.loader``).

Responsibility
--------------
Loads YAML job configuration files and parses them into the frozen
dataclasses of ``chunk_config.schema``.

Expected layout::

    job:
      name: high_value_pay_job
      halt_on_failure: true
      max_parallel_steps: 2
    defaults:
      chunk_size: 10
      failure_threshold: 1
      retry_limit: 0
    steps:
      high_value_pay_step:
        chunk_size: 50
        page_size: 100

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing ``job.name``  -> ``KeyError`` propagates.
* Unknown step keys  -> ``InvalidStepConfigError``.
* Out-of-range or mistyped values  -> ``InvalidStepConfigError`` (from the
  schema).  YAML booleans are not accepted as counts.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from chunk_kernel.exceptions import InvalidStepConfigError
from chunk_config.schema import JobConfig, StepConfig

_STEP_KEYS = frozenset({"chunk_size", "page_size", "failure_threshold", "retry_limit"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Returns an empty dict for an empty file.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data or {}


def parse_step_config(
    data: dict[str, Any] | None,
    base: StepConfig | None = None,
) -> StepConfig:
    """Parse a step mapping, filling unspecified keys from ``base``."""
    data = data or {}
    unknown = set(data) - _STEP_KEYS
    if unknown:
        raise InvalidStepConfigError(
            "step", sorted(unknown), f"unknown keys; expected {sorted(_STEP_KEYS)}",
        )

    base = base or StepConfig()
    return StepConfig(
        chunk_size=data.get("chunk_size", base.chunk_size),
        page_size=data.get("page_size", base.page_size),
        failure_threshold=data.get("failure_threshold", base.failure_threshold),
        retry_limit=data.get("retry_limit", base.retry_limit),
    )


def parse_job_config(data: dict[str, Any]) -> JobConfig:
    """Parse a full job configuration document."""
    job = data["job"]
    default_step = parse_step_config(data.get("defaults"))
    steps = {
        name: parse_step_config(step_data, base=default_step)
        for name, step_data in (data.get("steps") or {}).items()
    }
    return JobConfig(
        name=job["name"],
        halt_on_failure=job.get("halt_on_failure", True),
        max_parallel_steps=job.get("max_parallel_steps", 4),
        default_step=default_step,
        steps=steps,
    )


def load_job_config(path: Path | str) -> JobConfig:
    """Load and parse a job configuration YAML file."""
    return parse_job_config(load_yaml_file(Path(path)))
