"""
chunk_batch.jobs -- Job/Step definitions, builders, registry, sample jobs.
"""

from chunk_batch.jobs.base import Job, JobBuilder, JobRegistry, Step, StepBuilder

__all__ = [
    "Job",
    "JobBuilder",
    "JobRegistry",
    "Step",
    "StepBuilder",
]
