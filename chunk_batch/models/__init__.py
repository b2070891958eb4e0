"""
chunk_batch.models -- ORM models for job and step execution persistence.

Architecture: chunk_batch/models. Imports from chunk_kernel.db.base only.
"""

from chunk_batch.models.execution import (
    JobExecutionModel,
    SequenceCounterModel,
    StepExecutionModel,
)

__all__ = [
    "JobExecutionModel",
    "SequenceCounterModel",
    "StepExecutionModel",
]
