"""
chunk_batch.domain -- Pure value types for the chunk engine.

ZERO I/O.  Nothing here imports SQLAlchemy or touches a session.
"""

from chunk_batch.domain.types import (
    EMPTY_PAGE,
    Chunk,
    ChunkExecutorState,
    JobExecution,
    JobStatus,
    Page,
    PageEntry,
    StepExecution,
    StepStatus,
    derive_job_status,
)

__all__ = [
    "EMPTY_PAGE",
    "Chunk",
    "ChunkExecutorState",
    "JobExecution",
    "JobStatus",
    "Page",
    "PageEntry",
    "StepExecution",
    "StepStatus",
    "derive_job_status",
]
