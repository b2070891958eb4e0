"""Pure domain helpers shared by the batch packages (no ORM, no I/O)."""

from chunk_kernel.domain.clock import Clock, DeterministicClock, SystemClock

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
]
