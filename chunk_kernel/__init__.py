"""
Chunk Kernel - shared infrastructure for the chunk batch engine.

- Typed exception hierarchy (machine-readable codes)
- Structured JSON logging with job/step context propagation
- Injectable clock
- SQLAlchemy declarative base, engine and session scope
"""

__version__ = "0.1.0"
