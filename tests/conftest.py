"""
Pytest fixtures for the chunk batch test suite.

Provides:
- Structured logging configuration and a ``captured_logs`` fixture
- A deterministic clock
- In-memory SQLite engine / session factory (StaticPool, so every session
  sees the same database)
- Small reader / processor / writer doubles shared by the batch tests
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from io import StringIO
from typing import Any, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chunk_batch.domain.types import Page
from chunk_batch.jobs import pay_jobs  # noqa: F401  registers pay tables
from chunk_batch.models import execution  # noqa: F401  registers execution tables
from chunk_batch.services.job_repository import InMemoryJobRepository
from chunk_kernel.db.base import Base
from chunk_kernel.domain.clock import DeterministicClock
from chunk_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture chunk_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs):
            executor.execute(step_execution)
            logs = captured_logs()
            assert any(r["message"] == "chunk_committed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("chunk_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Clock / repository
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(datetime(2024, 6, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def repository(clock):
    return InMemoryJobRepository(clock=clock)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def sqlite_engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine):
    return sessionmaker(bind=sqlite_engine, expire_on_commit=False)


# =============================================================================
# Item doubles
# =============================================================================


@dataclass(frozen=True)
class Record:
    id: int
    value: int = 0


def make_records(count: int, start: int = 1) -> list[Record]:
    return [Record(id=i, value=i * 100) for i in range(start, start + count)]


class RecordingReader:
    """Delegates to another reader and records every fetch."""

    def __init__(self, delegate):
        self._delegate = delegate
        self.calls: list[tuple[Any, int]] = []

    def fetch_page(self, after_key: Any, page_size: int) -> Page:
        self.calls.append((after_key, page_size))
        return self._delegate.fetch_page(after_key, page_size)


class FailingReader:
    """Raises on the Nth fetch (1-based)."""

    def __init__(self, delegate, fail_on_call: int, error: Exception | None = None):
        self._delegate = delegate
        self._fail_on_call = fail_on_call
        self._error = error or ConnectionError("source unavailable")
        self.calls = 0

    def fetch_page(self, after_key: Any, page_size: int) -> Page:
        self.calls += 1
        if self.calls == self._fail_on_call:
            raise self._error
        return self._delegate.fetch_page(after_key, page_size)


class FlakyWriter:
    """Fails the first ``failures`` write attempts, then delegates."""

    def __init__(self, delegate, failures: int = 1):
        self._delegate = delegate
        self._remaining = failures
        self.attempts = 0
        self._lock = threading.Lock()

    def write(self, items: Sequence[Any]) -> None:
        with self._lock:
            self.attempts += 1
            if self._remaining > 0:
                self._remaining -= 1
                raise IOError("sink unavailable")
        self._delegate.write(items)


class FailOnKeyWriter:
    """Fails every write whose chunk contains ``record_id``."""

    def __init__(self, delegate, record_id: int):
        self._delegate = delegate
        self._record_id = record_id
        self.attempts = 0

    def write(self, items: Sequence[Any]) -> None:
        self.attempts += 1
        if any(item.id == self._record_id for item in items):
            raise IOError(f"cannot write record {self._record_id}")
        self._delegate.write(items)


class SimulatedCrash(BaseException):
    """Process death between chunks; never caught by the engine."""


class CrashAfterChunksWriter:
    """Writes ``chunks`` chunks, then raises SimulatedCrash."""

    def __init__(self, delegate, chunks: int):
        self._delegate = delegate
        self._chunks = chunks
        self.calls = 0

    def write(self, items: Sequence[Any]) -> None:
        self.calls += 1
        if self.calls > self._chunks:
            raise SimulatedCrash()
        self._delegate.write(items)
