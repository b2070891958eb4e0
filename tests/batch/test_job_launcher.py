"""
Tests for chunk_batch.services.job_launcher.

Validates start/restart semantics, completed-step skipping, crash resume
(idempotent: no record written twice), halt-on-failure, concurrent stages,
stop requests, and job status aggregation.
"""

import threading
from uuid import uuid4

import pytest

from chunk_batch.domain.types import JobStatus, StepStatus
from chunk_batch.items.processors import FunctionItemProcessor
from chunk_batch.items.readers import InMemoryPagedReader
from chunk_batch.items.writers import ListItemWriter
from chunk_batch.jobs.base import Job, JobBuilder, Step
from chunk_batch.services.job_launcher import JobLauncher
from chunk_config.schema import StepConfig
from chunk_kernel.exceptions import (
    CheckpointError,
    JobAlreadyRunningError,
    JobExecutionNotFoundError,
    JobInstanceAlreadyCompleteError,
    JobInstanceAlreadyExistsError,
)

from conftest import (
    CrashAfterChunksWriter,
    FailOnKeyWriter,
    FlakyWriter,
    SimulatedCrash,
    make_records,
)


def _step(name, records, writer, processor=None, chunk_size=10):
    kwargs = {"processor": processor} if processor is not None else {}
    return Step(
        name=name,
        reader=InMemoryPagedReader(records, key=lambda r: r.id),
        writer=writer,
        config=StepConfig(chunk_size=chunk_size),
        **kwargs,
    )


@pytest.fixture
def launcher(repository, clock):
    return JobLauncher(repository, clock=clock)


class DelegatingRepository:
    """Passes every call through to a real repository."""

    def __init__(self, delegate):
        self._delegate = delegate

    def __getattr__(self, name):
        return getattr(self._delegate, name)


class CheckpointOutage(DelegatingRepository):
    """Fails the checkpoint that would record commit N while ``down``."""

    def __init__(self, delegate, fail_on_commit):
        super().__init__(delegate)
        self._fail_on_commit = fail_on_commit
        self.down = True

    def update_step_execution(self, execution):
        if (
            self.down
            and execution.commit_count == self._fail_on_commit
            and not execution.is_final
        ):
            raise CheckpointError(execution.step_name, "store unavailable")
        return self._delegate.update_step_execution(execution)


class JobStatusOutage(DelegatingRepository):
    """Accepts the RUNNING update, then fails every job status write."""

    def __init__(self, delegate):
        super().__init__(delegate)
        self.calls = 0

    def update_job_execution(self, execution):
        self.calls += 1
        if self.calls == 1:
            return self._delegate.update_job_execution(execution)
        raise CheckpointError(execution.job_name, f"status write {self.calls} failed")


class StopOnItemWriter:
    """Requests a stop of the running job when it writes ``record_id``."""

    def __init__(self, delegate, launcher, record_id):
        self._delegate = delegate
        self._launcher = launcher
        self._record_id = record_id

    def write(self, items):
        if any(item.id == self._record_id for item in items):
            for job_execution_id in self._launcher.running_executions():
                self._launcher.stop(job_execution_id)
        self._delegate.write(items)


# =============================================================================
# Start
# =============================================================================


class TestStart:
    def test_single_step_job_completes(self, launcher):
        sink = ListItemWriter()
        job = Job.sequential("load_job", _step("load", make_records(25), sink))

        execution = launcher.start(job, "2024-06-01")

        assert execution.status == JobStatus.COMPLETED
        assert execution.ended_at is not None
        assert execution.exit_message is None
        assert execution.step("load").write_count == 25
        assert len(sink.items) == 25

    def test_steps_run_in_sequence(self, launcher):
        order: list[str] = []

        class OrderWriter:
            def __init__(self, name):
                self._name = name

            def write(self, items):
                order.append(self._name)

        job = Job.sequential(
            "seq_job",
            _step("first", make_records(5), OrderWriter("first")),
            _step("second", make_records(5), OrderWriter("second")),
        )

        execution = launcher.start(job, "a")

        assert execution.status == JobStatus.COMPLETED
        assert order == ["first", "second"]
        assert [s.step_name for s in execution.step_executions] == ["first", "second"]

    def test_second_start_of_same_instance_is_rejected(self, launcher):
        job = Job.sequential("load_job", _step("load", make_records(3), ListItemWriter()))
        launcher.start(job, "a")

        with pytest.raises(JobInstanceAlreadyExistsError):
            launcher.start(job, "a")

    def test_distinct_instances_are_independent(self, launcher):
        job = Job.sequential("load_job", _step("load", make_records(3), ListItemWriter()))

        assert launcher.start(job, "a").status == JobStatus.COMPLETED
        assert launcher.start(job, "b").status == JobStatus.COMPLETED

    def test_correlation_id_is_recorded_and_logged(self, launcher, captured_logs):
        job = Job.sequential("load_job", _step("load", make_records(3), ListItemWriter()))

        execution = launcher.start(job, "a", correlation_id="req-42")

        assert execution.correlation_id == "req-42"
        finished = [r for r in captured_logs() if r["message"] == "job_finished"]
        assert finished[0]["correlation_id"] == "req-42"
        assert finished[0]["job_name"] == "load_job"


# =============================================================================
# Failure and halt
# =============================================================================


class TestFailure:
    def test_failed_step_halts_remaining_steps(self, launcher):
        later = ListItemWriter()
        job = Job.sequential(
            "halt_job",
            _step("first", make_records(20), FailOnKeyWriter(ListItemWriter(), 15)),
            _step("second", make_records(5), later),
        )

        execution = launcher.start(job, "a")

        assert execution.status == JobStatus.FAILED
        assert execution.step("first").status == StepStatus.FAILED
        assert execution.step("second") is None
        assert later.items == []
        assert "step first failed" in execution.exit_message

    def test_without_halt_later_steps_still_run(self, launcher):
        later = ListItemWriter()
        job = Job.sequential(
            "no_halt_job",
            _step("first", make_records(20), FailOnKeyWriter(ListItemWriter(), 15)),
            _step("second", make_records(5), later),
            halt_on_failure=False,
        )

        execution = launcher.start(job, "a")

        assert execution.status == JobStatus.FAILED
        assert execution.step("second").status == StepStatus.COMPLETED
        assert len(later.items) == 5


# =============================================================================
# Restart
# =============================================================================


class TestRestart:
    def test_restart_without_prior_run_raises(self, launcher):
        job = Job.sequential("load_job", _step("load", make_records(3), ListItemWriter()))

        with pytest.raises(JobExecutionNotFoundError):
            launcher.restart(job, "a")

    def test_restart_of_completed_instance_raises(self, launcher):
        job = Job.sequential("load_job", _step("load", make_records(3), ListItemWriter()))
        launcher.start(job, "a")

        with pytest.raises(JobInstanceAlreadyCompleteError):
            launcher.restart(job, "a")

    def test_restart_resumes_failed_step_from_checkpoint(self, launcher):
        sink = ListItemWriter()
        flaky = FlakyWriter(sink, failures=0)
        job = Job.sequential("load_job", _step("load", make_records(30), flaky))

        # First run fails on the second chunk.
        failing = Job.sequential(
            "load_job", _step("load", make_records(30), FailOnKeyWriter(sink, 15)),
        )
        first = launcher.start(failing, "a")
        assert first.status == JobStatus.FAILED
        assert first.step("load").last_committed_key == 10

        second = launcher.restart(job, "a")

        resumed = second.step("load")
        assert second.status == JobStatus.COMPLETED
        assert resumed.start_key == 10
        assert resumed.read_count == 20
        assert [r.id for r in sink.items] == list(range(1, 31))

    def test_restart_skips_completed_steps(self, launcher, repository):
        first_sink = ListItemWriter()
        second_sink = ListItemWriter()
        first_step = _step("first", make_records(10), first_sink)

        failing = Job.sequential(
            "two_step_job",
            first_step,
            _step("second", make_records(10), FailOnKeyWriter(ListItemWriter(), 1)),
        )
        launcher.start(failing, "a")

        fixed = Job.sequential(
            "two_step_job", first_step, _step("second", make_records(10), second_sink),
        )
        execution = launcher.restart(fixed, "a")

        assert execution.status == JobStatus.COMPLETED
        assert len(first_sink.items) == 10
        assert len(second_sink.items) == 10
        # Only the resumed step gets a new StepExecution.
        assert [s.step_name for s in execution.step_executions] == ["second"]

    def test_crash_between_chunks_resumes_without_duplicates(self, launcher, repository):
        sink = ListItemWriter()
        crashing = Job.sequential(
            "crash_job", _step("load", make_records(35), CrashAfterChunksWriter(sink, 2)),
        )

        with pytest.raises(SimulatedCrash):
            launcher.start(crashing, "a")

        stale = repository.load_last_step_execution("crash_job", "a", "load")
        assert stale.status == StepStatus.RUNNING
        assert stale.last_committed_key == 20
        assert repository.find_job_executions("crash_job", "a")[0].status == JobStatus.RUNNING

        healthy = Job.sequential("crash_job", _step("load", make_records(35), sink))
        execution = launcher.restart(healthy, "a")

        assert execution.status == JobStatus.COMPLETED
        assert execution.step("load").start_key == 20
        ids = [r.id for r in sink.items]
        assert ids == list(range(1, 36))
        assert len(ids) == len(set(ids))

    def test_failed_checkpoint_restart_writes_each_record_once(self, repository, clock):
        sink = ListItemWriter()
        outage = CheckpointOutage(repository, fail_on_commit=2)
        launcher = JobLauncher(outage, clock=clock)
        job = Job.sequential("load_job", _step("load", make_records(30), sink))

        first = launcher.start(job, "a")
        assert first.status == JobStatus.FAILED
        assert [r.id for r in sink.items] == list(range(1, 11))

        outage.down = False
        second = launcher.restart(job, "a")

        assert second.status == JobStatus.COMPLETED
        assert [r.id for r in sink.items] == list(range(1, 31))

    def test_restart_after_crash_is_allowed_in_same_process(self, launcher):
        crashing = Job.sequential(
            "crash_job",
            _step("load", make_records(15), CrashAfterChunksWriter(ListItemWriter(), 1)),
        )
        with pytest.raises(SimulatedCrash):
            launcher.start(crashing, "a")

        assert launcher.running_executions() == ()
        healthy = Job.sequential("crash_job", _step("load", make_records(15), ListItemWriter()))
        assert launcher.restart(healthy, "a").status == JobStatus.COMPLETED


# =============================================================================
# Concurrency
# =============================================================================


class TestConcurrentStages:
    def test_split_stage_runs_steps_concurrently(self, launcher):
        barrier = threading.Barrier(2, timeout=5)

        def wait_for_peer(record):
            if record.id == 1:
                barrier.wait()
            return record

        left, right = ListItemWriter(), ListItemWriter()
        job = (
            JobBuilder("split_job")
            .split(
                _step("left", make_records(12), left, FunctionItemProcessor(wait_for_peer)),
                _step("right", make_records(8), right, FunctionItemProcessor(wait_for_peer)),
            )
            .build()
        )

        execution = launcher.start(job, "a")

        assert execution.status == JobStatus.COMPLETED
        assert len(left.items) == 12
        assert len(right.items) == 8

    def test_concurrent_steps_log_their_own_context(self, launcher, captured_logs):
        job = (
            JobBuilder("split_job")
            .split(
                _step("left", make_records(3), ListItemWriter()),
                _step("right", make_records(3), ListItemWriter()),
            )
            .build()
        )

        execution = launcher.start(job, "a")

        finished = [r for r in captured_logs() if r["message"] == "step_finished"]
        assert {r["step_name"] for r in finished} == {"left", "right"}
        assert all(
            r["job_execution_id"] == str(execution.job_execution_id) for r in finished
        )

    def test_same_instance_cannot_run_twice_at_once(self, launcher):
        started = threading.Event()
        release = threading.Event()

        def block(record):
            started.set()
            release.wait(timeout=5)
            return record

        job = Job.sequential(
            "slow_job", _step("s", make_records(1), ListItemWriter(), FunctionItemProcessor(block)),
        )
        results = {}

        def run():
            results["execution"] = launcher.start(job, "a")

        worker = threading.Thread(target=run)
        worker.start()
        assert started.wait(timeout=5)
        try:
            with pytest.raises(JobAlreadyRunningError):
                launcher.restart(job, "a")
        finally:
            release.set()
            worker.join(timeout=5)

        assert results["execution"].status == JobStatus.COMPLETED


# =============================================================================
# Stop
# =============================================================================


class TestStop:
    def test_stop_ends_job_stopped_and_restart_resumes(self, launcher):
        sink = ListItemWriter()
        holder = {}

        def stop_midway(record):
            if record.id == 15:
                launcher.stop(holder["id"])
            return record

        original_create = launcher.repository.create_job_execution

        def capture(*args, **kwargs):
            execution = original_create(*args, **kwargs)
            holder["id"] = execution.job_execution_id
            return execution

        launcher.repository.create_job_execution = capture
        job = Job.sequential(
            "stop_job",
            _step("load", make_records(40), sink, FunctionItemProcessor(stop_midway)),
            _step("after", make_records(5), ListItemWriter()),
        )

        stopped = launcher.start(job, "a")

        assert stopped.status == JobStatus.STOPPED
        assert stopped.step("load").status == StepStatus.STOPPED
        assert stopped.step("load").last_committed_key == 20
        assert stopped.step("after") is None

        resumed = launcher.restart(
            Job.sequential(
                "stop_job",
                _step("load", make_records(40), sink),
                _step("after", make_records(5), ListItemWriter()),
            ),
            "a",
        )
        assert resumed.status == JobStatus.COMPLETED
        assert [r.id for r in sink.items] == list(range(1, 41))

    def test_stop_between_stages_stops_the_job(self, launcher):
        # The stop lands on the final chunk of "first", which still completes.
        first_sink, second_sink = ListItemWriter(), ListItemWriter()
        job = Job.sequential(
            "staged_job",
            _step("first", make_records(7), StopOnItemWriter(first_sink, launcher, 7)),
            _step("second", make_records(5), second_sink),
        )

        stopped = launcher.start(job, "a")

        assert stopped.status == JobStatus.STOPPED
        assert stopped.step("first").status == StepStatus.COMPLETED
        assert stopped.step("second") is None
        assert second_sink.items == []

        resumed = launcher.restart(
            Job.sequential(
                "staged_job",
                _step("first", make_records(7), first_sink),
                _step("second", make_records(5), second_sink),
            ),
            "a",
        )

        assert resumed.status == JobStatus.COMPLETED
        assert [s.step_name for s in resumed.step_executions] == ["second"]
        assert len(first_sink.items) == 7
        assert len(second_sink.items) == 5

    def test_stop_of_unknown_execution_returns_false(self, launcher):
        assert launcher.stop(uuid4()) is False


# =============================================================================
# Unexpected failures
# =============================================================================


class TestUnexpectedFailure:
    def test_failed_status_write_does_not_mask_original_error(
        self, repository, clock, captured_logs,
    ):
        outage = JobStatusOutage(repository)
        launcher = JobLauncher(outage, clock=clock)
        job = Job.sequential("load_job", _step("load", make_records(5), ListItemWriter()))

        with pytest.raises(CheckpointError, match="status write 2 failed"):
            launcher.start(job, "a")

        assert outage.calls == 3
        assert any(
            r["message"] == "job_failure_not_persisted" for r in captured_logs()
        )
        stored = repository.find_job_executions("load_job", "a")[0]
        assert stored.status == JobStatus.RUNNING
        assert launcher.running_executions() == ()
