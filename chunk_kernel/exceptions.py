"""
Typed Exception Hierarchy for the chunk batch engine.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A step that fails must say *why* in a way the launcher, the job repository
and the operator can act on without parsing message strings:

  - A ReadError is fatal to the step (nothing to roll back).
  - A WriteError rolls back the chunk and may be retried.
  - A CheckpointError is fatal because restart correctness depends on it.

Every exception therefore:
  1. Has its own class (catch by type, not message)
  2. Carries a ``code`` class attribute (machine-readable, log-safe)
  3. Carries structured attributes (step_name, item_key, ...)

Example:
    try:
        launcher.restart(job, instance_key="2026-10")
    except JobInstanceAlreadyCompleteError as e:
        log.info("nothing to do for %s", e.instance_key)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BatchKernelError (base)
    |
    +-- ItemError
    |   +-- ReadError
    |   +-- ProcessError
    |   +-- WriteError
    |
    +-- CheckpointError
    |   +-- CheckpointRegressionError
    |
    +-- JobError
    |   +-- JobNotRegisteredError
    |   +-- JobExecutionNotFoundError
    |   +-- JobInstanceAlreadyExistsError
    |   +-- JobInstanceAlreadyCompleteError
    |   +-- JobAlreadyRunningError
    |   +-- DuplicateStepNameError
    |
    +-- StepExecutionError
    |   +-- StepExecutionNotFoundError
    |   +-- InvalidStepTransitionError
    |
    +-- ConfigError
    |   +-- InvalidStepConfigError
    |
    +-- TransactionError
        +-- NoActiveTransactionError

===============================================================================
"""


class BatchKernelError(Exception):
    """
    Base exception for all batch engine errors.

    All subclasses must have a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "BATCH_KERNEL_ERROR"


# Item-level exceptions (reader / processor / writer)


class ItemError(BatchKernelError):
    """Base exception for failures raised by the item contracts."""

    code: str = "ITEM_ERROR"


class ReadError(ItemError):
    """The source could not be read.  Fatal to the step."""

    code: str = "READ_ERROR"

    def __init__(self, step_name: str, after_key: object, reason: str):
        self.step_name = step_name
        self.after_key = after_key
        self.reason = reason
        super().__init__(
            f"Read failed in step {step_name} after key {after_key!r}: {reason}"
        )


class ProcessError(ItemError):
    """Processing a single record failed.  Aborts the in-progress chunk."""

    code: str = "PROCESS_ERROR"

    def __init__(self, step_name: str, item_key: object, reason: str):
        self.step_name = step_name
        self.item_key = item_key
        self.reason = reason
        super().__init__(
            f"Processing item {item_key!r} failed in step {step_name}: {reason}"
        )


class WriteError(ItemError):
    """
    Writing a chunk failed.

    The chunk's transaction scope is rolled back, so none of its items are
    observably persisted.
    """

    code: str = "WRITE_ERROR"

    def __init__(self, step_name: str, item_count: int, reason: str):
        self.step_name = step_name
        self.item_count = item_count
        self.reason = reason
        super().__init__(
            f"Writing chunk of {item_count} item(s) failed in step "
            f"{step_name}: {reason}"
        )


# Checkpoint exceptions


class CheckpointError(BatchKernelError):
    """
    The job repository could not persist or load step progress.

    Fatal: continuing without a durable checkpoint would break restart
    correctness.
    """

    code: str = "CHECKPOINT_ERROR"

    def __init__(self, step_name: str, reason: str):
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Checkpoint failed for step {step_name}: {reason}")


class CheckpointRegressionError(CheckpointError):
    """An update tried to move ``last_committed_key`` backwards."""

    code: str = "CHECKPOINT_REGRESSION"

    def __init__(self, step_name: str, committed_key: object, new_key: object):
        self.committed_key = committed_key
        self.new_key = new_key
        super().__init__(
            step_name,
            f"key {new_key!r} does not advance past committed key "
            f"{committed_key!r}",
        )


# Job lifecycle exceptions


class JobError(BatchKernelError):
    """Base exception for job definition and launch errors."""

    code: str = "JOB_ERROR"


class JobNotRegisteredError(JobError):
    """No job is registered under the requested name."""

    code: str = "JOB_NOT_REGISTERED"

    def __init__(self, job_name: str, available: tuple[str, ...]):
        self.job_name = job_name
        self.available = available
        super().__init__(
            f"No job registered as '{job_name}'. Available: {list(available)}"
        )


class JobExecutionNotFoundError(JobError):
    """A job execution (or any execution for an instance) does not exist."""

    code: str = "JOB_EXECUTION_NOT_FOUND"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Job execution not found: {reference}")


class JobInstanceAlreadyExistsError(JobError):
    """``start()`` was called for an instance that has already run."""

    code: str = "JOB_INSTANCE_ALREADY_EXISTS"

    def __init__(self, job_name: str, instance_key: str, job_execution_id: str):
        self.job_name = job_name
        self.instance_key = instance_key
        self.job_execution_id = job_execution_id
        super().__init__(
            f"Job {job_name} instance '{instance_key}' already has execution "
            f"{job_execution_id}; use restart()"
        )


class JobInstanceAlreadyCompleteError(JobError):
    """``restart()`` was called for an instance whose last run completed."""

    code: str = "JOB_INSTANCE_ALREADY_COMPLETE"

    def __init__(self, job_name: str, instance_key: str):
        self.job_name = job_name
        self.instance_key = instance_key
        super().__init__(
            f"Job {job_name} instance '{instance_key}' is already COMPLETED"
        )


class JobAlreadyRunningError(JobError):
    """The same job instance is already running in this process."""

    code: str = "JOB_ALREADY_RUNNING"

    def __init__(self, job_name: str, instance_key: str):
        self.job_name = job_name
        self.instance_key = instance_key
        super().__init__(
            f"Job {job_name} instance '{instance_key}' is already running"
        )


class DuplicateStepNameError(JobError):
    """Two steps of one job share a name, so checkpoints would collide."""

    code: str = "DUPLICATE_STEP_NAME"

    def __init__(self, job_name: str, step_name: str):
        self.job_name = job_name
        self.step_name = step_name
        super().__init__(f"Job {job_name} declares step '{step_name}' twice")


# Step execution exceptions


class StepExecutionError(BatchKernelError):
    """Base exception for step execution record errors."""

    code: str = "STEP_EXECUTION_ERROR"


class StepExecutionNotFoundError(StepExecutionError):
    """Step execution with given ID was not found."""

    code: str = "STEP_EXECUTION_NOT_FOUND"

    def __init__(self, step_execution_id: str):
        self.step_execution_id = step_execution_id
        super().__init__(f"Step execution not found: {step_execution_id}")


class InvalidStepTransitionError(StepExecutionError):
    """
    A status change is not allowed.

    Finalized executions (COMPLETED, FAILED, STOPPED) are never mutated.
    """

    code: str = "INVALID_STEP_TRANSITION"

    def __init__(self, step_execution_id: str, from_status: str, to_status: str):
        self.step_execution_id = step_execution_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Step execution {step_execution_id} cannot move from "
            f"{from_status} to {to_status}"
        )


# Configuration exceptions


class ConfigError(BatchKernelError):
    """Base exception for configuration errors."""

    code: str = "CONFIG_ERROR"


class InvalidStepConfigError(ConfigError):
    """A step configuration value is out of range."""

    code: str = "INVALID_STEP_CONFIG"

    def __init__(self, field_name: str, value: object, reason: str):
        self.field_name = field_name
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field_name}={value!r}: {reason}")


# Transaction exceptions


class TransactionError(BatchKernelError):
    """Base exception for transaction scope errors."""

    code: str = "TRANSACTION_ERROR"


class NoActiveTransactionError(TransactionError):
    """A component needed the active session but no scope is open."""

    code: str = "NO_ACTIVE_TRANSACTION"

    def __init__(self, component: str):
        self.component = component
        super().__init__(
            f"{component} requires an active transaction scope"
        )
