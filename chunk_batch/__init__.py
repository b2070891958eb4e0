"""
chunk_batch -- Chunk-oriented batch processing engine.

Reads large datasets in keyset pages, transforms them item by item, and
writes them in bounded chunks.  Each chunk's write and its checkpoint commit
in one transaction scope, so a failed or interrupted step restarts exactly
after the last committed record.

Architecture:
    chunk_batch/ is a top-level package over chunk_kernel (errors, logging,
    clock, DB base) and chunk_config (StepConfig / JobConfig).  Neither of
    those imports from chunk_batch.

        domain/    pure value types (pages, chunks, execution snapshots)
        items/     reader / processor / writer contracts and implementations
        jobs/      Step, Job, builders, registry, sample pay jobs
        models/    ORM rows for job and step executions
        services/  transactions, job repository, chunk executor, launcher

Invariants:
    - last_committed_key advances only after a successful chunk commit and
      never moves backwards.
    - One transaction scope wraps exactly the writer call and the
      checkpoint update.
    - A stop request takes effect only between chunks.
    - Records keep reader order within and across chunks.
    - Defaults are fail-fast (failure_threshold=1, retry_limit=0).
"""
