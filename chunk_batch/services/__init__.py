"""
chunk_batch.services -- transaction scopes, job repositories, the chunk
executor and the job launcher.

Import the submodules directly; this package re-exports nothing so that
item implementations can depend on ``services.transactions`` without
pulling in the executor.
"""
