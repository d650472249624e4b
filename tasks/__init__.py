"""RQ task definitions.

All RQ enqueue calls MUST import from this module (not services.*)
so that the worker resolves functions as `tasks.<name>`.

We define thin wrappers here so that __module__ is 'tasks',
which is what RQ serializes for job lookup.
"""


def evict_conversation_job(conversation_id: str, attempt: int = 1) -> int:
    from services.retention import run_corrective_eviction
    return run_corrective_eviction(conversation_id, attempt)


def sweep_over_capacity_job() -> int:
    from services.retention import run_over_capacity_sweep
    return run_over_capacity_sweep()
