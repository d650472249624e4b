"""Corrective eviction — RQ jobs that restore the capacity invariant.

An append whose eviction step failed has already committed its entry, so the
conversation may sit above capacity. ``EvictionScheduler`` enqueues a delayed
``tasks.evict_conversation_job`` for that key; the job re-runs the retention
policy and reschedules itself with backoff while the store keeps failing.

``run_over_capacity_sweep`` catches anything the per-key jobs missed (Redis
down when the failure happened, retries exhausted). Schedule it as an RQ
periodic/cron job (e.g. every 10 minutes).
"""

from __future__ import annotations

import logging
from datetime import timedelta

from config import settings
from services.errors import ConcurrencyConflict, TransientStoreError
from services.memory_log import BoundedConversationLog, _backoff

logger = logging.getLogger(__name__)


class EvictionScheduler:
    """Enqueues delayed corrective evictions on the memlog RQ queue."""

    def __init__(self, delay_seconds: int | None = None, queue_name: str | None = None):
        self.delay_seconds = (
            delay_seconds if delay_seconds is not None else settings.EVICTION_RETRY_DELAY_SECONDS
        )
        self.queue_name = queue_name or settings.RQ_QUEUE_NAME

    def schedule(self, conversation_id: str, attempt: int = 1) -> None:
        """Enqueue a corrective eviction for *conversation_id*.

        Uses a deterministic job_id so that repeated failures on the same key
        and attempt collapse into one queued job.
        """
        from tasks import evict_conversation_job

        import redis
        from rq import Queue

        conn = redis.from_url(settings.REDIS_URL)
        q = Queue(self.queue_name, connection=conn)
        delay = _backoff(self.delay_seconds, attempt)
        q.enqueue_in(
            timedelta(seconds=delay),
            evict_conversation_job,
            conversation_id, attempt,
            job_id=f"memlog-evict-{conversation_id}-a{attempt}",
        )
        logger.info(
            "Scheduled corrective eviction for %s in %ss (attempt %d)",
            conversation_id, delay, attempt,
        )


def _default_log(scheduler: EvictionScheduler | None = None) -> BoundedConversationLog:
    from services.log_stores import SqlAlchemyLogStore

    return BoundedConversationLog(SqlAlchemyLogStore(), scheduler=scheduler or EvictionScheduler())


def run_corrective_eviction(
    conversation_id: str,
    attempt: int = 1,
    memory_log: BoundedConversationLog | None = None,
) -> int:
    """Sweep one conversation. Called by RQ worker.

    Returns the number of entries evicted, or -1 when the sweep failed.
    """
    memory_log = memory_log or _default_log()
    try:
        return memory_log.sweep(conversation_id)
    except (TransientStoreError, ConcurrencyConflict) as exc:
        next_attempt = attempt + 1
        if next_attempt > settings.EVICTION_MAX_RETRIES:
            logger.error(
                "Giving up corrective eviction for %s after %d attempts: %s",
                conversation_id, attempt, exc,
            )
        else:
            logger.warning(
                "Corrective eviction for %s failed (attempt %d): %s",
                conversation_id, attempt, exc,
            )
            memory_log.scheduler.schedule(conversation_id, next_attempt)
        return -1


def run_over_capacity_sweep(memory_log: BoundedConversationLog | None = None) -> int:
    """Sweep every conversation above capacity. Returns the number of entries evicted."""
    memory_log = memory_log or _default_log()
    return memory_log.sweep_over_capacity()
