"""
Background job worker: claims conversation request jobs and runs them.

Can run as:
  1. FastAPI background tasks (same process, via startup event)
  2. Standalone worker (separate service): python -m thinkspace.worker

A pool of `worker_concurrency` slots polls the queue independently, so jobs
for different conversations run in parallel while the queue keeps each
conversation to one job at a time. Housekeeping loops prune finished jobs
and return stalled ones to the queue.
"""
import asyncio
from dataclasses import dataclass
from typing import List, Optional

from thinkspace.config import get_settings
from thinkspace.database import AsyncSessionLocal
from thinkspace.pipeline.interfaces import ClaimedJob, EventSink
from thinkspace.pipeline.processor import ConversationRequestProcessor
from thinkspace.pipeline.queue import (
    COMPLETED,
    InMemoryJobStore,
    JobStore,
    PriorityJobQueue,
    RetentionPolicy,
    RetryPolicy,
)
from thinkspace.services.conversation_store import ConversationStore
from thinkspace.services.job_manager import SqlJobStore
from thinkspace.services.model_policy import CuratedModelPolicy
from thinkspace.services.openrouter_client import OpenRouterClient
from thinkspace.services.secrets import SecretsService
from thinkspace.services.usage import UsageRecorder
from thinkspace.utils.logger import get_logger
from thinkspace.utils.metrics import inc

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

@dataclass
class Pipeline:
    queue: PriorityJobQueue
    processor: ConversationRequestProcessor
    conversations: ConversationStore
    secrets: SecretsService
    models: CuratedModelPolicy


def build_job_store() -> JobStore:
    settings = get_settings()
    if settings.queue_backend == "memory":
        return InMemoryJobStore()

    return SqlJobStore(AsyncSessionLocal)


def build_pipeline(events: EventSink, store: Optional[JobStore] = None) -> Pipeline:
    """Assemble queue, processor and their SQL-backed collaborators."""
    settings = get_settings()
    queue = PriorityJobQueue(
        store or build_job_store(),
        RetryPolicy(
            attempts=settings.queue_attempts,
            base_delay_seconds=settings.queue_backoff_base_seconds,
            kind_aware=settings.queue_kind_aware_retry,
        ),
    )
    conversations = ConversationStore(AsyncSessionLocal, archive_threshold=settings.archive_threshold)
    secrets = SecretsService(AsyncSessionLocal)
    models = CuratedModelPolicy()
    processor = ConversationRequestProcessor(
        contexts=conversations,
        messages=conversations,
        provider=OpenRouterClient(),
        secrets=secrets,
        usage=UsageRecorder(AsyncSessionLocal),
        models=models,
        events=events,
        queue=queue,
    )
    return Pipeline(queue=queue, processor=processor, conversations=conversations, secrets=secrets, models=models)


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

class WorkerPool:
    def __init__(
        self,
        queue: PriorityJobQueue,
        processor: ConversationRequestProcessor,
        concurrency: int = 4,
        poll_interval: float = 0.5,
        max_idle_interval: float = 5.0,
        stalled_seconds: float = 300,
        retention: Optional[RetentionPolicy] = None,
        cleanup_interval: float = 3600,
        stalled_check_interval: float = 60,
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = max(1, concurrency)
        self.poll_interval = poll_interval
        self.max_idle_interval = max_idle_interval
        self.stalled_seconds = stalled_seconds
        self.retention = retention or RetentionPolicy()
        self.cleanup_interval = cleanup_interval
        self.stalled_check_interval = stalled_check_interval
        self._claim_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

    @classmethod
    def from_settings(cls, queue: PriorityJobQueue, processor: ConversationRequestProcessor) -> "WorkerPool":
        settings = get_settings()
        return cls(
            queue,
            processor,
            concurrency=settings.worker_concurrency,
            poll_interval=settings.worker_poll_interval,
            max_idle_interval=settings.worker_max_idle_interval,
            stalled_seconds=settings.queue_stalled_seconds,
            retention=RetentionPolicy(
                keep_completed_hours=settings.queue_keep_completed_hours,
                keep_completed_count=settings.queue_keep_completed_count,
                keep_failed_hours=settings.queue_keep_failed_hours,
            ),
        )

    async def run_job(self, job: ClaimedJob) -> str:
        """Process a claimed job and settle it. Returns the job's new state."""
        try:
            result = await self.processor.process(job)
        except Exception as exc:
            inc("worker.job_error")
            return await self.queue.fail(job, exc)
        await self.queue.complete(job.job_id, result.to_dict())
        inc("worker.job_done")
        return COMPLETED

    async def run_once(self) -> Optional[str]:
        """Claim and run one job. Returns its new state, or None if nothing was ready."""
        async with self._claim_lock:
            job = await self.queue.claim_next()
        if job is None:
            return None
        return await self.run_job(job)

    async def worker_loop(self, slot: int = 0) -> None:
        """
        Poll for ready jobs and process them.

        Uses adaptive polling: starts at poll_interval, backs off to max_idle_interval
        when no jobs are found, resets on job found.
        """
        current_interval = self.poll_interval
        logger.info("worker.started", extra={"worker_slots": self.concurrency, "slot": slot})

        while True:
            try:
                state = await self.run_once()
                if state is not None:
                    current_interval = self.poll_interval
                    continue
                # No jobs found: back off
                current_interval = min(current_interval * 1.5, self.max_idle_interval)
            except Exception as exc:
                logger.error("worker.poll_error", extra={"error": str(exc)[:500], "error_type": type(exc).__name__})
                current_interval = self.max_idle_interval

            await asyncio.sleep(current_interval)

    async def run_cleanup(self) -> None:
        """Periodically prune finished jobs past their retention window."""
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                await self.queue.cleanup(self.retention)
            except Exception as exc:
                logger.error("worker.cleanup_error", extra={"error": str(exc)[:200]})

    async def run_stalled_recovery(self) -> None:
        """Periodically return jobs whose worker went silent."""
        while True:
            await asyncio.sleep(self.stalled_check_interval)
            try:
                await self.queue.recover_stalled(self.stalled_seconds)
            except Exception as exc:
                logger.error("worker.stalled_check_error", extra={"error": str(exc)[:200]})

    def start(self) -> None:
        """Spawn worker slots and housekeeping loops on the running event loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self.worker_loop(slot), name=f"worker:{slot}")
            for slot in range(self.concurrency)
        ]
        self._tasks.append(asyncio.create_task(self.run_cleanup(), name="worker:cleanup"))
        self._tasks.append(asyncio.create_task(self.run_stalled_recovery(), name="worker:stalled"))

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("worker.stopped", extra={"worker_slots": self.concurrency})

    async def run_forever(self) -> None:
        self.start()
        try:
            await asyncio.gather(*self._tasks)
        finally:
            await self.stop()


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run worker as standalone process."""
    from thinkspace.database import init_db
    from thinkspace.pipeline.broadcaster import ConnectionRegistry
    from thinkspace.pipeline.relay import RedisEventPublisher
    from thinkspace.services.redis_client import close_redis, init_redis

    settings = get_settings()
    if settings.queue_backend == "memory":
        logger.warning("worker.memory_backend", extra={"error": "standalone worker cannot see the API's in-memory queue"})

    await init_db()
    redis = await init_redis()
    if redis is not None:
        events: EventSink = RedisEventPublisher(redis)
    else:
        # Nobody can subscribe here; events are dropped
        logger.warning("worker.no_event_relay")
        events = ConnectionRegistry()

    pipeline = build_pipeline(events)
    await pipeline.conversations.seed_techniques()
    try:
        await WorkerPool.from_settings(pipeline.queue, pipeline.processor).run_forever()
    finally:
        await close_redis()


if __name__ == "__main__":
    asyncio.run(main())
