"""
Priority job queue for deferred conversation requests.

The queue owns the policy (priority from tier, retry budget, backoff
schedule); a JobStore owns the storage. Two stores ship: SqlJobStore
(thinkspace.services.job_manager, durable) and InMemoryJobStore below.

Dequeue order is priority descending, then enqueue order. A job is only
claimable while no earlier job of the same conversation is still pending and
no job of that conversation is active, so one conversation is processed by
one worker at a time, in the order its messages arrived.

Usage:
    queue = PriorityJobQueue(store, RetryPolicy())
    job_id, position = await queue.enqueue(data)
    job = await queue.claim_next()
    await queue.complete(job.job_id, result)      # or
    await queue.fail(job.job_id, exc)
"""
import abc
import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from thinkspace.pipeline.errors import JobNotFound, classify_error, describe_error
from thinkspace.pipeline.interfaces import ClaimedJob, RequestJobData
from thinkspace.utils.logger import get_logger
from thinkspace.utils.metrics import inc

logger = get_logger(__name__)

PRIORITY_HIGH = 10
PRIORITY_LOW = 1

WAITING = "waiting"
DELAYED = "delayed"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"

PENDING_STATES = (WAITING, DELAYED)
JOB_STATES = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def priority_for_tier(tier: Optional[str]) -> int:
    """paid → 10; anything else, including unknown tiers, → 1."""
    return PRIORITY_HIGH if tier == "paid" else PRIORITY_LOW


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_seconds: float = 1.0
    # False: every failure is retried until attempts run out.
    # True: non-retriable error kinds fail the job immediately.
    kind_aware: bool = False

    def backoff(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt: 1s, 2s, 4s, ..."""
        return self.base_delay_seconds * (2 ** (attempt - 1))

    def should_retry(self, attempt: int, max_attempts: int, exc: BaseException) -> bool:
        if attempt >= max_attempts:
            return False
        if self.kind_aware and not classify_error(exc).retriable:
            return False
        return True


@dataclass(frozen=True)
class RetentionPolicy:
    keep_completed_hours: int = 24
    keep_completed_count: int = 1000
    keep_failed_hours: int = 168


class EnqueueResult(NamedTuple):
    job_id: str
    position: int


@dataclass
class JobSnapshot:
    job_id: str
    state: str
    priority: int
    attempts: int
    max_attempts: int
    data: RequestJobData
    progress: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "job_id": self.job_id,
            "state": self.state,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
        }
        if self.progress is not None:
            status["progress"] = self.progress
        if self.result is not None:
            status["result"] = self.result
        if self.state == FAILED and self.error:
            status["error"] = {"code": self.error_code, "message": self.error}
        return status


class JobStore(abc.ABC):
    """Storage backend for the queue. Implementations must make claim atomic."""

    @abc.abstractmethod
    async def add(self, data: RequestJobData, priority: int, max_attempts: int) -> str: ...

    @abc.abstractmethod
    async def position(self, job_id: str) -> int:
        """1-based index among pending jobs in dequeue order (0 if not pending)."""

    @abc.abstractmethod
    async def claim_next(self) -> Optional[ClaimedJob]: ...

    @abc.abstractmethod
    async def get(self, job_id: str) -> Optional[JobSnapshot]: ...

    @abc.abstractmethod
    async def set_progress(self, job_id: str, progress: str) -> None: ...

    @abc.abstractmethod
    async def complete(self, job_id: str, result: Dict[str, Any]) -> None: ...

    @abc.abstractmethod
    async def retry_later(self, job_id: str, delay_seconds: float, error: str, error_code: str) -> None: ...

    @abc.abstractmethod
    async def fail(self, job_id: str, error: str, error_code: str) -> None: ...

    @abc.abstractmethod
    async def counts(self) -> Dict[str, int]: ...

    @abc.abstractmethod
    async def cleanup(self, retention: RetentionPolicy) -> int: ...

    @abc.abstractmethod
    async def recover_stalled(self, stalled_seconds: float) -> int: ...


class PriorityJobQueue:
    """Queue facade: derives priority, reports position, applies the retry policy."""

    def __init__(self, store: JobStore, policy: Optional[RetryPolicy] = None):
        self.store = store
        self.policy = policy or RetryPolicy()

    async def enqueue(self, data: RequestJobData) -> EnqueueResult:
        priority = priority_for_tier(data.subscription_tier)
        job_id = await self.store.add(data, priority, self.policy.attempts)
        position = await self.store.position(job_id) or 1
        inc("queue.enqueued")
        logger.info(
            "job.enqueued",
            extra={
                "job_id": job_id,
                "conversation_id": data.conversation_id,
                "user_id": data.user_id,
                "priority": priority,
                "position": position,
            },
        )
        return EnqueueResult(job_id=job_id, position=position)

    async def get_status(self, job_id: str) -> Dict[str, Any]:
        snapshot = await self.store.get(job_id)
        if snapshot is None:
            raise JobNotFound(job_id)
        return snapshot.to_status()

    async def get_metrics(self) -> Dict[str, int]:
        counts = await self.store.counts()
        return {state: max(0, int(counts.get(state, 0))) for state in JOB_STATES}

    async def claim_next(self) -> Optional[ClaimedJob]:
        job = await self.store.claim_next()
        if job is not None:
            logger.info(
                "job.claimed",
                extra={"job_id": job.job_id, "conversation_id": job.data.conversation_id, "attempt": job.attempt},
            )
        return job

    async def update_progress(self, job_id: str, progress: str) -> None:
        await self.store.set_progress(job_id, progress)

    async def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        await self.store.complete(job_id, result)
        inc("queue.completed")
        logger.info("job.completed", extra={"job_id": job_id})

    async def fail(self, job: ClaimedJob, exc: BaseException) -> str:
        """Record a failed attempt. Returns the job's new state (delayed or failed)."""
        message = describe_error(exc)[:1000]
        code = classify_error(exc).value
        if self.policy.should_retry(job.attempt, job.max_attempts, exc):
            delay = self.policy.backoff(job.attempt)
            await self.store.retry_later(job.job_id, delay, message, code)
            inc("queue.retried")
            logger.warning(
                "job.retry_scheduled",
                extra={"job_id": job.job_id, "attempt": job.attempt, "delay_seconds": delay, "code": code},
            )
            return DELAYED

        await self.store.fail(job.job_id, message, code)
        inc("queue.failed")
        logger.error(
            "job.failed",
            extra={"job_id": job.job_id, "attempt": job.attempt, "code": code, "error": message[:500]},
        )
        return FAILED

    async def cleanup(self, retention: Optional[RetentionPolicy] = None) -> int:
        deleted = await self.store.cleanup(retention or RetentionPolicy())
        if deleted:
            logger.info("job.cleanup", extra={"deleted": deleted})
        return deleted

    async def recover_stalled(self, stalled_seconds: float) -> int:
        recovered = await self.store.recover_stalled(stalled_seconds)
        if recovered:
            logger.warning("job.stalled_recovered", extra={"recovered": recovered})
        return recovered


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

@dataclass
class _MemoryJob:
    seq: int
    data: RequestJobData
    priority: int
    max_attempts: int
    available_at: datetime
    updated_at: datetime
    state: str = WAITING
    attempts: int = 0
    progress: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    finished_at: Optional[datetime] = None

    def sort_key(self):
        return (-self.priority, self.seq)


@dataclass
class InMemoryJobStore(JobStore):
    """Process-local store; used by tests and QUEUE_BACKEND=memory."""

    clock: Callable[[], datetime] = utc_now
    _jobs: Dict[str, _MemoryJob] = field(default_factory=dict)
    _ids: Any = field(default_factory=lambda: itertools.count(1))
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def _require(self, job_id: str) -> _MemoryJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    def _pending(self) -> List[_MemoryJob]:
        return sorted((j for j in self._jobs.values() if j.state in PENDING_STATES), key=_MemoryJob.sort_key)

    async def add(self, data: RequestJobData, priority: int, max_attempts: int) -> str:
        seq = next(self._ids)
        now = self.clock()
        self._jobs[str(seq)] = _MemoryJob(
            seq=seq, data=data, priority=priority, max_attempts=max_attempts,
            available_at=now, updated_at=now,
        )
        return str(seq)

    async def position(self, job_id: str) -> int:
        for index, job in enumerate(self._pending(), start=1):
            if str(job.seq) == job_id:
                return index
        return 0

    def _blocked(self, job: _MemoryJob) -> bool:
        for other in self._jobs.values():
            if other is job or other.data.conversation_id != job.data.conversation_id:
                continue
            if other.state == ACTIVE:
                return True
            if other.state in PENDING_STATES and other.seq < job.seq:
                return True
        return False

    async def claim_next(self) -> Optional[ClaimedJob]:
        async with self._lock:
            now = self.clock()
            for job in self._pending():
                if job.available_at > now or self._blocked(job):
                    continue
                job.state = ACTIVE
                job.attempts += 1
                job.updated_at = now
                return ClaimedJob(
                    job_id=str(job.seq),
                    data=job.data,
                    attempt=job.attempts,
                    max_attempts=job.max_attempts,
                    priority=job.priority,
                )
        return None

    async def get(self, job_id: str) -> Optional[JobSnapshot]:
        job = self._jobs.get(job_id)
        if job is None:
            return None
        return JobSnapshot(
            job_id=job_id, state=job.state, priority=job.priority, attempts=job.attempts,
            max_attempts=job.max_attempts, data=job.data, progress=job.progress,
            result=job.result, error=job.error, error_code=job.error_code,
        )

    async def set_progress(self, job_id: str, progress: str) -> None:
        job = self._require(job_id)
        job.progress = progress
        job.updated_at = self.clock()

    async def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        job = self._require(job_id)
        now = self.clock()
        job.state, job.result, job.progress = COMPLETED, result, None
        job.updated_at = job.finished_at = now

    async def retry_later(self, job_id: str, delay_seconds: float, error: str, error_code: str) -> None:
        job = self._require(job_id)
        now = self.clock()
        job.state, job.error, job.error_code = DELAYED, error, error_code
        job.available_at = now + timedelta(seconds=delay_seconds)
        job.updated_at = now

    async def fail(self, job_id: str, error: str, error_code: str) -> None:
        job = self._require(job_id)
        now = self.clock()
        job.state, job.error, job.error_code = FAILED, error, error_code
        job.updated_at = job.finished_at = now

    async def counts(self) -> Dict[str, int]:
        counts = {state: 0 for state in JOB_STATES}
        for job in self._jobs.values():
            counts[job.state] += 1
        return counts

    async def cleanup(self, retention: RetentionPolicy) -> int:
        now = self.clock()
        completed_cutoff = now - timedelta(hours=retention.keep_completed_hours)
        failed_cutoff = now - timedelta(hours=retention.keep_failed_hours)
        completed = sorted(
            (j for j in self._jobs.values() if j.state == COMPLETED), key=lambda j: j.seq, reverse=True
        )
        doomed = [
            j for index, j in enumerate(completed)
            if index >= retention.keep_completed_count or j.finished_at < completed_cutoff
        ]
        doomed += [j for j in self._jobs.values() if j.state == FAILED and j.finished_at < failed_cutoff]
        for job in doomed:
            self._jobs.pop(str(job.seq), None)
        return len(doomed)

    async def recover_stalled(self, stalled_seconds: float) -> int:
        now = self.clock()
        cutoff = now - timedelta(seconds=stalled_seconds)
        recovered = 0
        for job in self._jobs.values():
            if job.state != ACTIVE or job.updated_at >= cutoff:
                continue
            if job.attempts < job.max_attempts:
                job.state, job.available_at = WAITING, now
            else:
                job.state, job.error, job.error_code = FAILED, "Job stalled", "STALLED"
                job.finished_at = now
            job.updated_at = now
            recovered += 1
        return recovered
