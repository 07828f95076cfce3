"""
SQL-backed job store for the conversation request queue.
Durable and crash-safe: a restarted worker picks up where the last one stopped.

Usage:
    store = SqlJobStore(AsyncSessionLocal)
    queue = PriorityJobQueue(store, RetryPolicy())
"""
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from thinkspace.models.request_job import ConversationRequestJob
from thinkspace.pipeline.errors import JobNotFound
from thinkspace.pipeline.interfaces import ClaimedJob, RequestJobData
from thinkspace.pipeline.queue import (
    ACTIVE,
    COMPLETED,
    DELAYED,
    FAILED,
    JOB_STATES,
    PENDING_STATES,
    WAITING,
    JobSnapshot,
    JobStore,
    RetentionPolicy,
    utc_now,
)
from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)

Job = ConversationRequestJob


def _parse_job_id(job_id: str) -> Optional[int]:
    try:
        return int(job_id)
    except (TypeError, ValueError):
        return None


class SqlJobStore(JobStore):
    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self._clock = clock

    async def add(self, data: RequestJobData, priority: int, max_attempts: int) -> str:
        """Create a new job and return its ID"""
        now = self._clock()
        async with self._session_factory() as db:
            job = Job(
                conversation_id=data.conversation_id,
                user_id=data.user_id,
                priority=priority,
                state=WAITING,
                payload=data.to_payload(),
                attempts=0,
                max_attempts=max_attempts,
                available_at=now,
                enqueued_at=now,
                updated_at=now,
            )
            db.add(job)
            await db.commit()
            return str(job.id)

    async def position(self, job_id: str) -> int:
        pk = _parse_job_id(job_id)
        if pk is None:
            return 0
        async with self._session_factory() as db:
            job = await db.get(Job, pk)
            if job is None or job.state not in PENDING_STATES:
                return 0
            ahead = await db.scalar(
                select(func.count(Job.id)).where(
                    Job.state.in_(PENDING_STATES),
                    or_(
                        Job.priority > job.priority,
                        and_(Job.priority == job.priority, Job.id < job.id),
                    ),
                )
            )
            return int(ahead or 0) + 1

    async def claim_next(self) -> Optional[ClaimedJob]:
        """
        Atomically claim the next eligible job.
        Uses SELECT ... FOR UPDATE SKIP LOCKED on PostgreSQL; SQLite serializes writers itself.
        """
        now = self._clock()
        other = aliased(Job)
        blocker = exists().where(
            other.conversation_id == Job.conversation_id,
            other.id != Job.id,
            or_(
                other.state == ACTIVE,
                and_(other.state.in_(PENDING_STATES), other.id < Job.id),
            ),
        )
        query = (
            select(Job)
            .where(
                Job.state.in_(PENDING_STATES),
                Job.available_at <= now,
                ~blocker,
            )
            .order_by(Job.priority.desc(), Job.id.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        async with self._session_factory() as db:
            job = (await db.execute(query)).scalar_one_or_none()
            if job is None:
                return None
            job.state = ACTIVE
            job.attempts += 1
            job.progress = None
            job.updated_at = now
            await db.commit()
            return ClaimedJob(
                job_id=str(job.id),
                data=RequestJobData.from_payload(job.payload),
                attempt=job.attempts,
                max_attempts=job.max_attempts,
                priority=job.priority,
            )

    async def get(self, job_id: str) -> Optional[JobSnapshot]:
        pk = _parse_job_id(job_id)
        if pk is None:
            return None
        async with self._session_factory() as db:
            job = await db.get(Job, pk)
            if job is None:
                return None
            return JobSnapshot(
                job_id=str(job.id),
                state=job.state,
                priority=job.priority,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                data=RequestJobData.from_payload(job.payload),
                progress=job.progress,
                result=job.result_data,
                error=job.error_message,
                error_code=job.error_code,
            )

    async def _update(self, db: AsyncSession, job_id: str, **values: Any) -> None:
        pk = _parse_job_id(job_id)
        result = await db.execute(
            update(Job).where(Job.id == pk).values(updated_at=self._clock(), **values)
        )
        if pk is None or result.rowcount == 0:
            await db.rollback()
            raise JobNotFound(job_id)
        await db.commit()

    async def set_progress(self, job_id: str, progress: str) -> None:
        async with self._session_factory() as db:
            await self._update(db, job_id, progress=progress[:255])

    async def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            await self._update(
                db, job_id,
                state=COMPLETED,
                progress=None,
                result_data=result,
                finished_at=self._clock(),
            )

    async def retry_later(self, job_id: str, delay_seconds: float, error: str, error_code: str) -> None:
        async with self._session_factory() as db:
            await self._update(
                db, job_id,
                state=DELAYED,
                error_message=error,
                error_code=error_code,
                available_at=self._clock() + timedelta(seconds=delay_seconds),
            )

    async def fail(self, job_id: str, error: str, error_code: str) -> None:
        async with self._session_factory() as db:
            await self._update(
                db, job_id,
                state=FAILED,
                error_message=error,
                error_code=error_code,
                finished_at=self._clock(),
            )

    async def counts(self) -> Dict[str, int]:
        async with self._session_factory() as db:
            rows = await db.execute(select(Job.state, func.count(Job.id)).group_by(Job.state))
            counts = {state: 0 for state in JOB_STATES}
            for state, count in rows.all():
                counts[state] = int(count)
            return counts

    async def cleanup(self, retention: RetentionPolicy) -> int:
        """Delete finished jobs past their retention window. Returns count deleted."""
        now = self._clock()
        completed_cutoff = now - timedelta(hours=retention.keep_completed_hours)
        failed_cutoff = now - timedelta(hours=retention.keep_failed_hours)

        async with self._session_factory() as db:
            # Newest completed id that falls outside the count window
            overflow_id = await db.scalar(
                select(Job.id)
                .where(Job.state == COMPLETED)
                .order_by(Job.id.desc())
                .offset(retention.keep_completed_count)
                .limit(1)
            )
            completed_clause = Job.finished_at < completed_cutoff
            if overflow_id is not None:
                completed_clause = or_(completed_clause, Job.id <= overflow_id)

            result = await db.execute(
                delete(Job).where(
                    or_(
                        and_(Job.state == COMPLETED, completed_clause),
                        and_(Job.state == FAILED, Job.finished_at < failed_cutoff),
                    )
                )
            )
            await db.commit()
            return result.rowcount or 0

    async def recover_stalled(self, stalled_seconds: float) -> int:
        """Return jobs whose worker went silent to the queue, or fail them when out of attempts."""
        now = self._clock()
        cutoff = now - timedelta(seconds=stalled_seconds)
        async with self._session_factory() as db:
            requeued = await db.execute(
                update(Job)
                .where(Job.state == ACTIVE, Job.updated_at < cutoff, Job.attempts < Job.max_attempts)
                .values(state=WAITING, available_at=now, updated_at=now)
            )
            failed = await db.execute(
                update(Job)
                .where(Job.state == ACTIVE, Job.updated_at < cutoff, Job.attempts >= Job.max_attempts)
                .values(
                    state=FAILED,
                    error_message="Job stalled",
                    error_code="STALLED",
                    finished_at=now,
                    updated_at=now,
                )
            )
            await db.commit()
            return (requeued.rowcount or 0) + (failed.rowcount or 0)
