"""
Job Queue Service — durable, typed job producer and queue introspection.

Jobs are rows in the `jobs` table, one table for every queue. Each queue
has its own retry, backoff and concurrency configuration (QUEUE_CONFIGS);
the values are copied onto the row at enqueue time so a config change
never rewrites the policy of jobs already queued.

Two producer styles:
    enqueue(db, ...)            joins the caller's transaction; used for jobs
                                whose absence breaks correctness
                                (stock deduction, coin debit)
    add_analytics_event(...)    best-effort, own session; failures are
    add_notification(...)       logged and swallowed so the triggering
                                request never fails because of them
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session
from db_models import Job
from domain.enums import BackoffType, CleanupKind, JobStatus, JobType, NotificationChannel, QueueName
from domain.errors import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════
# Queue Configuration
# ════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class QueueConfig:
    name: QueueName
    concurrency: int
    attempts: int
    backoff_type: BackoffType = BackoffType.NONE
    backoff_delay_ms: int = 0
    remove_on_complete: bool = False
    limiter_max: Optional[int] = None
    limiter_window_seconds: Optional[int] = None


QUEUE_CONFIGS: dict[QueueName, QueueConfig] = {
    QueueName.ANALYTICS: QueueConfig(
        QueueName.ANALYTICS, concurrency=5, attempts=5,
        backoff_type=BackoffType.EXPONENTIAL, backoff_delay_ms=2000,
    ),
    QueueName.NOTIFICATIONS: QueueConfig(
        QueueName.NOTIFICATIONS, concurrency=10, attempts=3,
        backoff_type=BackoffType.EXPONENTIAL, backoff_delay_ms=1000,
        limiter_max=100, limiter_window_seconds=60,
    ),
    QueueName.ORDERS: QueueConfig(
        QueueName.ORDERS, concurrency=5, attempts=5,
        backoff_type=BackoffType.EXPONENTIAL, backoff_delay_ms=2000,
    ),
    # Sweeps are idempotent and re-run on schedule; never retried individually
    QueueName.CLEANUP: QueueConfig(
        QueueName.CLEANUP, concurrency=1, attempts=1, remove_on_complete=True,
    ),
}

JOB_QUEUES: dict[JobType, QueueName] = {
    JobType.STOCK_DEDUCTION: QueueName.ORDERS,
    JobType.COIN_DEBIT: QueueName.ORDERS,
    JobType.NOTIFICATION: QueueName.NOTIFICATIONS,
    JobType.ANALYTICS_EVENT: QueueName.ANALYTICS,
    JobType.CLEANUP: QueueName.CLEANUP,
}


def compute_backoff_ms(backoff_type: BackoffType | str, delay_ms: int, attempts_made: int) -> int:
    """
    Delay before the next attempt.

    attempts_made counts attempts already made, so it is 1 after the
    first failure: exponential gives delay, 2*delay, 4*delay, ...
    """
    backoff_type = BackoffType(backoff_type)
    if backoff_type == BackoffType.FIXED:
        return delay_ms
    if backoff_type == BackoffType.EXPONENTIAL:
        return delay_ms * (2 ** max(attempts_made - 1, 0))
    return 0


# ════════════════════════════════════════════════════════════════════
# Typed Payloads
# ════════════════════════════════════════════════════════════════════


class StockDeductionPayload(BaseModel):
    order_id: int


class CoinDebitPayload(BaseModel):
    order_id: int
    user_id: int
    amount: int = Field(..., gt=0)


class NotificationPayload(BaseModel):
    channel: NotificationChannel = NotificationChannel.PUSH
    user_id: int
    title: str = Field(..., min_length=1, max_length=200)
    body: str


class AnalyticsEventPayload(BaseModel):
    entity_type: str = Field(..., min_length=1, max_length=30)
    entity_id: str = Field(..., min_length=1, max_length=100)
    event_type: str = Field(..., min_length=1, max_length=30)
    occurred_at: datetime = Field(default_factory=datetime.utcnow)
    user_id: Optional[int] = None


class CleanupPayload(BaseModel):
    kind: CleanupKind


PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.STOCK_DEDUCTION: StockDeductionPayload,
    JobType.COIN_DEBIT: CoinDebitPayload,
    JobType.NOTIFICATION: NotificationPayload,
    JobType.ANALYTICS_EVENT: AnalyticsEventPayload,
    JobType.CLEANUP: CleanupPayload,
}


def parse_payload(job_type: JobType | str, raw: str) -> BaseModel:
    """Decode a stored job payload into its typed model."""
    return PAYLOAD_MODELS[JobType(job_type)].model_validate_json(raw)


# ════════════════════════════════════════════════════════════════════
# Producers
# ════════════════════════════════════════════════════════════════════


async def enqueue(
    db: AsyncSession,
    job_type: JobType,
    payload: BaseModel | dict,
    *,
    queue: QueueName | None = None,
    reference_id: str | None = None,
    delay_ms: int = 0,
) -> Job:
    """
    Persist a job inside the caller's transaction.

    The job becomes visible to workers when the caller commits, together
    with whatever state change triggered it.
    """
    job_type = JobType(job_type)
    expected_queue = JOB_QUEUES[job_type]
    queue = QueueName(queue) if queue else expected_queue
    if queue != expected_queue:
        raise ValidationError(f"{job_type.value} jobs belong on the {expected_queue.value} queue", field="queue")

    model = PAYLOAD_MODELS[job_type]
    if not isinstance(payload, model):
        payload = model.model_validate(payload)

    config = QUEUE_CONFIGS[queue]
    job = Job(
        queue=queue.value,
        job_type=job_type.value,
        payload=payload.model_dump_json(),
        status=JobStatus.WAITING.value,
        attempts_made=0,
        max_attempts=config.attempts,
        backoff_type=config.backoff_type.value,
        backoff_delay_ms=config.backoff_delay_ms,
        remove_on_complete=config.remove_on_complete,
        run_at=datetime.utcnow() + timedelta(milliseconds=delay_ms),
        reference_id=reference_id,
    )
    db.add(job)
    await db.flush()

    logger.debug(f"Enqueued {job_type.value} job {job.id} on {queue.value} (ref={reference_id})")
    return job


async def _enqueue_best_effort(job_type: JobType, payload: BaseModel | dict, reference_id: str | None, session_factory) -> Optional[int]:
    factory = session_factory or async_session
    try:
        async with factory() as db:
            job = await enqueue(db, job_type, payload, reference_id=reference_id)
            await db.commit()
            return job.id
    except Exception as e:
        logger.warning(f"Failed to enqueue {JobType(job_type).value} job (ref={reference_id}): {e}")
        return None


async def add_analytics_event(
    *,
    entity_type: str,
    entity_id: str,
    event_type: str,
    user_id: int | None = None,
    session_factory=None,
) -> Optional[int]:
    """Queue an analytics event. Returns the job id, or None if queuing failed."""
    return await _enqueue_best_effort(
        JobType.ANALYTICS_EVENT,
        {"entity_type": entity_type, "entity_id": str(entity_id), "event_type": event_type, "user_id": user_id},
        f"{entity_type}:{entity_id}",
        session_factory,
    )


async def add_notification(
    *,
    user_id: int,
    title: str,
    body: str,
    channel: NotificationChannel = NotificationChannel.PUSH,
    session_factory=None,
) -> Optional[int]:
    return await _enqueue_best_effort(
        JobType.NOTIFICATION,
        {"channel": channel, "user_id": user_id, "title": title, "body": body},
        None,
        session_factory,
    )


async def schedule_cleanup(kinds: list[CleanupKind] | None = None, session_factory=None) -> list[int]:
    """Queue one cleanup job per sweep kind (all kinds by default)."""
    job_ids = []
    for kind in kinds or list(CleanupKind):
        job_id = await _enqueue_best_effort(JobType.CLEANUP, {"kind": kind}, kind.value, session_factory)
        if job_id:
            job_ids.append(job_id)
    return job_ids


# ════════════════════════════════════════════════════════════════════
# Introspection
# ════════════════════════════════════════════════════════════════════


async def get_counts(db: AsyncSession, queue: QueueName | str) -> dict:
    """{waiting, active, completed, failed} for one queue."""
    queue = QueueName(queue)
    res = await db.execute(
        select(Job.status, func.count(Job.id))
        .where(Job.queue == queue.value)
        .group_by(Job.status)
    )
    by_status = dict(res.all())
    return {status.value.lower(): by_status.get(status.value, 0) for status in JobStatus}


async def get_queue_stats(db: AsyncSession) -> dict:
    return {queue.value: await get_counts(db, queue) for queue in QueueName}


async def list_failed_jobs(db: AsyncSession, queue: QueueName | str | None = None, limit: int = 50) -> list[Job]:
    stmt = select(Job).where(Job.status == JobStatus.FAILED.value)
    if queue:
        stmt = stmt.where(Job.queue == QueueName(queue).value)
    res = await db.execute(stmt.order_by(Job.finished_at.desc(), Job.id.desc()).limit(limit))
    return res.scalars().all()


async def find_pending_job(db: AsyncSession, job_type: JobType, reference_id: str) -> Optional[Job]:
    """A WAITING or ACTIVE job of this type for the reference, if any."""
    res = await db.execute(
        select(Job).where(
            Job.job_type == JobType(job_type).value,
            Job.reference_id == reference_id,
            Job.status.in_([JobStatus.WAITING.value, JobStatus.ACTIVE.value]),
        ).limit(1)
    )
    return res.scalar_one_or_none()


async def retry_failed_job(db: AsyncSession, job_id: int) -> Job:
    """Move a dead-lettered job back to WAITING with a fresh attempt budget."""
    res = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.FAILED.value)
        .values(
            status=JobStatus.WAITING.value,
            attempts_made=0,
            run_at=datetime.utcnow(),
            finished_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    job = await db.get(Job, job_id)
    if job is None:
        raise NotFoundError("Job", str(job_id))
    if res.rowcount == 0:
        raise ConflictError(f"Job {job_id} is not in the failed state", details={"status": job.status})

    await db.refresh(job)
    logger.info(f"Failed job {job_id} ({job.job_type}) re-queued by operator")
    return job


def job_to_dict(job: Job) -> dict:
    return {
        "id": job.id,
        "queue": job.queue,
        "type": job.job_type,
        "status": job.status,
        "attemptsMade": job.attempts_made,
        "maxAttempts": job.max_attempts,
        "referenceId": job.reference_id,
        "lastError": job.last_error,
        "runAt": job.run_at.isoformat() if job.run_at else None,
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "finishedAt": job.finished_at.isoformat() if job.finished_at else None,
    }
