"""
Job Worker — per-queue worker pools over the durable `jobs` table.

Architecture:
    - One pool per queue, sized by the queue's concurrency limit
    - Each pool slot loops: claim one WAITING job -> run its handler -> record
    - Claiming is a conditional UPDATE (WAITING -> ACTIVE); a slot that
      updates zero rows lost the job to another slot and moves on
    - Handler success commits the handler's writes, then marks the job
      COMPLETED (or deletes it when remove_on_complete is set)
    - Handler failure rolls the handler's writes back and reschedules the
      job with the queue's backoff, or dead-letters it as FAILED once
      max_attempts is reached
    - The notifications queue is additionally rate limited; a job held back
      by the limiter goes back to WAITING without spending an attempt

Background tasks (started from the FastAPI lifespan):
    - the queue pools
    - the cleanup scheduler (enqueues every sweep each cleanup interval)
    - the analytics flush timer, sharing the worker-owned AnalyticsBuffer
      with the analytics handler

Side-effect idempotency belongs to the handlers (order_processor etc.);
the worker only guarantees that each job has one claimant at a time.
"""
import asyncio
import logging
from functools import partial
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from pydantic import BaseModel, ValidationError as PayloadValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import async_session
from db_models import Job
from domain.constants import RATE_LIMITED_RETRY_MS
from domain.enums import JobStatus, JobType, QueueName
from domain.errors import HandlerError
from middleware.rate_limit import RateLimiter
from services import queue_service
from services.analytics_service import AnalyticsBuffer, handle_analytics_event
from services.cache_service import invalidate_committed
from services.queue_service import JOB_QUEUES, QUEUE_CONFIGS, compute_backoff_ms, parse_payload

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, BaseModel], Awaitable[Optional[dict]]]

MAX_ERROR_LENGTH = 2000


class JobOutcome:
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"


# ════════════════════════════════════════════════════════════════════
# Handler Registry
# ════════════════════════════════════════════════════════════════════

_handlers: dict[tuple[QueueName, JobType], Handler] = {}


def on_job(queue: QueueName, job_type: JobType, handler: Handler) -> None:
    """Register the handler for a job type on its queue."""
    queue, job_type = QueueName(queue), JobType(job_type)
    if JOB_QUEUES[job_type] != queue:
        raise ValueError(f"{job_type.value} jobs are not routed to the {queue.value} queue")
    _handlers[(queue, job_type)] = handler


def get_handler(queue: QueueName, job_type: JobType) -> Optional[Handler]:
    return _handlers.get((QueueName(queue), JobType(job_type)))


def clear_handlers() -> None:
    _handlers.clear()


def register_default_handlers(analytics_buffer: AnalyticsBuffer) -> None:
    """Register the built-in handlers; analytics events go into analytics_buffer."""
    from services import cleanup_service, notification_service, order_processor

    on_job(QueueName.ORDERS, JobType.STOCK_DEDUCTION, order_processor.handle_stock_deduction)
    on_job(QueueName.ORDERS, JobType.COIN_DEBIT, order_processor.handle_coin_debit)
    on_job(QueueName.NOTIFICATIONS, JobType.NOTIFICATION, notification_service.handle_notification)
    on_job(
        QueueName.ANALYTICS,
        JobType.ANALYTICS_EVENT,
        partial(handle_analytics_event, buffer=analytics_buffer),
    )
    on_job(QueueName.CLEANUP, JobType.CLEANUP, cleanup_service.handle_cleanup)


# ════════════════════════════════════════════════════════════════════
# Rate Limiting
# ════════════════════════════════════════════════════════════════════

_limiter = RateLimiter()


def limiter_key(queue: QueueName) -> str:
    return f"queue:{QueueName(queue).value}"


def get_limiter() -> RateLimiter:
    return _limiter


def reset_limiter(limiter: RateLimiter | None = None) -> None:
    global _limiter
    _limiter = limiter or RateLimiter()


# ════════════════════════════════════════════════════════════════════
# Claim / Execute / Record
# ════════════════════════════════════════════════════════════════════


async def claim_next(session_factory, queue: QueueName, now: datetime | None = None) -> Optional[Job]:
    """
    Claim the oldest runnable job on a queue. Returns None when the queue
    has nothing due or another slot won the claim.
    """
    now = now or datetime.utcnow()
    queue = QueueName(queue)

    async with session_factory() as db:
        res = await db.execute(
            select(Job.id)
            .where(
                Job.queue == queue.value,
                Job.status == JobStatus.WAITING.value,
                Job.run_at <= now,
            )
            .order_by(Job.run_at, Job.id)
            .limit(1)
        )
        job_id = res.scalar_one_or_none()
        if job_id is None:
            return None

        claimed = await db.execute(
            update(Job)
            .where(Job.id == job_id, Job.status == JobStatus.WAITING.value)
            .values(status=JobStatus.ACTIVE.value, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claimed.rowcount == 0:
            return None

        return await db.get(Job, job_id)


async def _record_success(session_factory, job: Job, now: datetime) -> None:
    async with session_factory() as db:
        if job.remove_on_complete:
            await db.execute(
                delete(Job).where(Job.id == job.id).execution_options(synchronize_session=False)
            )
        else:
            await db.execute(
                update(Job)
                .where(Job.id == job.id, Job.status == JobStatus.ACTIVE.value)
                .values(
                    status=JobStatus.COMPLETED.value,
                    attempts_made=job.attempts_made + 1,
                    finished_at=now,
                    last_error=None,
                )
                .execution_options(synchronize_session=False)
            )
        await db.commit()


async def _record_failure(
    session_factory, job: Job, error: Exception, now: datetime, retryable: bool = True
) -> str:
    attempts = job.attempts_made + 1
    message = f"{error.__class__.__name__}: {error}"[:MAX_ERROR_LENGTH]

    if not retryable or attempts >= job.max_attempts:
        values = {
            "status": JobStatus.FAILED.value,
            "attempts_made": attempts,
            "last_error": message,
            "finished_at": now,
        }
        outcome = JobOutcome.FAILED
        logger.error(
            f"Job {job.id} ({job.job_type}) dead-lettered after {attempts} attempt(s): {message}"
        )
    else:
        delay_ms = compute_backoff_ms(job.backoff_type, job.backoff_delay_ms, attempts)
        values = {
            "status": JobStatus.WAITING.value,
            "attempts_made": attempts,
            "last_error": message,
            "run_at": now + timedelta(milliseconds=delay_ms),
        }
        outcome = JobOutcome.RETRYING
        logger.warning(
            f"Job {job.id} ({job.job_type}) failed attempt {attempts}/{job.max_attempts}, "
            f"retrying in {delay_ms}ms: {message}"
        )

    async with session_factory() as db:
        await db.execute(
            update(Job)
            .where(Job.id == job.id, Job.status == JobStatus.ACTIVE.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    return outcome


async def _defer(session_factory, job: Job, now: datetime) -> None:
    """Put a claimed job back without spending an attempt."""
    async with session_factory() as db:
        await db.execute(
            update(Job)
            .where(Job.id == job.id, Job.status == JobStatus.ACTIVE.value)
            .values(
                status=JobStatus.WAITING.value,
                run_at=now + timedelta(milliseconds=RATE_LIMITED_RETRY_MS),
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()


async def execute_job(session_factory, job: Job, now: datetime | None = None) -> str:
    """Run a claimed (ACTIVE) job and record its outcome."""
    now = now or datetime.utcnow()
    queue = QueueName(job.queue)
    config = QUEUE_CONFIGS[queue]

    if config.limiter_max and not _limiter.check(
        limiter_key(queue), config.limiter_max, config.limiter_window_seconds
    ):
        await _defer(session_factory, job, now)
        logger.debug(f"Job {job.id} deferred by the {queue.value} rate limit")
        return JobOutcome.RATE_LIMITED

    # Neither of these can succeed on a retry
    handler = get_handler(queue, job.job_type)
    if handler is None:
        error = HandlerError(f"No handler registered for {job.job_type} on {queue.value}")
        return await _record_failure(session_factory, job, error, now, retryable=False)
    try:
        payload = parse_payload(job.job_type, job.payload)
    except PayloadValidationError as e:
        error = HandlerError(f"Invalid payload: {e}")
        return await _record_failure(session_factory, job, error, now, retryable=False)

    try:
        async with session_factory() as db:
            await handler(db, payload)
            await db.commit()
    except Exception as e:
        return await _record_failure(session_factory, job, e, now)

    # Drop cached views of orders the handler changed
    await invalidate_committed(db)
    await _record_success(session_factory, job, now)
    logger.debug(f"Job {job.id} ({job.job_type}) completed")
    return JobOutcome.COMPLETED


async def process_next(session_factory, queue: QueueName, now: datetime | None = None) -> Optional[str]:
    """Claim and run one job. Returns its outcome, or None if nothing was claimed."""
    job = await claim_next(session_factory, queue, now)
    if job is None:
        return None
    outcome = await execute_job(session_factory, job, now)
    _stats[outcome] = _stats.get(outcome, 0) + 1
    return outcome


async def reset_stale_jobs(session_factory) -> int:
    """
    Return ACTIVE jobs to WAITING. Only safe while no worker is running
    (startup), because an ACTIVE row is otherwise owned by a live slot.
    """
    async with session_factory() as db:
        res = await db.execute(
            update(Job)
            .where(Job.status == JobStatus.ACTIVE.value)
            .values(status=JobStatus.WAITING.value, run_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    if res.rowcount:
        logger.warning(f"Reset {res.rowcount} stale ACTIVE job(s) to WAITING")
    return res.rowcount


# ════════════════════════════════════════════════════════════════════
# Background Loops
# ════════════════════════════════════════════════════════════════════

_tasks: list[asyncio.Task] = []
_session_factory = None
_is_running: bool = False
_errors_count: int = 0
_started_at: Optional[datetime] = None
_stats: dict[str, int] = {}
# Set by start(), cleared by stop()
_analytics_buffer: Optional[AnalyticsBuffer] = None


async def _pool_slot(queue: QueueName, slot: int):
    global _errors_count
    poll_interval = settings.worker_poll_seconds

    while _is_running:
        try:
            outcome = await process_next(_session_factory, queue)
            if outcome is None or outcome == JobOutcome.RATE_LIMITED:
                await asyncio.sleep(poll_interval)
        except asyncio.CancelledError:
            break
        except Exception as e:
            _errors_count += 1
            logger.error(f"Worker {queue.value}[{slot}] cycle error: {e}")
            await asyncio.sleep(poll_interval)


async def _cleanup_scheduler():
    interval = settings.cleanup_interval_seconds
    logger.info(f"Cleanup scheduler started (every {interval}s)")

    while _is_running:
        try:
            await queue_service.schedule_cleanup(session_factory=_session_factory)
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Cleanup scheduler error: {e}")
            await asyncio.sleep(interval)


async def flush_analytics(session_factory, buffer: AnalyticsBuffer) -> int:
    """Write one buffer's pending counts in their own transaction."""
    async with session_factory() as db:
        rows = await buffer.flush(db)
        await db.commit()
    return rows


async def _analytics_flusher(buffer: AnalyticsBuffer):
    interval = settings.analytics_flush_seconds

    while _is_running:
        try:
            await asyncio.sleep(interval)
            await flush_analytics(_session_factory, buffer)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error(f"Analytics flush error: {e}")


# ════════════════════════════════════════════════════════════════════
# Public API: Start / Stop / Status
# ════════════════════════════════════════════════════════════════════


async def start(session_factory=None, analytics_buffer: AnalyticsBuffer | None = None):
    """
    Start every queue pool plus the scheduler and flush timer.

    The worker owns one AnalyticsBuffer for its lifetime: the analytics
    handler, the flush timer and the final flush in stop() all get the
    same instance.
    """
    global _session_factory, _is_running, _started_at, _analytics_buffer

    if _tasks:
        logger.warning("Worker already running")
        return

    _session_factory = session_factory or async_session
    _analytics_buffer = analytics_buffer if analytics_buffer is not None else AnalyticsBuffer()
    register_default_handlers(_analytics_buffer)

    await reset_stale_jobs(_session_factory)

    _is_running = True
    _started_at = datetime.utcnow()
    for queue, config in QUEUE_CONFIGS.items():
        for slot in range(config.concurrency):
            _tasks.append(asyncio.create_task(_pool_slot(queue, slot)))
    _tasks.append(asyncio.create_task(_cleanup_scheduler()))
    _tasks.append(asyncio.create_task(_analytics_flusher(_analytics_buffer)))

    logger.info(
        "Worker started: "
        + ", ".join(f"{q.value}x{c.concurrency}" for q, c in QUEUE_CONFIGS.items())
    )


async def stop():
    """Cancel all worker tasks and flush buffered analytics."""
    global _is_running, _analytics_buffer
    _is_running = False

    for task in _tasks:
        if not task.done():
            task.cancel()
    for task in _tasks:
        try:
            await task
        except asyncio.CancelledError:
            pass
    _tasks.clear()

    if _analytics_buffer is not None:
        try:
            await flush_analytics(_session_factory, _analytics_buffer)
        except Exception as e:
            logger.error(f"Final analytics flush failed: {e}")
        _analytics_buffer = None

    logger.info("Worker stopped")


def get_status() -> dict:
    """Worker status for the /worker/status endpoint."""
    return {
        "running": _is_running,
        "startedAt": _started_at.isoformat() if _started_at else None,
        "tasks": len(_tasks),
        "queues": {
            q.value: {
                "concurrency": c.concurrency,
                "attempts": c.attempts,
                "backoff": c.backoff_type.value,
                "backoffDelayMs": c.backoff_delay_ms,
                "rateLimit": f"{c.limiter_max}/{c.limiter_window_seconds}s" if c.limiter_max else None,
            }
            for q, c in QUEUE_CONFIGS.items()
        },
        "outcomes": dict(_stats),
        "errorsCount": _errors_count,
        "analyticsBuffered": _analytics_buffer.pending_events if _analytics_buffer is not None else 0,
        "pollIntervalSeconds": settings.worker_poll_seconds,
    }
