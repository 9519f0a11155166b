"""
Broadcast jobs - send one message to many chats, sequentially, with a delay.

Jobs live in an in-memory registry so the control channel can poll progress
via /api/broadcast-status/<id>. The send loop itself runs on the background
asyncio loop next to the conversation engine.
"""
import asyncio
import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core.alerts import notify_error
from core.logging import get_logger, set_request_context
from .models import ChatId

logger = get_logger(__name__)

STATUS_PENDING = 'pending'
STATUS_RUNNING = 'running'
STATUS_COMPLETED = 'completed'
STATUS_EMPTY = 'empty'
STATUS_FAILED = 'failed'

AUDIENCE_KNOWN = 'known'
AUDIENCE_ACTIVE = 'active'
AUDIENCES = (AUDIENCE_KNOWN, AUDIENCE_ACTIVE)

MAX_RECORDED_ERRORS = 50
MAX_JOBS_KEPT = 100


@dataclass
class BroadcastJob:
    id: int
    message: str
    delay_seconds: float
    audience: str = AUDIENCE_KNOWN
    status: str = STATUS_PENDING
    total: int = 0
    sent: int = 0
    failed: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_EMPTY, STATUS_FAILED)

    def record_error(self, chat_id: Optional[ChatId], error: str) -> None:
        self.failed += 1
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append({'chatId': chat_id, 'error': error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'message': self.message,
            'delaySeconds': self.delay_seconds,
            'audience': self.audience,
            'status': self.status,
            'total': self.total,
            'sent': self.sent,
            'failed': self.failed,
            'errors': list(self.errors),
            'createdAt': self.created_at,
            'startedAt': self.started_at,
            'completedAt': self.completed_at,
            'error': self.error,
        }


_jobs: Dict[int, BroadcastJob] = {}
_jobs_lock = threading.Lock()
_job_ids = itertools.count(1)


def create_job(message: str, delay_seconds: float, audience: str = AUDIENCE_KNOWN) -> BroadcastJob:
    with _jobs_lock:
        job = BroadcastJob(id=next(_job_ids), message=message,
                           delay_seconds=delay_seconds, audience=audience)
        _jobs[job.id] = job
        if len(_jobs) > MAX_JOBS_KEPT:
            finished = sorted((j for j in _jobs.values() if j.finished), key=lambda j: j.id)
            for old in finished[:len(_jobs) - MAX_JOBS_KEPT]:
                del _jobs[old.id]
    logger.info(f"Broadcast job {job.id} created (audience={audience}, delay={delay_seconds}s)")
    return job


def get_job(job_id: int) -> Optional[BroadcastJob]:
    with _jobs_lock:
        return _jobs.get(job_id)


def list_jobs(limit: int = 20) -> List[BroadcastJob]:
    """Most recent jobs first."""
    with _jobs_lock:
        jobs = sorted(_jobs.values(), key=lambda j: j.id, reverse=True)
    return jobs[:limit]


def clear_jobs() -> None:
    with _jobs_lock:
        _jobs.clear()


async def resolve_recipients(audience: str, engine=None, client=None) -> List[ChatId]:
    """
    Chats a broadcast targets.

    known: private chats with message history, from the transport's dialogs
    active: chats with a live conversation in the engine
    """
    if audience == AUDIENCE_ACTIVE:
        if engine is None:
            return []
        return list(engine.store)

    if client is None:
        return []
    chats = await client.list_known_chats()
    return [chat['chat_id'] for chat in chats]


async def run_broadcast(job: BroadcastJob, sender, recipients: Iterable[ChatId]) -> BroadcastJob:
    """
    Send job.message to each recipient in turn.

    A failed send is counted and recorded; the job carries on with the next
    recipient. delay_seconds is waited between sends, not after the last one.
    """
    set_request_context(job_id=job.id)
    recipients = [chat_id for chat_id in recipients if chat_id is not None]
    job.total = len(recipients)
    job.started_at = time.time()

    if not recipients:
        job.status = STATUS_EMPTY
        job.completed_at = time.time()
        logger.info(f"Broadcast job {job.id}: no chats with history found")
        return job

    job.status = STATUS_RUNNING
    logger.info(f"Broadcast job {job.id} started: {job.total} recipient(s)")

    try:
        for index, chat_id in enumerate(recipients):
            try:
                result = await sender.send_message(chat_id, job.message)
            except Exception as e:
                logger.warning(f"Broadcast job {job.id}: send to {chat_id} raised: {e}")
                job.record_error(chat_id, str(e))
            else:
                if result and result.get('success'):
                    job.sent += 1
                    logger.info(f"Broadcast job {job.id}: sent {job.sent}/{job.total} to {chat_id}")
                else:
                    error = (result or {}).get('error', 'unknown error')
                    logger.warning(f"Broadcast job {job.id}: send to {chat_id} failed: {error}")
                    job.record_error(chat_id, error)

            if index < len(recipients) - 1 and job.delay_seconds > 0:
                await asyncio.sleep(job.delay_seconds)
    except Exception as e:
        logger.exception(f"Broadcast job {job.id} aborted")
        notify_error(f"Broadcast aborted: {e}", context={'job_id': job.id})
        job.status = STATUS_FAILED
        job.error = str(e)
        job.completed_at = time.time()
        return job

    job.status = STATUS_COMPLETED
    job.completed_at = time.time()
    logger.info(f"Broadcast job {job.id} completed: {job.sent} sent, {job.failed} failed")
    if job.failed:
        notify_error(
            f"Broadcast finished with {job.failed} failed send(s)",
            context={'job_id': job.id, 'sent': job.sent},
        )
    return job


async def _broadcast_worker(job: BroadcastJob, engine, client) -> BroadcastJob:
    if client is None or not client.is_connected():
        logger.warning(f"Broadcast job {job.id} failed: transport not connected")
        job.status = STATUS_FAILED
        job.error = 'Not connected'
        job.completed_at = time.time()
        return job

    try:
        recipients = await resolve_recipients(job.audience, engine=engine, client=client)
        return await run_broadcast(job, client, recipients)
    except Exception as e:
        logger.exception(f"Broadcast job {job.id} worker error: {e}")
        notify_error(f"Broadcast worker error: {e}", context={'job_id': job.id})
        job.status = STATUS_FAILED
        job.error = str(e)
        job.completed_at = time.time()
        return job


def send_broadcast(message: str, delay_seconds: float, audience: str, engine, client) -> BroadcastJob:
    """
    Create a broadcast job and run it on the background loop.

    Returns immediately; poll get_job(job.id) for progress.

    Raises:
        ValueError: If message is empty or audience is unknown
    """
    from core.background_loop import submit_in_bg

    if not message or not message.strip():
        raise ValueError('Message is required')
    if audience not in AUDIENCES:
        raise ValueError(f"Unknown audience '{audience}' (expected one of: {', '.join(AUDIENCES)})")

    job = create_job(message, delay_seconds, audience)
    submit_in_bg(_broadcast_worker(job, engine, client))
    return job
