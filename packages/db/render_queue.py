"""
Database-backed document render queue.

One row per in-flight render job. The job id is derived from the tenant and the
document, so enqueueing the same document twice while a job is in flight is a
no-op. Jobs are claimed with a guarded status update and deleted once they
complete or exhaust their attempts.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from packages.db.database import get_session
from packages.db.models import RenderJob
from packages.shared.models.enums import RenderJobStatus

logger = logging.getLogger(__name__)

RENDER_QUEUE_NAME = "document-render"


def get_utc_now():
    return datetime.now(timezone.utc)


def render_job_id(tenant_id: str, document_id: str) -> str:
    return f"{tenant_id}__{document_id}"


@dataclass(frozen=True)
class ClaimedJob:
    job_id: str
    tenant_id: str
    document_id: str
    attempts: int
    max_attempts: int

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


class RenderQueue:
    def __init__(
        self,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
        stale_minutes: float | None = None,
    ):
        self.max_attempts = max_attempts or int(os.getenv("RENDER_JOB_MAX_ATTEMPTS", "5"))
        self.backoff_seconds = (
            backoff_seconds
            if backoff_seconds is not None
            else float(os.getenv("RENDER_JOB_BACKOFF_SECONDS", "1.0"))
        )
        self.stale_minutes = (
            stale_minutes
            if stale_minutes is not None
            else float(os.getenv("WORKER_STALE_MINUTES", "10"))
        )

    def backoff_delay(self, attempts: int) -> float:
        """Exponential backoff: base, 2x base, 4x base, ..."""
        return self.backoff_seconds * (2 ** max(attempts - 1, 0))

    def enqueue(self, session: Session, tenant_id: str, document_id: str) -> bool:
        """
        Add a render job inside the caller's transaction.
        Returns False when a job for this document is already in flight.
        """
        job_id = render_job_id(tenant_id, document_id)
        if session.get(RenderJob, job_id) is not None:
            logger.info("Render job %s already queued", job_id)
            return False
        job = RenderJob(
            id=job_id,
            queue_name=RENDER_QUEUE_NAME,
            tenant_id=tenant_id,
            document_id=document_id,
            status=RenderJobStatus.PENDING.value,
            attempts=0,
            max_attempts=self.max_attempts,
            available_at=get_utc_now(),
        )
        try:
            with session.begin_nested():
                session.add(job)
                session.flush()
        except IntegrityError:
            logger.info("Render job %s enqueued concurrently", job_id)
            return False
        logger.info("Enqueued render job %s", job_id)
        return True

    def claim(self, worker_id: str) -> ClaimedJob | None:
        """Find and atomically claim an available or stale job."""
        with get_session() as session:
            now = get_utc_now()
            stale_cutoff = now - timedelta(minutes=self.stale_minutes)

            stale_job = (
                session.query(RenderJob)
                .filter(RenderJob.status == RenderJobStatus.RUNNING.value)
                .filter(RenderJob.heartbeat_at < stale_cutoff)
                .order_by(RenderJob.heartbeat_at)
                .first()
            )
            if stale_job:
                logger.warning(
                    "Found stale render job %s (last heartbeat %s). Reclaiming.",
                    stale_job.id,
                    stale_job.heartbeat_at,
                )
                target = stale_job
            else:
                target = (
                    session.query(RenderJob)
                    .filter(RenderJob.status == RenderJobStatus.PENDING.value)
                    .filter(RenderJob.available_at <= now)
                    .order_by(RenderJob.available_at, RenderJob.created_at)
                    .first()
                )
            if target is None:
                return None

            job_id = target.id
            expected_status = target.status
            rows_updated = (
                session.query(RenderJob)
                .filter(RenderJob.id == job_id)
                .filter(RenderJob.status == expected_status)
                .update(
                    {
                        "status": RenderJobStatus.RUNNING.value,
                        "attempts": RenderJob.attempts + 1,
                        "worker_id": worker_id,
                        "claimed_at": now,
                        "heartbeat_at": now,
                    },
                    synchronize_session=False,
                )
            )
            session.commit()

            if rows_updated != 1:
                logger.info("Race condition claiming render job %s. Retrying...", job_id)
                return None

            job = session.get(RenderJob, job_id)
            return ClaimedJob(
                job_id=job.id,
                tenant_id=job.tenant_id,
                document_id=job.document_id,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
            )

    def heartbeat(self, job_id: str) -> None:
        with get_session() as session:
            session.query(RenderJob).filter_by(id=job_id).update(
                {"heartbeat_at": get_utc_now()}, synchronize_session=False
            )

    def complete(self, job_id: str) -> None:
        """Prune a finished job."""
        with get_session() as session:
            session.query(RenderJob).filter_by(id=job_id).delete(synchronize_session=False)

    def reschedule(self, job: ClaimedJob, error: str) -> bool:
        """
        Put a failed job back with backoff. Returns False, and prunes the job,
        when no attempts remain.
        """
        with get_session() as session:
            if job.exhausted:
                session.query(RenderJob).filter_by(id=job.job_id).delete(synchronize_session=False)
                return False
            delay = self.backoff_delay(job.attempts)
            session.query(RenderJob).filter(RenderJob.id == job.job_id).filter(
                RenderJob.status == RenderJobStatus.RUNNING.value
            ).update(
                {
                    "status": RenderJobStatus.PENDING.value,
                    "available_at": get_utc_now() + timedelta(seconds=delay),
                    "worker_id": None,
                    "heartbeat_at": None,
                    "last_error": error[:2000],
                },
                synchronize_session=False,
            )
            logger.info(
                "Render job %s failed attempt %s/%s; retrying in %.1fs",
                job.job_id,
                job.attempts,
                job.max_attempts,
                delay,
            )
            return True


render_queue = RenderQueue()
