"""
Worker runner script.
Polls the render queue and renders queued documents.
"""
import logging
import time
import sys
import os
import uuid
import threading
import platform

# Add project root to path if needed (though usually handled by python -m)
sys.path.append(os.getcwd())

from packages.db.render_queue import ClaimedJob, RenderQueue, render_queue
from packages.shared.errors import RENDER_FAILED
from apps.worker.document_renderer import mark_document_failed, render_document

logger = logging.getLogger(__name__)

# Config
HEARTBEAT_INTERVAL = float(os.getenv("WORKER_HEARTBEAT_SECONDS", "10"))
POLL_INTERVAL = 2  # Seconds
WORKER_ID = f"{platform.node()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"

OUTCOME_RETRYING = "retrying"
OUTCOME_FAILED = "failed"


class HeartbeatThread(threading.Thread):
    def __init__(self, job_id: str, queue: RenderQueue):
        super().__init__(daemon=True)
        self.job_id = job_id
        self.queue = queue
        self.stop_event = threading.Event()

    def run(self):
        logger.debug(f"Heartbeat started for {self.job_id}")
        while not self.stop_event.is_set():
            try:
                self.queue.heartbeat(self.job_id)
            except Exception as e:
                logger.error(f"Heartbeat failed for {self.job_id}: {e}")

            self.stop_event.wait(HEARTBEAT_INTERVAL)
        logger.debug(f"Heartbeat stopped for {self.job_id}")

    def stop(self):
        self.stop_event.set()


def _give_up(job: ClaimedJob, queue: RenderQueue, message: str) -> str:
    queue.complete(job.job_id)
    mark_document_failed(job.tenant_id, job.document_id, RENDER_FAILED, message)
    return OUTCOME_FAILED


def process_job(job: ClaimedJob, queue: RenderQueue | None = None) -> str:
    """Render the job's document; retry with backoff or fail the document."""
    queue = queue or render_queue
    if job.attempts > job.max_attempts:
        return _give_up(job, queue, f"Render job exceeded {job.max_attempts} attempts")

    try:
        outcome = render_document(job.tenant_id, job.document_id)
    except Exception as exc:
        message = f"{type(exc).__name__}: {exc}"
        logger.exception(
            f"Render attempt {job.attempts}/{job.max_attempts} failed for job {job.job_id}"
        )
        if queue.reschedule(job, message):
            return OUTCOME_RETRYING
        mark_document_failed(job.tenant_id, job.document_id, RENDER_FAILED, message)
        return OUTCOME_FAILED

    queue.complete(job.job_id)
    return outcome


def process_next_job(queue: RenderQueue | None = None, worker_id: str = WORKER_ID) -> str | None:
    """Claim one job and process it. Returns None when nothing is available."""
    queue = queue or render_queue
    job = queue.claim(worker_id)
    if job is None:
        return None

    logger.info(f"Claimed render job {job.job_id} (attempt {job.attempts}/{job.max_attempts})")
    beater = HeartbeatThread(job.job_id, queue)
    beater.start()
    try:
        return process_job(job, queue)
    finally:
        beater.stop()
        beater.join()


def drain(queue: RenderQueue | None = None, max_jobs: int = 100) -> list[str]:
    """Process available jobs until the queue is empty or *max_jobs* ran."""
    outcomes: list[str] = []
    while len(outcomes) < max_jobs:
        outcome = process_next_job(queue)
        if outcome is None:
            break
        outcomes.append(outcome)
    return outcomes


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    from packages.db.database import init_db

    init_db()
    logger.info(f"Render worker started. ID: {WORKER_ID}")

    while True:
        try:
            outcome = process_next_job()
            if outcome is None:
                time.sleep(POLL_INTERVAL)
            else:
                logger.info(f"Render job finished: {outcome}")

        except KeyboardInterrupt:
            logger.info("Worker stopping by user request.")
            break
        except Exception as exc:
            logger.exception(f"Unexpected error in worker loop: {exc}")
            time.sleep(5)

if __name__ == "__main__":
    main()
