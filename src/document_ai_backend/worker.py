"""
Queue consumer that drives jobs from PENDING to a terminal status.

For each leased work message the worker:
1. Loads the job; absent or terminal jobs are acknowledged and skipped
   (duplicate delivery).
2. Claims it (PENDING -> PROCESSING). A job already PROCESSING is resumed
   only when this message was delivered before (a crashed attempt); a
   first delivery of a duplicate copy is acknowledged and skipped.
3. Fetches the input from storage.
4. Runs the extraction collaborator.
5. Runs the export collaborator.
6. Stores the artifact under a deterministic key.
7. Marks the job COMPLETED or FAILED and acknowledges the message.

Transient infrastructure errors release the message for redelivery
instead; once a message has used its delivery budget the job is failed
and the message is dead-lettered.

Run with:
    python -m document_ai_backend.worker
"""

from __future__ import annotations

import argparse
import json
import logging
import signal
import threading
import time
from enum import Enum
from typing import List, Optional

from pydantic import ValidationError as MessageFormatError

from .collaborators import Exporter, Extractor
from .errors import ProcessingError, TransientInfrastructureError
from .job_manager import JobManager, JobRecord
from .models import JobStatus, WorkMessage
from .queue_service import Delivery, QueueChannel
from .s3_service import StorageGateway

logger = logging.getLogger(__name__)


class WorkOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRY = "retry"
    DEAD_LETTERED = "dead_lettered"


class JobWorker:
    """
    Consumer for the work queue.

    Attributes:
        retry_delay: Base delay (seconds) before a transiently failed
            message becomes visible again; multiplied by the receive count
        idle_backoff: Pause after the queue itself is unreachable
    """

    def __init__(
        self,
        manager: JobManager,
        storage: StorageGateway,
        queue: QueueChannel,
        extractor: Extractor,
        exporter: Exporter,
        retry_delay: int = 30,
        idle_backoff: float = 5.0,
    ) -> None:
        self.manager = manager
        self.storage = storage
        self.queue = queue
        self.extractor = extractor
        self.exporter = exporter
        self.retry_delay = retry_delay
        self.idle_backoff = idle_backoff

    def _settle(self, action, *args, **kwargs) -> None:
        # A failed ack only means a later duplicate delivery, which step 1 absorbs.
        try:
            action(*args, **kwargs)
        except TransientInfrastructureError as exc:
            logger.warning(f"Could not settle message: {exc}")

    def _give_up(self, delivery: Delivery, job_id: Optional[str], reason: str) -> WorkOutcome:
        if job_id:
            self.manager.mark_failed(job_id, reason)
        self._settle(self.queue.dead_letter, delivery, reason)
        return WorkOutcome.DEAD_LETTERED

    def _parse(self, delivery: Delivery) -> WorkMessage:
        return WorkMessage.from_body(delivery.body)

    def _malformed(self, delivery: Delivery, exc: Exception) -> WorkOutcome:
        job_id = None
        try:
            payload = json.loads(delivery.body)
            if isinstance(payload, dict) and isinstance(payload.get("jobId"), str):
                job_id = payload["jobId"]
        except json.JSONDecodeError:
            pass
        logger.error(f"Malformed work message {delivery.message_id}: {exc}")
        if job_id and self.manager.load_job(job_id) is None:
            job_id = None
        return self._give_up(delivery, job_id, f"Malformed work message: {exc}")

    def handle(self, delivery: Delivery) -> WorkOutcome:
        """Process one leased message. Never raises for job-level failures."""
        try:
            message = self._parse(delivery)
        except MessageFormatError as exc:
            return self._malformed(delivery, exc)

        job = self.manager.load_job(message.job_id)
        if job is None or job.status.is_terminal:
            state = "missing" if job is None else job.status.value
            logger.info(f"Skipping message {delivery.message_id} for job {message.job_id} ({state})")
            self._settle(self.queue.acknowledge, delivery)
            return WorkOutcome.SKIPPED

        if self.queue.exceeded_budget(delivery):
            return self._give_up(
                delivery,
                job.id,
                f"Gave up after {delivery.receive_count - 1} delivery attempt(s)",
            )

        if job.status == JobStatus.PENDING:
            if not self.manager.mark_processing(job.id):
                logger.info(f"Job {job.id} claimed elsewhere; dropping duplicate message {delivery.message_id}")
                self._settle(self.queue.acknowledge, delivery)
                return WorkOutcome.SKIPPED
        elif delivery.receive_count <= 1:
            # First delivery of a second copy: the claiming message still holds its lease.
            logger.info(f"Job {job.id} is being processed; dropping duplicate message {delivery.message_id}")
            self._settle(self.queue.acknowledge, delivery)
            return WorkOutcome.SKIPPED
        else:
            logger.warning(f"Resuming job {job.id} left PROCESSING by an earlier delivery")

        return self._process(job, delivery)

    def _process(self, job: JobRecord, delivery: Delivery) -> WorkOutcome:
        try:
            output_ref = self._run_steps(job)
        except TransientInfrastructureError as exc:
            if delivery.receive_count >= self.queue.max_receive_count:
                return self._give_up(delivery, job.id, f"Infrastructure unavailable: {exc}")
            delay = min(self.retry_delay * delivery.receive_count, self.queue.visibility_timeout)
            logger.warning(f"Job {job.id} hit a transient error (delivery {delivery.receive_count}): {exc}")
            self._settle(self.queue.release, delivery, delay)
            return WorkOutcome.RETRY
        except ProcessingError as exc:
            logger.warning(f"Job {job.id} failed: {exc}")
            self.manager.mark_failed(job.id, f"{type(exc).__name__}: {exc}")
            self._settle(self.queue.acknowledge, delivery)
            return WorkOutcome.FAILED
        except Exception as exc:
            logger.exception(f"Job {job.id} failed with an unexpected error")
            self.manager.mark_failed(job.id, f"Unexpected error: {type(exc).__name__}: {exc}")
            self._settle(self.queue.acknowledge, delivery)
            return WorkOutcome.FAILED

        completed = self.manager.mark_completed(job.id, output_ref)
        self._settle(self.queue.acknowledge, delivery)
        return WorkOutcome.COMPLETED if completed else WorkOutcome.SKIPPED

    def _run_steps(self, job: JobRecord) -> str:
        source = self.storage.fetch(job.input_ref)
        structured = self.extractor.extract(source, job.document_category)
        artifact = self.exporter.render(structured)
        key = self.storage.output_key_for(job.id, self.exporter.extension)
        return self.storage.store(key, artifact, self.exporter.content_type)

    def poll_once(self) -> List[WorkOutcome]:
        """Receive at most one lease and process it."""
        deliveries = self.queue.receive(max_messages=1)
        return [self.handle(delivery) for delivery in deliveries]

    def run(
        self,
        stop_event: threading.Event,
        reconcile_after: Optional[float] = None,
        reconcile_interval: float = 60.0,
    ) -> None:
        """
        Consume until ``stop_event`` is set.

        The event is only checked between leases, so a message being
        processed always reaches a settled state before the loop exits.
        When ``reconcile_after`` is given, PENDING jobs older than that many
        seconds are re-enqueued every ``reconcile_interval`` seconds.
        """
        logger.info(f"Worker consuming from {self.queue.queue_url}")
        last_sweep = float("-inf")
        while not stop_event.is_set():
            if reconcile_after is not None and time.monotonic() - last_sweep >= reconcile_interval:
                last_sweep = time.monotonic()
                try:
                    self.manager.requeue_stale_jobs(reconcile_after)
                except Exception:
                    logger.exception("Reconciliation sweep failed")
            try:
                self.poll_once()
            except TransientInfrastructureError as exc:
                logger.warning(f"Queue unavailable, backing off {self.idle_backoff}s: {exc}")
                stop_event.wait(self.idle_backoff)
            except Exception:
                # An unsettled lease expires and the message is redelivered.
                logger.exception(f"Poll failed, backing off {self.idle_backoff}s")
                stop_event.wait(self.idle_backoff)
        logger.info("Worker stopped")


def main(argv: Optional[List[str]] = None) -> None:
    from .configuration import load_settings
    from .services import Services

    parser = argparse.ArgumentParser(description="Document job queue worker")
    parser.add_argument("overrides", nargs="*", help="Config overrides as dotted key=value pairs")
    parser.add_argument("--log-level", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    settings = load_settings(args.overrides)

    stop_event = threading.Event()

    def _request_stop(signum, _frame):
        logger.info(f"Received signal {signum}; finishing current message before exit")
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    with Services.from_settings(settings) as services:
        worker = services.build_worker()
        worker.run(
            stop_event,
            reconcile_after=settings.worker.reconcile_after or None,
            reconcile_interval=settings.worker.reconcile_interval,
        )


if __name__ == "__main__":
    main()
