"""
Process-level wiring of the pipeline components.

Clients for S3 and SQS are created once per process, when the API's
lifespan or the worker's entry point starts, and are closed on shutdown.
Components receive them through their constructors.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config as BotoConfig
from omegaconf import DictConfig

from .access import AccessResolver
from .collaborators import load_collaborator
from .configuration import describe
from .database import JobDatabase
from .job_manager import JobManager
from .key_manager import KeyManager
from .queue_service import QueueChannel
from .s3_service import StorageGateway

logger = logging.getLogger(__name__)


def make_boto_client(service: str, settings: DictConfig):
    return boto3.client(
        service,
        region_name=settings.aws.region,
        endpoint_url=settings.aws.endpoint_url or None,
        config=BotoConfig(
            signature_version="s3v4" if service == "s3" else None,
            retries={"max_attempts": 3, "mode": "standard"},
        ),
    )


@dataclass
class Services:
    settings: DictConfig
    s3_client: object
    sqs_client: object
    database: JobDatabase
    key_manager: KeyManager
    storage: StorageGateway
    queue: QueueChannel
    job_manager: JobManager
    access: AccessResolver

    @classmethod
    def from_settings(
        cls,
        settings: DictConfig,
        s3_client: Optional[object] = None,
        sqs_client: Optional[object] = None,
    ) -> "Services":
        s3_client = s3_client or make_boto_client("s3", settings)
        sqs_client = sqs_client or make_boto_client("sqs", settings)
        database = JobDatabase(Path(settings.database.path))
        key_manager = KeyManager(settings.auth.keys_db_path)
        storage = StorageGateway(
            s3_client,
            bucket=settings.storage.bucket,
            upload_prefix=settings.storage.upload_prefix,
            output_prefix=settings.storage.output_prefix,
            grant_ttl=settings.storage.grant_ttl,
        )
        queue = QueueChannel(
            sqs_client,
            queue_url=settings.queue.url,
            dead_letter_url=settings.queue.dead_letter_url,
            visibility_timeout=settings.queue.visibility_timeout,
            wait_seconds=settings.queue.wait_seconds,
            max_receive_count=settings.queue.max_receive_count,
        )
        job_manager = JobManager(
            database,
            queue,
            publish_attempts=settings.retry.attempts,
            publish_backoff=settings.retry.backoff,
        )
        logger.info(f"Services configured: {describe(settings)}")
        return cls(
            settings=settings,
            s3_client=s3_client,
            sqs_client=sqs_client,
            database=database,
            key_manager=key_manager,
            storage=storage,
            queue=queue,
            job_manager=job_manager,
            access=AccessResolver(key_manager),
        )

    def build_worker(self):
        from .worker import JobWorker

        worker_settings = self.settings.worker
        if not worker_settings.extractor:
            raise ValueError("worker.extractor must name the extraction engine as 'module:attribute'")
        return JobWorker(
            self.job_manager,
            self.storage,
            self.queue,
            extractor=load_collaborator(worker_settings.extractor),
            exporter=load_collaborator(worker_settings.exporter),
            retry_delay=worker_settings.retry_delay,
            idle_backoff=worker_settings.idle_backoff,
        )

    def close(self) -> None:
        for client in (self.s3_client, self.sqs_client):
            client.close()
        logger.info("Service clients closed")

    def __enter__(self) -> "Services":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
