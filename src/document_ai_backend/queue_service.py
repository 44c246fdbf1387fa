"""
SQS channel carrying work messages from submission to the worker.

Delivery is at-least-once. A received message stays invisible to other
consumers for ``visibility_timeout`` seconds (its lease); if it is not
acknowledged in that window SQS delivers it again. The channel counts
receives through ``ApproximateReceiveCount`` so the worker can route a
message that keeps failing to the dead-letter queue instead of retrying
it forever.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import TransientInfrastructureError
from .models import WorkMessage
from .utils import is_transient_client_error

logger = logging.getLogger(__name__)

DEFAULT_VISIBILITY_TIMEOUT = 300
DEFAULT_WAIT_SECONDS = 20
DEFAULT_MAX_RECEIVE_COUNT = 3


@dataclass(frozen=True)
class Delivery:
    """One leased message as received from the queue."""

    message_id: str
    receipt_handle: str
    body: str
    receive_count: int


class QueueChannel:
    """
    Producer and consumer side of the work queue.

    Attributes:
        queue_url: Main work queue
        dead_letter_url: Destination for messages past their retry budget
        visibility_timeout: Lease length in seconds
        wait_seconds: Long-poll duration for receive
        max_receive_count: Deliveries allowed before dead-lettering
    """

    def __init__(
        self,
        client,
        queue_url: str,
        dead_letter_url: Optional[str] = None,
        visibility_timeout: int = DEFAULT_VISIBILITY_TIMEOUT,
        wait_seconds: int = DEFAULT_WAIT_SECONDS,
        max_receive_count: int = DEFAULT_MAX_RECEIVE_COUNT,
    ) -> None:
        if not queue_url:
            raise ValueError("Queue URL is required")
        self._client = client
        self.queue_url = queue_url
        self.dead_letter_url = dead_letter_url
        self.visibility_timeout = visibility_timeout
        self.wait_seconds = wait_seconds
        self.max_receive_count = max_receive_count

    def _call(self, operation: str, **kwargs):
        try:
            return getattr(self._client, operation)(**kwargs)
        except BotoCoreError as exc:
            raise TransientInfrastructureError(f"SQS {operation} failed: {exc}") from exc
        except ClientError as exc:
            if is_transient_client_error(exc):
                raise TransientInfrastructureError(f"SQS {operation} failed: {exc}") from exc
            logger.error(f"SQS {operation} rejected: {exc}")
            raise

    def publish(self, message: WorkMessage) -> str:
        """
        Send a work message.

        Returns:
            The SQS message id
        """
        response = self._call("send_message", QueueUrl=self.queue_url, MessageBody=message.to_body())
        message_id = response.get("MessageId", "")
        logger.info(f"Enqueued job {message.job_id} as message {message_id}")
        return message_id

    def receive(self, max_messages: int = 1) -> List[Delivery]:
        """
        Long-poll for up to ``max_messages`` messages, each leased for
        ``visibility_timeout`` seconds.
        """
        response = self._call(
            "receive_message",
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=max_messages,
            WaitTimeSeconds=self.wait_seconds,
            VisibilityTimeout=self.visibility_timeout,
            AttributeNames=["ApproximateReceiveCount"],
            MessageAttributeNames=["All"],
        )
        deliveries = []
        for raw in response.get("Messages", []):
            attributes = raw.get("Attributes", {})
            deliveries.append(
                Delivery(
                    message_id=raw["MessageId"],
                    receipt_handle=raw["ReceiptHandle"],
                    body=raw.get("Body", ""),
                    receive_count=int(attributes.get("ApproximateReceiveCount", 1)),
                )
            )
        return deliveries

    def exceeded_budget(self, delivery: Delivery) -> bool:
        return delivery.receive_count > self.max_receive_count

    def acknowledge(self, delivery: Delivery) -> None:
        """Delete the message so it is never redelivered."""
        self._call("delete_message", QueueUrl=self.queue_url, ReceiptHandle=delivery.receipt_handle)

    def release(self, delivery: Delivery, delay: int = 0) -> None:
        """End the lease early so the message is redelivered after ``delay`` seconds."""
        self._call(
            "change_message_visibility",
            QueueUrl=self.queue_url,
            ReceiptHandle=delivery.receipt_handle,
            VisibilityTimeout=delay,
        )
        logger.warning(f"Released message {delivery.message_id} for redelivery in {delay}s")

    def dead_letter(self, delivery: Delivery, reason: str) -> None:
        """
        Move a message to the dead-letter queue for manual inspection.

        Without a configured dead-letter queue the message is left to the
        queue's own redrive policy: it is released, not deleted.
        """
        if not self.dead_letter_url:
            logger.error(f"No dead-letter queue configured; leaving message {delivery.message_id} to redrive ({reason})")
            self.release(delivery, delay=self.visibility_timeout)
            return

        self._call(
            "send_message",
            QueueUrl=self.dead_letter_url,
            MessageBody=delivery.body,
            MessageAttributes={
                "DeadLetterReason": {"DataType": "String", "StringValue": reason[:1024]},
                "SourceMessageId": {"DataType": "String", "StringValue": delivery.message_id},
                "ReceiveCount": {"DataType": "Number", "StringValue": str(delivery.receive_count)},
            },
        )
        self.acknowledge(delivery)
        logger.error(f"Dead-lettered message {delivery.message_id} after {delivery.receive_count} deliveries: {reason}")
