"""
Pytest configuration and fixtures for the document job pipeline tests.

S3 and SQS are replaced by small in-memory fakes that implement the boto3
calls the pipeline makes. Presigned URLs are still produced by a real
(offline) boto3 S3 client so expiry and method binding can be checked.
"""

import io
import itertools
from typing import Callable, Dict, List, Optional

import boto3
import pytest
from botocore.config import Config
from botocore.exceptions import ClientError, EndpointConnectionError
from fastapi.testclient import TestClient

from document_ai_backend.collaborators import CsvExporter
from document_ai_backend.configuration import load_settings
from document_ai_backend.main import create_app
from document_ai_backend.services import Services
from document_ai_backend.worker import JobWorker

BUCKET = "test-documents"
QUEUE_URL = "https://sqs.us-east-1.amazonaws.com/000000000000/document-jobs"
DLQ_URL = "https://sqs.us-east-1.amazonaws.com/000000000000/document-jobs-dlq"
MASTER_KEY = "test-master-key-12345"


def client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}}, operation)


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.put_calls: List[str] = []
        self.get_errors: List[Exception] = []
        self.put_errors: List[Exception] = []
        self.closed = False
        self._signer = boto3.client(
            "s3",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing",
            config=Config(signature_version="s3v4"),
        )

    def generate_presigned_url(self, operation, Params, ExpiresIn, HttpMethod=None):
        return self._signer.generate_presigned_url(operation, Params=Params, ExpiresIn=ExpiresIn, HttpMethod=HttpMethod)

    def put_object(self, Bucket, Key, Body, ContentType=None):
        if self.put_errors:
            raise self.put_errors.pop(0)
        self.put_calls.append(Key)
        self.objects[Key] = Body
        self.content_types[Key] = ContentType
        return {"ETag": '"etag"'}

    def get_object(self, Bucket, Key):
        if self.get_errors:
            raise self.get_errors.pop(0)
        if Key not in self.objects:
            raise client_error("NoSuchKey", 404, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def close(self) -> None:
        self.closed = True


class FakeSQSClient:
    """In-memory SQS with visibility leases and receive counts on a manual clock."""

    def __init__(self) -> None:
        self.queues: Dict[str, List[dict]] = {}
        self.now = 0.0
        self.send_errors: List[Exception] = []
        self.receive_errors: List[Exception] = []
        self.on_empty: Optional[Callable[[], None]] = None
        self.closed = False
        self._ids = itertools.count(1)

    def messages(self, queue_url: str = QUEUE_URL) -> List[dict]:
        return self.queues.get(queue_url, [])

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def send_message(self, QueueUrl, MessageBody, MessageAttributes=None):
        if self.send_errors:
            raise self.send_errors.pop(0)
        message_id = f"msg-{next(self._ids)}"
        self.queues.setdefault(QueueUrl, []).append(
            {
                "MessageId": message_id,
                "Body": MessageBody,
                "MessageAttributes": MessageAttributes or {},
                "receive_count": 0,
                "visible_at": self.now,
                "receipt": None,
            }
        )
        return {"MessageId": message_id}

    def receive_message(self, QueueUrl, MaxNumberOfMessages=1, WaitTimeSeconds=0, VisibilityTimeout=30, **_):
        if self.receive_errors:
            raise self.receive_errors.pop(0)
        leased = []
        for message in self.queues.get(QueueUrl, []):
            if len(leased) >= MaxNumberOfMessages:
                break
            if message["visible_at"] > self.now:
                continue
            message["receive_count"] += 1
            message["receipt"] = f"{message['MessageId']}-r{message['receive_count']}"
            message["visible_at"] = self.now + VisibilityTimeout
            leased.append(
                {
                    "MessageId": message["MessageId"],
                    "ReceiptHandle": message["receipt"],
                    "Body": message["Body"],
                    "Attributes": {"ApproximateReceiveCount": str(message["receive_count"])},
                }
            )
        if not leased and self.on_empty is not None:
            self.on_empty()
        return {"Messages": leased} if leased else {}

    def delete_message(self, QueueUrl, ReceiptHandle):
        self.queues[QueueUrl] = [m for m in self.queues.get(QueueUrl, []) if m["receipt"] != ReceiptHandle]
        return {}

    def change_message_visibility(self, QueueUrl, ReceiptHandle, VisibilityTimeout):
        for message in self.queues.get(QueueUrl, []):
            if message["receipt"] == ReceiptHandle:
                message["visible_at"] = self.now + VisibilityTimeout
        return {}

    def close(self) -> None:
        self.closed = True


class FakeExtractor:
    def __init__(self, rows=None, error: Optional[Exception] = None) -> None:
        self.rows = rows if rows is not None else [{"vendor": "ACME", "total": "12.50"}]
        self.error = error
        self.calls = []

    def extract(self, data, category):
        self.calls.append((data, category))
        if self.error is not None:
            raise self.error
        return self.rows


def connection_error() -> EndpointConnectionError:
    return EndpointConnectionError(endpoint_url="https://example.invalid")


@pytest.fixture
def s3():
    return FakeS3Client()


@pytest.fixture
def sqs():
    return FakeSQSClient()


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        {
            "storage": {"bucket": BUCKET},
            "queue": {"url": QUEUE_URL, "dead_letter_url": DLQ_URL, "max_receive_count": 3},
            "database": {"path": str(tmp_path / "jobs.db")},
            "auth": {"master_key": MASTER_KEY, "keys_db_path": str(tmp_path / "keys.db")},
            "retry": {"attempts": 2, "backoff": 0},
        }
    )


@pytest.fixture
def services(settings, s3, sqs):
    return Services.from_settings(settings, s3_client=s3, sqs_client=sqs)


@pytest.fixture
def manager(services):
    return services.job_manager


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def worker(services, extractor):
    return JobWorker(
        services.job_manager,
        services.storage,
        services.queue,
        extractor=extractor,
        exporter=CsvExporter(),
        retry_delay=10,
        idle_backoff=0,
    )


@pytest.fixture
def client(services):
    """Test client with lifespan running against the fake services."""
    with TestClient(create_app(services=services)) as test_client:
        yield test_client


@pytest.fixture
def master_key():
    return MASTER_KEY


@pytest.fixture
def api_key(services):
    raw_key, _ = services.key_manager.create_key("user-p")
    return raw_key


@pytest.fixture
def other_api_key(services):
    raw_key, _ = services.key_manager.create_key("user-q")
    return raw_key
