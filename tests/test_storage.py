"""
Tests for the S3 storage gateway.
"""

import re
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from conftest import BUCKET, client_error, connection_error
from document_ai_backend.errors import ProcessingError, TransientInfrastructureError
from document_ai_backend.s3_service import StorageGateway


@pytest.fixture
def storage(s3):
    return StorageGateway(s3, bucket=BUCKET)


def _query(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


class TestUploadGrant:
    """Tests for issue_upload_grant."""

    def test_key_pattern(self, storage):
        grant = storage.issue_upload_grant("r.jpg", "image/jpeg")
        assert re.fullmatch(r"uploads/[0-9a-f]{32}-r\.jpg", grant.key)

    def test_keys_unique_per_grant(self, storage):
        keys = {storage.issue_upload_grant("r.jpg", "image/jpeg").key for _ in range(10)}
        assert len(keys) == 10

    def test_url_is_bounded_and_signed(self, storage):
        before = datetime.now(timezone.utc)
        grant = storage.issue_upload_grant("r.jpg", "image/jpeg")

        query = _query(grant.url)
        assert query["X-Amz-Expires"] == "300"
        assert "X-Amz-Signature" in query
        assert grant.key in urlparse(grant.url).path
        assert before + timedelta(seconds=299) <= grant.expires_at <= before + timedelta(seconds=301)

    def test_content_type_is_signed(self, storage):
        grant = storage.issue_upload_grant("r.jpg", "image/jpeg")
        assert "content-type" in _query(grant.url)["X-Amz-SignedHeaders"]

    def test_file_name_sanitized(self, storage):
        grant = storage.issue_upload_grant("../../My Receipt (1).pdf", "application/pdf")
        assert re.fullmatch(r"uploads/[0-9a-f]{32}-My-Receipt-1-\.pdf", grant.key)

    def test_custom_ttl(self, s3):
        storage = StorageGateway(s3, bucket=BUCKET, grant_ttl=60)
        assert _query(storage.issue_upload_grant("r.jpg", "image/jpeg").url)["X-Amz-Expires"] == "60"


class TestDownloadGrant:
    """Tests for issue_download_grant."""

    def test_download_url(self, storage):
        grant = storage.issue_download_grant("outputs/job-1-result.csv")
        query = _query(grant.url)
        assert query["X-Amz-Expires"] == "300"
        assert urlparse(grant.url).path.endswith("outputs/job-1-result.csv")

    def test_upload_and_download_signatures_differ(self, storage):
        upload = storage.issue_upload_grant("r.jpg", "image/jpeg")
        download = storage.issue_download_grant(upload.key)
        assert _query(upload.url)["X-Amz-Signature"] != _query(download.url)["X-Amz-Signature"]


class TestWorkerAccess:
    """Tests for fetch and store."""

    def test_store_then_fetch(self, storage, s3):
        key = storage.store("outputs/job-1-result.csv", b"a,b\n1,2\n", "text/csv")
        assert key == "outputs/job-1-result.csv"
        assert s3.content_types[key] == "text/csv"
        assert storage.fetch(key) == b"a,b\n1,2\n"

    def test_missing_object_is_permanent(self, storage):
        with pytest.raises(ProcessingError):
            storage.fetch("uploads/missing.pdf")

    @pytest.mark.parametrize(
        "error",
        [connection_error(), client_error("SlowDown", 503, "GetObject"), client_error("InternalError", 500, "GetObject")],
    )
    def test_transient_fetch_errors(self, storage, s3, error):
        s3.objects["uploads/a.pdf"] = b"%PDF"
        s3.get_errors.append(error)
        with pytest.raises(TransientInfrastructureError):
            storage.fetch("uploads/a.pdf")

    def test_access_denied_is_permanent(self, storage, s3):
        s3.get_errors.append(client_error("AccessDenied", 403, "GetObject"))
        with pytest.raises(ProcessingError):
            storage.fetch("uploads/a.pdf")

    def test_transient_store_error(self, storage, s3):
        s3.put_errors.append(client_error("ServiceUnavailable", 503, "PutObject"))
        with pytest.raises(TransientInfrastructureError):
            storage.store("outputs/job-1-result.csv", b"x")

    def test_output_key(self, storage):
        assert storage.output_key_for("job-1", "xlsx") == "outputs/job-1-result.xlsx"
        assert storage.output_key_for("job-1", ".csv") == "outputs/job-1-result.csv"

    def test_bucket_required(self, s3):
        with pytest.raises(ValueError):
            StorageGateway(s3, bucket="")
