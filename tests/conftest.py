"""
Pytest configuration and fixtures for Document Upload Backend tests.
"""

import os
import shutil
import tempfile

import pymupdf
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
_SESSION_ROOT = tempfile.mkdtemp(prefix="doc_upload_test_")
os.environ["UPLOAD_DIR"] = os.path.join(_SESSION_ROOT, "uploads")
os.environ["DATABASE_PATH"] = os.path.join(_SESSION_ROOT, "documents.db")
os.environ["AWS_S3_BUCKET_NAME"] = ""

from doc_upload_backend.main import create_app  # noqa: E402
from doc_upload_backend.s3_service import S3Storage  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_SESSION_ROOT, ignore_errors=True)


class FakeS3Client:
    """Records calls made through the boto3 S3 client interface."""

    def __init__(self):
        self.objects = {}
        self.presigned = []

    def upload_file(self, filename, bucket, key, ExtraArgs=None):
        with open(filename, "rb") as handle:
            content_type = (ExtraArgs or {}).get("ContentType")
            self.objects[key] = {"bucket": bucket, "body": handle.read(), "content_type": content_type}

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        self.presigned.append((operation, Params, ExpiresIn))
        return f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}?expires={ExpiresIn}"

    def list_objects_v2(self, Bucket, Prefix):
        return {"Contents": [{"Key": key} for key in self.objects if key.startswith(Prefix)]}

    def delete_objects(self, Bucket, Delete):
        for item in Delete["Objects"]:
            self.objects.pop(item["Key"], None)


def create_test_pdf_bytes(page_count=3):
    """Create a PDF whose page N contains the text 'Page N'."""
    doc = pymupdf.open()
    for number in range(1, page_count + 1):
        page = doc.new_page(width=612, height=792)
        page.insert_text(pymupdf.Point(72, 72), f"Page {number}", fontsize=18, fontname="helv")
    pdf_bytes = doc.tobytes()
    doc.close()
    return pdf_bytes


@pytest.fixture
def overrides(tmp_path):
    """Config overrides pointing storage at a per-test directory, processing off."""
    return {
        "storage": {
            "upload_dir": str(tmp_path / "uploads"),
            "database_path": str(tmp_path / "documents.db"),
            "s3_bucket": "",
        },
        "processing": {"enabled": False, "image_dpi": 36},
    }


@pytest.fixture
def fake_s3_client():
    return FakeS3Client()


@pytest.fixture
def s3_storage(fake_s3_client):
    return S3Storage("test-bucket", prefix="documents", client=fake_s3_client)


@pytest.fixture
def app(overrides):
    return create_app(overrides)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def manager(app):
    return app.state.document_manager


@pytest.fixture
def sample_pdf():
    return create_test_pdf_bytes()
