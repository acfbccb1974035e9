"""Tests for SQLite persistence, S3 storage, configuration and form helpers."""

from datetime import datetime

import pytest
from botocore.exceptions import ClientError
from omegaconf.errors import ConfigKeyError

from doc_upload_backend import page_selection
from doc_upload_backend.configuration import make_runtime_config
from doc_upload_backend.database import DocumentDatabase
from doc_upload_backend.models import DocumentStatus, ImageRecord
from doc_upload_backend.s3_service import S3Storage
from doc_upload_backend.utils import sanitize_filename, split_page_numbers, split_tags


def make_document(document_id="doc-1", **fields):
    now = datetime.utcnow()
    document = {
        "document_id": document_id,
        "user_id": "user-1",
        "file_name": "notes.pdf",
        "document_type": "PDF",
        "status": "uploaded",
        "upload_date": now,
        "updated_at": now,
        "tags": ["math"],
        "selected_pages": "1-3,5",
        "local_path": "/tmp/notes.pdf",
        "events": [{"timestamp": now, "message": "Document uploaded."}],
    }
    document.update(fields)
    return document


@pytest.fixture
def database(tmp_path):
    return DocumentDatabase(tmp_path / "nested" / "documents.db")


class TestDocumentDatabase:
    def test_save_and_get(self, database):
        database.save_document(make_document())

        stored = database.get_document("doc-1")
        assert stored["selected_pages"] == "1-3,5"
        assert stored["tags"] == ["math"]
        assert stored["status"] == "uploaded"
        assert stored["events"][0]["message"] == "Document uploaded."
        assert stored["s3_key"] is None

    def test_get_missing(self, database):
        assert database.get_document("missing") is None

    def test_update_document(self, database):
        database.save_document(make_document())
        database.update_document("doc-1", status=DocumentStatus.EXTRACTED, page_count=7, extracted_text="hello")

        stored = database.get_document("doc-1")
        assert stored["status"] == "extracted"
        assert stored["page_count"] == 7
        assert stored["extracted_text"] == "hello"
        assert stored["selected_pages"] == "1-3,5"

    def test_add_event(self, database):
        database.save_document(make_document())
        database.add_document_event("doc-1", "Processing started.")
        database.add_document_event("missing", "ignored")

        events = database.get_document("doc-1")["events"]
        assert [event["message"] for event in events] == ["Document uploaded.", "Processing started."]

    def test_list_filters_by_user(self, database):
        database.save_document(make_document("doc-1"))
        database.save_document(make_document("doc-2", user_id="user-2"))

        assert len(database.list_documents()) == 2
        assert [doc["document_id"] for doc in database.list_documents("user-2")] == ["doc-2"]

    def test_delete_cascades_to_images(self, database):
        database.save_document(make_document())
        database.save_image(ImageRecord(image_id="img-1", document_id="doc-1", url="s3://b/k", position=2))
        assert len(database.list_images("doc-1")) == 1

        assert database.delete_document("doc-1") is True
        assert database.list_images("doc-1") == []
        assert database.delete_document("doc-1") is False


class FailingS3Client:
    def upload_file(self, *args, **kwargs):
        raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject")

    def generate_presigned_url(self, *args, **kwargs):
        raise ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetObject")


@pytest.fixture
def local_file(tmp_path):
    path = tmp_path / "a.pdf"
    path.write_bytes(b"data")
    return path


class TestS3Storage:
    def test_unconfigured_storage_skips(self, local_file):
        storage = S3Storage("")
        assert storage.is_configured is False
        assert storage.upload_file(local_file, "documents/x/a.pdf") is False
        assert storage.generate_presigned_url("documents/x/a.pdf") is None
        assert storage.delete_document_objects("x") == 0

    def test_document_key(self):
        assert S3Storage("bucket").document_key("abc", "a.pdf") == "documents/abc/a.pdf"
        assert S3Storage("bucket", prefix="").document_key("abc", "a.pdf") == "abc/a.pdf"

    def test_upload_file_sets_content_type(self, s3_storage, fake_s3_client, local_file):
        assert s3_storage.upload_file(local_file, "documents/x/a.pdf", "application/pdf") is True
        assert s3_storage.upload_file(local_file, "documents/x/b.pdf") is True

        assert fake_s3_client.objects["documents/x/a.pdf"]["content_type"] == "application/pdf"
        assert fake_s3_client.objects["documents/x/b.pdf"]["content_type"] is None
        assert fake_s3_client.objects["documents/x/a.pdf"]["body"] == b"data"

    def test_client_errors_are_not_raised(self, local_file):
        storage = S3Storage("bucket", client=FailingS3Client())
        assert storage.upload_file(local_file, "documents/x/a.pdf") is False
        assert storage.generate_presigned_url("documents/x/a.pdf") is None

    def test_delete_document_objects(self, s3_storage, fake_s3_client, local_file):
        s3_storage.upload_file(local_file, "documents/abc/a.pdf")
        s3_storage.upload_file(local_file, "documents/abc/images/page-0001.png")
        s3_storage.upload_file(local_file, "documents/other/c.pdf")

        assert s3_storage.delete_document_objects("abc") == 2
        assert list(fake_s3_client.objects) == ["documents/other/c.pdf"]


class TestConfiguration:
    def test_defaults(self):
        config = make_runtime_config()
        assert config.selection.reconciliation_policy == "union"
        assert config.upload.default_document_type == "PDF"

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigKeyError):
            make_runtime_config({"selection": {"strategy": "union"}})

    def test_unknown_policy_rejected(self):
        with pytest.raises(ValueError):
            make_runtime_config({"selection": {"reconciliation_policy": "latest"}})

    def test_invalid_worker_count_rejected(self):
        with pytest.raises(ValueError):
            make_runtime_config({"processing": {"max_workers": 0}})

    def test_selection_limit_must_be_positive(self):
        assert make_runtime_config().selection.max_pages == 10000
        with pytest.raises(ValueError, match="max_pages"):
            make_runtime_config({"selection": {"max_pages": 0}})


class TestFormHelpers:
    def test_sanitize_filename(self):
        assert sanitize_filename("My Lecture Notes (v2).PDF") == "My-Lecture-Notes-v2.pdf"
        assert sanitize_filename("@#$.pdf") == "document.pdf"
        assert sanitize_filename("C:\\Users\\me\\notes.docx") == "notes.docx"

    def test_split_tags(self):
        assert split_tags("math, grade 5,,") == ["math", "grade 5"]
        assert split_tags(None) == []

    def test_split_page_numbers(self):
        assert split_page_numbers("4, 9,x,12") == [4, 9, 12]
        assert split_page_numbers("") == []

    def test_split_page_numbers_reads_items_like_range_parser(self):
        assert split_page_numbers("+5, 1.5,12abc") == [5, 1, 12]
        # Non-ASCII digits and underscore separators are not page numbers
        assert split_page_numbers("٣,1_000") == [1]
        assert split_page_numbers("٣,1_000") == sorted(page_selection.parse("٣,1_000"))
