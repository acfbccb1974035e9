"""
Ingestion and lifecycle management for uploaded documents.

This module manages the end-to-end lifecycle of an uploaded document:
- Validating and storing the uploaded file locally and in S3
- Merging the manual range string with individually selected pages
- Persisting the document record
- Running text extraction and page rendering in the background
- Status tracking and event logging

The DocumentManager class provides the core business logic for the API,
coordinating between user requests, configuration, storage and processing.
"""

from __future__ import annotations

import logging
import shutil
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from omegaconf import DictConfig

from . import page_selection
from .database import DocumentDatabase
from .models import (
    DocumentDetail,
    DocumentStatus,
    DocumentSummary,
    DocumentType,
    ImageRecord,
    UploadedDocument,
)
from .page_selection import ReconciliationPolicy, SelectionSession
from .processing import process_pdf
from .s3_service import S3Storage
from .utils import ensure_directory, is_allowed_file, sanitize_filename

logger = logging.getLogger(__name__)

# Uploads are written here until every file in a request has been validated
STAGING_DIR = ".staging"

CONTENT_TYPES = {
    DocumentType.PDF: "application/pdf",
    DocumentType.DOCX: "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def _to_summary(document: Dict[str, Any]) -> DocumentSummary:
    return DocumentSummary(
        document_id=document["document_id"],
        user_id=document["user_id"],
        file_name=document["file_name"],
        document_type=document["document_type"],
        status=document["status"],
        upload_date=document["upload_date"],
        updated_at=document["updated_at"],
        tags=document["tags"],
        selected_pages=document["selected_pages"],
        page_count=document["page_count"],
    )


def _to_detail(document: Dict[str, Any]) -> DocumentDetail:
    return DocumentDetail(
        **_to_summary(document).model_dump(),
        s3_key=document["s3_key"],
        extracted_text=document["extracted_text"],
        ai_output_id=document["ai_output_id"],
        error=document["error"],
        events=document["events"],
    )


class DocumentManager:
    """
    Central coordinator for document ingestion and processing.

    The manager owns the database handle, the S3 storage and the worker pool
    for one application instance. The database is opened lazily on first use.

    Thread Safety:
        Lazy initialization and the registry of running processing tasks are
        protected by a lock; database operations open their own connection.

    Attributes:
        config: Resolved runtime configuration
        upload_root: Base directory for stored uploads and rendered images
    """

    def __init__(self, config: DictConfig, s3: Optional[S3Storage] = None) -> None:
        self.config = config
        self.upload_root = ensure_directory(Path(config.storage.upload_dir))
        self.s3 = s3 if s3 is not None else S3Storage(config.storage.s3_bucket, config.storage.s3_prefix)
        self._db: Optional[DocumentDatabase] = None
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(max_workers=config.processing.max_workers)
        self._tasks: Dict[str, Future] = {}

    @property
    def db(self) -> DocumentDatabase:
        with self._lock:
            if self._db is None:
                self._db = DocumentDatabase(Path(self.config.storage.database_path))
                logger.info(f"Opened document database at {self._db.db_path}")
            return self._db

    @property
    def reconciliation_policy(self) -> ReconciliationPolicy:
        return ReconciliationPolicy(self.config.selection.reconciliation_policy)

    def new_selection_session(
        self,
        pages: Iterable[int] = (),
        range_text: str = "",
        policy: Optional[ReconciliationPolicy] = None,
    ) -> SelectionSession:
        """Create a selection session; ``policy`` defaults to ``selection.reconciliation_policy``."""
        return SelectionSession(pages=pages, range_text=range_text, policy=policy or self.reconciliation_policy)

    def check_selection_size(self, range_string: Optional[str], pages: Iterable[int] = ()) -> None:
        """
        Refuse selections larger than ``selection.max_pages`` before they are expanded.

        Raises:
            ValueError: If the union of the range string and pages is too large
        """
        limit = self.config.selection.max_pages
        if page_selection.count_pages(range_string, pages) > limit:
            raise ValueError(f"Page selection exceeds the limit of {limit} pages")

    @property
    def max_upload_bytes(self) -> int:
        return self.config.upload.max_file_size_mb * 1024 * 1024

    def size_limit_message(self, file_name: str) -> str:
        return f"File '{file_name}' exceeds {self.config.upload.max_file_size_mb}MB limit"

    def check_upload(self, file_name: str, document_type: DocumentType) -> str:
        """
        Validate an uploaded filename against the declared document type.

        Returns:
            The sanitized filename the document will be stored under

        Raises:
            ValueError: If the extension does not match the document type
        """
        safe_name = sanitize_filename(file_name)
        if not is_allowed_file(safe_name, document_type):
            raise ValueError(f"File '{file_name}' is not a valid {document_type.value} upload")
        return safe_name

    def staging_path(self) -> Path:
        """Fresh path under the staging area for an upload that is not yet registered."""
        return ensure_directory(self.upload_root / STAGING_DIR) / uuid4().hex

    def list_documents(self, user_id: Optional[str] = None) -> List[DocumentSummary]:
        return [_to_summary(document) for document in self.db.list_documents(user_id)]

    def get_document(self, document_id: str) -> Optional[DocumentDetail]:
        document = self.db.get_document(document_id)
        return _to_detail(document) if document else None

    def list_images(self, document_id: str) -> List[ImageRecord]:
        if self.db.get_document(document_id) is None:
            raise KeyError(document_id)
        return self.db.list_images(document_id)

    def create_document(
        self,
        file_name: str,
        source: Path,
        document_type: DocumentType,
        tags: List[str],
        page_ranges: Optional[str],
        selected_pages: List[int],
        user_id: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> UploadedDocument:
        """
        Register an uploaded file that has already been written to disk.

        This method:
        1. Validates the file type and size
        2. Moves the file to ``<upload_root>/<document_id>/``
        3. Uploads it to S3 when a bucket is configured
        4. Merges the page selection into a canonical range string
        5. Persists the record and submits background processing

        Args:
            file_name: Original filename sent by the client
            source: Path of the received file; it is moved, not copied
            document_type: Declared document type
            tags: Tags for the document
            page_ranges: Manual range string (may be empty or None)
            selected_pages: Pages picked individually in the viewer
            user_id: Owner of the document; defaults to ``upload.default_user_id``
            content_type: MIME type sent by the client

        Returns:
            UploadedDocument with the new document id

        Raises:
            ValueError: If the file type does not match or the file is too large
        """
        safe_name = self.check_upload(file_name, document_type)
        if source.stat().st_size > self.max_upload_bytes:
            raise ValueError(self.size_limit_message(file_name))

        document_id = uuid4().hex
        local_path = ensure_directory(self.upload_root / document_id) / safe_name
        source.replace(local_path)

        s3_key = self.s3.document_key(document_id, safe_name)
        if not self.s3.upload_file(local_path, s3_key, content_type or CONTENT_TYPES[document_type]):
            s3_key = None

        # Each file gets its own freshly merged selection
        merged_pages = page_selection.merge(page_ranges, selected_pages)

        now = datetime.utcnow()
        events = [{"timestamp": now, "message": "Document uploaded."}]
        if s3_key:
            events.append({"timestamp": now, "message": f"Stored in S3 at {self.s3.object_url(s3_key)}."})

        self.db.save_document({
            "document_id": document_id,
            "user_id": user_id or self.config.upload.default_user_id,
            "file_name": safe_name,
            "document_type": document_type.value,
            "status": DocumentStatus.UPLOADED.value,
            "upload_date": now,
            "updated_at": now,
            "tags": tags,
            "selected_pages": merged_pages,
            "local_path": local_path,
            "s3_key": s3_key,
            "events": events,
        })
        logger.info(f"Registered document {document_id} ({safe_name}), pages='{merged_pages}'")

        if self.config.processing.enabled:
            self.submit_processing(document_id)

        return UploadedDocument(status=DocumentStatus.UPLOADED, document_id=document_id)

    def submit_processing(self, document_id: str) -> Future:
        future = self._executor.submit(self.process_document, document_id)
        with self._lock:
            self._tasks[document_id] = future
        return future

    def wait_for_processing(self, document_id: str, timeout: Optional[float] = None) -> None:
        """Block until background processing of a document finishes, if any was submitted."""
        with self._lock:
            future = self._tasks.get(document_id)
        if future is not None:
            future.result(timeout=timeout)

    def process_document(self, document_id: str) -> None:
        """
        Run downstream processing for a document (runs in background thread).

        Status moves ``uploaded`` -> ``extracted`` -> ``imagesProcessed`` ->
        ``completed`` as each enabled step finishes. Failures mark the document
        ``failed`` with the error message.
        """
        document = self.db.get_document(document_id)
        if document is None:
            logger.warning(f"Document {document_id} disappeared before processing")
            return

        if document["document_type"] != DocumentType.PDF.value:
            self.db.add_document_event(
                document_id, f"Processing skipped: {document['document_type']} documents are stored only."
            )
            return

        self.db.add_document_event(document_id, "Processing started.")
        settings = self.config.processing

        try:
            result = process_pdf(
                document["local_path"],
                document["selected_pages"],
                image_dir=self.upload_root / document_id / "images",
                extract=settings.extract_text,
                render=settings.render_images,
                dpi=settings.image_dpi,
            )
            self.db.update_document(document_id, page_count=result.page_count)

            if result.dropped_pages:
                self.db.add_document_event(
                    document_id,
                    f"Ignored pages outside 1-{result.page_count}: "
                    f"{page_selection.serialize(result.dropped_pages)}",
                )

            if result.text is not None:
                self.db.update_document(
                    document_id, status=DocumentStatus.EXTRACTED, extracted_text=result.text
                )
                self.db.add_document_event(document_id, f"Extracted text from {len(result.pages)} pages.")

            if settings.render_images:
                for image in result.images:
                    self._store_image(document_id, image.position, image.path)
                self.db.update_document(document_id, status=DocumentStatus.IMAGES_PROCESSED)
                self.db.add_document_event(document_id, f"Rendered {len(result.images)} page images.")

            self.db.update_document(document_id, status=DocumentStatus.COMPLETED)
            self.db.add_document_event(document_id, "Processing completed.")
        except Exception as exc:
            logger.exception(f"Processing failed for document {document_id}")
            self.db.update_document(document_id, status=DocumentStatus.FAILED, error=str(exc))
            self.db.add_document_event(document_id, f"Processing failed: {exc}")

    def _store_image(self, document_id: str, position: int, path: Path) -> ImageRecord:
        key = self.s3.document_key(document_id, f"images/{path.name}")
        url = self.s3.object_url(key) if self.s3.upload_file(path, key, "image/png") else str(path)
        image = ImageRecord(
            image_id=uuid4().hex,
            document_id=document_id,
            url=url,
            position=position,
            description=f"Page {position}",
        )
        self.db.save_image(image)
        return image

    def get_download_url(self, document_id: str) -> Optional[str]:
        """
        Presigned S3 URL for the original upload.

        Raises:
            KeyError: If the document does not exist
        """
        document = self.db.get_document(document_id)
        if document is None:
            raise KeyError(document_id)
        if not document["s3_key"]:
            return None
        return self.s3.generate_presigned_url(
            document["s3_key"], expiration=self.config.storage.presigned_url_expiration
        )

    def delete_document(self, document_id: str) -> bool:
        """
        Remove a document's record, local files and S3 objects.

        Returns:
            True if deleted, False if not found

        Raises:
            RuntimeError: If the document is still being processed
        """
        with self._lock:
            future = self._tasks.get(document_id)
            if future is not None and not future.done():
                raise RuntimeError("Document is still being processed.")
            self._tasks.pop(document_id, None)

        if not self.db.delete_document(document_id):
            return False

        shutil.rmtree(self.upload_root / document_id, ignore_errors=True)
        self.s3.delete_document_objects(document_id)
        logger.info(f"Deleted document {document_id}")
        return True

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
