from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware

from . import page_selection
from .configuration import build_settings_metadata, make_runtime_config
from .document_manager import DocumentManager
from .models import (
    DocumentDetail,
    DocumentSummary,
    DocumentType,
    ImageRecord,
    MergeRequest,
    NormalizeRequest,
    ReconcileRequest,
    SelectionResponse,
    SettingsMetadata,
    ToggleRequest,
    UploadResponse,
)
from .s3_service import S3Storage
from .utils import split_page_numbers, split_tags

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024


def _selection_response(pages) -> SelectionResponse:
    return SelectionResponse(pages=sorted(pages), range_string=page_selection.serialize(pages))


async def _stage_upload(file: UploadFile, destination: Path, manager: DocumentManager) -> None:
    """Copy an upload to ``destination`` in chunks, failing as soon as it passes the size limit."""
    written = 0
    try:
        with destination.open("wb") as buffer:
            while chunk := await file.read(UPLOAD_CHUNK_SIZE):
                written += len(chunk)
                if written > manager.max_upload_bytes:
                    raise ValueError(manager.size_limit_message(file.filename))
                buffer.write(chunk)
    finally:
        await file.close()


def _check_selection_size(manager: DocumentManager, range_string: Optional[str], pages=()) -> None:
    try:
        manager.check_selection_size(range_string, pages)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def get_document_manager(request: Request) -> DocumentManager:
    return request.app.state.document_manager


def create_app(overrides: Optional[Dict[str, Any]] = None, s3: Optional[S3Storage] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        overrides: Values merged onto the packaged config.yaml
        s3: Storage to use instead of one built from ``storage.s3_bucket``
    """
    config = make_runtime_config(overrides)
    logging.basicConfig(
        level=str(config.logging.level).upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    manager = DocumentManager(config, s3=s3)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        manager.shutdown()

    app = FastAPI(title="Document Upload API", version="0.1.0", lifespan=lifespan)
    app.state.document_manager = manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/config/defaults", response_model=SettingsMetadata)
    def get_config_defaults(manager: DocumentManager = Depends(get_document_manager)) -> SettingsMetadata:
        return build_settings_metadata(manager.config, s3_configured=manager.s3.is_configured)

    @app.post("/documents", response_model=UploadResponse)
    async def upload_documents(
        files: Optional[List[UploadFile]] = File(None),
        tags: str = Form(""),
        pageRanges: str = Form(""),
        selectedPages: str = Form(""),
        documentType: str = Form(""),
        userId: str = Form(""),
        manager: DocumentManager = Depends(get_document_manager),
    ) -> UploadResponse:
        if not files:
            raise HTTPException(status_code=400, detail="No files uploaded")
        if any(not upload.filename for upload in files):
            raise HTTPException(status_code=400, detail="Uploaded file must have a filename")

        try:
            document_type = DocumentType(documentType or manager.config.upload.default_document_type)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Unsupported document type: {documentType}") from exc

        tag_list = split_tags(tags)
        individual_pages = split_page_numbers(selectedPages)

        # Nothing is registered until every file in the request has been accepted
        staged: List[Tuple[UploadFile, Path]] = []
        try:
            try:
                manager.check_selection_size(pageRanges, individual_pages)
                for upload in files:
                    manager.check_upload(upload.filename, document_type)
                for upload in files:
                    destination = manager.staging_path()
                    staged.append((upload, destination))
                    await _stage_upload(upload, destination, manager)
            except ValueError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc

            uploaded = []
            for upload, destination in staged:
                uploaded.append(
                    await asyncio.to_thread(
                        manager.create_document,
                        file_name=upload.filename,
                        source=destination,
                        document_type=document_type,
                        tags=tag_list,
                        page_ranges=pageRanges,
                        selected_pages=individual_pages,
                        user_id=userId or None,
                        content_type=upload.content_type,
                    )
                )
        finally:
            for _, destination in staged:
                destination.unlink(missing_ok=True)

        return UploadResponse(uploaded_documents=uploaded)

    @app.get("/documents", response_model=list[DocumentSummary])
    def list_documents(
        user_id: Optional[str] = None,
        manager: DocumentManager = Depends(get_document_manager),
    ) -> list[DocumentSummary]:
        return manager.list_documents(user_id)

    @app.get("/documents/{document_id}", response_model=DocumentDetail)
    def get_document(document_id: str, manager: DocumentManager = Depends(get_document_manager)) -> DocumentDetail:
        document = manager.get_document(document_id)
        if not document:
            raise HTTPException(status_code=404, detail="Document not found")
        return document

    @app.get("/documents/{document_id}/status")
    def document_status(document_id: str, manager: DocumentManager = Depends(get_document_manager)) -> Dict[str, Any]:
        document = manager.get_document(document_id)
        if not document:
            raise HTTPException(status_code=404, detail="Document not found")
        return {
            "status": document.status,
            "error": document.error,
            "selected_pages": document.selected_pages,
        }

    @app.get("/documents/{document_id}/images", response_model=list[ImageRecord])
    def document_images(document_id: str, manager: DocumentManager = Depends(get_document_manager)) -> list[ImageRecord]:
        try:
            return manager.list_images(document_id)
        except KeyError as exc:  # noqa: BLE001
            raise HTTPException(status_code=404, detail="Document not found") from exc

    @app.get("/documents/{document_id}/download")
    def document_download(document_id: str, manager: DocumentManager = Depends(get_document_manager)) -> Dict[str, str]:
        try:
            url = manager.get_download_url(document_id)
        except KeyError as exc:  # noqa: BLE001
            raise HTTPException(status_code=404, detail="Document not found") from exc
        if url is None:
            raise HTTPException(status_code=404, detail="Document is not available in S3")
        return {"url": url}

    @app.delete("/documents/{document_id}")
    def delete_document(document_id: str, manager: DocumentManager = Depends(get_document_manager)) -> Dict[str, str]:
        try:
            deleted = manager.delete_document(document_id)
        except RuntimeError as exc:  # noqa: BLE001
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        if not deleted:
            raise HTTPException(status_code=404, detail="Document not found")
        return {"status": "deleted"}

    @app.post("/selection/normalize", response_model=SelectionResponse)
    def normalize_selection(
        request: NormalizeRequest,
        manager: DocumentManager = Depends(get_document_manager),
    ) -> SelectionResponse:
        _check_selection_size(manager, request.range_string)
        return _selection_response(page_selection.parse(request.range_string))

    @app.post("/selection/merge", response_model=SelectionResponse)
    def merge_selection(
        request: MergeRequest,
        manager: DocumentManager = Depends(get_document_manager),
    ) -> SelectionResponse:
        _check_selection_size(manager, request.range_string, request.pages)
        return _selection_response(page_selection.parse(request.range_string) | set(request.pages))

    @app.post("/selection/toggle", response_model=SelectionResponse)
    def toggle_selection(
        request: ToggleRequest,
        manager: DocumentManager = Depends(get_document_manager),
    ) -> SelectionResponse:
        _check_selection_size(manager, None, [*request.pages, request.page])
        return _selection_response(page_selection.toggle(set(request.pages), request.page))

    @app.post("/selection/reconcile", response_model=SelectionResponse)
    def reconcile_selection(
        request: ReconcileRequest,
        manager: DocumentManager = Depends(get_document_manager),
    ) -> SelectionResponse:
        _check_selection_size(manager, request.range_text, request.pages)
        session = manager.new_selection_session(pages=request.pages, policy=request.policy)
        return _selection_response(session.edit_text(request.range_text))

    return app


app = create_app()
