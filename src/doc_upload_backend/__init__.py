"""
Document Upload Backend - REST API for uploading documents with page selections

This package provides a FastAPI-based web service that accepts PDF and DOCX
uploads together with a page selection, and prepares them for downstream use:

- Page range parsing, merging and canonical serialization
- Document storage on local disk and in S3
- Document metadata persistence in SQLite
- Background text extraction and page rendering for the selected pages

Key Components:
    - page_selection: Range string parser/serializer and selection reconciliation
    - main: FastAPI application and HTTP endpoint definitions
    - document_manager: Upload ingestion and processing lifecycle coordinator
    - processing: PyMuPDF text extraction and page rendering
    - database: SQLite persistence for documents and page images
    - s3_service: S3 uploads and presigned URLs
    - models: Pydantic models for request/response validation
    - configuration: Config loading and merging logic
    - utils: Filesystem and form field utilities

Usage:
    Run the API server with:
        uvicorn doc_upload_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
