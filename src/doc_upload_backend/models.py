from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .page_selection import ReconciliationPolicy


class DocumentType(str, Enum):
    PDF = "PDF"
    DOCX = "DOCX"


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    EXTRACTED = "extracted"
    IMAGES_PROCESSED = "imagesProcessed"
    AI_PROCESSED = "aiProcessed"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentEvent(BaseModel):
    timestamp: datetime
    message: str


class ImageRecord(BaseModel):
    image_id: str
    document_id: str
    url: str
    position: int
    description: Optional[str] = None


class DocumentSummary(BaseModel):
    document_id: str
    user_id: str
    file_name: str
    document_type: DocumentType
    status: DocumentStatus
    upload_date: datetime
    updated_at: datetime
    tags: List[str]
    selected_pages: str
    page_count: Optional[int] = None


class DocumentDetail(DocumentSummary):
    s3_key: Optional[str] = None
    extracted_text: Optional[str] = None
    ai_output_id: Optional[str] = None
    error: Optional[str] = None
    events: List[DocumentEvent]


class UploadedDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: DocumentStatus
    document_id: str = Field(alias="documentId")


class UploadResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    uploaded_documents: List[UploadedDocument] = Field(alias="uploadedDocuments")


class NormalizeRequest(BaseModel):
    range_string: str = ""


class MergeRequest(BaseModel):
    range_string: Optional[str] = None
    pages: List[int] = Field(default_factory=list)


class ToggleRequest(BaseModel):
    pages: List[int] = Field(default_factory=list)
    page: int


class ReconcileRequest(BaseModel):
    """Text-field edit folded into the selection currently held by the client."""

    pages: List[int] = Field(default_factory=list)
    range_text: str = ""
    policy: Optional[ReconciliationPolicy] = None


class SelectionResponse(BaseModel):
    pages: List[int]
    range_string: str


class SettingsMetadata(BaseModel):
    defaults: Dict[str, Any]
    document_types: List[str]
    reconciliation_policies: List[str]
    s3_configured: bool
