"""
SQLite database for persistent document storage.

This module provides a simple SQLite-based persistence layer for uploaded
document records, their event log and the page images rendered from them.
The ``selected_pages`` column holds the canonical range string verbatim; it
is never interpreted here.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import DocumentStatus, ImageRecord
from .utils import ensure_directory


def _serialize_datetime(dt: datetime) -> str:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: str) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


class DocumentDatabase:
    """
    SQLite database for document persistence.

    Thread-safe: each operation opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    document_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    document_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    upload_date TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    tags TEXT,
                    selected_pages TEXT NOT NULL,
                    local_path TEXT NOT NULL,
                    s3_key TEXT,
                    page_count INTEGER,
                    extracted_text TEXT,
                    ai_output_id TEXT,
                    error TEXT,
                    events TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_upload_date
                ON documents(upload_date DESC)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_documents_status
                ON documents(status)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS images (
                    image_id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL
                        REFERENCES documents(document_id) ON DELETE CASCADE,
                    url TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    description TEXT
                )
            """)

    def save_document(self, document: Dict[str, Any]) -> None:
        """
        Insert a new document record.

        Args:
            document: Dictionary with document fields
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO documents (
                    document_id, user_id, file_name, document_type, status,
                    upload_date, updated_at, tags, selected_pages, local_path,
                    s3_key, page_count, extracted_text, ai_output_id, error, events
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                document["document_id"],
                document["user_id"],
                document["file_name"],
                document["document_type"],
                document["status"],
                _serialize_datetime(document["upload_date"]),
                _serialize_datetime(document["updated_at"]),
                json.dumps(document.get("tags", [])),
                document["selected_pages"],
                str(document["local_path"]),
                document.get("s3_key"),
                document.get("page_count"),
                document.get("extracted_text"),
                document.get("ai_output_id"),
                document.get("error"),
                json.dumps([
                    {"timestamp": _serialize_datetime(e["timestamp"]), "message": e["message"]}
                    for e in document.get("events", [])
                ]),
            ))

    def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a document by ID.

        Returns:
            Document data dictionary or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()

            if not row:
                return None

            return self._row_to_dict(row)

    def list_documents(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List documents ordered by upload time (newest first).

        Args:
            user_id: Only return documents owned by this user, if given
        """
        with self._get_connection() as conn:
            if user_id is None:
                rows = conn.execute(
                    "SELECT * FROM documents ORDER BY upload_date DESC"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM documents WHERE user_id = ? ORDER BY upload_date DESC",
                    (user_id,)
                ).fetchall()

            return [self._row_to_dict(row) for row in rows]

    def update_document(
        self,
        document_id: str,
        status: Optional[DocumentStatus] = None,
        error: Optional[str] = None,
        s3_key: Optional[str] = None,
        page_count: Optional[int] = None,
        extracted_text: Optional[str] = None,
    ) -> None:
        """
        Update document status and processing results.

        Only the fields that are not None are written; ``updated_at`` is
        always refreshed.
        """
        with self._get_connection() as conn:
            updates = ["updated_at = ?"]
            values: List[Any] = [_serialize_datetime(datetime.utcnow())]

            if status is not None:
                updates.append("status = ?")
                values.append(DocumentStatus(status).value)

            if error is not None:
                updates.append("error = ?")
                values.append(error)

            if s3_key is not None:
                updates.append("s3_key = ?")
                values.append(s3_key)

            if page_count is not None:
                updates.append("page_count = ?")
                values.append(page_count)

            if extracted_text is not None:
                updates.append("extracted_text = ?")
                values.append(extracted_text)

            values.append(document_id)

            conn.execute(
                f"UPDATE documents SET {', '.join(updates)} WHERE document_id = ?",
                values
            )

    def add_document_event(self, document_id: str, message: str) -> None:
        """
        Add an event to a document's event log.

        Args:
            document_id: The document ID
            message: Event message
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT events FROM documents WHERE document_id = ?", (document_id,)
            ).fetchone()

            if not row:
                return

            events = json.loads(row["events"] or "[]")
            events.append({
                "timestamp": _serialize_datetime(datetime.utcnow()),
                "message": message,
            })

            conn.execute(
                "UPDATE documents SET events = ?, updated_at = ? WHERE document_id = ?",
                (json.dumps(events), _serialize_datetime(datetime.utcnow()), document_id)
            )

    def delete_document(self, document_id: str) -> bool:
        """
        Delete a document record and its images.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE document_id = ?", (document_id,))
            return cursor.rowcount > 0

    def save_image(self, image: ImageRecord) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO images (image_id, document_id, url, position, description) "
                "VALUES (?, ?, ?, ?, ?)",
                (image.image_id, image.document_id, image.url, image.position, image.description),
            )

    def list_images(self, document_id: str) -> List[ImageRecord]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM images WHERE document_id = ? ORDER BY position",
                (document_id,)
            ).fetchall()

            return [
                ImageRecord(
                    image_id=row["image_id"],
                    document_id=row["document_id"],
                    url=row["url"],
                    position=row["position"],
                    description=row["description"],
                )
                for row in rows
            ]

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a document data dictionary."""
        events_raw = json.loads(row["events"] or "[]")
        events = [
            {
                "timestamp": _deserialize_datetime(e["timestamp"]),
                "message": e["message"],
            }
            for e in events_raw
        ]

        return {
            "document_id": row["document_id"],
            "user_id": row["user_id"],
            "file_name": row["file_name"],
            "document_type": row["document_type"],
            "status": row["status"],
            "upload_date": _deserialize_datetime(row["upload_date"]),
            "updated_at": _deserialize_datetime(row["updated_at"]),
            "tags": json.loads(row["tags"] or "[]"),
            "selected_pages": row["selected_pages"],
            "local_path": Path(row["local_path"]),
            "s3_key": row["s3_key"],
            "page_count": row["page_count"],
            "extracted_text": row["extracted_text"],
            "ai_output_id": row["ai_output_id"],
            "error": row["error"],
            "events": events,
        }
