from __future__ import annotations

from pathlib import Path

from casefolio.domain.models.document import Document, PageSegment
from casefolio.domain.models.status import DONE, ERROR, PROCESSING, WAITING
from casefolio.infrastructure.db.sqlite import get_connection


class DocumentRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert(self, document: Document) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO documents (
                    id,
                    case_id,
                    display_name,
                    source_location,
                    processing_order,
                    priority,
                    status,
                    progress,
                    current_page,
                    page_count,
                    extracted_text,
                    error_message,
                    created_at,
                    updated_at,
                    completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document.id,
                    document.case_id,
                    document.display_name,
                    document.source_location,
                    document.processing_order,
                    document.priority,
                    document.status,
                    document.progress,
                    document.current_page,
                    document.page_count,
                    document.extracted_text,
                    document.error_message,
                    document.created_at,
                    document.updated_at,
                    document.completed_at,
                ),
            )
            conn.commit()

    def get_by_id(self, document_id: str) -> Document | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        return self._to_model(row) if row else None

    def list_for_case(self, case_id: str, *, status: str | None = None) -> list[Document]:
        query = "SELECT * FROM documents WHERE case_id = ?"
        params: list[object] = [case_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY processing_order ASC, created_at ASC"
        with get_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._to_model(row) for row in rows]

    def next_processing_order(self, case_id: str) -> int:
        with get_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(processing_order) + 1, 0) AS next_order FROM documents WHERE case_id = ?",
                (case_id,),
            ).fetchone()
        return int(row["next_order"] or 0)

    def mark_processing(self, document_id: str, *, now: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE documents
                SET status = ?,
                    error_message = NULL,
                    completed_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (PROCESSING, now, document_id),
            )
            conn.commit()

    def set_page_count(self, document_id: str, page_count: int, *, now: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                "UPDATE documents SET page_count = ?, updated_at = ? WHERE id = ?",
                (page_count, now, document_id),
            )
            conn.commit()

    def record_page(
        self,
        document_id: str,
        *,
        page_number: int,
        state: str,
        text: str,
        progress: int,
        now: str,
    ) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO page_segments (document_id, page_number, state, text, created_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(document_id, page_number) DO UPDATE SET
                    state = excluded.state,
                    text = excluded.text,
                    created_at = excluded.created_at
                """,
                (document_id, page_number, state, text, now),
            )
            conn.execute(
                """
                UPDATE documents
                SET current_page = MAX(current_page, ?),
                    progress = MAX(progress, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (page_number, progress, now, document_id),
            )
            conn.commit()

    def advance_page(self, document_id: str, *, page_number: int, progress: int, now: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE documents
                SET current_page = MAX(current_page, ?),
                    progress = MAX(progress, ?),
                    updated_at = ?
                WHERE id = ?
                """,
                (page_number, progress, now, document_id),
            )
            conn.commit()

    def list_segments(self, document_id: str) -> list[PageSegment]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM page_segments
                WHERE document_id = ?
                ORDER BY page_number ASC
                """,
                (document_id,),
            ).fetchall()
        return [self._to_segment(row) for row in rows]

    def mark_done(self, document_id: str, *, extracted_text: str, page_count: int, now: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE documents
                SET status = ?,
                    progress = 100,
                    current_page = ?,
                    page_count = ?,
                    extracted_text = ?,
                    error_message = NULL,
                    updated_at = ?,
                    completed_at = ?
                WHERE id = ?
                """,
                (DONE, page_count, page_count, extracted_text, now, now, document_id),
            )
            conn.commit()

    def mark_error(self, document_id: str, error_message: str, *, now: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE documents
                SET status = ?,
                    error_message = ?,
                    updated_at = ?,
                    completed_at = ?
                WHERE id = ?
                """,
                (ERROR, error_message, now, now, document_id),
            )
            conn.commit()

    def reset_for_retry(self, document_id: str, *, now: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute("DELETE FROM page_segments WHERE document_id = ?", (document_id,))
            conn.execute(
                """
                UPDATE documents
                SET status = ?,
                    error_message = NULL,
                    progress = 0,
                    current_page = 0,
                    extracted_text = NULL,
                    completed_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (WAITING, now, document_id),
            )
            conn.commit()

    @staticmethod
    def _to_model(row) -> Document:
        return Document(
            id=row["id"],
            case_id=row["case_id"],
            display_name=row["display_name"],
            source_location=row["source_location"],
            processing_order=int(row["processing_order"] or 0),
            priority=int(row["priority"]) if row["priority"] is not None else 5,
            status=row["status"],
            progress=int(row["progress"] or 0),
            current_page=int(row["current_page"] or 0),
            page_count=int(row["page_count"]) if row["page_count"] is not None else None,
            extracted_text=row["extracted_text"],
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _to_segment(row) -> PageSegment:
        return PageSegment(
            document_id=row["document_id"],
            page_number=int(row["page_number"]),
            state=row["state"],
            text=row["text"],
            created_at=row["created_at"],
        )
