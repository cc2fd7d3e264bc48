from __future__ import annotations

from pathlib import Path
from typing import Callable

from casefolio.domain.models.case import Case, CaseAggregate, DocumentSnapshot
from casefolio.domain.models.status import TERMINAL_STATUSES
from casefolio.infrastructure.db.sqlite import get_connection


class CaseRepo:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def insert(self, case: Case) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO cases (
                    id,
                    name,
                    status,
                    progress,
                    total_documents,
                    processed_documents,
                    error_message,
                    created_at,
                    updated_at,
                    completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    case.id,
                    case.name,
                    case.status,
                    case.progress,
                    case.total_documents,
                    case.processed_documents,
                    case.error_message,
                    case.created_at,
                    case.updated_at,
                    case.completed_at,
                ),
            )
            conn.commit()

    def get_by_id(self, case_id: str) -> Case | None:
        with get_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM cases WHERE id = ?", (case_id,)).fetchone()
        return self._to_model(row) if row else None

    def list(self, limit: int = 100) -> list[Case]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                """
                SELECT * FROM cases
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [self._to_model(row) for row in rows]

    def set_status(self, case_id: str, status: str, *, now: str) -> None:
        with get_connection(self.db_path) as conn:
            conn.execute(
                """
                UPDATE cases
                SET status = ?,
                    error_message = NULL,
                    completed_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (status, now, case_id),
            )
            conn.commit()

    def apply_aggregate(
        self,
        case_id: str,
        compute: Callable[[list[DocumentSnapshot]], CaseAggregate],
        *,
        now: str,
    ) -> tuple[str, CaseAggregate] | None:
        """Recompute a case from its documents inside one write transaction.

        Returns the status the case had before the update together with the
        aggregate that was written, or ``None`` when the case does not exist.
        """
        with get_connection(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT status FROM cases WHERE id = ?", (case_id,)).fetchone()
            if row is None:
                conn.rollback()
                return None
            previous_status = str(row["status"])
            doc_rows = conn.execute(
                """
                SELECT status, progress, error_message
                FROM documents
                WHERE case_id = ?
                ORDER BY processing_order ASC, created_at ASC
                """,
                (case_id,),
            ).fetchall()
            snapshots = [
                DocumentSnapshot(
                    status=str(doc["status"]),
                    progress=int(doc["progress"] or 0),
                    error_message=doc["error_message"],
                )
                for doc in doc_rows
            ]
            aggregate = compute(snapshots)
            conn.execute(
                """
                UPDATE cases
                SET status = ?,
                    progress = ?,
                    total_documents = ?,
                    processed_documents = ?,
                    error_message = ?,
                    updated_at = ?,
                    completed_at = CASE
                        WHEN ? THEN COALESCE(completed_at, ?)
                        ELSE NULL
                    END
                WHERE id = ?
                """,
                (
                    aggregate.status,
                    aggregate.progress,
                    aggregate.total_documents,
                    aggregate.processed_documents,
                    aggregate.error_message,
                    now,
                    1 if aggregate.status in TERMINAL_STATUSES else 0,
                    now,
                    case_id,
                ),
            )
            conn.commit()
        return previous_status, aggregate

    def delete(self, case_id: str) -> bool:
        with get_connection(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM cases WHERE id = ?", (case_id,))
            conn.commit()
            return int(cursor.rowcount or 0) > 0

    @staticmethod
    def _to_model(row) -> Case:
        return Case(
            id=row["id"],
            name=row["name"],
            status=row["status"],
            progress=int(row["progress"] or 0),
            total_documents=int(row["total_documents"] or 0),
            processed_documents=int(row["processed_documents"] or 0),
            error_message=row["error_message"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )
