from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class Case:
    id: str
    name: str
    status: str
    progress: int
    total_documents: int
    processed_documents: int
    error_message: str | None
    created_at: str
    updated_at: str
    completed_at: str | None = None


@dataclass(frozen=True, slots=True)
class DocumentSnapshot:
    """The slice of a document that case aggregation reads."""

    status: str
    progress: int
    error_message: str | None = None


@dataclass(frozen=True, slots=True)
class CaseAggregate:
    status: str
    progress: int
    total_documents: int
    processed_documents: int
    completed_documents: int
    errored_documents: int
    error_message: str | None = None


@dataclass(slots=True)
class DocumentStatusRow:
    id: str
    display_name: str
    status: str
    progress: int
    current_page: int
    page_count: int | None
    error_message: str | None


@dataclass(slots=True)
class CaseStatusView:
    case: Case
    documents: list[DocumentStatusRow] = field(default_factory=list)
