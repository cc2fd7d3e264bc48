from __future__ import annotations

from dataclasses import dataclass

SEGMENT_DONE = "done"
SEGMENT_ERROR = "error"


@dataclass(slots=True)
class Document:
    id: str
    case_id: str
    display_name: str
    source_location: str
    processing_order: int
    priority: int
    status: str
    progress: int
    current_page: int
    page_count: int | None
    extracted_text: str | None
    error_message: str | None
    created_at: str
    updated_at: str
    completed_at: str | None = None


@dataclass(slots=True)
class PageSegment:
    document_id: str
    page_number: int
    state: str
    text: str
    created_at: str
