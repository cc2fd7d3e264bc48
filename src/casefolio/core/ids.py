from __future__ import annotations

import uuid


def new_uuid() -> str:
    """Generate a new UUID4 as a string."""
    return str(uuid.uuid4())


def job_id_for_document(document_id: str) -> str:
    """Jobs are keyed by their document so re-submission is idempotent."""
    return str(document_id)
