from __future__ import annotations

from pathlib import Path

import pytest

from casefolio.application.services.case_service import CaseService
from casefolio.application.services.status_service import CaseStatusService
from casefolio.core.errors import (
    CaseNotFoundError,
    DocumentNotFoundError,
    RetryRejectedError,
    ValidationError,
)
from casefolio.core.time import now_utc_iso
from casefolio.infrastructure.db.repos.case_repo import CaseRepo
from casefolio.infrastructure.db.repos.document_repo import DocumentRepo
from casefolio.infrastructure.db.sqlite import get_connection, initialize_schema
from casefolio.infrastructure.queue.job_queue import JobQueue


def _bootstrap(tmp_path: Path) -> tuple[CaseService, DocumentRepo, JobQueue]:
    db_path = tmp_path / "casefolio.db"
    initialize_schema(db_path)
    case_repo = CaseRepo(db_path)
    document_repo = DocumentRepo(db_path)
    job_queue = JobQueue(db_path=db_path, backoff_seconds=0.0)
    service = CaseService(
        case_repo=case_repo,
        document_repo=document_repo,
        job_queue=job_queue,
        case_status_service=CaseStatusService(case_repo),
        uploads_dir=tmp_path / "uploads",
    )
    return service, document_repo, job_queue


def _pdfs(tmp_path: Path, count: int) -> list[Path]:
    src = tmp_path / "incoming"
    src.mkdir(exist_ok=True)
    paths = []
    for index in range(count):
        path = src / f"scan_{index}.pdf"
        path.write_bytes(b"%PDF-1.4 fake")
        paths.append(path)
    return paths


def test_add_documents_copies_sources_and_enqueues_jobs(tmp_path: Path) -> None:
    service, document_repo, job_queue = _bootstrap(tmp_path)
    case = service.create_case("  Ação 123  ")

    documents = service.add_documents(case.id, _pdfs(tmp_path, 2), priority=2)

    assert case.name == "Ação 123"
    assert [doc.processing_order for doc in documents] == [0, 1]
    for doc in documents:
        staged = Path(doc.source_location)
        assert staged.parent == tmp_path / "uploads" / case.id
        assert staged.read_bytes() == b"%PDF-1.4 fake"
        status = job_queue.get_status(doc.id)
        assert status.queue_state == "waiting"
        assert status.payload.case_id == case.id
        assert status.payload.priority == 2
    refreshed = service.get_case(case.id)
    assert refreshed.status == "processing"
    assert refreshed.total_documents == 2


def test_add_documents_continues_processing_order(tmp_path: Path) -> None:
    service, _, _ = _bootstrap(tmp_path)
    case = service.create_case("Case")
    service.add_documents(case.id, _pdfs(tmp_path, 1))

    later = service.add_documents(case.id, _pdfs(tmp_path, 2), copy_to_uploads=False)

    assert [doc.processing_order for doc in later] == [1, 2]
    assert later[0].source_location == str((tmp_path / "incoming" / "scan_0.pdf").resolve())


def test_add_documents_rejects_missing_files(tmp_path: Path) -> None:
    service, _, _ = _bootstrap(tmp_path)
    case = service.create_case("Case")

    with pytest.raises(ValidationError, match="not found"):
        service.add_documents(case.id, [tmp_path / "nope.pdf"])


def test_create_case_requires_a_name(tmp_path: Path) -> None:
    service, _, _ = _bootstrap(tmp_path)

    with pytest.raises(ValidationError):
        service.create_case("   ")


def test_case_status_lists_documents_in_order(tmp_path: Path) -> None:
    service, document_repo, _ = _bootstrap(tmp_path)
    case = service.create_case("Case")
    documents = service.add_documents(case.id, _pdfs(tmp_path, 2))
    document_repo.mark_done(documents[0].id, extracted_text="hello", page_count=1, now=now_utc_iso())

    view = service.get_case_status(case.id)

    assert [row.id for row in view.documents] == [doc.id for doc in documents]
    assert view.documents[0].status == "done"
    assert view.documents[1].status == "waiting"
    assert service.get_document_text(documents[0].id) == "hello"
    with pytest.raises(ValidationError):
        service.get_document_text(documents[1].id)
    with pytest.raises(DocumentNotFoundError):
        service.get_document_text("missing")


def test_retry_resets_only_errored_documents(tmp_path: Path) -> None:
    service, document_repo, job_queue = _bootstrap(tmp_path)
    case = service.create_case("Case")
    documents = service.add_documents(case.id, _pdfs(tmp_path, 5))
    for doc in documents:
        job = job_queue.claim_next("w1")
        assert job is not None
        job_queue.complete(job.id, worker_id="w1")
    for doc in documents[:3]:
        document_repo.mark_done(doc.id, extracted_text=f"text {doc.id}", page_count=1, now=now_utc_iso())
    for doc in documents[3:]:
        document_repo.record_page(
            doc.id, page_number=1, state="done", text="partial", progress=50, now=now_utc_iso()
        )
        document_repo.mark_error(doc.id, "engine crashed", now=now_utc_iso())
    with get_connection(tmp_path / "casefolio.db") as conn:
        conn.execute("UPDATE cases SET status = 'error' WHERE id = ?", (case.id,))
        conn.commit()

    result = service.retry_case(case.id)

    assert sorted(result.retried_document_ids) == sorted(doc.id for doc in documents[3:])
    for doc in documents[3:]:
        reset = document_repo.get_by_id(doc.id)
        assert reset.status == "waiting"
        assert reset.progress == 0
        assert reset.current_page == 0
        assert reset.error_message is None
        assert reset.extracted_text is None
        assert document_repo.list_segments(doc.id) == []
        assert job_queue.get_status(doc.id).queue_state == "waiting"
    for doc in documents[:3]:
        kept = document_repo.get_by_id(doc.id)
        assert kept.status == "done"
        assert kept.extracted_text == f"text {doc.id}"
        assert job_queue.get_status(doc.id).queue_state == "completed"
    assert service.get_case(case.id).status == "processing"


def test_retry_rejects_cases_not_in_error(tmp_path: Path) -> None:
    service, _, _ = _bootstrap(tmp_path)
    case = service.create_case("Case")
    service.add_documents(case.id, _pdfs(tmp_path, 1))

    with pytest.raises(RetryRejectedError):
        service.retry_case(case.id)
    with pytest.raises(CaseNotFoundError):
        service.retry_case("missing")


def test_delete_case_removes_documents_jobs_and_uploads(tmp_path: Path) -> None:
    service, document_repo, job_queue = _bootstrap(tmp_path)
    case = service.create_case("Case")
    documents = service.add_documents(case.id, _pdfs(tmp_path, 2))

    service.delete_case(case.id)

    assert job_queue.counts()["total"] == 0
    for doc in documents:
        assert document_repo.get_by_id(doc.id) is None
        assert not Path(doc.source_location).exists()
    with pytest.raises(CaseNotFoundError):
        service.get_case(case.id)


def test_delete_case_refuses_while_a_document_is_running(tmp_path: Path) -> None:
    service, _, job_queue = _bootstrap(tmp_path)
    case = service.create_case("Case")
    service.add_documents(case.id, _pdfs(tmp_path, 1))
    job_queue.claim_next("w1")

    with pytest.raises(ValidationError, match="being processed"):
        service.delete_case(case.id)


def test_priority_zero_survives_storage_and_retry(tmp_path: Path) -> None:
    service, document_repo, job_queue = _bootstrap(tmp_path)
    case = service.create_case("Urgent")
    (document,) = service.add_documents(case.id, _pdfs(tmp_path, 1), priority=0)

    assert document_repo.get_by_id(document.id).priority == 0
    assert job_queue.get_status(document.id).payload.priority == 0

    job = job_queue.claim_next("w1")
    job_queue.complete(job.id, worker_id="w1")
    document_repo.mark_error(document.id, "engine crashed", now=now_utc_iso())
    service.case_status_service.recompute(case.id)
    assert service.get_case(case.id).status == "error"

    service.retry_case(case.id)

    assert job_queue.get_job(document.id).priority == 0
    assert job_queue.get_status(document.id).payload.priority == 0
