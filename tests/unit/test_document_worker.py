from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from casefolio.application.services.document_worker import DocumentWorker
from casefolio.application.services.engine_pool import RecognitionEnginePool
from casefolio.application.services.page_processor import format_page_segment, page_error_segment
from casefolio.application.services.status_service import CaseStatusService
from casefolio.core.errors import DocumentFatalError, TransientJobError
from casefolio.core.time import now_utc_iso
from casefolio.domain.models.case import Case
from casefolio.domain.models.document import Document
from casefolio.domain.models.job import JobPayload
from casefolio.infrastructure.db.repos.case_repo import CaseRepo
from casefolio.infrastructure.db.repos.document_repo import DocumentRepo
from casefolio.infrastructure.db.sqlite import initialize_schema
from casefolio.infrastructure.rendering.pdf_renderer import RenderHandle


class FakeRenderer:
    def __init__(self, page_count: int, *, open_error: Exception | None = None) -> None:
        self.page_count = page_count
        self.open_error = open_error
        self.rendered: list[int] = []
        self.closed = 0

    def open(self, source_location: str) -> RenderHandle:
        if self.open_error is not None:
            raise self.open_error
        return RenderHandle(source_location=source_location, page_count=self.page_count)

    def render(self, handle: RenderHandle, page_number: int, scale: float = 1.0) -> bytes:
        self.rendered.append(page_number)
        return f"page-{page_number}".encode("utf-8")

    def close(self, handle: RenderHandle) -> None:
        self.closed += 1


class FakeRecognizer:
    def __init__(self, failing_pages: set[int] | None = None) -> None:
        self.failing_pages = failing_pages or set()
        self.recognized: list[int] = []

    def recognize(self, image_bytes: bytes) -> str:
        page_number = int(image_bytes.decode("utf-8").split("-")[1])
        self.recognized.append(page_number)
        if page_number in self.failing_pages:
            raise RuntimeError(f"engine choked on page {page_number}")
        return f"text of page {page_number}\n"


class RecordingNotifier:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    def notify(self, target_kind: str, target_id: str, outcome: str) -> None:
        self.calls.append((target_kind, target_id, outcome))


def _bootstrap(tmp_path: Path) -> tuple[CaseRepo, DocumentRepo, JobPayload]:
    db_path = tmp_path / "casefolio.db"
    initialize_schema(db_path)
    case_repo = CaseRepo(db_path)
    document_repo = DocumentRepo(db_path)
    now = now_utc_iso()
    case_repo.insert(
        Case(
            id="case-1",
            name="Case One",
            status="processing",
            progress=0,
            total_documents=1,
            processed_documents=0,
            error_message=None,
            created_at=now,
            updated_at=now,
        )
    )
    document_repo.insert(
        Document(
            id="doc-1",
            case_id="case-1",
            display_name="scan.pdf",
            source_location=str(tmp_path / "scan.pdf"),
            processing_order=0,
            priority=5,
            status="waiting",
            progress=0,
            current_page=0,
            page_count=None,
            extracted_text=None,
            error_message=None,
            created_at=now,
            updated_at=now,
        )
    )
    payload = JobPayload(
        document_id="doc-1",
        case_id="case-1",
        display_name="scan.pdf",
        source_location=str(tmp_path / "scan.pdf"),
    )
    return case_repo, document_repo, payload


def _worker(
    case_repo: CaseRepo,
    document_repo: DocumentRepo,
    renderer: FakeRenderer,
    recognizer: FakeRecognizer,
    notifier: RecordingNotifier | None = None,
) -> DocumentWorker:
    return DocumentWorker(
        document_repo=document_repo,
        case_status_service=CaseStatusService(case_repo, notifier=notifier),
        renderer=renderer,
        engine_pool=RecognitionEnginePool(lambda: recognizer, size=1),
        notifier=notifier,
    )


def _expected_text(page_count: int, failing_pages: set[int] = frozenset()) -> str:
    return "".join(
        page_error_segment(n) if n in failing_pages else format_page_segment(n, f"text of page {n}\n")
        for n in range(1, page_count + 1)
    )


def test_document_completes_with_ordered_page_segments(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    notifier = RecordingNotifier()
    renderer = FakeRenderer(3)
    worker = _worker(case_repo, document_repo, renderer, FakeRecognizer(), notifier)

    result = worker.run(payload)

    document = document_repo.get_by_id("doc-1")
    assert result is not None
    assert result.page_count == 3
    assert result.pages_failed == 0
    assert document.status == "done"
    assert document.progress == 100
    assert document.current_page == 3
    assert document.page_count == 3
    assert document.completed_at is not None
    assert document.extracted_text == _expected_text(3)
    assert "========== PAGE 2 ==========" in document.extracted_text
    assert renderer.closed == 1
    assert case_repo.get_by_id("case-1").status == "done"
    assert ("document", "doc-1", "done") in notifier.calls
    assert ("case", "case-1", "done") in notifier.calls


def test_failed_page_gets_placeholder_and_document_still_finishes(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    worker = _worker(case_repo, document_repo, FakeRenderer(5), FakeRecognizer(failing_pages={3}))

    result = worker.run(payload)

    document = document_repo.get_by_id("doc-1")
    assert result.pages_failed == 1
    assert document.status == "done"
    assert document.extracted_text == _expected_text(5, {3})
    assert "[Error processing this page]" in document.extracted_text
    segments = document_repo.list_segments("doc-1")
    assert [segment.page_number for segment in segments] == [1, 2, 3, 4, 5]
    assert [segment.state for segment in segments] == ["done", "done", "error", "done", "done"]


def test_redelivered_document_resumes_after_persisted_pages(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    document_repo.mark_processing("doc-1", now=now_utc_iso())
    document_repo.set_page_count("doc-1", 5, now=now_utc_iso())
    for page_number, progress in ((1, 20), (2, 40)):
        document_repo.record_page(
            "doc-1",
            page_number=page_number,
            state="done",
            text=format_page_segment(page_number, f"text of page {page_number}\n"),
            progress=progress,
            now=now_utc_iso(),
        )
    recognizer = FakeRecognizer()
    worker = _worker(case_repo, document_repo, FakeRenderer(5), recognizer)

    result = worker.run(payload)

    assert recognizer.recognized == [3, 4, 5]
    assert result.pages_reused == 2
    assert document_repo.get_by_id("doc-1").extracted_text == _expected_text(5)


def test_page_error_placeholders_are_retried_on_redelivery(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    _worker(case_repo, document_repo, FakeRenderer(2), FakeRecognizer(failing_pages={2})).run(payload)
    recognizer = FakeRecognizer()

    _worker(case_repo, document_repo, FakeRenderer(2), recognizer).run(payload)

    assert recognizer.recognized == [2]
    assert document_repo.get_by_id("doc-1").extracted_text == _expected_text(2)


def test_progress_reported_per_page_never_decreases(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    worker = _worker(case_repo, document_repo, FakeRenderer(3), FakeRecognizer())
    seen: list[int] = []

    worker.run(payload, progress_callback=seen.append)

    assert seen == [33, 67, 100]
    assert seen == sorted(seen)


def test_unopenable_source_marks_document_error_without_pages(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    notifier = RecordingNotifier()
    renderer = FakeRenderer(3, open_error=DocumentFatalError("scan.pdf is password protected"))
    worker = _worker(case_repo, document_repo, renderer, FakeRecognizer(), notifier)

    with pytest.raises(DocumentFatalError) as excinfo:
        worker.run(payload)

    assert excinfo.value.document_id == "doc-1"
    document = document_repo.get_by_id("doc-1")
    assert document.status == "error"
    assert document.error_message == "scan.pdf is password protected"
    assert document.extracted_text is None
    assert document_repo.list_segments("doc-1") == []
    assert renderer.rendered == []
    case = case_repo.get_by_id("case-1")
    assert case.status == "error"
    assert case.error_message == "scan.pdf is password protected"
    assert ("document", "doc-1", "error") in notifier.calls
    assert ("case", "case-1", "error") in notifier.calls


def test_document_without_pages_is_fatal(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    renderer = FakeRenderer(0)
    worker = _worker(case_repo, document_repo, renderer, FakeRecognizer())

    with pytest.raises(DocumentFatalError, match="no readable pages"):
        worker.run(payload)

    document = document_repo.get_by_id("doc-1")
    assert document.status == "error"
    assert document.extracted_text is None
    assert renderer.closed == 1
    assert case_repo.get_by_id("case-1").status == "error"


def test_failed_progress_report_does_not_fail_the_document(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    worker = _worker(case_repo, document_repo, FakeRenderer(2), FakeRecognizer())

    def report(progress: int) -> None:
        raise sqlite3.OperationalError("database is locked")

    result = worker.run(payload, progress_callback=report)

    assert result is not None
    document = document_repo.get_by_id("doc-1")
    assert document.status == "done"
    assert document.extracted_text == _expected_text(2)


def test_unexpected_open_failure_is_wrapped_as_fatal(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    renderer = FakeRenderer(1, open_error=OSError("disk unplugged"))
    worker = _worker(case_repo, document_repo, renderer, FakeRecognizer())

    with pytest.raises(DocumentFatalError, match="disk unplugged"):
        worker.run(payload)


def test_engine_startup_failure_is_transient(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)

    def broken_factory():
        raise RuntimeError("tesseract missing")

    worker = DocumentWorker(
        document_repo=document_repo,
        case_status_service=CaseStatusService(case_repo),
        renderer=FakeRenderer(1),
        engine_pool=RecognitionEnginePool(broken_factory, size=1),
    )

    with pytest.raises(TransientJobError, match="tesseract missing"):
        worker.run(payload)
    assert document_repo.get_by_id("doc-1").status == "error"


def test_missing_document_is_a_no_op(tmp_path: Path) -> None:
    case_repo, document_repo, payload = _bootstrap(tmp_path)
    case_repo.delete("case-1")
    renderer = FakeRenderer(1)

    assert _worker(case_repo, document_repo, renderer, FakeRecognizer()).run(payload) is None
    assert renderer.rendered == []
