from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from casefolio.application.services.status_service import CaseStatusService
from casefolio.core.errors import (
    CaseNotFoundError,
    DocumentNotFoundError,
    RetryRejectedError,
    ValidationError,
)
from casefolio.core.files import safe_copy_atomic
from casefolio.core.ids import job_id_for_document, new_uuid
from casefolio.core.time import now_utc_iso
from casefolio.domain.models.case import Case, CaseStatusView, DocumentStatusRow
from casefolio.domain.models.document import Document
from casefolio.domain.models.job import (
    JOB_ACTIVE,
    JOB_COMPLETED,
    JOB_DELAYED,
    JOB_FAILED,
    JOB_STALLED,
    JOB_WAITING,
    JobPayload,
)
from casefolio.domain.models.status import ERROR, PROCESSING, WAITING
from casefolio.infrastructure.db.repos.case_repo import CaseRepo
from casefolio.infrastructure.db.repos.document_repo import DocumentRepo
from casefolio.infrastructure.queue.job_queue import JobQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryResult:
    case_id: str
    retried_document_ids: list[str]


class CaseService:
    def __init__(
        self,
        *,
        case_repo: CaseRepo,
        document_repo: DocumentRepo,
        job_queue: JobQueue,
        case_status_service: CaseStatusService,
        uploads_dir: Path | None = None,
    ) -> None:
        self.case_repo = case_repo
        self.document_repo = document_repo
        self.job_queue = job_queue
        self.case_status_service = case_status_service
        self.uploads_dir = uploads_dir

    def create_case(self, name: str) -> Case:
        clean_name = (name or "").strip()
        if not clean_name:
            raise ValidationError("Case name is required.")
        now = now_utc_iso()
        case = Case(
            id=new_uuid(),
            name=clean_name,
            status=WAITING,
            progress=0,
            total_documents=0,
            processed_documents=0,
            error_message=None,
            created_at=now,
            updated_at=now,
        )
        self.case_repo.insert(case)
        logger.info("Case %s created: %s", case.id, clean_name)
        return case

    def add_documents(
        self,
        case_id: str,
        paths: Iterable[Path],
        *,
        priority: int | None = None,
        copy_to_uploads: bool = True,
    ) -> list[Document]:
        case = self._require_case(case_id)
        sources = [Path(p).expanduser().resolve() for p in paths]
        if not sources:
            raise ValidationError("No documents given.")
        missing = [str(p) for p in sources if not p.is_file()]
        if missing:
            raise ValidationError(f"Document file(s) not found: {', '.join(missing)}")

        resolved_priority = int(priority if priority is not None else self.job_queue.default_priority)
        next_order = self.document_repo.next_processing_order(case.id)
        documents: list[Document] = []
        for offset, source in enumerate(sources):
            document_id = new_uuid()
            location = self._stage_source(case.id, document_id, source) if copy_to_uploads else source
            now = now_utc_iso()
            document = Document(
                id=document_id,
                case_id=case.id,
                display_name=source.name,
                source_location=str(location),
                processing_order=next_order + offset,
                priority=resolved_priority,
                status=WAITING,
                progress=0,
                current_page=0,
                page_count=None,
                extracted_text=None,
                error_message=None,
                created_at=now,
                updated_at=now,
            )
            self.document_repo.insert(document)
            documents.append(document)

        self.case_repo.set_status(case.id, PROCESSING, now=now_utc_iso())
        self.case_status_service.recompute(case.id)
        for document in documents:
            self.job_queue.enqueue(self._payload_for(document), priority=document.priority)
        logger.info("Case %s: %s document(s) queued", case.id, len(documents))
        return documents

    def get_case(self, case_id: str) -> Case:
        return self._require_case(case_id)

    def list_cases(self, limit: int = 100) -> list[Case]:
        return self.case_repo.list(limit=limit)

    def get_case_status(self, case_id: str) -> CaseStatusView:
        case = self._require_case(case_id)
        documents = [
            DocumentStatusRow(
                id=doc.id,
                display_name=doc.display_name,
                status=doc.status,
                progress=doc.progress,
                current_page=doc.current_page,
                page_count=doc.page_count,
                error_message=doc.error_message,
            )
            for doc in self.document_repo.list_for_case(case.id)
        ]
        return CaseStatusView(case=case, documents=documents)

    def get_document_text(self, document_id: str) -> str:
        document = self.document_repo.get_by_id(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {document_id}")
        if not document.extracted_text:
            raise ValidationError(f"Text has not been extracted yet for {document.display_name}")
        return document.extracted_text

    def delete_case(self, case_id: str) -> None:
        case = self._require_case(case_id)
        documents = self.document_repo.list_for_case(case.id)
        busy = [
            doc.display_name
            for doc in documents
            if (status := self.job_queue.get_status(job_id_for_document(doc.id))) is not None
            and status.queue_state == JOB_ACTIVE
        ]
        if busy:
            raise ValidationError(f"Case {case.id} has documents being processed: {', '.join(busy)}")
        self.job_queue.remove_jobs(
            {JOB_WAITING, JOB_DELAYED, JOB_STALLED, JOB_COMPLETED, JOB_FAILED},
            job_ids=[job_id_for_document(doc.id) for doc in documents],
        )
        self.case_repo.delete(case.id)
        if self.uploads_dir is not None:
            for doc in documents:
                staged = Path(doc.source_location)
                if staged.parent == self.uploads_dir / case.id:
                    staged.unlink(missing_ok=True)
        logger.info("Case %s deleted", case.id)

    def retry_case(self, case_id: str) -> RetryResult:
        case = self._require_case(case_id)
        if case.status != ERROR:
            raise RetryRejectedError(f"Only cases in error can be retried (case {case.id} is {case.status})")
        errored = self.document_repo.list_for_case(case.id, status=ERROR)
        if not errored:
            raise RetryRejectedError(f"Case {case.id} has no documents in error to retry")

        for document in errored:
            self.document_repo.reset_for_retry(document.id, now=now_utc_iso())
        self.case_repo.set_status(case.id, PROCESSING, now=now_utc_iso())
        self.case_status_service.recompute(case.id)
        for document in errored:
            self.job_queue.enqueue(self._payload_for(document), priority=document.priority)
        logger.info("Case %s: %s document(s) queued for retry", case.id, len(errored))
        return RetryResult(case_id=case.id, retried_document_ids=[doc.id for doc in errored])

    def _require_case(self, case_id: str) -> Case:
        case = self.case_repo.get_by_id(case_id)
        if case is None:
            raise CaseNotFoundError(f"Case not found: {case_id}")
        return case

    def _stage_source(self, case_id: str, document_id: str, source: Path) -> Path:
        if self.uploads_dir is None:
            return source
        suffix = source.suffix[:32]
        target = self.uploads_dir / case_id / f"{document_id}{suffix}"
        safe_copy_atomic(source, target)
        return target

    @staticmethod
    def _payload_for(document: Document) -> JobPayload:
        return JobPayload(
            document_id=document.id,
            case_id=document.case_id,
            display_name=document.display_name,
            source_location=document.source_location,
            priority=document.priority,
        )
