from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from casefolio.application.services.engine_pool import RecognitionEnginePool
from casefolio.application.services.notifier import TARGET_DOCUMENT, Notifier, safe_notify
from casefolio.application.services.page_processor import PAGE_DONE, PageStateMachine
from casefolio.application.services.status_service import CaseStatusService, document_progress
from casefolio.core.errors import DocumentFatalError, TransientJobError
from casefolio.core.time import now_utc_iso
from casefolio.domain.models.document import SEGMENT_DONE, SEGMENT_ERROR
from casefolio.domain.models.job import JobPayload
from casefolio.domain.models.status import DONE, ERROR
from casefolio.infrastructure.db.repos.document_repo import DocumentRepo
from casefolio.infrastructure.rendering.pdf_renderer import PageRenderer, RenderHandle

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DocumentRunResult:
    document_id: str
    case_id: str
    status: str
    page_count: int
    pages_failed: int
    pages_reused: int
    text_length: int
    elapsed_seconds: float


class DocumentWorker:
    def __init__(
        self,
        *,
        document_repo: DocumentRepo,
        case_status_service: CaseStatusService,
        renderer: PageRenderer,
        engine_pool: RecognitionEnginePool,
        notifier: Notifier | None = None,
        render_scale: float = 1.0,
    ) -> None:
        self.document_repo = document_repo
        self.case_status_service = case_status_service
        self.renderer = renderer
        self.engine_pool = engine_pool
        self.notifier = notifier
        self.page_machine = PageStateMachine(
            renderer=renderer,
            engine_pool=engine_pool,
            render_scale=render_scale,
            on_transition=self._log_transition,
        )

    def run(
        self,
        payload: JobPayload,
        *,
        progress_callback: Callable[[int], None] | None = None,
    ) -> DocumentRunResult | None:
        document_id = payload.document_id
        document = self.document_repo.get_by_id(document_id)
        if document is None:
            logger.warning("Document %s no longer exists; nothing to process", document_id)
            return None

        started = time.perf_counter()
        logger.info("Processing started: %s", payload.display_name)
        try:
            self.document_repo.mark_processing(document_id, now=now_utc_iso())
            self.case_status_service.recompute(payload.case_id)
            try:
                self.engine_pool.initialize()
            except Exception as exc:
                raise TransientJobError(
                    f"Recognition engines unavailable: {exc}",
                    document_id=document_id,
                ) from exc

            handle = self._open(payload)
            try:
                result = self._process_pages(payload, handle, progress_callback)
            finally:
                self.renderer.close(handle)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error("Processing failed for %s: %s", payload.display_name, message)
            self.document_repo.mark_error(document_id, message, now=now_utc_iso())
            safe_notify(self.notifier, TARGET_DOCUMENT, document_id, ERROR)
            self.case_status_service.recompute(payload.case_id)
            raise

        result.elapsed_seconds = time.perf_counter() - started
        logger.info(
            "Processing finished: %s (%s pages, %s failed, %s reused, %.2fs)",
            payload.display_name,
            result.page_count,
            result.pages_failed,
            result.pages_reused,
            result.elapsed_seconds,
        )
        safe_notify(self.notifier, TARGET_DOCUMENT, document_id, DONE)
        return result

    def _open(self, payload: JobPayload) -> RenderHandle:
        try:
            return self.renderer.open(payload.source_location)
        except DocumentFatalError as exc:
            exc.document_id = exc.document_id or payload.document_id
            raise
        except Exception as exc:
            raise DocumentFatalError(
                f"Unable to open {payload.display_name}: {exc}",
                document_id=payload.document_id,
            ) from exc

    def _process_pages(
        self,
        payload: JobPayload,
        handle: RenderHandle,
        progress_callback: Callable[[int], None] | None,
    ) -> DocumentRunResult:
        document_id = payload.document_id
        total_pages = int(handle.page_count)
        if total_pages <= 0:
            raise DocumentFatalError(
                f"{payload.display_name} has no readable pages",
                document_id=document_id,
            )
        self.document_repo.set_page_count(document_id, total_pages, now=now_utc_iso())

        cached = {
            segment.page_number: segment.text
            for segment in self.document_repo.list_segments(document_id)
            if segment.state == SEGMENT_DONE and segment.text
        }
        texts: list[str] = []
        pages_failed = 0
        pages_reused = 0

        for page_number in range(1, total_pages + 1):
            progress = document_progress(page_number, total_pages)
            cached_text = cached.get(page_number)
            if cached_text is not None:
                texts.append(cached_text)
                pages_reused += 1
                self.document_repo.advance_page(
                    document_id,
                    page_number=page_number,
                    progress=progress,
                    now=now_utc_iso(),
                )
            else:
                outcome = self.page_machine.run(handle, page_number, document_id=document_id)
                if outcome.state != PAGE_DONE:
                    pages_failed += 1
                texts.append(outcome.text)
                self.document_repo.record_page(
                    document_id,
                    page_number=page_number,
                    state=SEGMENT_DONE if outcome.state == PAGE_DONE else SEGMENT_ERROR,
                    text=outcome.text,
                    progress=progress,
                    now=now_utc_iso(),
                )
            self.case_status_service.recompute(payload.case_id)
            if progress_callback is not None:
                try:
                    progress_callback(progress)
                except Exception as exc:
                    logger.warning("Progress report failed for %s: %s", payload.display_name, exc)

        full_text = "".join(texts)
        self.document_repo.mark_done(
            document_id,
            extracted_text=full_text,
            page_count=total_pages,
            now=now_utc_iso(),
        )
        self.case_status_service.recompute(payload.case_id)
        return DocumentRunResult(
            document_id=document_id,
            case_id=payload.case_id,
            status=DONE,
            page_count=total_pages,
            pages_failed=pages_failed,
            pages_reused=pages_reused,
            text_length=len(full_text),
            elapsed_seconds=0.0,
        )

    @staticmethod
    def _log_transition(page_number: int, previous: str, new_state: str) -> None:
        logger.debug("Page %s: %s -> %s", page_number, previous, new_state)
