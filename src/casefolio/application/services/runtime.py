from __future__ import annotations

from dataclasses import dataclass

from casefolio.application.services.case_service import CaseService
from casefolio.application.services.document_worker import DocumentWorker
from casefolio.application.services.engine_pool import RecognitionEnginePool
from casefolio.application.services.notifier import LoggingNotifier, Notifier
from casefolio.application.services.status_service import CaseStatusService
from casefolio.application.services.worker_pool import WorkerPool
from casefolio.core.config import AppPaths, PipelineSettings
from casefolio.infrastructure.db.repos.case_repo import CaseRepo
from casefolio.infrastructure.db.repos.document_repo import DocumentRepo
from casefolio.infrastructure.ocr.tesseract_engine import TesseractConfig, TesseractRecognizer
from casefolio.infrastructure.queue.job_queue import JobQueue
from casefolio.infrastructure.rendering.pdf_renderer import PageRenderer, PyMuPdfRenderer


@dataclass(slots=True)
class Runtime:
    paths: AppPaths
    settings: PipelineSettings
    case_repo: CaseRepo
    document_repo: DocumentRepo
    job_queue: JobQueue
    case_status_service: CaseStatusService
    case_service: CaseService
    notifier: Notifier | None = None

    def build_worker_pool(
        self,
        *,
        workers: int | None = None,
        engines: int | None = None,
        renderer: PageRenderer | None = None,
        engine_pool: RecognitionEnginePool | None = None,
    ) -> WorkerPool:
        settings = self.settings
        pool = engine_pool or RecognitionEnginePool(
            lambda: TesseractRecognizer(
                TesseractConfig(
                    language=settings.ocr_language,
                    char_whitelist=settings.ocr_whitelist,
                )
            ),
            size=engines or settings.engine_count,
        )
        document_worker = DocumentWorker(
            document_repo=self.document_repo,
            case_status_service=self.case_status_service,
            renderer=renderer or PyMuPdfRenderer(),
            engine_pool=pool,
            notifier=self.notifier,
            render_scale=settings.render_scale,
        )
        worker_pool = WorkerPool(
            job_queue=self.job_queue,
            document_worker=document_worker,
            engine_pool=pool,
            size=workers or settings.worker_count,
            poll_seconds=settings.poll_seconds,
            heartbeat_seconds=settings.heartbeat_seconds,
            stall_timeout_seconds=settings.stall_timeout_seconds,
        )
        return worker_pool


def build_runtime(
    paths: AppPaths,
    settings: PipelineSettings | None = None,
    *,
    notifier: Notifier | None = None,
) -> Runtime:
    resolved = settings or PipelineSettings()
    resolved_notifier = notifier if notifier is not None else LoggingNotifier()
    case_repo = CaseRepo(paths.db_path)
    document_repo = DocumentRepo(paths.db_path)
    job_queue = JobQueue(
        db_path=paths.db_path,
        max_attempts=resolved.job_attempts,
        backoff_seconds=resolved.job_backoff_seconds,
        default_priority=resolved.default_priority,
        completed_keep=resolved.completed_keep,
        failed_keep=resolved.failed_keep,
        max_stalled=resolved.max_stalled,
    )
    case_status_service = CaseStatusService(case_repo, notifier=resolved_notifier)
    case_service = CaseService(
        case_repo=case_repo,
        document_repo=document_repo,
        job_queue=job_queue,
        case_status_service=case_status_service,
        uploads_dir=paths.uploads_dir,
    )
    return Runtime(
        paths=paths,
        settings=resolved,
        case_repo=case_repo,
        document_repo=document_repo,
        job_queue=job_queue,
        case_status_service=case_status_service,
        case_service=case_service,
        notifier=resolved_notifier,
    )
