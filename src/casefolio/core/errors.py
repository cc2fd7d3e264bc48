from __future__ import annotations


class CaseFolioError(Exception):
    """Base error for all user-facing CaseFolio exceptions."""


class ConfigurationError(CaseFolioError):
    """Raised when configuration is invalid or incomplete."""


class ProjectNotInitializedError(CaseFolioError):
    """Raised when .casefolio metadata is missing."""


class ValidationError(CaseFolioError):
    """Raised when model invariants fail."""


class CaseNotFoundError(ValidationError):
    """Raised when a case id does not resolve."""


class DocumentNotFoundError(ValidationError):
    """Raised when a document id does not resolve."""


class RetryRejectedError(ValidationError):
    """Raised when a case is not eligible for retry."""


class PipelineError(CaseFolioError):
    """Base for errors raised while a job is executing."""

    def __init__(self, message: str, *, document_id: str | None = None, job_id: str | None = None) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.job_id = job_id or document_id


class TransientJobError(PipelineError):
    """Infrastructure hiccup; the queue retries it with backoff."""


class PageRenderError(PipelineError):
    """Raised when a single page cannot be rasterized."""

    def __init__(self, message: str, *, page_number: int, document_id: str | None = None) -> None:
        super().__init__(message, document_id=document_id)
        self.page_number = page_number


class PageRecognitionError(PipelineError):
    """Raised when OCR fails for a single page."""

    def __init__(self, message: str, *, page_number: int | None = None, document_id: str | None = None) -> None:
        super().__init__(message, document_id=document_id)
        self.page_number = page_number


class DocumentFatalError(PipelineError):
    """Raised when the whole document cannot be processed."""
