from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from casefolio.application.services.engine_pool import RecognitionEnginePool
from casefolio.core.errors import PageRecognitionError, PageRenderError, ValidationError
from casefolio.infrastructure.rendering.pdf_renderer import PageRenderer, RenderHandle

logger = logging.getLogger(__name__)

PAGE_PENDING = "pending"
PAGE_RENDERING = "rendering"
PAGE_RECOGNIZING = "recognizing"
PAGE_DONE = "done"
PAGE_ERROR = "page-error"

_ALLOWED_TRANSITIONS = {
    PAGE_PENDING: {PAGE_RENDERING},
    PAGE_RENDERING: {PAGE_RECOGNIZING, PAGE_ERROR},
    PAGE_RECOGNIZING: {PAGE_DONE, PAGE_ERROR},
    PAGE_DONE: set(),
    PAGE_ERROR: set(),
}

PAGE_ERROR_PLACEHOLDER = "[Error processing this page]\n"


def format_page_segment(page_number: int, body: str) -> str:
    return f"\n\n========== PAGE {page_number} ==========\n\n{body}"


def page_error_segment(page_number: int) -> str:
    return format_page_segment(page_number, PAGE_ERROR_PLACEHOLDER)


@dataclass(slots=True)
class PageOutcome:
    page_number: int
    state: str
    text: str
    error: str | None = None


class PageStateMachine:
    """Drives one page through render -> recognize -> done | page-error.

    Render and recognition failures never escape: they end the page in
    ``page-error`` with the placeholder text so the document can move on.
    """

    def __init__(
        self,
        *,
        renderer: PageRenderer,
        engine_pool: RecognitionEnginePool,
        render_scale: float = 1.0,
        on_transition: Callable[[int, str, str], None] | None = None,
    ) -> None:
        self.renderer = renderer
        self.engine_pool = engine_pool
        self.render_scale = render_scale
        self._on_transition = on_transition

    def run(self, handle: RenderHandle, page_number: int, *, document_id: str | None = None) -> PageOutcome:
        state = PAGE_PENDING

        def advance(new_state: str) -> None:
            nonlocal state
            if new_state not in _ALLOWED_TRANSITIONS[state]:
                raise ValidationError(f"Illegal page transition {state} -> {new_state} (page {page_number})")
            previous, state = state, new_state
            if self._on_transition is not None:
                self._on_transition(page_number, previous, new_state)

        advance(PAGE_RENDERING)
        try:
            image_bytes = self._render(handle, page_number)
            advance(PAGE_RECOGNIZING)
            body = self._recognize(image_bytes, page_number)
        except (PageRenderError, PageRecognitionError) as exc:
            exc.document_id = exc.document_id or document_id
            logger.warning("Page %s of document %s failed: %s", page_number, document_id, exc)
            advance(PAGE_ERROR)
            return PageOutcome(
                page_number=page_number,
                state=PAGE_ERROR,
                text=page_error_segment(page_number),
                error=str(exc),
            )

        advance(PAGE_DONE)
        return PageOutcome(
            page_number=page_number,
            state=PAGE_DONE,
            text=format_page_segment(page_number, body),
        )

    def _render(self, handle: RenderHandle, page_number: int) -> bytes:
        try:
            return self.renderer.render(handle, page_number, self.render_scale)
        except PageRenderError:
            raise
        except Exception as exc:
            raise PageRenderError(str(exc) or exc.__class__.__name__, page_number=page_number) from exc

    def _recognize(self, image_bytes: bytes, page_number: int) -> str:
        try:
            return self.engine_pool.recognize(image_bytes)
        except PageRecognitionError as exc:
            exc.page_number = exc.page_number or page_number
            raise
        except Exception as exc:
            raise PageRecognitionError(str(exc) or exc.__class__.__name__, page_number=page_number) from exc
