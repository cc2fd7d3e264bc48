from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from casefolio.core.errors import DocumentFatalError, PageRenderError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RenderHandle:
    source_location: str
    page_count: int
    native: Any = None


class PageRenderer(Protocol):
    def open(self, source_location: str) -> RenderHandle: ...

    def render(self, handle: RenderHandle, page_number: int, scale: float = 1.0) -> bytes: ...

    def close(self, handle: RenderHandle) -> None: ...


class PyMuPdfRenderer:
    """Rasterizes PDF pages to PNG bytes with PyMuPDF."""

    def open(self, source_location: str) -> RenderHandle:
        import fitz  # PyMuPDF

        path = Path(source_location)
        if not path.exists():
            raise DocumentFatalError(f"Source file not found: {source_location}")
        try:
            doc = fitz.open(str(path))
        except Exception as exc:
            raise DocumentFatalError(f"Unable to open {path.name}: {exc}") from exc
        if doc.needs_pass:
            doc.close()
            raise DocumentFatalError(f"{path.name} is password protected")
        page_count = int(doc.page_count)
        logger.debug("Opened %s (%s pages)", path.name, page_count)
        return RenderHandle(source_location=str(path), page_count=page_count, native=doc)

    def render(self, handle: RenderHandle, page_number: int, scale: float = 1.0) -> bytes:
        import fitz  # PyMuPDF

        if page_number < 1 or page_number > handle.page_count:
            raise PageRenderError(
                f"Page {page_number} is outside 1..{handle.page_count}",
                page_number=page_number,
            )
        try:
            page = handle.native.load_page(page_number - 1)
            pixmap = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            return pixmap.tobytes("png")
        except Exception as exc:
            raise PageRenderError(
                f"Failed to render page {page_number}: {exc}",
                page_number=page_number,
            ) from exc

    def close(self, handle: RenderHandle) -> None:
        if handle.native is not None:
            handle.native.close()
            handle.native = None
