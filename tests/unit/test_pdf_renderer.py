from __future__ import annotations

import io
from pathlib import Path

import fitz
import pytest
from PIL import Image

from casefolio.core.errors import DocumentFatalError, PageRenderError
from casefolio.infrastructure.rendering.pdf_renderer import PyMuPdfRenderer


def _make_pdf(path: Path, pages: int, **save_kwargs) -> Path:
    doc = fitz.open()
    for index in range(pages):
        page = doc.new_page(width=200, height=100)
        page.insert_text((20, 50), f"Page {index + 1}")
    doc.save(str(path), **save_kwargs)
    doc.close()
    return path


def test_renders_pages_to_png_at_requested_scale(tmp_path: Path) -> None:
    renderer = PyMuPdfRenderer()
    handle = renderer.open(str(_make_pdf(tmp_path / "two.pdf", 2)))
    try:
        png = renderer.render(handle, 2, scale=2.0)
    finally:
        renderer.close(handle)

    assert handle.page_count == 2
    assert handle.native is None
    with Image.open(io.BytesIO(png)) as image:
        assert image.format == "PNG"
        assert image.size == (400, 200)


def test_page_outside_document_is_a_page_error(tmp_path: Path) -> None:
    renderer = PyMuPdfRenderer()
    handle = renderer.open(str(_make_pdf(tmp_path / "one.pdf", 1)))
    try:
        with pytest.raises(PageRenderError) as excinfo:
            renderer.render(handle, 3)
    finally:
        renderer.close(handle)

    assert excinfo.value.page_number == 3


def test_missing_source_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(DocumentFatalError, match="not found"):
        PyMuPdfRenderer().open(str(tmp_path / "absent.pdf"))


def test_garbage_file_is_fatal(tmp_path: Path) -> None:
    path = tmp_path / "garbage.pdf"
    path.write_bytes(b"this is not a pdf at all")

    with pytest.raises(DocumentFatalError):
        PyMuPdfRenderer().open(str(path))


def test_password_protected_pdf_is_fatal(tmp_path: Path) -> None:
    path = _make_pdf(
        tmp_path / "locked.pdf",
        1,
        encryption=fitz.PDF_ENCRYPT_AES_256,
        owner_pw="owner",
        user_pw="user",
    )

    with pytest.raises(DocumentFatalError, match="password protected"):
        PyMuPdfRenderer().open(str(path))
