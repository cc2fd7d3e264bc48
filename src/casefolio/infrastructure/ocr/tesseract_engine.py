from __future__ import annotations

import io
import shlex
import logging
from dataclasses import dataclass

from PIL import Image

from casefolio.core.errors import PageRecognitionError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TesseractConfig:
    language: str = "por"
    char_whitelist: str | None = None
    max_width: int = 2000
    page_segmentation_mode: int | None = None


class TesseractRecognizer:
    """One recognizer handle; the engine pool owns its lifetime."""

    def __init__(self, config: TesseractConfig | None = None) -> None:
        self.config = config or TesseractConfig()
        self._pytesseract = None

    def start(self) -> None:
        if self._pytesseract is not None:
            return
        import pytesseract

        try:
            version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as exc:
            raise PageRecognitionError("tesseract binary not found; install it or add it to PATH") from exc
        logger.debug("Tesseract %s ready (lang=%s)", version, self.config.language)
        self._pytesseract = pytesseract

    def recognize(self, image_bytes: bytes) -> str:
        if self._pytesseract is None:
            self.start()
        try:
            with Image.open(io.BytesIO(image_bytes)) as image:
                prepared = self._preprocess(image)
                return self._pytesseract.image_to_string(
                    prepared,
                    lang=self.config.language,
                    config=self._build_config(),
                )
        except PageRecognitionError:
            raise
        except Exception as exc:
            raise PageRecognitionError(f"Tesseract failed: {exc}") from exc

    def terminate(self) -> None:
        self._pytesseract = None

    def _preprocess(self, image: Image.Image) -> Image.Image:
        rgb = image.convert("RGB")
        width, height = rgb.size
        if width <= self.config.max_width:
            return rgb
        ratio = self.config.max_width / float(width)
        return rgb.resize((self.config.max_width, max(1, round(height * ratio))), Image.LANCZOS)

    def _build_config(self) -> str:
        parts: list[str] = []
        if self.config.page_segmentation_mode is not None:
            parts.append(f"--psm {int(self.config.page_segmentation_mode)}")
        if self.config.char_whitelist:
            parts.append("-c " + shlex.quote(f"tessedit_char_whitelist={self.config.char_whitelist}"))
        return " ".join(parts)
