"""
Text Extractor Module

Turns uploaded artifacts into plain text: OCR for images, embedded text for
PDFs with OCR of rendered pages as fallback, and pass-through for text files.
"""

import io
import logging
import re
import time

import pdfplumber
from pdf2image import convert_from_bytes
from PIL import Image, ImageEnhance, ImageOps, UnidentifiedImageError

from .confidence import ConfidenceScorer
from .config import ExtractionSettings
from .models import ExtractionResult, ExtractionStrategy, MediaType, RawArtifact
from .ocr_engines import OcrEngine, TesseractOcrEngine

logger = logging.getLogger(__name__)

# Control characters other than tab and newline
_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b-\x1f\x7f]')
_WHITESPACE = re.compile(r'\s+')

_ATTEMPTED_STRATEGY = {
    MediaType.IMAGE: ExtractionStrategy.OCR,
    MediaType.PDF: ExtractionStrategy.EMBEDDED_TEXT,
    MediaType.PLAIN_TEXT: ExtractionStrategy.PASSTHROUGH,
    MediaType.ARCHIVE: ExtractionStrategy.PASSTHROUGH,
}


def clean_text(raw: str | None, min_line_length: int = 2) -> str:
    """Normalize OCR or embedded text.

    Strips control characters, collapses whitespace within each line and
    drops lines shorter than ``min_line_length``.
    """
    if not raw:
        return ""

    text = raw.replace('\r\n', '\n').replace('\r', '\n')
    text = _CONTROL_CHARS.sub('', text)

    lines = []
    for line in text.split('\n'):
        line = _WHITESPACE.sub(' ', line).strip()
        if len(line) >= min_line_length:
            lines.append(line)

    return '\n'.join(lines)


class TextExtractor:
    """Extracts text from artifacts; never raises to the caller."""

    def __init__(
        self,
        ocr_engine: OcrEngine | None = None,
        settings: ExtractionSettings | None = None,
        scorer: ConfidenceScorer | None = None
    ):
        """Initialize the extractor.

        Args:
            ocr_engine: OCR backend (Tesseract when not provided)
            settings: Extraction settings
            scorer: Scorer used to rate OCR output
        """
        self.settings = settings or ExtractionSettings()
        self.ocr_engine = ocr_engine or TesseractOcrEngine(self.settings)
        self.scorer = scorer or ConfidenceScorer()

    def extract(self, artifact: RawArtifact) -> ExtractionResult:
        """Extract text using the strategy for the declared media type.

        Args:
            artifact: Uploaded artifact

        Returns:
            ExtractionResult; failures carry ``text=None`` and an error message
        """
        start = time.perf_counter()
        media_type = artifact.declared_media_type

        logger.info(
            f"Extracting text from {artifact.origin_name} "
            f"({media_type.value}, {artifact.size // 1024}KB)"
        )

        try:
            if media_type == MediaType.IMAGE:
                result = self._extract_image(artifact.data)
            elif media_type == MediaType.PDF:
                result = self._extract_pdf(artifact.data)
            elif media_type == MediaType.PLAIN_TEXT:
                result = self._extract_plain_text(artifact.data)
            else:
                result = ExtractionResult(
                    strategy_used=ExtractionStrategy.PASSTHROUGH,
                    error="Archives are unpacked before extraction"
                )
        except Exception as e:
            logger.error(f"Extraction error for {artifact.origin_name}: {e}")
            result = ExtractionResult(
                strategy_used=_ATTEMPTED_STRATEGY[media_type],
                error=f"Extraction error: {e}"
            )

        result.elapsed_seconds = time.perf_counter() - start
        logger.debug(
            f"Extraction finished in {result.elapsed_seconds * 1000:.0f}ms "
            f"via {result.strategy_used.value} (confidence {result.confidence:.0f})"
        )
        return result

    def ocr_image(self, image: Image.Image) -> str:
        """Preprocess an image, run OCR and clean the output.

        Raises:
            Exception: Whatever the OCR engine raises
        """
        processed = self.preprocess_image(image)
        raw_text = self.ocr_engine.image_to_text(processed)
        return clean_text(raw_text, self.settings.min_line_length)

    def preprocess_image(self, image: Image.Image) -> Image.Image:
        """Grayscale, upscale small images and stretch contrast."""
        try:
            gray = ImageOps.grayscale(image)

            width, height = gray.size
            min_width, min_height = self.settings.min_width, self.settings.min_height
            if width < min_width or height < min_height:
                scale = max(min_width / width, min_height / height)
                gray = gray.resize(
                    (int(width * scale), int(height * scale)),
                    Image.Resampling.BICUBIC
                )

            # Stretch the histogram to the full range, then boost contrast
            processed = ImageOps.autocontrast(gray)
            processed = ImageEnhance.Contrast(processed).enhance(self.settings.contrast_factor)

            logger.debug(f"Image preprocessed to {processed.width}x{processed.height}")
            return processed
        except Exception as e:
            logger.warning(f"Error preprocessing image, using original: {e}")
            return image

    def _extract_image(self, data: bytes) -> ExtractionResult:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Could not read image: {e}")
            return ExtractionResult(
                strategy_used=ExtractionStrategy.OCR,
                error=f"Could not read image: {e}"
            )

        text = self.ocr_image(image)
        return self._ocr_result(text, ExtractionStrategy.OCR, page_count=1)

    def _extract_pdf(self, data: bytes) -> ExtractionResult:
        embedded = ""
        page_count = 0

        try:
            with pdfplumber.open(io.BytesIO(data)) as pdf:
                page_count = len(pdf.pages)
                pages = [page.extract_text() or "" for page in pdf.pages]
            embedded = clean_text("\n".join(pages), self.settings.min_line_length)
        except Exception as e:
            logger.warning(f"Embedded PDF text extraction failed, trying OCR: {e}")

        if embedded:
            return ExtractionResult(
                text=embedded,
                confidence=self.scorer.settings.document_baseline,
                strategy_used=ExtractionStrategy.EMBEDDED_TEXT,
                page_count=page_count
            )

        logger.debug(f"No embedded text, rendering pages at {self.settings.pdf_dpi} DPI for OCR")
        try:
            page_images = convert_from_bytes(data, dpi=self.settings.pdf_dpi)
        except Exception as e:
            logger.error(f"Could not render PDF pages: {e}")
            return ExtractionResult(
                strategy_used=ExtractionStrategy.OCR_FALLBACK,
                error=f"Could not render PDF pages: {e}",
                page_count=page_count
            )

        page_texts = []
        page_errors = []
        for page_number, page_image in enumerate(page_images, start=1):
            try:
                page_text = self.ocr_image(page_image)
            except Exception as e:
                logger.warning(f"OCR failed on page {page_number}: {e}")
                page_errors.append(f"Page {page_number}: {e}")
                continue

            if page_text:
                page_texts.append(page_text)
            logger.debug(f"Page {page_number}: {len(page_text)} characters")

        result = self._ocr_result(
            "\n".join(page_texts),
            ExtractionStrategy.OCR_FALLBACK,
            page_count=len(page_images)
        )
        if not result.has_text and page_errors:
            result.error = "; ".join(page_errors)
        return result

    def _extract_plain_text(self, data: bytes) -> ExtractionResult:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError:
            text = data.decode("latin-1")

        text = text.replace('\r\n', '\n').replace('\r', '\n')
        text = _CONTROL_CHARS.sub('', text).strip()

        return ExtractionResult(
            text=text,
            confidence=self.scorer.settings.document_baseline,
            strategy_used=ExtractionStrategy.PASSTHROUGH,
            page_count=1
        )

    def _ocr_result(
        self,
        text: str,
        strategy: ExtractionStrategy,
        page_count: int
    ) -> ExtractionResult:
        return ExtractionResult(
            text=text or None,
            confidence=self.scorer.score_text(text),
            strategy_used=strategy,
            page_count=page_count
        )
