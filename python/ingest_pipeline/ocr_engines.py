"""
OCR Engines

Engines that turn a preprocessed page image into raw text. Tesseract is the
default; a Claude vision engine can be injected where Tesseract is unavailable.
"""

import base64
import hashlib
import io
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import anthropic
import pytesseract
from PIL import Image

from .config import ExtractionSettings

logger = logging.getLogger(__name__)


class OcrEngine(ABC):
    """Interface for OCR backends."""

    name: str = "ocr"

    @abstractmethod
    def image_to_text(self, image: Image.Image) -> str:
        """Run OCR over an image.

        Raises:
            Exception: Engine-specific errors; callers degrade them to failures
        """


class TesseractOcrEngine(OcrEngine):
    """OCR through the local Tesseract binary."""

    name = "tesseract"

    def __init__(self, settings: ExtractionSettings | None = None):
        settings = settings or ExtractionSettings()
        self.lang = settings.tesseract_lang
        self.config = f"--oem {settings.tesseract_oem} --psm {settings.tesseract_psm}"
        self.timeout = settings.ocr_timeout_seconds

    def image_to_text(self, image: Image.Image) -> str:
        return pytesseract.image_to_string(
            image,
            lang=self.lang,
            config=self.config,
            timeout=self.timeout
        )

    def is_available(self) -> bool:
        """Check that the Tesseract binary can be found."""
        try:
            pytesseract.get_tesseract_version()
            return True
        except pytesseract.TesseractNotFoundError:
            return False


@dataclass
class VisionOcrRequest:
    """A single page transcription request."""

    image_png: bytes
    prompt: str
    model: str
    max_tokens: int = 4096

    @property
    def image_hash(self) -> str:
        return hashlib.sha256(self.image_png).hexdigest()[:16]


@dataclass
class VisionOcrResponse:
    """Transcription returned by the vision model."""

    text: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    notes: list[str] = field(default_factory=list)


class VisionOcrEngine(OcrEngine):
    """OCR through the Claude vision API."""

    name = "claude_vision"

    DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

    TRANSCRIBE_PROMPT = """Transcribe all text visible in this image of a payment receipt, \
bank statement page or payment app screenshot.

IMPORTANT:
- Output ONLY the transcribed text, no commentary, no markdown formatting
- Preserve line breaks between separate lines of the document
- Keep amounts, currency symbols, dates, times, UPI IDs and reference numbers exactly as shown"""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        client: anthropic.Anthropic | None = None
    ):
        """Initialize the vision engine.

        Args:
            api_key: Anthropic API key (uses ANTHROPIC_API_KEY env var if not provided)
            model: Model to use for transcription
            client: Preconfigured client, mainly for tests
        """
        self.client = client or anthropic.Anthropic(api_key=api_key)
        self.model = model or self.DEFAULT_MODEL

    def image_to_text(self, image: Image.Image) -> str:
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")

        request = VisionOcrRequest(
            image_png=buffer.getvalue(),
            prompt=self.TRANSCRIBE_PROMPT,
            model=self.model
        )
        return self.transcribe(request).text

    def transcribe(self, request: VisionOcrRequest) -> VisionOcrResponse:
        """Send one transcription request to the API.

        Raises:
            anthropic.APIError: On API failures
        """
        logger.debug(f"Transcribing page image (hash: {request.image_hash})")

        message = self.client.messages.create(
            model=request.model,
            max_tokens=request.max_tokens,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": "image/png",
                                "data": base64.standard_b64encode(request.image_png).decode("utf-8")
                            }
                        },
                        {
                            "type": "text",
                            "text": request.prompt
                        }
                    ]
                }
            ]
        )

        text = message.content[0].text.strip()
        # Remove markdown fences if the model added them anyway
        text = re.sub(r'^```\w*\s*', '', text)
        text = re.sub(r'\s*```$', '', text)

        return VisionOcrResponse(
            text=text,
            model=request.model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens
        )
