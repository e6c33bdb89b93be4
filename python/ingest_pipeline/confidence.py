"""
Confidence Scorer Module

Heuristic 0-100 trust score for an extraction and the fields parsed from it.
"""

import logging

from .config import ConfidenceSettings
from .field_parser import FieldParser
from .models import DOCUMENT_STRATEGIES, ExtractionResult, ParsedFields

logger = logging.getLogger(__name__)


class ConfidenceScorer:
    """Scores extraction quality from matched fields and text length."""

    def __init__(
        self,
        settings: ConfidenceSettings | None = None,
        parser: FieldParser | None = None
    ):
        self.settings = settings or ConfidenceSettings()
        self.parser = parser or FieldParser()

    def score(self, result: ExtractionResult, parsed: ParsedFields) -> float:
        """Score an extraction together with its parsed fields.

        Text read from the document itself (embedded PDF text, plain text)
        gets the document baseline; OCR output is scored from the fields found.
        """
        if not result.has_text:
            return 0.0

        if result.strategy_used in DOCUMENT_STRATEGIES:
            return self.settings.document_baseline

        return self._field_score(result.text, parsed)

    def score_text(self, text: str | None) -> float:
        """Score bare OCR text by parsing it first."""
        if not text or not text.strip():
            return 0.0
        return self._field_score(text, self.parser.parse(text))

    def _field_score(self, text: str, parsed: ParsedFields) -> float:
        s = self.settings
        confidence = s.base_score

        if parsed.amount is not None:
            confidence += s.amount_bonus
        if parsed.date is not None:
            confidence += s.date_bonus
        if parsed.counterparty_handle is not None:
            confidence += s.handle_bonus
        if parsed.transaction_ref is not None:
            confidence += s.reference_bonus

        # Very short OCR output is usually noise
        if len(text.strip()) < s.short_text_length:
            confidence -= s.short_text_penalty

        return max(0.0, min(100.0, confidence))
