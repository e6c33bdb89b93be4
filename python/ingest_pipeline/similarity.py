"""
Similarity Engine Module

Pairwise transaction similarity used for duplicate detection and for the
frequency check of the anomaly detector.
"""

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable

from .config import SimilaritySettings
from .models import HistoryRecord, ParsedFields

logger = logging.getLogger(__name__)

# (max days apart, score), checked in order
DATE_PROXIMITY_STEPS = [
    (0, 1.0),
    (1, 0.8),
    (3, 0.6),
    (7, 0.4),
    (30, 0.2),
]


@dataclass
class SimilarityMatch:
    """Best history match for a candidate."""

    record: HistoryRecord
    score: float


class SimilarityEngine:
    """Weighted amount/text/merchant/date similarity.

    Amount, free text and merchant carry 0.3 each and date proximity 0.1 by
    default, since bank timestamps are noisier than amounts.
    """

    def __init__(self, settings: SimilaritySettings | None = None):
        self.settings = settings or SimilaritySettings()

    def similarity(self, a: ParsedFields, b: ParsedFields) -> float:
        """Similarity between two transactions in [0, 1]."""
        s = self.settings
        score = (
            s.amount_weight * self.amount_similarity(a.amount, b.amount)
            + s.text_weight * self.text_similarity(a.description, b.description)
            + s.merchant_weight * self.text_similarity(a.merchant_name, b.merchant_name)
            + s.date_weight * self.date_proximity(a.date, b.date)
        )
        return max(0.0, min(1.0, score))

    def best_match(
        self,
        candidate: ParsedFields,
        records: Iterable[HistoryRecord],
        threshold: float | None = None
    ) -> SimilarityMatch | None:
        """Find the highest-scoring record at or above the threshold.

        Args:
            candidate: Parsed fields of the new transaction
            records: History records to compare against
            threshold: Minimum score (defaults to the duplicate threshold)

        Returns:
            SimilarityMatch or None
        """
        threshold = self.settings.duplicate_threshold if threshold is None else threshold
        best: SimilarityMatch | None = None

        for record in records:
            score = self.similarity(candidate, record.to_parsed_fields())
            if score >= threshold and (best is None or score > best.score):
                best = SimilarityMatch(record=record, score=score)

        if best:
            logger.debug(f"Best match {best.record.ref} with score {best.score:.3f}")
        return best

    @staticmethod
    def amount_similarity(a: Decimal | None, b: Decimal | None) -> float:
        if a is None or b is None:
            return 0.0

        a, b = abs(a), abs(b)
        if a == b:
            return 1.0

        largest = max(a, b)
        return max(0.0, float(1 - abs(a - b) / largest))

    @staticmethod
    def text_similarity(s1: str | None, s2: str | None) -> float:
        """Jaccard index on lower-cased words; two empty texts do not match."""
        words1 = set((s1 or "").lower().split())
        words2 = set((s2 or "").lower().split())

        if not words1 and not words2:
            return 0.0

        union = len(words1 | words2)
        return len(words1 & words2) / union if union > 0 else 0.0

    @staticmethod
    def date_proximity(a: date | None, b: date | None) -> float:
        if a is None or b is None:
            return 0.0

        days_apart = abs((a - b).days)
        for max_days, score in DATE_PROXIMITY_STEPS:
            if days_apart <= max_days:
                return score
        return 0.0
