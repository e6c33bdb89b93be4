"""
Anomaly Detector Module

Flags transactions that deviate from the user's recent history.
"""

import logging
from datetime import datetime
from decimal import Decimal

from .config import AnomalySettings
from .models import AnomalyKind, HistoryWindow, ParsedFields
from .similarity import SimilarityEngine

logger = logging.getLogger(__name__)


class AnomalyDetector:
    """Runs independent statistical checks against a history window."""

    def __init__(
        self,
        settings: AnomalySettings | None = None,
        similarity: SimilarityEngine | None = None
    ):
        self.settings = settings or AnomalySettings()
        self.similarity = similarity or SimilarityEngine()

    def detect(
        self,
        candidate: ParsedFields,
        history: HistoryWindow,
        recorded_at: datetime | None = None
    ) -> set[AnomalyKind]:
        """Run every check; a candidate may carry any combination of flags.

        Args:
            candidate: Parsed fields of the new transaction
            history: The user's history window
            recorded_at: Upload/receipt time used when no time was parsed

        Returns:
            Set of triggered AnomalyKind values
        """
        flags = set()

        if self.is_amount_outlier(candidate, history):
            flags.add(AnomalyKind.AMOUNT_OUTLIER)
        if self.is_unusual_hour(candidate, recorded_at):
            flags.add(AnomalyKind.UNUSUAL_HOUR)
        if self.is_high_frequency(candidate, history):
            flags.add(AnomalyKind.HIGH_FREQUENCY)
        if self.is_novel_merchant(candidate, history):
            flags.add(AnomalyKind.NOVEL_MERCHANT)

        if flags:
            logger.info(
                f"Anomalies detected: {sorted(kind.value for kind in flags)} "
                f"(history size {len(history)})"
            )
        return flags

    def is_amount_outlier(self, candidate: ParsedFields, history: HistoryWindow) -> bool:
        """Amount above mean + k * sample standard deviation."""
        amounts = history.amounts
        if candidate.amount is None or len(amounts) < 2:
            return False

        mean = self._mean(amounts)
        std_dev = self._sample_std_dev(amounts, mean)
        threshold = mean + Decimal(str(self.settings.stddev_multiplier)) * std_dev

        return candidate.amount > threshold

    def is_unusual_hour(
        self,
        candidate: ParsedFields,
        recorded_at: datetime | None = None
    ) -> bool:
        if candidate.time is not None:
            hour = candidate.time.hour
        elif recorded_at is not None:
            hour = recorded_at.hour
        else:
            return False

        return hour < self.settings.earliest_normal_hour or hour > self.settings.latest_normal_hour

    def is_high_frequency(self, candidate: ParsedFields, history: HistoryWindow) -> bool:
        """More than N history entries closely resemble the candidate."""
        if not history:
            return False

        similar = 0
        for record in history:
            score = self.similarity.similarity(candidate, record.to_parsed_fields())
            if score >= self.settings.frequency_similarity:
                similar += 1

        return similar > self.settings.frequency_max_similar

    def is_novel_merchant(self, candidate: ParsedFields, history: HistoryWindow) -> bool:
        """Merchant never seen before; always true on an empty history."""
        if not candidate.merchant_name:
            return False
        return candidate.merchant_name not in history.merchants

    @staticmethod
    def _mean(values: list[Decimal]) -> Decimal:
        return sum(values) / len(values)

    @staticmethod
    def _sample_std_dev(values: list[Decimal], mean: Decimal) -> Decimal:
        variance = sum((v - mean) ** 2 for v in values) / (len(values) - 1)
        return variance.sqrt()
