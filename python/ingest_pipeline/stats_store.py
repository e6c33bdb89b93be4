"""
Processing Statistics Store

Per-user processing counters, a bounded processing history and the
auto-processing setting. The orchestrator records every outcome here and
copies the setting onto each candidate it builds.
"""

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal

from .config import StatsSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessingRecord:
    """One processed artifact in a user's history."""

    origin_name: str
    media_type: str
    size_bytes: int
    success: bool
    message: str
    processed_at: datetime
    amount: Decimal | None = None

    def to_dict(self) -> dict:
        return {
            "file_name": self.origin_name,
            "file_type": self.media_type,
            "file_size": self.size_bytes,
            "success": self.success,
            "message": self.message,
            "timestamp": self.processed_at.isoformat(),
            "amount": float(self.amount) if self.amount is not None else None
        }


@dataclass
class UserProcessingStats:
    """Counters for one user."""

    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    by_media_type: dict[str, int] = field(default_factory=dict)
    last_processed: datetime | None = None
    auto_processing_enabled: bool = True

    @property
    def success_rate(self) -> float:
        if self.total_processed == 0:
            return 0.0
        return self.successful / self.total_processed * 100

    def to_dict(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "successful_extractions": self.successful,
            "failed_extractions": self.failed,
            "success_rate": self.success_rate,
            "by_file_type": dict(self.by_media_type),
            "last_processed": self.last_processed.isoformat() if self.last_processed else None,
            "auto_processing_enabled": self.auto_processing_enabled
        }


class ProcessingStatsStore(ABC):
    """Storage for per-user processing statistics."""

    @abstractmethod
    def record_outcome(
        self,
        user_id: str,
        origin_name: str,
        media_type: str,
        size_bytes: int,
        success: bool,
        message: str,
        amount: Decimal | None = None
    ) -> None:
        """Record one processed artifact."""

    @abstractmethod
    def get_statistics(self, user_id: str) -> UserProcessingStats:
        """Snapshot of a user's counters."""

    @abstractmethod
    def get_history(self, user_id: str) -> list[ProcessingRecord]:
        """Snapshot of a user's recent processing history, oldest first."""

    @abstractmethod
    def set_auto_processing(self, user_id: str, enabled: bool) -> None:
        """Enable or disable automatic processing for a user."""

    @abstractmethod
    def is_auto_processing_enabled(self, user_id: str) -> bool:
        """Auto-processing flag; enabled unless the user turned it off."""


class InMemoryStatsStore(ProcessingStatsStore):
    """Lock-protected in-process implementation."""

    def __init__(self, settings: StatsSettings | None = None):
        self.settings = settings or StatsSettings()
        self._lock = threading.Lock()
        self._stats: dict[str, UserProcessingStats] = {}
        self._history: dict[str, deque[ProcessingRecord]] = {}

    def record_outcome(
        self,
        user_id: str,
        origin_name: str,
        media_type: str,
        size_bytes: int,
        success: bool,
        message: str,
        amount: Decimal | None = None
    ) -> None:
        now = datetime.now()
        record = ProcessingRecord(
            origin_name=origin_name,
            media_type=media_type,
            size_bytes=size_bytes,
            success=success,
            message=message,
            processed_at=now,
            amount=amount
        )

        with self._lock:
            history = self._history.setdefault(
                user_id, deque(maxlen=self.settings.history_size)
            )
            history.append(record)

            stats = self._stats.setdefault(user_id, UserProcessingStats())
            stats.total_processed += 1
            if success:
                stats.successful += 1
            else:
                stats.failed += 1
            stats.by_media_type[media_type] = stats.by_media_type.get(media_type, 0) + 1
            stats.last_processed = now

        logger.debug(f"Recorded {'success' if success else 'failure'} for user {user_id}: {origin_name}")

    def get_statistics(self, user_id: str) -> UserProcessingStats:
        with self._lock:
            stats = self._stats.get(user_id)
            if stats is None:
                return UserProcessingStats()
            return replace(stats, by_media_type=dict(stats.by_media_type))

    def get_history(self, user_id: str) -> list[ProcessingRecord]:
        with self._lock:
            return list(self._history.get(user_id, ()))

    def set_auto_processing(self, user_id: str, enabled: bool) -> None:
        with self._lock:
            self._stats.setdefault(user_id, UserProcessingStats()).auto_processing_enabled = enabled
        logger.info(f"Auto-processing {'enabled' if enabled else 'disabled'} for user {user_id}")

    def is_auto_processing_enabled(self, user_id: str) -> bool:
        with self._lock:
            stats = self._stats.get(user_id)
            return stats.auto_processing_enabled if stats else True
