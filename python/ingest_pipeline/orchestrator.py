"""
Reconciliation Orchestrator

Drives one uploaded artifact through extraction, parsing, scoring, duplicate
detection and anomaly detection, producing a transaction candidate or a
structured failure. Archives are unpacked and reconciled entry by entry.
"""

import io
import logging
import zipfile
import zlib
from abc import ABC, abstractmethod
from datetime import date, datetime
from pathlib import Path
from typing import Callable, Iterable, Union

from .anomaly_detector import AnomalyDetector
from .confidence import ConfidenceScorer
from .config import PipelineConfig
from .field_parser import FieldParser
from . import media_types
from .media_types import guess_content_type, resolve_media_type
from .models import (
    BatchReport,
    DateWindow,
    ExtractionResult,
    ExtractionStrategy,
    FailureReason,
    FailureStage,
    HistoryRecord,
    HistoryWindow,
    IngestFailure,
    MediaType,
    ParsedFields,
    RawArtifact,
    TransactionCandidate,
    UnsupportedMediaTypeError,
)
from .qr_payment import parse_qr_payment
from .similarity import SimilarityEngine
from .stats_store import InMemoryStatsStore, ProcessingStatsStore
from .text_extractor import TextExtractor

logger = logging.getLogger(__name__)

ReconcileOutcome = Union[TransactionCandidate, IngestFailure, BatchReport]

# Errors zipfile raises for unreadable, corrupt or encrypted entries
_ENTRY_READ_ERRORS = (
    zipfile.BadZipFile,
    zipfile.LargeZipFile,
    zlib.error,
    EOFError,
    OSError,
    RuntimeError,
)


class HistoryProvider(ABC):
    """Read access to the user's prior transactions in the expense store."""

    @abstractmethod
    def recent_transactions(self, user_id: str, window: DateWindow) -> Iterable[HistoryRecord]:
        """Return the user's transactions dated inside ``window``."""


class ExpenseSink(ABC):
    """Write access to the expense store, used by the upload handler."""

    @abstractmethod
    def persist(self, candidate: TransactionCandidate) -> str:
        """Persist an accepted candidate and return its reference."""


class ReconciliationOrchestrator:
    """Turns artifacts into transaction candidates for one user at a time."""

    def __init__(
        self,
        config: PipelineConfig | None = None,
        extractor: TextExtractor | None = None,
        parser: FieldParser | None = None,
        scorer: ConfidenceScorer | None = None,
        similarity: SimilarityEngine | None = None,
        anomaly_detector: AnomalyDetector | None = None,
        stats_store: ProcessingStatsStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
        config_dir: Path | str | None = None
    ):
        """Initialize the orchestrator.

        Args:
            config: Pipeline configuration (loaded from config_dir when not provided)
            extractor: Text extractor
            parser: Field parser
            scorer: Confidence scorer
            similarity: Similarity engine for duplicate detection
            anomaly_detector: Anomaly detector
            stats_store: Per-user processing statistics
            clock: Source of the current time for undated lookups
            config_dir: Directory containing ingestion.yaml
        """
        self.config = config or PipelineConfig.load(config_dir)
        self.parser = parser or FieldParser()
        self.scorer = scorer or ConfidenceScorer(self.config.confidence, self.parser)
        self.extractor = extractor or TextExtractor(
            settings=self.config.extraction,
            scorer=self.scorer
        )
        self.similarity = similarity or SimilarityEngine(self.config.similarity)
        self.anomaly_detector = anomaly_detector or AnomalyDetector(
            self.config.anomaly,
            self.similarity
        )
        self.stats_store = stats_store or InMemoryStatsStore(self.config.stats)
        self.clock = clock

    # ==================== Entry points ====================

    def reconcile(
        self,
        artifact: RawArtifact,
        user_id: str,
        history_provider: HistoryProvider,
        sender: str | None = None
    ) -> ReconcileOutcome:
        """Reconcile one artifact.

        Args:
            artifact: Uploaded artifact
            user_id: Owner of the artifact
            history_provider: Source of the user's prior transactions
            sender: SMS sender ID, used to identify the bank or UPI app

        Returns:
            TransactionCandidate, IngestFailure, or BatchReport for archives
        """
        if artifact.declared_media_type == MediaType.ARCHIVE:
            return self.reconcile_batch(artifact, user_id, history_provider)

        logger.info(f"Reconciling {artifact.origin_name} for user {user_id}")
        outcome = self._reconcile_document(artifact, user_id, history_provider, sender)
        self._record(
            user_id, artifact.origin_name, artifact.declared_media_type.value, artifact.size, outcome
        )
        return outcome

    def reconcile_upload(
        self,
        data: bytes,
        content_type: str | None,
        origin_name: str,
        user_id: str,
        history_provider: HistoryProvider
    ) -> ReconcileOutcome:
        """Upload-handler entry point; unsupported types fail before extraction."""
        try:
            artifact = RawArtifact.from_upload(data, content_type, origin_name)
        except UnsupportedMediaTypeError as e:
            logger.warning(f"Rejected upload {origin_name}: {e}")
            failure = IngestFailure(
                reason=FailureReason.UNSUPPORTED_MEDIA_TYPE,
                stage=FailureStage.EXTRACTION,
                origin_name=origin_name,
                detail=str(e)
            )
            self._record(user_id, origin_name, content_type or "unknown", len(data), failure)
            return failure

        return self.reconcile(artifact, user_id, history_provider)

    def reconcile_batch(
        self,
        artifact: RawArtifact,
        user_id: str,
        history_provider: HistoryProvider
    ) -> BatchReport:
        """Unpack a ZIP archive and reconcile each entry independently.

        Entry failures are isolated; a corrupt archive is reported as a single
        rejected entry.
        """
        logger.info(f"Reconciling archive {artifact.origin_name} for user {user_id}")
        report = self._reconcile_archive(artifact, user_id, history_provider, depth=0)

        logger.info(
            f"Archive {artifact.origin_name}: {len(report.accepted)}/{report.total_entries} "
            f"entries accepted ({report.success_rate:.1f}%)"
        )
        return report

    def reconcile_qr(
        self,
        payload: str,
        user_id: str,
        history_provider: HistoryProvider,
        origin_name: str = "qr"
    ) -> ReconcileOutcome:
        """Reconcile a scanned QR payment string (``upi://pay?pa=..&am=..``)."""
        payment = parse_qr_payment(payload)
        if payment is None:
            logger.warning(f"Not a QR payment payload: {origin_name}")
            outcome = IngestFailure(
                reason=FailureReason.NO_TRANSACTION_RECOGNIZED,
                stage=FailureStage.PARSING,
                origin_name=origin_name,
                detail="Not a QR payment payload"
            )
        else:
            result = ExtractionResult(
                text=payment.payload,
                confidence=self.scorer.settings.document_baseline,
                strategy_used=ExtractionStrategy.PASSTHROUGH,
                page_count=1
            )
            outcome = self._guarded_candidate(
                result, user_id, history_provider, origin_name,
                parsed=payment.to_parsed_fields()
            )

        self._record(user_id, origin_name, "qr", len(payload or ""), outcome)
        return outcome

    def reconcile_text(
        self,
        text: str,
        user_id: str,
        history_provider: HistoryProvider,
        origin_name: str = "sms",
        sender: str | None = None
    ) -> ReconcileOutcome:
        """Reconcile raw SMS or notification text.

        ``sender`` is the SMS sender ID (e.g. ``VM-HDFCBK``); when given it
        fills the bank name and, for wallet senders, the UPI app.
        """
        artifact = RawArtifact(
            data=(text or "").encode("utf-8"),
            declared_media_type=MediaType.PLAIN_TEXT,
            origin_name=origin_name,
            content_type="text/plain"
        )
        return self.reconcile(artifact, user_id, history_provider, sender)

    @staticmethod
    def supported_content_types() -> list[str]:
        return media_types.supported_content_types()

    # ==================== Single document ====================

    def _reconcile_document(
        self,
        artifact: RawArtifact,
        user_id: str,
        history_provider: HistoryProvider,
        sender: str | None = None
    ) -> TransactionCandidate | IngestFailure:
        try:
            result = self.extractor.extract(artifact)
        except Exception as e:
            logger.error(f"Extractor raised for {artifact.origin_name}: {e}")
            return IngestFailure(
                reason=FailureReason.EXTRACTION_FAILED,
                stage=FailureStage.EXTRACTION,
                origin_name=artifact.origin_name,
                detail=f"Extraction error: {e}"
            )

        if result.failed:
            return IngestFailure(
                reason=FailureReason.EXTRACTION_FAILED,
                stage=FailureStage.EXTRACTION,
                origin_name=artifact.origin_name,
                detail=result.error
            )

        if not result.has_text:
            return IngestFailure(
                reason=FailureReason.NO_TEXT_EXTRACTED,
                stage=FailureStage.EXTRACTION,
                origin_name=artifact.origin_name,
                detail=f"No text found via {result.strategy_used.value}"
            )

        return self._guarded_candidate(
            result, user_id, history_provider, artifact.origin_name, sender=sender
        )

    def _guarded_candidate(
        self,
        result: ExtractionResult,
        user_id: str,
        history_provider: HistoryProvider,
        origin_name: str,
        parsed: ParsedFields | None = None,
        sender: str | None = None
    ) -> TransactionCandidate | IngestFailure:
        try:
            return self._build_candidate(
                result, user_id, history_provider, origin_name, parsed, sender
            )
        except Exception as e:
            logger.error(f"Unexpected error reconciling {origin_name}: {e}")
            return IngestFailure(
                reason=FailureReason.NO_TRANSACTION_RECOGNIZED,
                stage=FailureStage.PARSING,
                origin_name=origin_name,
                detail=f"Unexpected error: {e}"
            )

    def _build_candidate(
        self,
        result: ExtractionResult,
        user_id: str,
        history_provider: HistoryProvider,
        origin_name: str,
        parsed: ParsedFields | None = None,
        sender: str | None = None
    ) -> TransactionCandidate | IngestFailure:
        if parsed is None:
            parsed = self.parser.parse_with_fallback(result.text, sender=sender)

        if not parsed.has_amount:
            logger.info(f"No transaction amount recognized in {origin_name}")
            return IngestFailure(
                reason=FailureReason.NO_TRANSACTION_RECOGNIZED,
                stage=FailureStage.PARSING,
                origin_name=origin_name,
                detail="No transaction amount found"
            )

        confidence = self.scorer.score(result, parsed)
        recorded_at = self.clock()
        diagnostics = [f"Parsed by: {', '.join(parsed.strategies) or 'none'}"]

        duplicate_window, anomaly_window = self._history_windows(parsed.date, recorded_at.date())
        history = self._fetch_history(
            user_id,
            self._covering(duplicate_window, anomaly_window),
            history_provider,
            diagnostics
        )

        candidate = TransactionCandidate(
            user_id=user_id,
            parsed=parsed,
            confidence=confidence,
            origin_name=origin_name,
            strategy_used=result.strategy_used,
            diagnostics=diagnostics,
            auto_process=self._auto_processing_enabled(user_id)
        )
        if not candidate.auto_process:
            diagnostics.append("Auto-processing disabled; review before saving")

        match = self.similarity.best_match(parsed, history.within(duplicate_window))
        if match:
            candidate.duplicate_of = match.record.ref
            candidate.duplicate_score = match.score
            diagnostics.append(f"Possible duplicate of {match.record.ref} (score {match.score:.2f})")

        flags = self.anomaly_detector.detect(parsed, history.within(anomaly_window), recorded_at)
        candidate.anomaly_flags = frozenset(flags)
        for kind in sorted(flags, key=lambda k: k.value):
            diagnostics.append(kind.description)

        logger.info(
            f"Candidate from {origin_name}: amount {parsed.amount}, "
            f"confidence {confidence:.0f}, duplicate={candidate.is_duplicate}, "
            f"anomalies={len(flags)}"
        )
        return candidate

    # ==================== History ====================

    def _history_windows(self, parsed_date: date | None, today: date) -> tuple[DateWindow, DateWindow]:
        """Duplicate and anomaly windows for a candidate.

        Dated candidates look +/- the duplicate window around their date and
        back over the anomaly window; undated ones use the recent lookback.
        """
        windows = self.config.windows

        if parsed_date is None:
            lookback = DateWindow.around(today, windows.undated_lookback_days, 0)
            return lookback, lookback

        duplicate_window = DateWindow.around(
            parsed_date, windows.duplicate_window_days, windows.duplicate_window_days
        )
        anomaly_window = DateWindow.around(parsed_date, windows.anomaly_window_days, 0)
        return duplicate_window, anomaly_window

    @staticmethod
    def _covering(a: DateWindow, b: DateWindow) -> DateWindow:
        return DateWindow(start=min(a.start, b.start), end=max(a.end, b.end))

    def _fetch_history(
        self,
        user_id: str,
        window: DateWindow,
        history_provider: HistoryProvider,
        diagnostics: list[str]
    ) -> HistoryWindow:
        """Fetch the history window once; provider errors degrade to empty history."""
        try:
            records = tuple(history_provider.recent_transactions(user_id, window))
        except Exception as e:
            logger.warning(f"History unavailable for user {user_id}: {e}")
            diagnostics.append(f"History unavailable: {e}")
            return HistoryWindow(records=(), window=window)

        logger.debug(f"Fetched {len(records)} history records for {window.start}..{window.end}")
        return HistoryWindow(records=records, window=window).within(window)

    # ==================== Archives ====================

    def _reconcile_archive(
        self,
        artifact: RawArtifact,
        user_id: str,
        history_provider: HistoryProvider,
        depth: int
    ) -> BatchReport:
        report = BatchReport()

        try:
            archive = zipfile.ZipFile(io.BytesIO(artifact.data))
        except (zipfile.BadZipFile, OSError) as e:
            logger.error(f"Corrupt archive {artifact.origin_name}: {e}")
            failure = IngestFailure(
                reason=FailureReason.MALFORMED_ARCHIVE_ENTRY,
                stage=FailureStage.EXTRACTION,
                origin_name=artifact.origin_name,
                detail=f"Corrupt archive: {e}"
            )
            report.total_entries = 1
            report.reject(failure)
            self._record(
                user_id, artifact.origin_name, artifact.declared_media_type.value,
                artifact.size, failure
            )
            return report

        with archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                report.extend(
                    self._reconcile_entry(archive, info, user_id, history_provider, depth)
                )

        return report

    def _reconcile_entry(
        self,
        archive: zipfile.ZipFile,
        info: zipfile.ZipInfo,
        user_id: str,
        history_provider: HistoryProvider,
        depth: int
    ) -> BatchReport:
        entry_name = info.filename
        report = BatchReport(total_entries=1)

        content_type = guess_content_type(entry_name)
        media_type = resolve_media_type(content_type)
        if media_type is None:
            logger.warning(f"Skipping unsupported archive entry: {entry_name}")
            report.reject(IngestFailure(
                reason=FailureReason.UNSUPPORTED_MEDIA_TYPE,
                stage=FailureStage.EXTRACTION,
                origin_name=entry_name,
                detail=f"Unsupported file type: {entry_name}"
            ))
            return report

        max_bytes = self.config.archive.max_entry_bytes
        if info.file_size > max_bytes:
            logger.warning(f"Archive entry {entry_name} too large ({info.file_size} bytes)")
            report.reject(IngestFailure(
                reason=FailureReason.MALFORMED_ARCHIVE_ENTRY,
                stage=FailureStage.EXTRACTION,
                origin_name=entry_name,
                detail=f"Entry exceeds {max_bytes} bytes"
            ))
            return report

        try:
            data = archive.read(info)
        except _ENTRY_READ_ERRORS as e:
            logger.error(f"Could not read archive entry {entry_name}: {e}")
            report.reject(IngestFailure(
                reason=FailureReason.MALFORMED_ARCHIVE_ENTRY,
                stage=FailureStage.EXTRACTION,
                origin_name=entry_name,
                detail=f"Unreadable entry: {e}"
            ))
            return report

        entry = RawArtifact(
            data=data,
            declared_media_type=media_type,
            origin_name=entry_name,
            content_type=content_type
        )

        if media_type == MediaType.ARCHIVE:
            if depth + 1 > self.config.archive.max_depth:
                logger.warning(f"Nested archive {entry_name} exceeds depth limit")
                report.reject(IngestFailure(
                    reason=FailureReason.MALFORMED_ARCHIVE_ENTRY,
                    stage=FailureStage.EXTRACTION,
                    origin_name=entry_name,
                    detail=f"Archive nesting deeper than {self.config.archive.max_depth}"
                ))
                return report
            return self._reconcile_archive(entry, user_id, history_provider, depth + 1)

        outcome = self.reconcile(entry, user_id, history_provider)
        if isinstance(outcome, TransactionCandidate):
            report.accepted.append(outcome)
        elif outcome.reason == FailureReason.EXTRACTION_FAILED:
            # Entry bytes that cannot be decoded count as a damaged entry
            report.reject(IngestFailure(
                reason=FailureReason.MALFORMED_ARCHIVE_ENTRY,
                stage=outcome.stage,
                origin_name=entry_name,
                detail=f"{outcome.reason.value}: {outcome.detail}"
            ))
        else:
            report.reject(outcome)
        return report

    # ==================== Statistics ====================

    def _record(
        self,
        user_id: str,
        origin_name: str,
        media_type: str,
        size_bytes: int,
        outcome: TransactionCandidate | IngestFailure
    ) -> None:
        success = isinstance(outcome, TransactionCandidate)
        if success:
            message = "Transaction extracted"
            if outcome.is_duplicate:
                message += f" (possible duplicate of {outcome.duplicate_of})"
        else:
            message = f"{outcome.reason.value}: {outcome.detail}"

        try:
            self.stats_store.record_outcome(
                user_id=user_id,
                origin_name=origin_name,
                media_type=media_type,
                size_bytes=size_bytes,
                success=success,
                message=message,
                amount=outcome.amount if success else None
            )
        except Exception as e:
            logger.error(f"Error recording processing statistics: {e}")

    def _auto_processing_enabled(self, user_id: str) -> bool:
        """Whether accepted candidates may be saved without review."""
        try:
            return self.stats_store.is_auto_processing_enabled(user_id)
        except Exception as e:
            logger.error(f"Error checking auto-processing setting for user {user_id}: {e}")
            return False
