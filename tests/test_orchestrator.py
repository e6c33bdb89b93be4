"""
Reconciliation Orchestrator Tests

End-to-end tests of the pipeline with a mocked OCR engine and fixed history.
"""

import io
import zipfile
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import pytest
from PIL import Image

import sys
sys.path.insert(0, str(Path(__file__).parent.parent / "python"))

from ingest_pipeline.config import ArchiveSettings, PipelineConfig
from ingest_pipeline.models import (
    AnomalyKind,
    BatchReport,
    ExtractionResult,
    ExtractionStrategy,
    FailureReason,
    FailureStage,
    HistoryRecord,
    IngestFailure,
    MediaType,
    RawArtifact,
    TransactionCandidate,
)
from ingest_pipeline.orchestrator import ReconciliationOrchestrator
from ingest_pipeline.text_extractor import TextExtractor


def _zip(entries: dict, compression=zipfile.ZIP_STORED) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression) as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return buffer.getvalue()


@pytest.fixture
def orchestrator(mock_ocr_engine, fixed_now):
    config = PipelineConfig()
    return ReconciliationOrchestrator(
        config=config,
        extractor=TextExtractor(ocr_engine=mock_ocr_engine, settings=config.extraction),
        clock=lambda: fixed_now
    )


class TestReconcileText:
    """Tests for single text artifacts."""

    def test_candidate_from_sms(self, orchestrator, empty_history, sample_sms_text):
        outcome = orchestrator.reconcile_text(sample_sms_text, "user-1", empty_history)

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.amount == Decimal("1250.00")
        assert outcome.parsed.merchant_name == "Fresh Mart"
        assert outcome.confidence == 95
        assert outcome.strategy_used == ExtractionStrategy.PASSTHROUGH
        assert outcome.duplicate_of is None
        assert outcome.anomaly_flags == frozenset({AnomalyKind.NOVEL_MERCHANT})
        assert outcome.title == "PhonePe - Fresh Mart"

    def test_expense_record(self, orchestrator, empty_history, sample_sms_text):
        record = orchestrator.reconcile_text(sample_sms_text, "user-1", empty_history).to_expense_record()

        assert record["payment_method"] == "UPI"
        assert record["currency_code"] == "INR"
        assert record["transaction_type"] == "DEBIT"
        assert record["reference_number"] == "503412345678"
        assert record["expense_date"] == date(2025, 1, 15)
        assert record["description"] == "UPI Transaction via PhonePe to freshmart@ybl (Ref: 503412345678)"

    def test_duplicate_detected(self, orchestrator, make_history_provider,
                                sample_sms_text, sample_history_record):
        history = make_history_provider([sample_history_record])

        outcome = orchestrator.reconcile_text(sample_sms_text, "user-1", history)

        assert outcome.duplicate_of == "EXP-1001"
        assert outcome.duplicate_score == pytest.approx(0.98)
        assert AnomalyKind.NOVEL_MERCHANT not in outcome.anomaly_flags

    def test_reupload_of_saved_expense_is_duplicate(self, orchestrator, make_history_provider,
                                                    sample_sms_text):
        """Test an expense saved from a candidate is found again when the same SMS arrives."""
        first = orchestrator.reconcile_text(sample_sms_text, "user-1", make_history_provider())
        saved = first.to_expense_record()
        stored = HistoryRecord(
            ref="EXP-1",
            amount=saved["amount"],
            date=saved["expense_date"],
            time=saved["expense_time"],
            merchant_name=saved["merchant_name"],
            description=saved["description"]
        )

        second = orchestrator.reconcile_text(sample_sms_text, "user-1", make_history_provider([stored]))

        assert second.duplicate_of == "EXP-1"
        assert second.duplicate_score == pytest.approx(1.0)

    def test_sender_identifies_bank(self, orchestrator, empty_history, sample_sms_text):
        outcome = orchestrator.reconcile_text(sample_sms_text, "user-1", empty_history, sender="VM-HDFCBK")

        assert outcome.parsed.bank_name == "HDFC Bank"
        assert outcome.parsed.account_number == "XX1234"
        assert outcome.to_expense_record()["bank_name"] == "HDFC Bank"

    def test_auto_processing_flag(self, orchestrator, empty_history, sample_sms_text):
        orchestrator.stats_store.set_auto_processing("user-1", False)

        held = orchestrator.reconcile_text(sample_sms_text, "user-1", empty_history)
        other = orchestrator.reconcile_text(sample_sms_text, "user-2", empty_history)

        assert held.auto_process is False
        assert "Auto-processing disabled; review before saving" in held.diagnostics
        assert other.auto_process is True

    def test_auto_processing_store_error(self, mock_ocr_engine, empty_history, sample_sms_text):
        stats_store = Mock()
        stats_store.is_auto_processing_enabled.side_effect = RuntimeError("store down")
        orchestrator = ReconciliationOrchestrator(
            config=PipelineConfig(),
            extractor=TextExtractor(ocr_engine=mock_ocr_engine),
            stats_store=stats_store
        )

        outcome = orchestrator.reconcile_text(sample_sms_text, "user-1", empty_history)

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.auto_process is False

    def test_duplicate_search_limited_to_window(self, orchestrator, make_history_provider,
                                                sample_sms_text, sample_history_record):
        """Test identical records outside +/-30 days are not duplicates but still count as history."""
        old = HistoryRecord(
            ref="EXP-OLD",
            amount=sample_history_record.amount,
            date=date(2025, 1, 15) - timedelta(days=45),
            merchant_name="Fresh Mart",
            description=sample_history_record.description
        )

        outcome = orchestrator.reconcile_text(sample_sms_text, "user-1", make_history_provider([old]))

        assert outcome.duplicate_of is None
        assert AnomalyKind.NOVEL_MERCHANT not in outcome.anomaly_flags

    def test_history_fetched_once_with_covering_window(self, orchestrator, make_history_provider,
                                                       sample_sms_text):
        history = make_history_provider()

        orchestrator.reconcile_text(sample_sms_text, "user-1", history)

        assert len(history.calls) == 1
        user_id, window = history.calls[0]
        assert user_id == "user-1"
        assert window.start == date(2025, 1, 15) - timedelta(days=90)
        assert window.end == date(2025, 1, 15) + timedelta(days=30)

    def test_undated_uses_recent_lookback(self, orchestrator, make_history_provider, fixed_now):
        history = make_history_provider()

        outcome = orchestrator.reconcile_text("Paid Rs. 500 to bravo@upi", "user-1", history)

        assert isinstance(outcome, TransactionCandidate)
        _, window = history.calls[0]
        assert window.end == fixed_now.date()
        assert window.start == fixed_now.date() - timedelta(days=90)

    def test_history_error_degrades(self, orchestrator, make_history_provider, sample_sms_text):
        history = make_history_provider(error=ConnectionError("store offline"))

        outcome = orchestrator.reconcile_text(sample_sms_text, "user-1", history)

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.duplicate_of is None
        assert any("History unavailable" in d for d in outcome.diagnostics)

    def test_anomalies_are_informational(self, orchestrator, make_history_provider):
        records = [
            HistoryRecord(f"EXP-{i}", Decimal("100"), date(2025, 1, i + 1),
                          merchant_name="Fresh Mart", description="Groceries")
            for i in range(5)
        ]
        text = "Rs. 25,000 paid to Gold House, on 14-01-2025 at 02:10 via gpay"

        outcome = orchestrator.reconcile_text(text, "user-1", make_history_provider(records))

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.anomaly_flags == frozenset({
            AnomalyKind.AMOUNT_OUTLIER,
            AnomalyKind.UNUSUAL_HOUR,
            AnomalyKind.NOVEL_MERCHANT,
        })
        assert AnomalyKind.UNUSUAL_HOUR.description in outcome.diagnostics

    def test_generic_amount_fallback(self, orchestrator, empty_history):
        outcome = orchestrator.reconcile_text("BIG BAZAAR\nGrand Total 450.00", "user-1", empty_history)

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.amount == Decimal("450.00")
        assert outcome.parsed.strategies == ["generic_amount"]

    def test_no_amount(self, orchestrator, empty_history):
        outcome = orchestrator.reconcile_text("Hello, how are you doing today?", "user-1", empty_history)

        assert isinstance(outcome, IngestFailure)
        assert outcome.reason == FailureReason.NO_TRANSACTION_RECOGNIZED
        assert outcome.stage == FailureStage.PARSING
        assert empty_history.calls == []

    def test_blank_text(self, orchestrator, empty_history):
        outcome = orchestrator.reconcile_text("   ", "user-1", empty_history)

        assert outcome.reason == FailureReason.NO_TEXT_EXTRACTED
        assert outcome.stage == FailureStage.EXTRACTION

    def test_idempotent(self, orchestrator, make_history_provider,
                        sample_sms_text, sample_history_record):
        history = make_history_provider([sample_history_record])
        artifact = RawArtifact(sample_sms_text.encode(), MediaType.PLAIN_TEXT, "sms.txt")

        first = orchestrator.reconcile(artifact, "user-1", history)
        second = orchestrator.reconcile(artifact, "user-1", history)

        assert first.to_dict() == second.to_dict()


class TestReconcileDocuments:
    """Tests for image and PDF artifacts."""

    def test_image_receipt(self, orchestrator, empty_history, png_bytes):
        outcome = orchestrator.reconcile_upload(
            png_bytes, "image/png", "receipt.png", "user-1", empty_history
        )

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.amount == Decimal("500.00")
        assert outcome.parsed.date == date(2025, 1, 10)
        assert outcome.strategy_used == ExtractionStrategy.OCR
        assert outcome.confidence == 85

    def test_scanned_pdf_falls_back_to_ocr(self, orchestrator, mock_ocr_engine, empty_history):
        """Test a PDF without embedded text is OCR'd end to end."""
        mock_ocr_engine.image_to_text.return_value = "Amount paid ₹500 to shop@okaxis"
        pdf = MagicMock()
        page = Mock()
        page.extract_text.return_value = ""
        pdf.pages = [page]

        with patch("ingest_pipeline.text_extractor.pdfplumber") as mock_pdfplumber, \
                patch("ingest_pipeline.text_extractor.convert_from_bytes") as mock_convert:
            mock_pdfplumber.open.return_value.__enter__.return_value = pdf
            mock_convert.return_value = [Image.new("RGB", (600, 800), "white")]

            outcome = orchestrator.reconcile_upload(
                b"%PDF-1.4", "application/pdf", "scan.pdf", "user-1", empty_history
            )

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.amount == Decimal("500")
        assert outcome.strategy_used == ExtractionStrategy.OCR_FALLBACK

    def test_unsupported_upload_fails_fast(self, empty_history):
        extractor = Mock()
        orchestrator = ReconciliationOrchestrator(extractor=extractor)

        outcome = orchestrator.reconcile_upload(
            b"data", "application/msword", "letter.doc", "user-1", empty_history
        )

        assert outcome.reason == FailureReason.UNSUPPORTED_MEDIA_TYPE
        assert outcome.stage == FailureStage.EXTRACTION
        extractor.extract.assert_not_called()
        assert orchestrator.stats_store.get_statistics("user-1").failed == 1

    def test_extraction_failure(self, empty_history, png_bytes):
        extractor = Mock()
        extractor.extract.return_value = ExtractionResult(
            strategy_used=ExtractionStrategy.OCR, error="Extraction error: boom"
        )
        orchestrator = ReconciliationOrchestrator(extractor=extractor)

        outcome = orchestrator.reconcile(
            RawArtifact(png_bytes, MediaType.IMAGE, "receipt.png"), "user-1", empty_history
        )

        assert outcome.reason == FailureReason.EXTRACTION_FAILED
        assert outcome.detail == "Extraction error: boom"

    def test_unexpected_error_becomes_failure(self, empty_history, sample_sms_text):
        parser = Mock()
        parser.parse_with_fallback.side_effect = RuntimeError("rule table corrupt")
        orchestrator = ReconciliationOrchestrator(parser=parser)

        outcome = orchestrator.reconcile_text(sample_sms_text, "user-1", empty_history)

        assert isinstance(outcome, IngestFailure)
        assert "rule table corrupt" in outcome.detail


class TestReconcileQr:
    """Tests for the QR payment path."""

    def test_qr_payment(self, orchestrator, empty_history):
        outcome = orchestrator.reconcile_qr(
            "upi://pay?pa=merchant@okhdfc&pn=Corner%20Store&am=250.00&tn=Lunch&cu=INR",
            "user-1",
            empty_history
        )

        assert isinstance(outcome, TransactionCandidate)
        assert outcome.amount == Decimal("250.00")
        assert outcome.parsed.counterparty_handle == "merchant@okhdfc"
        assert outcome.parsed.note == "Lunch"
        assert outcome.parsed.strategies == ["qr_payment"]
        assert outcome.confidence == 95
        assert outcome.title == "UPI - Corner Store"

    def test_not_a_payload(self, orchestrator, empty_history):
        outcome = orchestrator.reconcile_qr("hello", "user-1", empty_history)

        assert outcome.reason == FailureReason.NO_TRANSACTION_RECOGNIZED
        assert outcome.stage == FailureStage.PARSING

    def test_payload_without_amount(self, orchestrator, empty_history):
        outcome = orchestrator.reconcile_qr("upi://pay?pa=a@bank&pn=Shop", "user-1", empty_history)
        assert outcome.reason == FailureReason.NO_TRANSACTION_RECOGNIZED

    def test_recorded_as_qr(self, orchestrator, empty_history):
        orchestrator.reconcile_qr("upi://pay?pa=a@bank&am=10", "user-1", empty_history)
        assert orchestrator.stats_store.get_statistics("user-1").by_media_type == {"qr": 1}


class TestReconcileBatch:
    """Tests for archive handling."""

    def test_entry_failures_isolated(self, orchestrator, empty_history):
        """Test a CRC-corrupt entry is rejected while its siblings are accepted."""
        data = _zip({
            "a.txt": "Paid Rs. 100 to alpha@upi",
            "b.txt": "Paid Rs. 200 to bravo@upi UNIQUEMARKER",
            "c.txt": "Paid Rs. 300 to charlie@upi",
        })
        corrupted = data.replace(b"UNIQUEMARKER", b"CORRUPTEDXYZ")

        report = orchestrator.reconcile(
            RawArtifact(corrupted, MediaType.ARCHIVE, "batch.zip"), "user-1", empty_history
        )

        assert isinstance(report, BatchReport)
        assert report.total_entries == 3
        assert [c.amount for c in report.accepted] == [Decimal("100"), Decimal("300")]
        assert report.rejected == [("b.txt", FailureReason.MALFORMED_ARCHIVE_ENTRY)]

    def test_undecodable_entry_is_malformed(self, orchestrator, empty_history):
        """Test an entry whose bytes are not a valid image is rejected as a damaged entry."""
        data = _zip({
            "a.txt": "Paid Rs. 100 to alpha@upi",
            "b.png": b"\x89PNG truncated garbage",
            "c.txt": "Paid Rs. 300 to charlie@upi",
        })

        report = orchestrator.reconcile_batch(
            RawArtifact(data, MediaType.ARCHIVE, "batch.zip"), "user-1", empty_history
        )

        assert report.total_entries == 3
        assert [c.amount for c in report.accepted] == [Decimal("100"), Decimal("300")]
        assert report.rejected == [("b.png", FailureReason.MALFORMED_ARCHIVE_ENTRY)]
        assert report.failures[0].detail.startswith("extraction_failed")

    def test_mixed_outcomes(self, orchestrator, empty_history):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as zf:
            zf.writestr(zipfile.ZipInfo("receipts/"), "")
            zf.writestr("receipts/sms.txt", "Rs. 75 debited, paid to tea@ybl")
            zf.writestr("receipts/notes.docx", "binary")
            zf.writestr("receipts/hello.txt", "nothing to see here")

        report = orchestrator.reconcile_batch(
            RawArtifact(buffer.getvalue(), MediaType.ARCHIVE, "batch.zip"), "user-1", empty_history
        )

        assert report.total_entries == 3
        assert len(report.accepted) == 1
        assert report.accepted[0].origin_name == "receipts/sms.txt"
        assert dict(report.rejected) == {
            "receipts/notes.docx": FailureReason.UNSUPPORTED_MEDIA_TYPE,
            "receipts/hello.txt": FailureReason.NO_TRANSACTION_RECOGNIZED,
        }
        assert report.success_rate == pytest.approx(100 / 3)

    def test_corrupt_archive(self, orchestrator, empty_history):
        report = orchestrator.reconcile_upload(
            b"definitely not a zip", "application/zip", "batch.zip", "user-1", empty_history
        )

        assert isinstance(report, BatchReport)
        assert report.total_entries == 1
        assert report.accepted == []
        assert report.rejected == [("batch.zip", FailureReason.MALFORMED_ARCHIVE_ENTRY)]

    def test_nested_archive(self, orchestrator, empty_history):
        inner = _zip({"inner.txt": "Paid Rs. 60 to inner@upi"})
        outer = _zip({"outer.txt": "Paid Rs. 40 to outer@upi", "more.zip": inner})

        report = orchestrator.reconcile_batch(
            RawArtifact(outer, MediaType.ARCHIVE, "outer.zip"), "user-1", empty_history
        )

        assert report.total_entries == 2
        assert sorted(c.amount for c in report.accepted) == [Decimal("40"), Decimal("60")]

    def test_nesting_limit(self, mock_ocr_engine, empty_history):
        config = PipelineConfig(archive=ArchiveSettings(max_depth=0))
        orchestrator = ReconciliationOrchestrator(
            config=config,
            extractor=TextExtractor(ocr_engine=mock_ocr_engine)
        )
        outer = _zip({"more.zip": _zip({"inner.txt": "Paid Rs. 60"})})

        report = orchestrator.reconcile_batch(
            RawArtifact(outer, MediaType.ARCHIVE, "outer.zip"), "user-1", empty_history
        )

        assert report.rejected == [("more.zip", FailureReason.MALFORMED_ARCHIVE_ENTRY)]

    def test_oversized_entry(self, mock_ocr_engine, empty_history):
        config = PipelineConfig(archive=ArchiveSettings(max_entry_bytes=10))
        orchestrator = ReconciliationOrchestrator(
            config=config,
            extractor=TextExtractor(ocr_engine=mock_ocr_engine)
        )
        data = _zip({"small.txt": "Rs. 5 paid", "big.txt": "Paid Rs. 100 to someone@upi"})

        report = orchestrator.reconcile_batch(
            RawArtifact(data, MediaType.ARCHIVE, "batch.zip"), "user-1", empty_history
        )

        assert len(report.accepted) == 1
        assert report.rejected == [("big.txt", FailureReason.MALFORMED_ARCHIVE_ENTRY)]

    def test_entries_recorded_in_stats(self, orchestrator, empty_history):
        data = _zip({"a.txt": "Paid Rs. 100 to alpha@upi", "b.txt": "no amount"})

        orchestrator.reconcile_batch(
            RawArtifact(data, MediaType.ARCHIVE, "batch.zip"), "user-1", empty_history
        )

        stats = orchestrator.stats_store.get_statistics("user-1")
        assert stats.total_processed == 2
        assert stats.successful == 1
        assert stats.failed == 1

    def test_report_to_dict(self, orchestrator, empty_history):
        data = _zip({"a.txt": "Paid Rs. 100 to alpha@upi"})

        report = orchestrator.reconcile_batch(
            RawArtifact(data, MediaType.ARCHIVE, "batch.zip"), "user-1", empty_history
        ).to_dict()

        assert report["accepted_count"] == 1
        assert report["rejected"] == []


class TestSupportedTypes:

    def test_supported_content_types(self):
        types = ReconciliationOrchestrator.supported_content_types()

        assert "application/pdf" in types
        assert "application/x-zip-compressed" in types


class TestConfiguration:
    """Tests for configuration loading by the orchestrator."""

    def test_loads_yaml_from_config_dir(self, tmp_path):
        (tmp_path / "ingestion.yaml").write_text(
            "similarity:\n  duplicate_threshold: 0.5\narchive:\n  max_depth: 1\n"
        )

        orchestrator = ReconciliationOrchestrator(config_dir=tmp_path)

        assert orchestrator.config.similarity.duplicate_threshold == 0.5
        assert orchestrator.similarity.settings.duplicate_threshold == 0.5
        assert orchestrator.config.archive.max_depth == 1

    def test_default_reads_shipped_config(self, config_dir):
        assert ReconciliationOrchestrator().config == PipelineConfig.load(config_dir)

    def test_explicit_config_wins(self, tmp_path):
        (tmp_path / "ingestion.yaml").write_text("windows:\n  duplicate_window_days: 7\n")

        orchestrator = ReconciliationOrchestrator(config=PipelineConfig(), config_dir=tmp_path)

        assert orchestrator.config.windows.duplicate_window_days == 30
