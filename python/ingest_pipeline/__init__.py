"""
Transaction Ingestion Pipeline

Extracts text from receipts, statements, SMS text, QR payment strings and
archives, parses transaction fields, and reconciles them against the user's
history for duplicates and anomalies.
"""

from .anomaly_detector import AnomalyDetector
from .confidence import ConfidenceScorer
from .config import PipelineConfig
from .field_parser import (
    FieldParser,
    FieldRule,
    ParsingStrategy,
    QrPaymentStrategy,
    RuleBasedStrategy,
    default_strategies,
    identify_bank,
    identify_service_provider,
)
from .media_types import guess_content_type, resolve_media_type, supported_content_types
from .models import (
    AnomalyKind,
    BatchReport,
    DateWindow,
    ExtractionResult,
    ExtractionStrategy,
    FailureReason,
    FailureStage,
    HistoryRecord,
    HistoryWindow,
    IngestError,
    IngestFailure,
    MediaType,
    ParsedFields,
    RawArtifact,
    TransactionCandidate,
    UnsupportedMediaTypeError,
)
from .ocr_engines import OcrEngine, TesseractOcrEngine, VisionOcrEngine
from .orchestrator import ExpenseSink, HistoryProvider, ReconciliationOrchestrator
from .qr_payment import QrPayment, find_qr_payload, parse_qr_payment
from .similarity import SimilarityEngine, SimilarityMatch
from .stats_store import InMemoryStatsStore, ProcessingStatsStore, UserProcessingStats
from .text_extractor import TextExtractor, clean_text

__all__ = [
    # Orchestration
    "ReconciliationOrchestrator",
    "HistoryProvider",
    "ExpenseSink",
    "PipelineConfig",
    # Extraction
    "TextExtractor",
    "clean_text",
    "OcrEngine",
    "TesseractOcrEngine",
    "VisionOcrEngine",
    # Parsing
    "FieldParser",
    "FieldRule",
    "ParsingStrategy",
    "RuleBasedStrategy",
    "QrPaymentStrategy",
    "default_strategies",
    "identify_bank",
    "identify_service_provider",
    "QrPayment",
    "find_qr_payload",
    "parse_qr_payment",
    # Scoring and reconciliation
    "ConfidenceScorer",
    "SimilarityEngine",
    "SimilarityMatch",
    "AnomalyDetector",
    # Statistics
    "ProcessingStatsStore",
    "InMemoryStatsStore",
    "UserProcessingStats",
    # Media types
    "resolve_media_type",
    "guess_content_type",
    "supported_content_types",
    # Models
    "MediaType",
    "RawArtifact",
    "ExtractionStrategy",
    "ExtractionResult",
    "ParsedFields",
    "HistoryRecord",
    "HistoryWindow",
    "DateWindow",
    "AnomalyKind",
    "TransactionCandidate",
    "FailureReason",
    "FailureStage",
    "IngestFailure",
    "BatchReport",
    "IngestError",
    "UnsupportedMediaTypeError",
]
