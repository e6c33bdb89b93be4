"""
Pipeline Data Model

Artifacts, extraction results, parsed fields, history records and the
outcomes produced by a reconciliation.
"""

import datetime as dt
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from enum import Enum


class IngestError(Exception):
    """Base error for the ingestion pipeline."""


class UnsupportedMediaTypeError(IngestError):
    """Raised when an upload declares a media type the pipeline cannot handle."""

    def __init__(self, content_type: str | None):
        super().__init__(f"Unsupported media type: {content_type}")
        self.content_type = content_type


class MediaType(Enum):
    """Declared media type of an uploaded artifact."""
    IMAGE = "image"
    PDF = "pdf"
    PLAIN_TEXT = "plain_text"
    ARCHIVE = "archive"


class ExtractionStrategy(Enum):
    """Method used to turn artifact bytes into text."""
    OCR = "ocr"
    EMBEDDED_TEXT = "embedded_text"
    OCR_FALLBACK = "ocr_fallback"
    PASSTHROUGH = "passthrough"


# Strategies that read text the document already carries
DOCUMENT_STRATEGIES = frozenset({
    ExtractionStrategy.EMBEDDED_TEXT,
    ExtractionStrategy.PASSTHROUGH,
})


class AnomalyKind(Enum):
    """Ways a transaction can deviate from the user's history."""
    AMOUNT_OUTLIER = "amount_outlier"
    UNUSUAL_HOUR = "unusual_hour"
    HIGH_FREQUENCY = "high_frequency"
    NOVEL_MERCHANT = "novel_merchant"

    @property
    def description(self) -> str:
        return {
            AnomalyKind.AMOUNT_OUTLIER: "Amount is significantly higher than usual",
            AnomalyKind.UNUSUAL_HOUR: "Transaction made at an unusual hour",
            AnomalyKind.HIGH_FREQUENCY: "Many similar transactions in a short period",
            AnomalyKind.NOVEL_MERCHANT: "First transaction with this merchant",
        }[self]


class FailureReason(Enum):
    """Why an artifact did not produce a transaction candidate."""
    UNSUPPORTED_MEDIA_TYPE = "unsupported_media_type"
    EXTRACTION_FAILED = "extraction_failed"
    NO_TEXT_EXTRACTED = "no_text_extracted"
    NO_TRANSACTION_RECOGNIZED = "no_transaction_recognized"
    MALFORMED_ARCHIVE_ENTRY = "malformed_archive_entry"


class FailureStage(Enum):
    """Pipeline stage at which a failure occurred."""
    EXTRACTION = "extraction"
    PARSING = "parsing"


@dataclass(frozen=True)
class RawArtifact:
    """An uploaded artifact, immutable for the lifetime of one invocation."""

    data: bytes
    declared_media_type: MediaType
    origin_name: str = "upload"
    content_type: str | None = None

    @classmethod
    def from_upload(
        cls,
        data: bytes,
        content_type: str | None,
        origin_name: str = "upload"
    ) -> "RawArtifact":
        """Build an artifact from upload bytes and a declared MIME type.

        Raises:
            UnsupportedMediaTypeError: If the MIME type is not supported
        """
        from .media_types import resolve_media_type

        media_type = resolve_media_type(content_type)
        if media_type is None:
            raise UnsupportedMediaTypeError(content_type)

        return cls(
            data=data,
            declared_media_type=media_type,
            origin_name=origin_name,
            content_type=content_type
        )

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class ExtractionResult:
    """Best-effort text extracted from one artifact."""

    text: str | None = None
    confidence: float = 0.0
    strategy_used: ExtractionStrategy = ExtractionStrategy.PASSTHROUGH
    elapsed_seconds: float = 0.0
    error: str | None = None
    page_count: int = 0

    def __post_init__(self):
        if self.text is not None and not self.text.strip():
            self.text = None
        if self.text is None:
            self.confidence = 0.0
        self.confidence = max(0.0, min(100.0, self.confidence))

    @property
    def has_text(self) -> bool:
        return self.text is not None

    @property
    def failed(self) -> bool:
        """True when an engine raised or the artifact could not be read."""
        return self.error is not None

    def to_dict(self) -> dict:
        return {
            "has_text": self.has_text,
            "text_length": len(self.text) if self.text else 0,
            "confidence": self.confidence,
            "strategy_used": self.strategy_used.value,
            "elapsed_seconds": self.elapsed_seconds,
            "error": self.error,
            "page_count": self.page_count
        }


@dataclass
class ParsedFields:
    """Transaction fields pulled out of free text.

    Every populated slot is recorded in ``matched_rules`` with the name of
    the rule that produced it.
    """

    amount: Decimal | None = None
    date: dt.date | None = None
    time: dt.time | None = None
    counterparty_handle: str | None = None
    transaction_ref: str | None = None
    merchant_name: str | None = None
    upi_app: str | None = None
    direction: str | None = None  # 'debit' or 'credit'
    note: str | None = None
    account_number: str | None = None  # masked, e.g. 'XX1234'
    card_number: str | None = None
    balance: Decimal | None = None
    bank_name: str | None = None
    raw_text: str = ""
    # Description already stored with a persisted expense
    stored_description: str | None = None
    matched_rules: dict[str, str] = field(default_factory=dict)
    strategies: list[str] = field(default_factory=list)

    FIELD_NAMES = (
        "amount", "date", "time", "counterparty_handle", "transaction_ref",
        "merchant_name", "upi_app", "direction", "note",
        "account_number", "card_number", "balance", "bank_name",
    )

    @property
    def description(self) -> str:
        """Normalized description, as persisted with the expense.

        Both sides of a similarity comparison use this form, so a stored
        expense and a re-upload of its source compare like with like.
        """
        if self.stored_description is not None:
            return self.stored_description

        parts = [f"UPI Transaction via {self.upi_app or 'UPI'}"]
        if self.counterparty_handle:
            parts.append(f"to {self.counterparty_handle}")
        if self.transaction_ref:
            parts.append(f"(Ref: {self.transaction_ref})")
        return " ".join(parts)

    @property
    def has_amount(self) -> bool:
        return self.amount is not None

    @property
    def timestamp(self) -> datetime | None:
        if self.date is None:
            return None
        return datetime.combine(self.date, self.time or time(0, 0))

    def populated_fields(self) -> list[str]:
        return [name for name in self.FIELD_NAMES if getattr(self, name) is not None]

    def merged_with(self, other: "ParsedFields") -> "ParsedFields":
        """Return a copy whose empty slots are filled from ``other``."""
        merged = ParsedFields(
            raw_text=self.raw_text or other.raw_text,
            stored_description=(
                self.stored_description if self.stored_description is not None
                else other.stored_description
            ),
            matched_rules=dict(self.matched_rules),
            strategies=list(self.strategies)
        )

        for name in self.FIELD_NAMES:
            value = getattr(self, name)
            if value is None and getattr(other, name) is not None:
                value = getattr(other, name)
                merged.matched_rules[name] = other.matched_rules.get(name, "unknown")
            setattr(merged, name, value)

        for strategy in other.strategies:
            if strategy not in merged.strategies:
                merged.strategies.append(strategy)

        return merged

    def to_dict(self) -> dict:
        return {
            "amount": float(self.amount) if self.amount is not None else None,
            "date": self.date.isoformat() if self.date else None,
            "time": self.time.isoformat() if self.time else None,
            "counterparty_handle": self.counterparty_handle,
            "transaction_ref": self.transaction_ref,
            "merchant_name": self.merchant_name,
            "upi_app": self.upi_app,
            "direction": self.direction,
            "note": self.note,
            "account_number": self.account_number,
            "card_number": self.card_number,
            "balance": float(self.balance) if self.balance is not None else None,
            "bank_name": self.bank_name,
            "description": self.description,
            "matched_rules": self.matched_rules,
            "strategies": self.strategies
        }


@dataclass(frozen=True)
class DateWindow:
    """Inclusive date range used to query the expense store."""

    start: date
    end: date

    def contains(self, day: date | None) -> bool:
        return day is not None and self.start <= day <= self.end

    @classmethod
    def around(cls, center: date, days_before: int, days_after: int) -> "DateWindow":
        return cls(
            start=center - timedelta(days=days_before),
            end=center + timedelta(days=days_after)
        )


@dataclass(frozen=True)
class HistoryRecord:
    """A prior transaction of the user as returned by the expense store."""

    ref: str
    amount: Decimal
    date: dt.date
    time: dt.time | None = None
    merchant_name: str | None = None
    description: str = ""

    def to_parsed_fields(self) -> ParsedFields:
        return ParsedFields(
            amount=Decimal(str(self.amount)) if self.amount is not None else None,
            date=self.date,
            time=self.time,
            merchant_name=self.merchant_name,
            raw_text=self.description,
            stored_description=self.description
        )


@dataclass(frozen=True)
class HistoryWindow:
    """Read-only snapshot of the user's transactions for one reconciliation."""

    records: tuple[HistoryRecord, ...] = ()
    window: DateWindow | None = None

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    @property
    def amounts(self) -> list[Decimal]:
        return [Decimal(str(r.amount)) for r in self.records if r.amount is not None]

    @property
    def merchants(self) -> set[str]:
        return {r.merchant_name for r in self.records if r.merchant_name}

    def within(self, window: DateWindow) -> "HistoryWindow":
        """Return the subset of records dated inside ``window``."""
        return HistoryWindow(
            records=tuple(r for r in self.records if window.contains(r.date)),
            window=window
        )


@dataclass
class TransactionCandidate:
    """Normalized transaction assembled from one artifact."""

    user_id: str
    parsed: ParsedFields
    confidence: float
    duplicate_of: str | None = None
    duplicate_score: float = 0.0
    anomaly_flags: frozenset[AnomalyKind] = frozenset()
    origin_name: str = ""
    strategy_used: ExtractionStrategy | None = None
    diagnostics: list[str] = field(default_factory=list)
    # False when the user turned off automatic expense creation
    auto_process: bool = True

    @property
    def amount(self) -> Decimal | None:
        return self.parsed.amount

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None

    @property
    def is_anomalous(self) -> bool:
        return bool(self.anomaly_flags)

    @property
    def title(self) -> str:
        app = self.parsed.upi_app or "UPI"
        return f"{app} - {self.parsed.merchant_name or 'UPI Transaction'}"

    @property
    def description(self) -> str:
        return self.parsed.description

    def to_expense_record(self) -> dict:
        """Normalized expense payload handed to the expense store."""
        return {
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "amount": self.parsed.amount,
            "expense_date": self.parsed.date,
            "expense_time": self.parsed.time,
            "merchant_name": self.parsed.merchant_name,
            "reference_number": self.parsed.transaction_ref,
            "notes": self.parsed.note,
            "bank_name": self.parsed.bank_name,
            "account_number": self.parsed.account_number,
            "payment_method": "UPI",
            "currency_code": "INR",
            "transaction_type": (self.parsed.direction or "debit").upper(),
            "confidence": self.confidence,
            "duplicate_of": self.duplicate_of,
            "anomalies": sorted(kind.value for kind in self.anomaly_flags)
        }

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "origin_name": self.origin_name,
            "parsed": self.parsed.to_dict(),
            "confidence": self.confidence,
            "duplicate_of": self.duplicate_of,
            "duplicate_score": self.duplicate_score,
            "anomaly_flags": sorted(kind.value for kind in self.anomaly_flags),
            "strategy_used": self.strategy_used.value if self.strategy_used else None,
            "auto_process": self.auto_process,
            "diagnostics": self.diagnostics
        }


@dataclass
class IngestFailure:
    """Structured reason an artifact produced no candidate."""

    reason: FailureReason
    stage: FailureStage
    origin_name: str = ""
    detail: str = ""

    def to_dict(self) -> dict:
        return {
            "reason": self.reason.value,
            "stage": self.stage.value,
            "origin_name": self.origin_name,
            "detail": self.detail
        }


@dataclass
class BatchReport:
    """Aggregated outcome of an archive or multi-file upload."""

    total_entries: int = 0
    accepted: list[TransactionCandidate] = field(default_factory=list)
    rejected: list[tuple[str, FailureReason]] = field(default_factory=list)
    failures: list[IngestFailure] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        if self.total_entries == 0:
            return 0.0
        return len(self.accepted) / self.total_entries * 100

    def reject(self, failure: IngestFailure) -> None:
        self.rejected.append((failure.origin_name, failure.reason))
        self.failures.append(failure)

    def extend(self, other: "BatchReport") -> None:
        self.total_entries += other.total_entries
        self.accepted.extend(other.accepted)
        self.rejected.extend(other.rejected)
        self.failures.extend(other.failures)

    def to_dict(self) -> dict:
        return {
            "total_entries": self.total_entries,
            "accepted_count": len(self.accepted),
            "rejected_count": len(self.rejected),
            "success_rate": self.success_rate,
            "accepted": [c.to_dict() for c in self.accepted],
            "rejected": [
                {"entry_name": name, "reason": reason.value}
                for name, reason in self.rejected
            ]
        }
