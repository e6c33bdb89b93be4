"""
Pytest configuration and fixtures for ingestion pipeline tests.
"""

import io
import sys
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from unittest.mock import Mock

import pytest
from PIL import Image

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent

sys.path.insert(0, str(PROJECT_ROOT / "python"))

from ingest_pipeline.config import PipelineConfig
from ingest_pipeline.models import HistoryRecord
from ingest_pipeline.ocr_engines import OcrEngine
from ingest_pipeline.orchestrator import HistoryProvider


class StaticHistoryProvider(HistoryProvider):
    """History provider over a fixed list of records."""

    def __init__(self, records=None, error: Exception | None = None):
        self.records = list(records or [])
        self.error = error
        self.calls = []

    def recent_transactions(self, user_id, window):
        self.calls.append((user_id, window))
        if self.error:
            raise self.error
        return [r for r in self.records if window.contains(r.date)]


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def config_dir() -> Path:
    """Return the config directory path."""
    return PROJECT_ROOT / "config"


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Return a config with built-in defaults."""
    return PipelineConfig()


@pytest.fixture
def fixed_now() -> datetime:
    """Reference 'now' for orchestrator tests."""
    return datetime(2025, 1, 15, 15, 0)


@pytest.fixture
def mock_ocr_engine() -> Mock:
    """OCR engine returning a fixed receipt transcription."""
    engine = Mock(spec=OcrEngine)
    engine.image_to_text.return_value = "FRESH MART\nTotal: ₹500.00\nDate: 2025-01-10\nThank you"
    return engine


@pytest.fixture
def make_history_provider():
    """Factory for history providers over fixed records."""
    return StaticHistoryProvider


@pytest.fixture
def empty_history() -> StaticHistoryProvider:
    return StaticHistoryProvider()


@pytest.fixture
def sample_sms_text() -> str:
    """Return a UPI debit SMS carrying every core field."""
    return (
        "Rs. 1,250.00 debited from A/c XX1234 on 15-01-2025 14:30.\n"
        "Paid to Fresh Mart\n"
        "via PhonePe to freshmart@ybl\n"
        "UPI Ref: 503412345678"
    )


@pytest.fixture
def sample_history_record() -> HistoryRecord:
    """Return the stored copy of the sample SMS transaction, one day earlier."""
    return HistoryRecord(
        ref="EXP-1001",
        amount=Decimal("1250.00"),
        date=date(2025, 1, 14),
        merchant_name="Fresh Mart",
        description="UPI Transaction via PhonePe to freshmart@ybl (Ref: 503412345678)"
    )


@pytest.fixture
def png_bytes() -> bytes:
    """Return a small PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (400, 300), "white").save(buffer, format="PNG")
    return buffer.getvalue()
