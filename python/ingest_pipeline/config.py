"""
Pipeline Configuration

Loads tunable thresholds for extraction, scoring, similarity and anomaly
detection from ``config/ingestion.yaml``, falling back to built-in defaults.
"""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"
CONFIG_FILE_NAME = "ingestion.yaml"

# Minimum rendering resolution for scanned PDF pages
MIN_PDF_DPI = 300


@dataclass
class ExtractionSettings:
    min_width: int = 800
    min_height: int = 600
    contrast_factor: float = 1.5
    pdf_dpi: int = 300
    min_line_length: int = 2
    tesseract_lang: str = "eng"
    tesseract_oem: int = 1
    tesseract_psm: int = 6
    ocr_timeout_seconds: float = 0

    def __post_init__(self):
        if self.pdf_dpi < MIN_PDF_DPI:
            logger.warning(f"pdf_dpi {self.pdf_dpi} below minimum, using {MIN_PDF_DPI}")
            self.pdf_dpi = MIN_PDF_DPI


@dataclass
class ConfidenceSettings:
    base_score: float = 50.0
    amount_bonus: float = 20.0
    date_bonus: float = 15.0
    handle_bonus: float = 10.0
    reference_bonus: float = 5.0
    short_text_penalty: float = 20.0
    short_text_length: int = 20
    document_baseline: float = 95.0


@dataclass
class SimilaritySettings:
    amount_weight: float = 0.3
    text_weight: float = 0.3
    merchant_weight: float = 0.3
    date_weight: float = 0.1
    duplicate_threshold: float = 0.8


@dataclass
class AnomalySettings:
    stddev_multiplier: float = 2.0
    earliest_normal_hour: int = 6
    latest_normal_hour: int = 22
    frequency_similarity: float = 0.7
    frequency_max_similar: int = 5


@dataclass
class WindowSettings:
    duplicate_window_days: int = 30
    anomaly_window_days: int = 90
    undated_lookback_days: int = 90


@dataclass
class ArchiveSettings:
    max_depth: int = 2
    max_entry_bytes: int = 25 * 1024 * 1024


@dataclass
class StatsSettings:
    history_size: int = 100


@dataclass
class PipelineConfig:
    """All pipeline settings, grouped by component."""

    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)
    confidence: ConfidenceSettings = field(default_factory=ConfidenceSettings)
    similarity: SimilaritySettings = field(default_factory=SimilaritySettings)
    anomaly: AnomalySettings = field(default_factory=AnomalySettings)
    windows: WindowSettings = field(default_factory=WindowSettings)
    archive: ArchiveSettings = field(default_factory=ArchiveSettings)
    stats: StatsSettings = field(default_factory=StatsSettings)

    @classmethod
    def load(cls, config_dir: Path | str | None = None) -> "PipelineConfig":
        """Load configuration from a directory.

        Args:
            config_dir: Directory containing ingestion.yaml

        Returns:
            PipelineConfig (defaults when the file is absent)
        """
        config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        config_file = config_dir / CONFIG_FILE_NAME

        if not config_file.exists():
            logger.debug(f"No pipeline config at {config_file}, using defaults")
            return cls()

        with open(config_file) as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loaded pipeline config from {config_file}")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        """Build a config from a nested dict, ignoring unknown keys."""
        sections = {}

        for section in fields(cls):
            section_type = section.default_factory
            values = data.get(section.name) or {}
            known = {f.name for f in fields(section_type)}

            unknown = set(values) - known
            if unknown:
                logger.warning(f"Ignoring unknown {section.name} settings: {sorted(unknown)}")

            sections[section.name] = section_type(
                **{k: v for k, v in values.items() if k in known}
            )

        return cls(**sections)
