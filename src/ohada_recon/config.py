"""Configuration loader and validation for reconciliation settings."""

from pathlib import Path
from typing import Optional
import logging

import yaml
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, model_validator

from .utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class WeightsConfig(BaseModel):
    """Relative weight of each criterion in a match score. Must sum to 1."""

    amount: float = Field(default=0.5, ge=0, le=1)
    date: float = Field(default=0.35, ge=0, le=1)
    text: float = Field(default=0.15, ge=0, le=1)

    @model_validator(mode="after")
    def check_sum(self) -> "WeightsConfig":
        total = self.amount + self.date + self.text
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"weights must sum to 1, got {total}")
        return self


class AmountToleranceConfig(BaseModel):
    """Magnitude-dependent amount tolerance."""

    small_amount_percent: float = Field(default=0.05, ge=0)
    large_amount_percent: float = Field(default=0.01, ge=0)
    minimum_absolute: float = Field(default=500, ge=0)
    maximum_absolute: float = Field(default=10000, ge=0)
    large_amount_threshold: float = Field(default=1_000_000, gt=0)


class ThresholdsConfig(BaseModel):
    """Lower bound of each confidence band."""

    excellent: float = 95
    good: float = 80
    fair: float = 70
    low: float = 50

    @model_validator(mode="after")
    def check_order(self) -> "ThresholdsConfig":
        if not 100 >= self.excellent > self.good > self.fair > self.low > 0:
            raise ValueError("thresholds must satisfy 100 >= excellent > good > fair > low > 0")
        return self


class TextSimilarityConfig(BaseModel):
    """Description/third-party similarity settings."""

    normalize: bool = True
    strip_accents: bool = True
    # Ratios below this count as no similarity
    threshold: float = Field(default=0.7, ge=0, le=1)


class MultipleMatchingConfig(BaseModel):
    """Group matching (one-to-many, many-to-one, many-to-many)."""

    enabled: bool = True
    min_items: int = Field(default=2, ge=2)
    max_items: int = Field(default=5, ge=2)
    max_date_range_days: int = Field(default=7, ge=0)
    combined_penalty: float = Field(default=5.0, ge=0)
    penalty_per_extra_item: float = Field(default=2.5, ge=0)
    combined_confidence_cap: float = Field(default=90, ge=0, le=100)
    many_to_many_enabled: bool = True
    many_to_many_confidence_cap: float = Field(default=79, ge=0, le=100)

    @model_validator(mode="after")
    def check_bounds(self) -> "MultipleMatchingConfig":
        if self.max_items < self.min_items:
            raise ValueError("max_items must be >= min_items")
        return self


class PerformanceConfig(BaseModel):
    """Resource limits of a matching run."""

    max_workers: int = Field(default=4, ge=1)
    timeout_seconds: float = Field(default=90, gt=0)
    max_items_per_phase: int = Field(default=200, ge=1)
    max_subset_states: int = Field(default=5000, ge=1)
    max_candidates: int = Field(default=30, ge=1)


class AutoApplyConfig(BaseModel):
    """Automatic application of very confident single matches."""

    enabled: bool = False
    threshold: float = Field(default=95, ge=0, le=100)


class HeuristicsConfig(BaseModel):
    """Keywords used to classify unmatched records."""

    transfer_keywords: list[str] = Field(default_factory=lambda: ["virement", "vir ", "transfer"])
    fees_keywords: list[str] = Field(default_factory=lambda: ["frais", "commission", "fees"])
    interest_keywords: list[str] = Field(
        default_factory=lambda: ["intérêt", "interet", "interest"]
    )
    agios_keywords: list[str] = Field(
        default_factory=lambda: ["agios", "interet debiteur", "overdraft"]
    )
    direct_debit_keywords: list[str] = Field(
        default_factory=lambda: ["prelevement", "prélèvement", "prel ", "direct debit"]
    )
    cheque_keywords: list[str] = Field(
        default_factory=lambda: ["chq", "cheque", "chèque", "check"]
    )


class MatchingConfig(BaseModel):
    """Configuration for matching engine."""

    date_window_days: int = Field(default=7, ge=0)
    weights: WeightsConfig = Field(default_factory=WeightsConfig)
    amount_tolerance: AmountToleranceConfig = Field(default_factory=AmountToleranceConfig)
    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    text_similarity: TextSimilarityConfig = Field(default_factory=TextSimilarityConfig)
    multiple_matching: MultipleMatchingConfig = Field(default_factory=MultipleMatchingConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    auto_apply: AutoApplyConfig = Field(default_factory=AutoApplyConfig)
    heuristics: HeuristicsConfig = Field(default_factory=HeuristicsConfig)


class MetricsConfig(BaseModel):
    """Thresholds of the metrics report and its recommendations."""

    top_rejection_reasons: int = Field(default=10, ge=1)
    daily_series_max_days: int = Field(default=62, ge=1)
    min_sample_size: int = Field(default=20, ge=1)
    low_precision_threshold: float = 80
    excellent_precision_threshold: float = 95
    auto_apply_rate_threshold: float = 98
    weak_band_rate_threshold: float = 50
    dominant_reason_min_count: int = 20
    volume_warning_seconds: float = 10
    volume_critical_seconds: float = 30


class LoggingConfig(BaseModel):
    """Configuration for logging."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    file: Optional[str] = None


class ReconConfig(BaseModel):
    """Main configuration model for reconciliation."""

    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    config_file_path: Optional[str] = None


def get_default_config() -> dict:
    """Return the default configuration as a dictionary."""
    return {
        "matching": {
            "date_window_days": 7,
            "weights": {"amount": 0.5, "date": 0.35, "text": 0.15},
            "amount_tolerance": {
                "small_amount_percent": 0.05,
                "large_amount_percent": 0.01,
                "minimum_absolute": 500,
                "maximum_absolute": 10000,
                "large_amount_threshold": 1000000,
            },
            "thresholds": {"excellent": 95, "good": 80, "fair": 70, "low": 50},
            "text_similarity": {
                "normalize": True,
                "strip_accents": True,
                "threshold": 0.7,
            },
            "multiple_matching": {
                "enabled": True,
                "min_items": 2,
                "max_items": 5,
                "max_date_range_days": 7,
                "combined_penalty": 5.0,
                "penalty_per_extra_item": 2.5,
                "combined_confidence_cap": 90,
                "many_to_many_enabled": True,
                "many_to_many_confidence_cap": 79,
            },
            "performance": {
                "max_workers": 4,
                "timeout_seconds": 90,
                "max_items_per_phase": 200,
                "max_subset_states": 5000,
                "max_candidates": 30,
            },
            "auto_apply": {"enabled": False, "threshold": 95},
            "heuristics": HeuristicsConfig().model_dump(),
        },
        "metrics": {
            "top_rejection_reasons": 10,
            "daily_series_max_days": 62,
            "min_sample_size": 20,
            "low_precision_threshold": 80,
            "excellent_precision_threshold": 95,
            "auto_apply_rate_threshold": 98,
            "weak_band_rate_threshold": 50,
            "dominant_reason_min_count": 20,
            "volume_warning_seconds": 10,
            "volume_critical_seconds": 30,
        },
        "logging": {
            "level": "INFO",
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "file": None,
        },
    }


def load_config(config_path: Optional[Path] = None) -> ReconConfig:
    """
    Load configuration from a YAML file or use defaults.

    Args:
        config_path: Path to YAML configuration file (optional)

    Returns:
        ReconConfig object with loaded or default settings

    Raises:
        ConfigurationError: If the file cannot be parsed or holds invalid values
    """
    config_dict = get_default_config()

    if config_path and config_path.exists():
        logger.info(f"Loading configuration from: {config_path}")
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                user_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

        if not isinstance(user_config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {config_path}")

        # Deep merge user config into defaults
        config_dict = _deep_merge(config_dict, user_config)
        config_dict["config_file_path"] = str(config_path)
    else:
        logger.info("Using default configuration")

    try:
        return ReconConfig(**config_dict)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _deep_merge(base: dict, override: dict) -> dict:
    """
    Deep merge two dictionaries.

    Args:
        base: Base dictionary
        override: Dictionary to merge on top

    Returns:
        Merged dictionary
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def generate_default_config(output_path: Path) -> None:
    """
    Generate a default configuration file.

    Args:
        output_path: Path to write the configuration file
    """
    config_dict = get_default_config()

    yaml_content = """# OHADA bank reconciliation configuration
# Generated configuration file - customize as needed

"""
    yaml_content += yaml.dump(
        config_dict, default_flow_style=False, sort_keys=False, allow_unicode=True
    )

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        f.write(yaml_content)

    logger.info(f"Generated configuration file: {output_path}")
