"""
Pattern Nexus configuration.

Values come from environment variables with sensible defaults, so the
library works out of the box and can be tuned per deployment.
"""

import os
from dataclasses import asdict, dataclass
from typing import Any, Dict, List

from .errors import ConfigError

EMBEDDING_PROVIDERS = ("simple", "local")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}")


@dataclass
class PatternNexusConfig:
    """
    Runtime settings for learning, detection and aggregation.

    Example:
        config = PatternNexusConfig.from_env()
        config.ensure_valid()
    """
    data_dir: str = "~/.pattern-nexus"
    store_dirname: str = ".pattern-nexus"

    # Learning
    max_workers: int = 4
    max_examples: int = 5
    recency_window_days: int = 7
    recency_bonus: float = 0.05

    # Detection
    high_severity_confidence: float = 0.85
    medium_severity_confidence: float = 0.6
    min_pattern_frequency: int = 1

    # Search
    embedding_provider: str = "simple"
    embedding_model: str = "all-MiniLM-L6-v2"

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, **overrides) -> "PatternNexusConfig":
        """Build a config from PATTERN_NEXUS_* environment variables."""
        log_level = os.environ.get("PATTERN_NEXUS_LOG_LEVEL", "INFO").upper()
        if os.environ.get("DEBUG", "").lower() in ("1", "true", "yes"):
            log_level = "DEBUG"

        config = cls(
            data_dir=os.environ.get("PATTERN_NEXUS_DATA_DIR", cls.data_dir),
            store_dirname=os.environ.get("PATTERN_NEXUS_STORE_DIRNAME", cls.store_dirname),
            max_workers=_env_int("PATTERN_NEXUS_MAX_WORKERS", cls.max_workers),
            max_examples=_env_int("PATTERN_NEXUS_MAX_EXAMPLES", cls.max_examples),
            recency_window_days=_env_int("PATTERN_NEXUS_RECENCY_DAYS", cls.recency_window_days),
            recency_bonus=_env_float("PATTERN_NEXUS_RECENCY_BONUS", cls.recency_bonus),
            high_severity_confidence=_env_float(
                "PATTERN_NEXUS_HIGH_CONFIDENCE", cls.high_severity_confidence
            ),
            medium_severity_confidence=_env_float(
                "PATTERN_NEXUS_MEDIUM_CONFIDENCE", cls.medium_severity_confidence
            ),
            min_pattern_frequency=_env_int("PATTERN_NEXUS_MIN_FREQUENCY", cls.min_pattern_frequency),
            embedding_provider=os.environ.get("PATTERN_NEXUS_EMBEDDINGS", cls.embedding_provider),
            embedding_model=os.environ.get("PATTERN_NEXUS_EMBEDDING_MODEL", cls.embedding_model),
            log_level=log_level,
        )
        for key, value in overrides.items():
            if not hasattr(config, key):
                raise ConfigError(f"Unknown config option: {key}")
            setattr(config, key, value)
        return config

    def validate(self) -> List[str]:
        """Return a list of problems. Empty means valid."""
        errors = []
        if not self.data_dir:
            errors.append("data_dir is required")
        if not self.store_dirname:
            errors.append("store_dirname is required")
        for name in ("max_workers", "max_examples", "min_pattern_frequency"):
            if getattr(self, name) < 1:
                errors.append(f"{name} must be at least 1")
        if self.recency_window_days < 0:
            errors.append("recency_window_days must not be negative")
        if not 0.0 <= self.recency_bonus < 1.0:
            errors.append("recency_bonus must be in [0, 1)")
        if not 0.0 < self.high_severity_confidence <= 1.0:
            errors.append("high_severity_confidence must be in (0, 1]")
        if not 0.0 < self.medium_severity_confidence <= 1.0:
            errors.append("medium_severity_confidence must be in (0, 1]")
        if self.medium_severity_confidence >= self.high_severity_confidence:
            errors.append("medium_severity_confidence must be below high_severity_confidence")
        if self.embedding_provider not in EMBEDDING_PROVIDERS:
            errors.append(
                f"embedding_provider must be one of {list(EMBEDDING_PROVIDERS)}"
            )
        if self.log_level not in LOG_LEVELS:
            errors.append(f"log_level must be one of {list(LOG_LEVELS)}")
        return errors

    def ensure_valid(self) -> "PatternNexusConfig":
        errors = self.validate()
        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors))
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
