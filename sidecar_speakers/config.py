"""Configuration management for sidecar-speakers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .paths import get_config_path, get_data_dir, get_registry_path
from .similarity import SimilarityWeights

logger = logging.getLogger(__name__)

_TUNABLE_FIELDS = (
    "match_threshold",
    "tentative_threshold",
    "embedding_floor",
    "tentative_confidence_scale",
    "learn_threshold",
    "learn_min_size",
    "energy_bands",
    "embedding_weight",
    "pitch_weight",
    "timbre_weight",
    "rate_weight",
    "write_behind",
    "log_level",
)


@dataclass
class Settings:
    """Engine settings."""

    # Paths
    data_dir: Path = field(default_factory=get_data_dir)
    registry_path: Path = field(default_factory=get_registry_path)
    config_path: Path = field(default_factory=get_config_path)

    # Decision policy
    match_threshold: float = 0.7
    tentative_threshold: float = 0.5
    embedding_floor: float = 0.5  # raw cosine below this never counts as a candidate
    tentative_confidence_scale: float = 0.8
    learn_threshold: float = 0.8  # cluster cohesion needed for promotion
    learn_min_size: int = 3

    # Voice signature shape
    energy_bands: int = 4

    # Signature similarity weights
    embedding_weight: float = 0.5
    pitch_weight: float = 0.2
    timbre_weight: float = 0.2
    rate_weight: float = 0.1

    # Registry persistence
    write_behind: bool = False

    log_level: str = "INFO"

    @property
    def weights(self) -> SimilarityWeights:
        return SimilarityWeights(
            embedding=self.embedding_weight,
            pitch=self.pitch_weight,
            timbre=self.timbre_weight,
            rate=self.rate_weight,
        )

    def _json_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in _TUNABLE_FIELDS}

    def save(self) -> None:
        """Save settings to config file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(self._json_dict(), f, indent=2)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from config file."""
        settings = cls()
        if config_path:
            settings.config_path = config_path

        if settings.config_path.exists():
            try:
                with open(settings.config_path, encoding="utf-8") as f:
                    data = json.load(f)
            except (json.JSONDecodeError, OSError) as e:
                logger.warning("Ignoring unreadable config %s: %s", settings.config_path, e)
                data = {}
            if not isinstance(data, dict):
                data = {}

            for name in _TUNABLE_FIELDS:
                setattr(settings, name, data.get(name, getattr(settings, name)))

        return settings


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def configure_logging(level: Optional[str] = None) -> None:
    """Attach a basic stderr handler at the configured level.

    Applications embedding the engine usually configure logging themselves;
    this is for scripts and interactive use.
    """
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
