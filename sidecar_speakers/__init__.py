"""Local speaker identification and clustering for recorded meetings."""

__version__ = "0.1.0"

from .clustering import SpeakerCluster
from .errors import (
    DimensionMismatch,
    ExtractionError,
    InvalidEmbedding,
    PersistenceError,
    SpeakerIdError,
)
from .identification import IdentificationSession
from .models import (
    AudioSegmentInfo,
    Embedding,
    RegistryStats,
    Speaker,
    SpeakerIdentification,
    SpeakerMatch,
    VoiceGender,
    VoiceSignature,
    VoiceType,
)
from .registry import SpeakerRegistry, get_registry, init_registry, shutdown_registry

__all__ = [
    "AudioSegmentInfo",
    "DimensionMismatch",
    "Embedding",
    "ExtractionError",
    "IdentificationSession",
    "InvalidEmbedding",
    "PersistenceError",
    "RegistryStats",
    "Speaker",
    "SpeakerCluster",
    "SpeakerIdError",
    "SpeakerIdentification",
    "SpeakerMatch",
    "SpeakerRegistry",
    "VoiceGender",
    "VoiceSignature",
    "VoiceType",
    "get_registry",
    "init_registry",
    "shutdown_registry",
]
