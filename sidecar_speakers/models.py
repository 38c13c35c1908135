"""Data classes for speaker identification."""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Optional, Sequence

import numpy as np

from .errors import InvalidEmbedding
from .timezone_utils import parse_utc_timestamp, to_utc_string, utc_now

DEFAULT_MODEL_VERSION = "1.0"
DEFAULT_CONFIDENCE = 0.5
LEARNED_CONFIDENCE = 0.8
RELIABLE_CONFIDENCE = 0.7
MAX_USAGE_BOOST = 0.3
ENERGY_SUM_TOLERANCE = 0.05


def _new_id() -> str:
    return str(uuid.uuid4())


def _required_timestamp(data: dict[str, Any], key: str) -> datetime:
    value = parse_utc_timestamp(data.get(key))
    if value is None:
        raise ValueError(f"speaker {data.get('id')} has no {key}")
    return value


@dataclass(frozen=True)
class Embedding:
    """Fixed-length voice feature vector plus provenance."""

    features: tuple[float, ...]
    model_version: str = DEFAULT_MODEL_VERSION
    extracted_at: datetime = field(default_factory=utc_now)

    def __post_init__(self):
        # Accept lists and numpy arrays but always store an immutable tuple
        if not isinstance(self.features, tuple):
            object.__setattr__(self, "features", tuple(float(x) for x in self.features))

    @classmethod
    def from_array(
        cls,
        array: np.ndarray,
        model_version: str = DEFAULT_MODEL_VERSION,
        extracted_at: Optional[datetime] = None,
    ) -> "Embedding":
        """Build an embedding from an extractor's numpy output."""
        flat = np.asarray(array, dtype=np.float64).ravel()
        return cls(
            features=tuple(flat.tolist()),
            model_version=model_version,
            extracted_at=extracted_at or utc_now(),
        )

    @property
    def dimension(self) -> int:
        return len(self.features)

    @property
    def is_valid(self) -> bool:
        return bool(self.features) and all(math.isfinite(x) for x in self.features)

    def validate(self) -> "Embedding":
        """Return self, or raise InvalidEmbedding if empty or non-finite."""
        if not self.features:
            raise InvalidEmbedding("Embedding has no features")
        if not all(math.isfinite(x) for x in self.features):
            raise InvalidEmbedding("Embedding contains NaN or infinite features")
        return self

    def as_array(self) -> np.ndarray:
        return np.asarray(self.features, dtype=np.float64)

    def to_dict(self) -> dict[str, Any]:
        return {
            "features": list(self.features),
            "model_version": self.model_version,
            "extracted_at": to_utc_string(self.extracted_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Embedding":
        return cls(
            features=tuple(float(x) for x in data["features"]),
            model_version=data.get("model_version", DEFAULT_MODEL_VERSION),
            extracted_at=parse_utc_timestamp(data.get("extracted_at")) or utc_now(),
        )


class VoiceGender(str, Enum):
    """Coarse gender estimate from pitch."""

    MALE = "male"
    FEMALE = "female"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        return self.value.capitalize()


class VoiceType(str, Enum):
    """Voice classification by pitch and timbre."""

    BASS = "bass"
    BARITONE = "baritone"
    TENOR = "tenor"
    ALTO = "alto"
    SOPRANO = "soprano"
    UNKNOWN = "unknown"

    @property
    def description(self) -> str:
        return self.value.capitalize()

    @property
    def typical_range(self) -> str:
        return _TYPICAL_RANGES[self]


_TYPICAL_RANGES = {
    VoiceType.BASS: "80-120 Hz",
    VoiceType.BARITONE: "110-150 Hz",
    VoiceType.TENOR: "140-180 Hz",
    VoiceType.ALTO: "200-250 Hz",
    VoiceType.SOPRANO: "230-280 Hz",
    VoiceType.UNKNOWN: "Unknown",
}

# Ranges overlap. They are checked in this order and the first match wins.
_GENDER_RANGES = (
    (VoiceGender.MALE, 80.0, 180.0),
    (VoiceGender.FEMALE, 165.0, 265.0),
)

# (type, f0 low, f0 high, centroid low, centroid high)
_VOICE_TYPE_RANGES = (
    (VoiceType.BASS, 80.0, 120.0, -math.inf, 1800.0),
    (VoiceType.BARITONE, 110.0, 150.0, 1500.0, 2200.0),
    (VoiceType.TENOR, 140.0, 180.0, 1800.0, 2500.0),
    (VoiceType.ALTO, 200.0, 250.0, 2000.0, 3000.0),
    (VoiceType.SOPRANO, 230.0, 280.0, 2500.0, 3500.0),
)


@dataclass(frozen=True)
class VoiceSignature:
    """Aggregate acoustic profile of one segment or one speaker."""

    embedding: Embedding
    fundamental_frequency: float = 150.0  # average pitch, Hz
    spectral_centroid: float = 2000.0  # brightness/timbre, Hz
    formant_frequencies: tuple[float, ...] = (800.0, 1200.0, 2400.0)
    speech_rate: float = 150.0  # words per minute
    energy_distribution: tuple[float, ...] = (0.2, 0.3, 0.3, 0.2)

    def __post_init__(self):
        if not isinstance(self.formant_frequencies, tuple):
            object.__setattr__(
                self, "formant_frequencies", tuple(float(x) for x in self.formant_frequencies)
            )
        if not isinstance(self.energy_distribution, tuple):
            object.__setattr__(
                self, "energy_distribution", tuple(float(x) for x in self.energy_distribution)
            )

    def validate(self, energy_bands: Optional[int] = None) -> "VoiceSignature":
        """Check the signature before it enters the decision policy.

        Raises:
            InvalidEmbedding: If the embedding is empty or non-finite.
            ValueError: If a scalar feature is not positive and finite, or
                the energy distribution has the wrong shape.
        """
        self.embedding.validate()
        scalars = {
            "fundamental_frequency": self.fundamental_frequency,
            "spectral_centroid": self.spectral_centroid,
            "speech_rate": self.speech_rate,
        }
        for name, value in scalars.items():
            if not (math.isfinite(value) and value > 0):
                raise ValueError(f"{name} must be positive and finite, got {value}")
        for value in self.formant_frequencies:
            if not (math.isfinite(value) and value > 0):
                raise ValueError(f"formant frequencies must be positive and finite, got {value}")
        if energy_bands is not None and len(self.energy_distribution) != energy_bands:
            raise ValueError(
                f"energy distribution must have {energy_bands} bands, "
                f"got {len(self.energy_distribution)}"
            )
        if self.energy_distribution:
            if any(not math.isfinite(x) or x < 0 for x in self.energy_distribution):
                raise ValueError("energy distribution must be non-negative and finite")
            if abs(sum(self.energy_distribution) - 1.0) > ENERGY_SUM_TOLERANCE:
                raise ValueError(
                    f"energy distribution must sum to ~1.0, got {sum(self.energy_distribution):.3f}"
                )
        return self

    def with_embedding(self, embedding: Embedding) -> "VoiceSignature":
        return replace(self, embedding=embedding)

    @property
    def estimated_gender(self) -> VoiceGender:
        for gender, low, high in _GENDER_RANGES:
            if low <= self.fundamental_frequency <= high:
                return gender
        return VoiceGender.UNKNOWN

    @property
    def voice_type(self) -> VoiceType:
        f0 = self.fundamental_frequency
        centroid = self.spectral_centroid
        for voice_type, f0_low, f0_high, c_low, c_high in _VOICE_TYPE_RANGES:
            if f0_low <= f0 <= f0_high and c_low <= centroid <= c_high:
                return voice_type
        return VoiceType.UNKNOWN

    def to_dict(self) -> dict[str, Any]:
        return {
            "embedding": self.embedding.to_dict(),
            "fundamental_frequency": self.fundamental_frequency,
            "spectral_centroid": self.spectral_centroid,
            "formant_frequencies": list(self.formant_frequencies),
            "speech_rate": self.speech_rate,
            "energy_distribution": list(self.energy_distribution),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VoiceSignature":
        return cls(
            embedding=Embedding.from_dict(data["embedding"]),
            fundamental_frequency=float(data["fundamental_frequency"]),
            spectral_centroid=float(data["spectral_centroid"]),
            formant_frequencies=tuple(float(x) for x in data.get("formant_frequencies", ())),
            speech_rate=float(data["speech_rate"]),
            energy_distribution=tuple(float(x) for x in data.get("energy_distribution", ())),
        )


@dataclass
class Speaker:
    """A known speaker profile.

    Treated as a value: the update helpers return a new Speaker and leave
    this one untouched.
    """

    id: str
    signature: VoiceSignature
    name: Optional[str] = None
    confidence: float = DEFAULT_CONFIDENCE
    created_at: datetime = field(default_factory=utc_now)
    last_used_at: datetime = field(default_factory=utc_now)
    meeting_count: int = 0
    total_speaking_time: float = 0.0
    is_learned: bool = False

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be in [0, 1], got {self.confidence}")
        if self.is_learned and self.confidence < LEARNED_CONFIDENCE:
            raise ValueError(
                f"learned speakers need confidence >= {LEARNED_CONFIDENCE}, got {self.confidence}"
            )

    @classmethod
    def create(
        cls,
        signature: VoiceSignature,
        name: Optional[str] = None,
        confidence: float = DEFAULT_CONFIDENCE,
    ) -> "Speaker":
        now = utc_now()
        return cls(
            id=_new_id(),
            signature=signature,
            name=name,
            confidence=confidence,
            created_at=now,
            last_used_at=now,
        )

    @property
    def display_name(self) -> str:
        if self.name is not None:
            return self.name
        return f"Unknown Speaker {self.id[:8].upper()}"

    @property
    def is_identified(self) -> bool:
        return self.name is not None

    @property
    def average_speaking_time_per_meeting(self) -> float:
        if self.meeting_count <= 0:
            return 0.0
        return self.total_speaking_time / self.meeting_count

    def record_usage(self, speaking_time: float, now: Optional[datetime] = None) -> "Speaker":
        """Return a copy updated for one more confident match.

        Confidence grows by min(meeting_count / 10, 0.3) per match and is
        capped at 1.0; it never goes down here.
        """
        meeting_count = self.meeting_count + 1
        boost = min(meeting_count / 10.0, MAX_USAGE_BOOST)
        return replace(
            self,
            last_used_at=now or utc_now(),
            meeting_count=meeting_count,
            total_speaking_time=self.total_speaking_time + max(speaking_time, 0.0),
            confidence=min(self.confidence + boost, 1.0),
        )

    def learned_from(self, samples: Sequence[Embedding]) -> "Speaker":
        """Return a copy marked as learned from the given voice samples."""
        if not samples:
            raise ValueError("Cannot learn a speaker from no samples")
        return replace(
            self,
            is_learned=True,
            confidence=max(self.confidence, LEARNED_CONFIDENCE),
        )

    def renamed(self, name: Optional[str]) -> "Speaker":
        return replace(self, name=name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "signature": self.signature.to_dict(),
            "confidence": self.confidence,
            "created_at": to_utc_string(self.created_at),
            "last_used_at": to_utc_string(self.last_used_at),
            "meeting_count": self.meeting_count,
            "total_speaking_time": self.total_speaking_time,
            "is_learned": self.is_learned,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Speaker":
        return cls(
            id=str(data["id"]),
            name=data.get("name"),
            signature=VoiceSignature.from_dict(data["signature"]),
            confidence=float(data.get("confidence", DEFAULT_CONFIDENCE)),
            created_at=_required_timestamp(data, "created_at"),
            last_used_at=_required_timestamp(data, "last_used_at"),
            meeting_count=int(data.get("meeting_count", 0)),
            total_speaking_time=float(data.get("total_speaking_time", 0.0)),
            is_learned=bool(data.get("is_learned", False)),
        )


@dataclass(frozen=True)
class AudioSegmentInfo:
    """Recording-side facts about the segment being identified."""

    start_time: float
    duration: float
    audio_quality: float = 0.8
    speech_activity: float = 0.9
    background_noise: float = 0.1

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    @property
    def is_suitable_for_learning(self) -> bool:
        return (
            self.duration >= 3.0
            and self.audio_quality >= 0.6
            and self.speech_activity >= 0.8
            and self.background_noise <= 0.3
        )


@dataclass(frozen=True)
class SpeakerMatch:
    """One candidate speaker for a segment."""

    speaker_id: str
    similarity: float
    confidence: float  # the speaker's stored confidence


@dataclass(frozen=True)
class SpeakerIdentification:
    """Result of identifying one segment."""

    confidence: float
    audio_segment: AudioSegmentInfo
    speaker_id: Optional[str] = None
    is_new_speaker: bool = False
    similar_speakers: tuple[SpeakerMatch, ...] = ()
    cluster_id: Optional[str] = None
    is_tentative: bool = False

    @property
    def is_reliable(self) -> bool:
        return self.confidence >= RELIABLE_CONFIDENCE

    @property
    def provisional_id(self) -> Optional[str]:
        """Speaker id when known, otherwise the session cluster id."""
        return self.speaker_id or self.cluster_id


@dataclass(frozen=True)
class RegistryStats:
    """Aggregate statistics over the speaker registry."""

    total_speakers: int
    learned_speakers: int
    identified_speakers: int
    total_meetings: int
    average_confidence: float

    @classmethod
    def from_speakers(cls, speakers: Iterable[Speaker]) -> "RegistryStats":
        speakers = list(speakers)
        total = len(speakers)
        return cls(
            total_speakers=total,
            learned_speakers=sum(1 for s in speakers if s.is_learned),
            identified_speakers=sum(1 for s in speakers if s.is_identified),
            total_meetings=sum(s.meeting_count for s in speakers),
            average_confidence=(
                sum(s.confidence for s in speakers) / total if total else 0.0
            ),
        )

    @property
    def identification_rate(self) -> float:
        if self.total_speakers == 0:
            return 0.0
        return self.identified_speakers / self.total_speakers

    @property
    def learning_rate(self) -> float:
        if self.total_speakers == 0:
            return 0.0
        return self.learned_speakers / self.total_speakers
