"""Similarity and distance functions for embeddings and voice signatures.

Everything here is pure: no state, no logging, no I/O. Embedding validity
(non-empty, finite) is checked where embeddings enter the system, not here.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Union

import numpy as np

from .errors import DimensionMismatch

if TYPE_CHECKING:
    from .models import Embedding, VoiceSignature

VectorLike = Union["Embedding", np.ndarray, list, tuple]


@dataclass(frozen=True)
class SimilarityWeights:
    """Weights for combining the signature similarity terms.

    These are tuning constants, not derived values. The combined score is
    normalised by their sum so any positive set of weights is usable.
    """

    embedding: float = 0.5
    pitch: float = 0.2
    timbre: float = 0.2
    rate: float = 0.1

    @property
    def total(self) -> float:
        return self.embedding + self.pitch + self.timbre + self.rate


DEFAULT_WEIGHTS = SimilarityWeights()


def _as_vector(value: VectorLike) -> np.ndarray:
    if hasattr(value, "as_array"):
        return value.as_array()
    return np.asarray(value, dtype=np.float64)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Compute cosine similarity between two vectors.

    Args:
        a: First vector or Embedding.
        b: Second vector or Embedding.

    Returns:
        Cosine similarity (1.0 = identical, 0.0 = orthogonal, -1.0 = opposite).
        0.0 when either vector has zero magnitude.

    Raises:
        DimensionMismatch: If the vectors differ in length.
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape != vb.shape:
        raise DimensionMismatch(va.size, vb.size)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    value = float(np.dot(va, vb) / (norm_a * norm_b))
    return max(-1.0, min(1.0, value))


def cosine_distance(a: VectorLike, b: VectorLike) -> float:
    """Compute cosine distance between two vectors.

    Returns:
        Cosine distance (0.0 = identical, 1.0 = orthogonal, 2.0 = opposite).
    """
    return 1.0 - cosine_similarity(a, b)


def euclidean_distance(a: VectorLike, b: VectorLike) -> float:
    """Euclidean distance, or +inf when the dimensions differ.

    Returning infinity instead of raising lets ranking code treat
    incompatible embeddings as infinitely dissimilar.
    """
    va = _as_vector(a)
    vb = _as_vector(b)
    if va.shape != vb.shape:
        return math.inf
    return float(np.linalg.norm(va - vb))


# Names used by callers that think in terms of embeddings.
embedding_similarity = cosine_similarity
embedding_distance = euclidean_distance


def closeness(x1: float, x2: float) -> float:
    """Relative closeness of two non-negative scalars in [0, 1].

    ``1 - |x1 - x2| / max(x1, x2)``; two zeros are identical (1.0).
    """
    largest = max(x1, x2)
    if largest <= 0:
        return 1.0 if x1 == x2 else 0.0
    value = 1.0 - abs(x1 - x2) / largest
    return max(0.0, min(1.0, value))


def signature_similarity(
    a: "VoiceSignature",
    b: "VoiceSignature",
    weights: SimilarityWeights = DEFAULT_WEIGHTS,
) -> float:
    """Weighted multi-factor similarity between two voice signatures.

    Combines embedding cosine similarity with pitch, timbre (spectral
    centroid) and speech rate closeness. Result is clamped to [0, 1].

    Raises:
        DimensionMismatch: If the signatures' embeddings differ in length.
    """
    score = (
        weights.embedding * cosine_similarity(a.embedding, b.embedding)
        + weights.pitch * closeness(a.fundamental_frequency, b.fundamental_frequency)
        + weights.timbre * closeness(a.spectral_centroid, b.spectral_centroid)
        + weights.rate * closeness(a.speech_rate, b.speech_rate)
    )
    total = weights.total
    if total <= 0:
        return 0.0
    return max(0.0, min(1.0, score / total))
