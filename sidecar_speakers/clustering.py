"""Session-scoped online clustering of voice embeddings.

A cluster groups the segments of one meeting that appear to come from the
same voice, before (or without) a durable speaker identity being attached.
Clusters grow one embedding at a time. The centroid and cohesion are
recomputed from the members on every change, which is cheap at the size of
one meeting's speaker turns.

A cluster belongs to exactly one IdentificationSession and is mutated only
from that session's single writer.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Optional, Sequence

import numpy as np

from .errors import DimensionMismatch
from .models import Embedding
from .similarity import cosine_similarity


def compute_centroid(embeddings: Sequence[Embedding]) -> Embedding:
    """Compute centroid (element-wise mean) of embeddings.

    Args:
        embeddings: Embeddings of equal dimension.

    Returns:
        Centroid embedding tagged with the first member's model version.
    """
    if not embeddings:
        raise ValueError("Cannot compute centroid of empty list")
    dimension = embeddings[0].dimension
    for embedding in embeddings[1:]:
        if embedding.dimension != dimension:
            raise DimensionMismatch(dimension, embedding.dimension)
    stacked = np.stack([e.as_array() for e in embeddings])
    return Embedding.from_array(
        np.mean(stacked, axis=0),
        model_version=embeddings[0].model_version,
    )


def compute_cohesion(embeddings: Sequence[Embedding]) -> float:
    """Mean pairwise cosine similarity, clamped to [0, 1].

    A cluster with fewer than two members is perfectly cohesive.
    """
    count = len(embeddings)
    if count < 2:
        return 1.0

    total = 0.0
    pairs = 0
    for i in range(count):
        for j in range(i + 1, count):
            total += cosine_similarity(embeddings[i], embeddings[j])
            pairs += 1
    return max(0.0, min(1.0, total / pairs))


def _new_cluster_id() -> str:
    return str(uuid.uuid4())


@dataclass
class SpeakerCluster:
    """Embeddings believed to come from one speaker within a session."""

    id: str
    centroid: Embedding
    embeddings: list[Embedding] = field(default_factory=list)
    segment_ids: list[str] = field(default_factory=list)
    speaker_id: Optional[str] = None
    cohesion: float = 1.0

    @classmethod
    def create(cls, seed: Embedding, segment_id: str) -> "SpeakerCluster":
        """Singleton cluster whose centroid is the seed itself."""
        return cls(
            id=_new_cluster_id(),
            centroid=seed,
            embeddings=[seed],
            segment_ids=[segment_id],
            cohesion=1.0,
        )

    @property
    def size(self) -> int:
        return len(self.embeddings)

    @property
    def dimension(self) -> int:
        return self.centroid.dimension

    @property
    def is_bound(self) -> bool:
        return self.speaker_id is not None

    def copy(self) -> "SpeakerCluster":
        """Detached copy; later growth of this cluster does not show through."""
        return replace(self, embeddings=list(self.embeddings), segment_ids=list(self.segment_ids))

    def add_embedding(self, embedding: Embedding, segment_id: str) -> None:
        """Absorb one more embedding and refresh centroid and cohesion."""
        if embedding.dimension != self.dimension:
            raise DimensionMismatch(self.dimension, embedding.dimension)
        self.embeddings.append(embedding)
        self.segment_ids.append(segment_id)
        self.centroid = compute_centroid(self.embeddings)
        self.cohesion = compute_cohesion(self.embeddings)

    def similarity_to_centroid(self, embedding: Embedding) -> float:
        return cosine_similarity(embedding, self.centroid)

    def distance_to_centroid(self, embedding: Embedding) -> float:
        """1 - cosine similarity to the centroid; 0.0 means same direction."""
        return 1.0 - self.similarity_to_centroid(embedding)

    def is_promotable(self, min_size: int, min_cohesion: float) -> bool:
        return not self.is_bound and self.size >= min_size and self.cohesion >= min_cohesion
