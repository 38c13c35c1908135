"""Per-segment speaker identification for one recording session."""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from .clustering import SpeakerCluster
from .errors import DimensionMismatch, PersistenceError
from .models import (
    AudioSegmentInfo,
    Speaker,
    SpeakerIdentification,
    SpeakerMatch,
    VoiceSignature,
)
from .registry import SpeakerRegistry
from .similarity import cosine_similarity, signature_similarity

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Candidate:
    """A scored cluster or registry speaker."""

    similarity: float
    cluster: Optional[SpeakerCluster] = None
    match: Optional[SpeakerMatch] = None

    @property
    def speaker_id(self) -> Optional[str]:
        if self.match is not None:
            return self.match.speaker_id
        return self.cluster.speaker_id


class IdentificationSession:
    """Decides who is speaking, segment by segment, within one session.

    Each incoming voice signature is compared against the session's
    clusters and the registry's known speakers. The best candidate decides
    the outcome:

    - similarity >= match_threshold: the segment joins that cluster or
      speaker; an unbound cluster that has grown large and cohesive enough
      is promoted to a learned registry speaker
    - similarity >= tentative_threshold: tentative assignment with reduced
      confidence; nothing is mutated
    - otherwise: a new cluster is started and the segment is reported as
      a new speaker

    Usage statistics are only updated for confident matches on segments
    suitable for learning. Segments must be fed in chronological order from
    a single thread; calls are serialized by a per-session lock.
    """

    def __init__(
        self,
        registry: SpeakerRegistry,
        settings: Optional["Settings"] = None,
        session_id: Optional[str] = None,
    ):
        if settings is None:
            from .config import get_settings

            settings = get_settings()
        self.registry = registry
        self.settings = settings
        self.weights = settings.weights
        self.session_id = session_id or str(uuid.uuid4())[:8]
        self._clusters: dict[str, SpeakerCluster] = {}
        self._profiles: dict[str, VoiceSignature] = {}
        self._lock = threading.Lock()
        self._segment_count = 0
        self._closed = False

    # Session state

    @property
    def clusters(self) -> list[SpeakerCluster]:
        """Copies of the session's clusters."""
        with self._lock:
            return [c.copy() for c in self._clusters.values()]

    @property
    def is_closed(self) -> bool:
        return self._closed

    def get_cluster(self, cluster_id: str) -> Optional[SpeakerCluster]:
        """Copy of one cluster, or None."""
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            return cluster.copy() if cluster is not None else None

    def representative_signature(self, cluster: SpeakerCluster) -> VoiceSignature:
        """Seed signature features with the cluster's current centroid."""
        return self._profiles[cluster.id].with_embedding(cluster.centroid)

    def abort(self) -> None:
        """Discard all session clusters. Completed promotions are kept."""
        with self._lock:
            discarded = len(self._clusters)
            self._clusters.clear()
            self._profiles.clear()
            self._closed = True
        logger.info("Session %s aborted, %d clusters discarded", self.session_id, discarded)

    def close(self) -> None:
        """End the session. Unpromoted clusters are discarded."""
        with self._lock:
            promoted = sum(1 for c in self._clusters.values() if c.is_bound)
            total = len(self._clusters)
            self._clusters.clear()
            self._profiles.clear()
            self._closed = True
        logger.info(
            "Session %s closed: %d clusters, %d bound to speakers",
            self.session_id, total, promoted,
        )

    # Identification

    def identify(
        self,
        signature: VoiceSignature,
        segment: AudioSegmentInfo,
        segment_id: Optional[str] = None,
    ) -> SpeakerIdentification:
        """Identify the speaker of one segment.

        Args:
            signature: Voice signature of the segment.
            segment: Recording-side segment facts.
            segment_id: Transcript segment ID (generated if omitted).

        Returns:
            The identification. Absence of any match yields a new speaker,
            never an error.

        Raises:
            InvalidEmbedding: If the signature's embedding is empty or
                non-finite.
            ValueError: If the signature's scalar features are invalid.
            RuntimeError: If the session was closed or aborted.
        """
        signature.validate(self.settings.energy_bands)
        with self._lock:
            if self._closed:
                raise RuntimeError(f"Session {self.session_id} is closed")
            self._segment_count += 1
            if segment_id is None:
                segment_id = f"{self.session_id}-{self._segment_count}"
            return self._decide(signature, segment, segment_id)

    def _decide(
        self,
        signature: VoiceSignature,
        segment: AudioSegmentInfo,
        segment_id: str,
    ) -> SpeakerIdentification:
        floor = self.settings.embedding_floor
        matches = self.registry.find_similar(
            signature,
            threshold=self.settings.tentative_threshold,
            embedding_floor=floor,
        )
        candidates = self._score_clusters(signature)
        candidates.extend(_Candidate(similarity=m.similarity, match=m) for m in matches)
        # Prefer session clusters over registry speakers on equal scores
        candidates.sort(key=lambda c: (-c.similarity, c.match is not None))
        similar = self._rank_similar(matches, candidates)

        best = candidates[0] if candidates else None
        if best is None or best.similarity < self.settings.tentative_threshold:
            return self._new_speaker(signature, segment, segment_id, similar)
        if best.similarity >= self.settings.match_threshold:
            return self._bind(best, signature, segment, segment_id, similar)
        return self._tentative(best, segment, similar)

    def _score_clusters(self, signature: VoiceSignature) -> list[_Candidate]:
        scored = []
        for cluster in self._clusters.values():
            try:
                raw = cosine_similarity(signature.embedding, cluster.centroid)
                similarity = signature_similarity(
                    signature, self.representative_signature(cluster), self.weights
                )
            except DimensionMismatch:
                continue
            if raw < self.settings.embedding_floor:
                continue
            scored.append(_Candidate(similarity=similarity, cluster=cluster))
        return scored

    def _rank_similar(
        self, matches: list[SpeakerMatch], candidates: list[_Candidate]
    ) -> tuple[SpeakerMatch, ...]:
        """Registry matches plus speakers reached through bound clusters."""
        best: dict[str, SpeakerMatch] = {m.speaker_id: m for m in matches}
        for candidate in candidates:
            cluster = candidate.cluster
            if cluster is None or not cluster.is_bound:
                continue
            if candidate.similarity < self.settings.tentative_threshold:
                continue
            speaker = self.registry.get(cluster.speaker_id)
            if speaker is None:
                continue
            known = best.get(speaker.id)
            if known is None or known.similarity < candidate.similarity:
                best[speaker.id] = SpeakerMatch(
                    speaker_id=speaker.id,
                    similarity=candidate.similarity,
                    confidence=speaker.confidence,
                )
        return tuple(sorted(best.values(), key=lambda m: (-m.similarity, m.speaker_id)))

    def _new_cluster(self, signature: VoiceSignature, segment_id: str) -> SpeakerCluster:
        cluster = SpeakerCluster.create(signature.embedding, segment_id)
        self._clusters[cluster.id] = cluster
        self._profiles[cluster.id] = signature
        return cluster

    def _cluster_for_speaker(self, speaker_id: str) -> Optional[SpeakerCluster]:
        for cluster in self._clusters.values():
            if cluster.speaker_id == speaker_id:
                return cluster
        return None

    def _new_speaker(
        self,
        signature: VoiceSignature,
        segment: AudioSegmentInfo,
        segment_id: str,
        similar: tuple[SpeakerMatch, ...],
    ) -> SpeakerIdentification:
        cluster = self._new_cluster(signature, segment_id)
        logger.debug("Session %s: new speaker cluster %s", self.session_id, cluster.id)
        return SpeakerIdentification(
            speaker_id=None,
            confidence=0.0,
            is_new_speaker=True,
            similar_speakers=similar,
            audio_segment=segment,
            cluster_id=cluster.id,
        )

    def _tentative(
        self,
        best: _Candidate,
        segment: AudioSegmentInfo,
        similar: tuple[SpeakerMatch, ...],
    ) -> SpeakerIdentification:
        speaker_id = best.speaker_id
        cluster = best.cluster
        if cluster is None and speaker_id is not None:
            cluster = self._cluster_for_speaker(speaker_id)
        return SpeakerIdentification(
            speaker_id=speaker_id,
            confidence=best.similarity * self.settings.tentative_confidence_scale,
            is_new_speaker=False,
            similar_speakers=similar,
            audio_segment=segment,
            cluster_id=cluster.id if cluster else None,
            is_tentative=True,
        )

    def _bind(
        self,
        best: _Candidate,
        signature: VoiceSignature,
        segment: AudioSegmentInfo,
        segment_id: str,
        similar: tuple[SpeakerMatch, ...],
    ) -> SpeakerIdentification:
        usage_recorded = False
        if best.cluster is not None:
            cluster = best.cluster
            cluster.add_embedding(signature.embedding, segment_id)
            if cluster.is_bound and self.registry.get(cluster.speaker_id) is None:
                logger.info(
                    "Speaker %s was deleted; unbinding cluster %s", cluster.speaker_id, cluster.id
                )
                cluster.speaker_id = None
            if not cluster.is_bound:
                promoted = self._maybe_promote(cluster, segment)
                usage_recorded = promoted is not None
        else:
            speaker_id = best.match.speaker_id
            cluster = self._cluster_for_speaker(speaker_id)
            if cluster is None or cluster.dimension != signature.embedding.dimension:
                cluster = self._new_cluster(signature, segment_id)
                cluster.speaker_id = speaker_id
            else:
                cluster.add_embedding(signature.embedding, segment_id)

        speaker_id = cluster.speaker_id
        if speaker_id is not None and not usage_recorded and segment.is_suitable_for_learning:
            self._record_usage(speaker_id, segment)

        return SpeakerIdentification(
            speaker_id=speaker_id,
            confidence=best.similarity,
            is_new_speaker=False,
            similar_speakers=similar,
            audio_segment=segment,
            cluster_id=cluster.id,
        )

    def _record_usage(self, speaker_id: str, segment: AudioSegmentInfo) -> None:
        try:
            self.registry.record_usage(speaker_id, segment)
        except PersistenceError as e:
            logger.warning("Could not update usage for speaker %s: %s", speaker_id, e)

    def _maybe_promote(
        self, cluster: SpeakerCluster, segment: AudioSegmentInfo
    ) -> Optional[Speaker]:
        """Promote a large, cohesive cluster to a learned registry speaker.

        All or nothing: if the registry write fails the cluster stays
        unbound and may be promoted on a later segment.
        """
        if not cluster.is_promotable(self.settings.learn_min_size, self.settings.learn_threshold):
            return None
        speaker = Speaker.create(self.representative_signature(cluster)).learned_from(
            cluster.embeddings
        )
        if segment.is_suitable_for_learning:
            speaker = speaker.record_usage(segment.duration)
        try:
            self.registry.add(speaker)
        except PersistenceError as e:
            logger.warning("Could not promote cluster %s: %s", cluster.id, e)
            return None
        cluster.speaker_id = speaker.id
        logger.info(
            "Session %s: promoted cluster %s (%d segments, cohesion %.2f) to speaker %s",
            self.session_id, cluster.id, cluster.size, cluster.cohesion, speaker.id,
        )
        return speaker

    def promote(self, cluster_id: str, name: Optional[str] = None) -> Speaker:
        """Turn a session cluster into a registry speaker on user request.

        A cluster already bound to a speaker renames that speaker when a
        name is given. Large, cohesive clusters are stored as learned.

        Raises:
            KeyError: If the cluster is unknown to this session.
            PersistenceError: If the registry could not be written.
        """
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            if cluster is None:
                raise KeyError(cluster_id)

            existing = self.registry.get(cluster.speaker_id) if cluster.is_bound else None
            if existing is not None:
                if name is not None and name != existing.name:
                    return self.registry.rename(existing.id, name) or existing
                return existing

            speaker = Speaker.create(self.representative_signature(cluster), name=name)
            if (
                cluster.size >= self.settings.learn_min_size
                and cluster.cohesion >= self.settings.learn_threshold
            ):
                speaker = speaker.learned_from(cluster.embeddings)
            self.registry.add(speaker)
            cluster.speaker_id = speaker.id
            return speaker


def identify_segment(
    session: IdentificationSession,
    signature: VoiceSignature,
    segment: AudioSegmentInfo,
    segment_id: Optional[str] = None,
) -> Optional[SpeakerIdentification]:
    """Identify a segment, returning None instead of raising on bad input.

    For callers (transcript assembly) that must never be blocked by a
    speaker-identity failure.
    """
    try:
        return session.identify(signature, segment, segment_id)
    except ValueError as e:
        logger.warning("Segment %s rejected: %s", segment_id or "?", e)
        return None
