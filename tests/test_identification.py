"""Tests for the identification decision policy."""

import math

import numpy as np
import pytest

from conftest import DIM, basis, unit
from sidecar_speakers.errors import InvalidEmbedding, PersistenceError
from sidecar_speakers.identification import IdentificationSession, identify_segment
from sidecar_speakers.models import AudioSegmentInfo, Embedding, VoiceSignature


def suitable(start: float = 0.0) -> AudioSegmentInfo:
    return AudioSegmentInfo(start_time=start, duration=4.0)


def unsuitable(start: float = 0.0) -> AudioSegmentInfo:
    return AudioSegmentInfo(start_time=start, duration=1.0)


@pytest.fixture
def session(registry, settings):
    return IdentificationSession(registry, settings, session_id="test")


class TestKnownSpeaker:
    """Matching segments against registry speakers."""

    def test_noisy_embedding_matches(self, session, registry, make_speaker, make_signature, rng) -> None:
        base = unit(rng.normal(size=DIM))
        speaker = registry.add(make_speaker(base))
        noisy = make_signature(base + rng.normal(scale=1e-4, size=DIM))

        result = session.identify(noisy, suitable())

        assert result.speaker_id == speaker.id
        assert not result.is_new_speaker
        assert not result.is_tentative
        assert result.confidence >= 0.99
        assert result.is_reliable
        assert result.similar_speakers[0].speaker_id == speaker.id

    def test_usage_accumulates_over_segments(self, session, registry, make_speaker, make_signature) -> None:
        speaker = registry.add(make_speaker(basis(0)))
        previous = speaker.confidence

        for i in range(5):
            result = session.identify(make_signature(basis(0)), suitable(i * 4.0))
            assert result.speaker_id == speaker.id
            current = registry.get(speaker.id)
            assert current.meeting_count == i + 1
            assert previous <= current.confidence <= 1.0
            previous = current.confidence

        current = registry.get(speaker.id)
        assert current.total_speaking_time == pytest.approx(20.0)
        assert len(session.clusters) == 1

    def test_unsuitable_segments_leave_stats_alone(self, session, registry, make_speaker, make_signature) -> None:
        speaker = registry.add(make_speaker(basis(0)))

        for i in range(3):
            result = session.identify(make_signature(basis(0)), unsuitable(float(i)))
            assert result.speaker_id == speaker.id

        assert registry.get(speaker.id) == speaker

    def test_stats_write_failure_is_not_raised(self, session, registry, store, make_speaker, make_signature) -> None:
        speaker = registry.add(make_speaker(basis(0)))
        store.fail_writes = True

        result = session.identify(make_signature(basis(0)), suitable())

        assert result.speaker_id == speaker.id
        assert registry.get(speaker.id).meeting_count == 0

    def test_other_dimensions_ignored(self, session, registry, make_speaker, make_signature) -> None:
        registry.add(make_speaker(np.ones(16)))
        result = session.identify(make_signature(np.ones(DIM)), suitable())
        assert result.is_new_speaker
        assert result.similar_speakers == ()


class TestNewSpeaker:
    """Segments that resemble nobody."""

    def test_low_cosine_starts_new_cluster(self, session, registry, make_speaker, make_signature) -> None:
        registry.add(make_speaker(basis(0)))
        registry.add(make_speaker(basis(1)))
        query = 0.3 * basis(0) + 0.3 * basis(1) + math.sqrt(0.82) * basis(2)

        result = session.identify(make_signature(query), suitable())

        assert result.is_new_speaker
        assert result.speaker_id is None
        assert result.confidence == 0.0
        assert result.cluster_id is not None
        assert result.provisional_id == result.cluster_id
        assert session.get_cluster(result.cluster_id).size == 1
        assert len(registry) == 2

    def test_empty_registry(self, session, make_signature) -> None:
        result = session.identify(make_signature(basis(0)), suitable())
        assert result.is_new_speaker
        assert result.similar_speakers == ()

    def test_generated_segment_ids(self, session, make_signature) -> None:
        first = session.identify(make_signature(basis(0)), suitable())
        second = session.identify(make_signature(basis(1)), suitable())
        assert session.get_cluster(first.cluster_id).segment_ids == ["test-1"]
        assert session.get_cluster(second.cluster_id).segment_ids == ["test-2"]


class TestTentative:
    """Matches between the tentative and match thresholds."""

    def test_tentative_assignment(self, session, registry, store, make_speaker, make_signature) -> None:
        speaker = registry.add(make_speaker(basis(0)))
        saves = store.save_count
        # cosine 0.6 with every scalar feature doubled scores 0.55
        query = make_signature(
            0.6 * basis(0) + 0.8 * basis(1),
            fundamental_frequency=300.0,
            spectral_centroid=4000.0,
            speech_rate=300.0,
        )

        result = session.identify(query, suitable())

        assert result.is_tentative
        assert not result.is_new_speaker
        assert result.speaker_id == speaker.id
        assert result.confidence == pytest.approx(0.55 * 0.8)
        assert not result.is_reliable
        assert session.clusters == []
        assert registry.get(speaker.id) == speaker
        assert store.save_count == saves

    def test_close_second_best_kept(self, session, registry, make_speaker, make_signature) -> None:
        first = registry.add(make_speaker(basis(0)))
        second = registry.add(make_speaker(basis(1)))
        # cosines 0.6 and 0.55 with doubled scalars score 0.55 and 0.525
        query = make_signature(
            0.6 * basis(0) + 0.55 * basis(1) + math.sqrt(1 - 0.36 - 0.3025) * basis(2),
            fundamental_frequency=300.0,
            spectral_centroid=4000.0,
            speech_rate=300.0,
        )

        result = session.identify(query, suitable())

        assert result.is_tentative
        assert result.speaker_id == first.id
        assert [m.speaker_id for m in result.similar_speakers] == [first.id, second.id]
        assert result.similar_speakers[0].similarity == pytest.approx(0.55)
        assert result.similar_speakers[1].similarity == pytest.approx(0.525)


class TestSessionState:
    """Cluster views handed to callers."""

    def test_get_cluster_is_detached(self, session, make_signature) -> None:
        first = session.identify(make_signature(basis(0)), suitable())
        view = session.get_cluster(first.cluster_id)

        session.identify(make_signature(basis(0)), suitable())

        assert view.size == 1
        assert view.segment_ids == ["test-1"]
        assert session.get_cluster(first.cluster_id).size == 2

    def test_changing_a_view_leaves_session_alone(self, session, make_signature) -> None:
        first = session.identify(make_signature(basis(0)), suitable())
        view = session.clusters[0]
        view.add_embedding(Embedding.from_array(basis(1)), "outside")
        view.speaker_id = "someone"

        cluster = session.get_cluster(first.cluster_id)
        assert cluster.size == 1
        assert cluster.segment_ids == ["test-1"]
        assert not cluster.is_bound

    def test_unknown_cluster(self, session) -> None:
        assert session.get_cluster("nope") is None


class TestPromotion:
    """Growing clusters into learned speakers."""

    def test_promoted_on_third_segment(self, session, registry, make_signature, rng) -> None:
        base = unit(rng.normal(size=DIM))

        first = session.identify(make_signature(base), suitable(0.0))
        assert first.is_new_speaker

        second = session.identify(make_signature(base + rng.normal(scale=1e-3, size=DIM)), suitable(4.0))
        assert second.speaker_id is None
        assert second.cluster_id == first.cluster_id
        assert len(registry) == 0

        third = session.identify(make_signature(base + rng.normal(scale=1e-3, size=DIM)), suitable(8.0))
        assert third.speaker_id is not None
        assert third.cluster_id == first.cluster_id

        speaker = registry.get(third.speaker_id)
        assert speaker.is_learned
        assert speaker.meeting_count == 1
        assert speaker.confidence == pytest.approx(0.9)
        assert session.get_cluster(first.cluster_id).speaker_id == speaker.id

    def test_failed_promotion_retried_later(self, session, registry, store, make_signature) -> None:
        first = session.identify(make_signature(basis(0)), suitable())
        session.identify(make_signature(basis(0)), suitable())
        store.fail_writes = True

        third = session.identify(make_signature(basis(0)), suitable())

        assert third.speaker_id is None
        assert third.confidence == pytest.approx(1.0)
        assert len(registry) == 0
        assert not session.get_cluster(first.cluster_id).is_bound

        store.fail_writes = False
        fourth = session.identify(make_signature(basis(0)), suitable())
        assert fourth.speaker_id is not None
        assert registry.get(fourth.speaker_id).is_learned

    def test_incoherent_cluster_not_promoted(self, session, registry, make_signature) -> None:
        # pairwise cosines 0.6, 0.6 and 0.36
        seed = basis(0)
        first = session.identify(make_signature(seed), suitable())
        session.identify(make_signature(0.6 * seed + 0.8 * basis(1)), suitable())
        session.identify(make_signature(0.6 * seed + 0.8 * basis(2)), suitable())

        cluster = session.get_cluster(first.cluster_id)
        assert cluster.size == 3
        assert cluster.cohesion < 0.8
        assert not cluster.is_bound
        assert len(registry) == 0

    def test_explicit_promote_and_rename(self, session, registry, make_signature) -> None:
        result = session.identify(make_signature(basis(0)), suitable())

        speaker = session.promote(result.cluster_id, name="Ada")
        assert registry.get(speaker.id).name == "Ada"
        assert not speaker.is_learned
        assert session.get_cluster(result.cluster_id).speaker_id == speaker.id

        renamed = session.promote(result.cluster_id, name="Grace")
        assert renamed.id == speaker.id
        assert registry.get(speaker.id).name == "Grace"

        again = session.identify(make_signature(basis(0)), suitable())
        assert again.speaker_id == speaker.id

    def test_promote_unknown_cluster(self, session) -> None:
        with pytest.raises(KeyError):
            session.promote("nope")

    def test_promote_write_failure_propagates(self, session, registry, store, make_signature) -> None:
        result = session.identify(make_signature(basis(0)), suitable())
        store.fail_writes = True
        with pytest.raises(PersistenceError):
            session.promote(result.cluster_id, name="Ada")
        assert not session.get_cluster(result.cluster_id).is_bound

    def test_deleted_speaker_unbinds_cluster(self, session, registry, make_speaker, make_signature) -> None:
        speaker = registry.add(make_speaker(basis(0)))
        first = session.identify(make_signature(basis(0)), suitable())
        assert first.speaker_id == speaker.id

        registry.delete(speaker.id)
        second = session.identify(make_signature(basis(0)), suitable())

        assert second.speaker_id is None
        assert second.cluster_id == first.cluster_id
        assert not session.get_cluster(first.cluster_id).is_bound


class TestBoundary:
    """Input validation and session lifecycle."""

    def test_invalid_embedding_rejected(self, session) -> None:
        bad = VoiceSignature(embedding=Embedding((1.0, math.nan)))
        with pytest.raises(InvalidEmbedding):
            session.identify(bad, suitable())
        assert session.clusters == []

    def test_empty_embedding_rejected(self, session) -> None:
        with pytest.raises(InvalidEmbedding):
            session.identify(VoiceSignature(embedding=Embedding(())), suitable())

    def test_wrong_energy_band_count(self, session, make_signature) -> None:
        with pytest.raises(ValueError):
            session.identify(make_signature(basis(0), energy_distribution=(0.5, 0.5)), suitable())

    def test_identify_segment_returns_none_on_bad_input(self, session, make_signature) -> None:
        bad = VoiceSignature(embedding=Embedding((math.inf,)))
        assert identify_segment(session, bad, suitable()) is None

        good = identify_segment(session, make_signature(basis(0)), suitable())
        assert good is not None
        assert good.is_new_speaker

    def test_closed_session(self, session, make_signature) -> None:
        session.identify(make_signature(basis(0)), suitable())
        session.close()

        assert session.is_closed
        assert session.clusters == []
        with pytest.raises(RuntimeError):
            session.identify(make_signature(basis(0)), suitable())

    def test_abort_keeps_completed_promotions(self, session, registry, make_signature) -> None:
        for _ in range(3):
            result = session.identify(make_signature(basis(0)), suitable())
        session.abort()

        assert session.clusters == []
        assert registry.get(result.speaker_id) is not None
        with pytest.raises(RuntimeError):
            session.identify(make_signature(basis(0)), suitable())
