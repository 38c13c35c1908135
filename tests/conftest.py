"""Shared fixtures for speaker identification tests."""

import numpy as np
import pytest

from sidecar_speakers.config import Settings
from sidecar_speakers.models import Embedding, Speaker, VoiceSignature
from sidecar_speakers.registry import SpeakerRegistry
from sidecar_speakers.store import MemoryStore

DIM = 128


def unit(vector: np.ndarray) -> np.ndarray:
    return vector / np.linalg.norm(vector)


def basis(index: int, dim: int = DIM) -> np.ndarray:
    vector = np.zeros(dim)
    vector[index] = 1.0
    return vector


@pytest.fixture
def rng():
    """Seeded random generator so every run sees the same vectors."""
    return np.random.default_rng(1234)


@pytest.fixture
def settings(tmp_path):
    """Default engine settings rooted in a temporary data dir."""
    return Settings(
        data_dir=tmp_path,
        registry_path=tmp_path / "speakers.json",
        config_path=tmp_path / "config.json",
    )


@pytest.fixture
def store():
    """Empty in-memory snapshot store."""
    return MemoryStore()


@pytest.fixture
def registry(store, settings):
    """Registry over the in-memory store."""
    reg = SpeakerRegistry.open(store=store, settings=settings)
    yield reg
    reg.close()


@pytest.fixture
def make_signature():
    """Build a VoiceSignature from a raw vector plus optional scalar overrides."""

    def _make(vector, **overrides) -> VoiceSignature:
        return VoiceSignature(embedding=Embedding.from_array(np.asarray(vector)), **overrides)

    return _make


@pytest.fixture
def make_speaker(make_signature):
    """Build a Speaker whose signature wraps the given vector."""

    def _make(vector, **fields) -> Speaker:
        return Speaker.create(make_signature(vector), **fields)

    return _make
