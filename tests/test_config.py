"""Tests for settings, data paths and environment loading."""

import json
import os

import pytest

from sidecar_speakers import paths
from sidecar_speakers.config import Settings
from sidecar_speakers.env import load_env
from sidecar_speakers.similarity import SimilarityWeights


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv(paths.SPEAKERS_HOME_ENV, str(tmp_path))
    return tmp_path.resolve()


class TestPaths:
    def test_data_dir_from_env(self, home) -> None:
        assert paths.get_data_dir() == home
        assert paths.get_registry_path() == home / "speakers.json"
        assert paths.get_env_path() == home / ".env"
        assert paths.get_config_path() == home / "config.json"

    def test_default_data_dir(self, monkeypatch, tmp_path) -> None:
        monkeypatch.delenv(paths.SPEAKERS_HOME_ENV, raising=False)
        monkeypatch.setenv("HOME", str(tmp_path))
        assert paths.get_data_dir() == (tmp_path / ".sidecar_speakers").resolve()

    def test_create_data_dir(self, home, monkeypatch) -> None:
        nested = home / "nested"
        monkeypatch.setenv(paths.SPEAKERS_HOME_ENV, str(nested))
        assert paths.get_data_dir() == nested
        assert not nested.exists()
        assert paths.get_data_dir(create=True) == nested
        assert nested.is_dir()


class TestSettings:
    def test_defaults(self, home) -> None:
        settings = Settings()
        assert settings.data_dir == home
        assert settings.registry_path == home / "speakers.json"
        assert settings.match_threshold == 0.7
        assert settings.tentative_threshold == 0.5
        assert settings.embedding_floor == 0.5
        assert settings.tentative_confidence_scale == 0.8
        assert settings.learn_threshold == 0.8
        assert settings.learn_min_size == 3
        assert settings.energy_bands == 4
        assert not settings.write_behind

    def test_weights(self, settings) -> None:
        assert settings.weights == SimilarityWeights(embedding=0.5, pitch=0.2, timbre=0.2, rate=0.1)
        settings.rate_weight = 0.0
        assert settings.weights.total == pytest.approx(0.9)

    def test_save_and_load(self, home, settings) -> None:
        settings.match_threshold = 0.75
        settings.learn_min_size = 5
        settings.write_behind = True
        settings.save()

        data = json.loads(settings.config_path.read_text(encoding="utf-8"))
        assert data["match_threshold"] == 0.75
        assert "data_dir" not in data

        loaded = Settings.load(settings.config_path)
        assert loaded.match_threshold == 0.75
        assert loaded.learn_min_size == 5
        assert loaded.write_behind
        assert loaded.tentative_threshold == 0.5

    def test_missing_file_gives_defaults(self, home) -> None:
        loaded = Settings.load(home / "absent.json")
        assert loaded.match_threshold == 0.7

    def test_unreadable_file_gives_defaults(self, home) -> None:
        path = home / "config.json"
        path.write_text("{not json", encoding="utf-8")
        assert Settings.load(path).match_threshold == 0.7

        path.write_text("[1, 2]", encoding="utf-8")
        assert Settings.load(path).match_threshold == 0.7


class TestEnv:
    def test_explicit_env_file(self, home, monkeypatch) -> None:
        env_file = home / "custom.env"
        env_file.write_text("SIDECAR_SPEAKERS_TEST_VALUE=explicit\n", encoding="utf-8")
        monkeypatch.setenv("SIDECAR_SPEAKERS_ENV_FILE", str(env_file))
        try:
            assert load_env()
            assert os.environ["SIDECAR_SPEAKERS_TEST_VALUE"] == "explicit"
        finally:
            os.environ.pop("SIDECAR_SPEAKERS_TEST_VALUE", None)

    def test_data_dir_env_file(self, home, monkeypatch) -> None:
        monkeypatch.delenv("SIDECAR_SPEAKERS_ENV_FILE", raising=False)
        (home / ".env").write_text("SIDECAR_SPEAKERS_TEST_VALUE=home\n", encoding="utf-8")
        try:
            load_env()
            assert os.environ["SIDECAR_SPEAKERS_TEST_VALUE"] == "home"
        finally:
            os.environ.pop("SIDECAR_SPEAKERS_TEST_VALUE", None)

    def test_existing_values_not_overridden(self, home, monkeypatch) -> None:
        monkeypatch.delenv("SIDECAR_SPEAKERS_ENV_FILE", raising=False)
        monkeypatch.setenv("SIDECAR_SPEAKERS_TEST_VALUE", "process")
        (home / ".env").write_text("SIDECAR_SPEAKERS_TEST_VALUE=file\n", encoding="utf-8")
        load_env()
        assert os.environ["SIDECAR_SPEAKERS_TEST_VALUE"] == "process"
