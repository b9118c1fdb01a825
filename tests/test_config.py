"""Tests for studylib configuration management."""

import pytest
import yaml

from studylib.config import (
    ServerConfig,
    StudylibConfigError,
    get_config,
    get_config_path,
    reset_config,
)


@pytest.fixture
def clean_env(monkeypatch):
    """Drop the STUDYLIB_* overrides set for the test session."""
    for name in (
        "STUDYLIB_DB",
        "STUDYLIB_JWT_SECRET",
        "STUDYLIB_ENV",
        "STUDYLIB_AUTO_VERIFY",
        "STUDYLIB_TOKEN_TTL_MINUTES",
        "STUDYLIB_LOG_LEVEL",
        "STUDYLIB_GLOBAL_ROOM",
    ):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch


class TestServerConfig:
    def test_default_values(self):
        config = ServerConfig(jwt_secret="s")
        assert config.db_path == ":memory:"
        assert config.token_ttl_minutes == 1440
        assert config.environment == "development"
        assert config.global_room == "general"
        assert config.max_message_length == 1000
        assert config.is_production is False

    def test_generates_secret_in_development(self):
        config = ServerConfig()
        assert config.jwt_secret
        assert config.has_generated_secret is True

    def test_production_requires_secret(self):
        with pytest.raises(StudylibConfigError, match="jwt_secret"):
            ServerConfig(environment="production")

    def test_production_with_secret(self):
        config = ServerConfig(environment="production", jwt_secret="s")
        assert config.is_production is True
        assert config.has_generated_secret is False

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"environment": "staging"},
            {"token_ttl_minutes": 0},
            {"max_message_length": -1},
            {"global_room": ""},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(StudylibConfigError):
            ServerConfig(jwt_secret="s", **kwargs)

    def test_to_dict_masks_secret(self):
        data = ServerConfig(jwt_secret="very-secret").to_dict()
        assert data["jwt_secret"] == "***"
        assert "_generated_secret" not in data


class TestLoad:
    def test_env_overrides(self, clean_env, tmp_path):
        clean_env.setenv("STUDYLIB_DB", "/tmp/x.db")
        clean_env.setenv("STUDYLIB_JWT_SECRET", "env-secret")
        clean_env.setenv("STUDYLIB_TOKEN_TTL_MINUTES", "30")
        clean_env.setenv("STUDYLIB_ENV", "Production")
        clean_env.setenv("STUDYLIB_LOG_LEVEL", "debug")
        clean_env.setenv("STUDYLIB_AUTO_VERIFY", "no")
        clean_env.setenv("STUDYLIB_GLOBAL_ROOM", "lobby")

        config = ServerConfig.load(tmp_path / "missing.yaml")

        assert config.db_path == "/tmp/x.db"
        assert config.jwt_secret == "env-secret"
        assert config.token_ttl_minutes == 30
        assert config.environment == "production"
        assert config.log_level == "DEBUG"
        assert config.auto_verify is False
        assert config.global_room == "lobby"

    def test_bad_ttl_env(self, clean_env, tmp_path):
        clean_env.setenv("STUDYLIB_TOKEN_TTL_MINUTES", "soon")
        with pytest.raises(StudylibConfigError):
            ServerConfig.load(tmp_path / "missing.yaml")

    def test_file_then_env(self, clean_env, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"jwt_secret": "file-secret", "global_room": "hall"}))
        clean_env.setenv("STUDYLIB_GLOBAL_ROOM", "lobby")

        config = ServerConfig.load(path)

        assert config.jwt_secret == "file-secret"
        assert config.global_room == "lobby"

    def test_unknown_keys_rejected(self, clean_env, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"jwt_secret": "s", "colour": "blue"}))

        with pytest.raises(StudylibConfigError, match="colour"):
            ServerConfig.load(path)

    def test_non_mapping_file_rejected(self, clean_env, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(StudylibConfigError):
            ServerConfig.load(path)

    def test_save_and_load(self, clean_env, tmp_path):
        path = tmp_path / "nested" / "config.yaml"
        ServerConfig(jwt_secret="saved", global_room="hall").save(path)

        loaded = ServerConfig.load(path)

        assert loaded.jwt_secret == "saved"
        assert loaded.global_room == "hall"

    def test_save_skips_generated_secret(self, clean_env, tmp_path):
        path = tmp_path / "config.yaml"
        ServerConfig().save(path)

        assert "jwt_secret" not in yaml.safe_load(path.read_text())


class TestConfigPath:
    def test_explicit_path(self, monkeypatch, tmp_path):
        monkeypatch.setenv("STUDYLIB_CONFIG", str(tmp_path / "c.yaml"))
        assert get_config_path() == tmp_path / "c.yaml"

    def test_xdg_path(self, monkeypatch, tmp_path):
        monkeypatch.delenv("STUDYLIB_CONFIG", raising=False)
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_config_path() == tmp_path / "studylib" / "config.yaml"


class TestProcessConfig:
    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reset_config_reloads(self, monkeypatch):
        first = get_config()
        monkeypatch.setenv("STUDYLIB_GLOBAL_ROOM", "lobby")
        reset_config()

        assert get_config() is not first
        assert get_config().global_room == "lobby"
