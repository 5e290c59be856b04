from pathlib import Path

import pytest

from zapdesk.config import (
    ConfigError,
    load_config,
    load_settings,
    parse_settings,
)

VALID = """
backend_url = "https://backend.test/"
api_key = "anon-key"
organization_id = "org-1"
user_id = "user-1"
"""


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "ZAPDESK_API_KEY",
        "ZAPDESK_BACKEND_URL",
        "ZAPDESK_ORGANIZATION_ID",
        "ZAPDESK_USER_ID",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_load_from_explicit_path(self, tmp_path: Path) -> None:
        config_file = tmp_path / "zapdesk.toml"
        config_file.write_text('api_key = "abc"')

        config, path = load_config(config_file)

        assert config["api_key"] == "abc"
        assert path == config_file

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Missing config file"):
            load_config(tmp_path / "nonexistent.toml")

    def test_malformed_toml_raises(self, tmp_path: Path) -> None:
        bad_file = tmp_path / "bad.toml"
        bad_file.write_text("invalid = [unclosed")

        with pytest.raises(ConfigError, match="Malformed TOML"):
            load_config(bad_file)

    def test_path_exists_but_is_directory(self, tmp_path: Path) -> None:
        dir_path = tmp_path / "config_dir"
        dir_path.mkdir()

        with pytest.raises(ConfigError, match="Failed to read config file"):
            load_config(dir_path)

    def test_finds_local_config(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        local = tmp_path / ".zapdesk" / "zapdesk.toml"
        local.parent.mkdir()
        local.write_text(VALID)
        monkeypatch.chdir(tmp_path)

        settings, path = load_settings()

        assert path == local
        assert settings.organization_id == "org-1"


class TestParseSettings:
    def test_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "zapdesk.toml"
        config_file.write_text(VALID)

        settings, _ = load_settings(config_file)

        assert settings.backend_url == "https://backend.test"
        assert settings.send_cooldown_ms == 5000
        assert settings.message_poll_interval_s == 3.0
        assert settings.conversation_poll_interval_s == 5.0
        assert settings.probe_timeout_s == 10.0
        assert settings.request_timeout_s == 120.0

    def test_environment_wins(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("ZAPDESK_API_KEY", " env-key ")
        config = {
            "backend_url": "https://backend.test",
            "organization_id": "org-1",
            "user_id": "user-1",
        }

        settings = parse_settings(config, tmp_path / "zapdesk.toml")

        assert settings.api_key == "env-key"

    def test_missing_key_mentions_env_var(self, tmp_path: Path) -> None:
        config = {"backend_url": "https://backend.test"}

        with pytest.raises(ConfigError, match="ZAPDESK_API_KEY"):
            parse_settings(config, tmp_path / "zapdesk.toml")

    def test_blank_string_is_invalid(self, tmp_path: Path) -> None:
        config = {
            "backend_url": "https://backend.test",
            "api_key": "  ",
            "organization_id": "org-1",
            "user_id": "user-1",
        }

        with pytest.raises(ConfigError, match="expected a non-empty string"):
            parse_settings(config, tmp_path / "zapdesk.toml")

    def test_backend_url_must_be_http(self, tmp_path: Path) -> None:
        config = {
            "backend_url": "ftp://backend.test",
            "api_key": "k",
            "organization_id": "org-1",
            "user_id": "user-1",
        }

        with pytest.raises(ConfigError, match="http"):
            parse_settings(config, tmp_path / "zapdesk.toml")

    @pytest.mark.parametrize(
        ("value", "message"),
        [
            (0, "positive"),
            (-5, "positive"),
            ("fast", "expected a number"),
            (True, "expected a number"),
        ],
    )
    def test_invalid_cooldown(self, tmp_path: Path, value, message: str) -> None:
        config = {
            "backend_url": "https://backend.test",
            "api_key": "k",
            "organization_id": "org-1",
            "user_id": "user-1",
            "send_cooldown_ms": value,
        }

        with pytest.raises(ConfigError, match=message):
            parse_settings(config, tmp_path / "zapdesk.toml")

    def test_custom_intervals(self, tmp_path: Path) -> None:
        config = {
            "backend_url": "http://localhost:54321",
            "api_key": "k",
            "organization_id": "org-1",
            "user_id": "user-1",
            "message_poll_interval_s": 1,
            "probe_timeout_s": 2.5,
        }

        settings = parse_settings(config, tmp_path / "zapdesk.toml")

        assert settings.message_poll_interval_s == 1.0
        assert settings.probe_timeout_s == 2.5
