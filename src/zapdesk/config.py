from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

# Environment variable names for secrets and session identity
ENV_API_KEY = "ZAPDESK_API_KEY"
ENV_BACKEND_URL = "ZAPDESK_BACKEND_URL"
ENV_ORGANIZATION_ID = "ZAPDESK_ORGANIZATION_ID"
ENV_USER_ID = "ZAPDESK_USER_ID"

LOCAL_CONFIG_NAME = Path(".zapdesk") / "zapdesk.toml"
HOME_CONFIG_PATH = Path.home() / ".zapdesk" / "zapdesk.toml"

DEFAULT_SEND_COOLDOWN_MS = 5000
DEFAULT_MESSAGE_POLL_INTERVAL_S = 3.0
DEFAULT_CONVERSATION_POLL_INTERVAL_S = 5.0
DEFAULT_PROBE_TIMEOUT_S = 10.0
DEFAULT_REQUEST_TIMEOUT_S = 120.0


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class ZapdeskSettings:
    backend_url: str
    api_key: str
    organization_id: str
    user_id: str
    send_cooldown_ms: int = DEFAULT_SEND_COOLDOWN_MS
    message_poll_interval_s: float = DEFAULT_MESSAGE_POLL_INTERVAL_S
    conversation_poll_interval_s: float = DEFAULT_CONVERSATION_POLL_INTERVAL_S
    probe_timeout_s: float = DEFAULT_PROBE_TIMEOUT_S
    request_timeout_s: float = DEFAULT_REQUEST_TIMEOUT_S


def _config_candidates() -> list[Path]:
    candidates = [Path.cwd() / LOCAL_CONFIG_NAME, HOME_CONFIG_PATH]
    if candidates[0] == candidates[1]:
        return [candidates[0]]
    return candidates


def _read_config(cfg_path: Path) -> dict:
    try:
        raw = cfg_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    except OSError as e:
        raise ConfigError(f"Failed to read config file {cfg_path}: {e}") from e
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {e}") from None


def load_config(path: str | Path | None = None) -> tuple[dict, Path]:
    if path:
        cfg_path = Path(path).expanduser()
        return _read_config(cfg_path), cfg_path

    for candidate in _config_candidates():
        if candidate.is_file():
            return _read_config(candidate), candidate

    raise ConfigError("Missing zapdesk config.")


def _get_string(config: dict, config_path: Path, key: str, env_name: str) -> str:
    """Read a required string, letting the environment variable win."""
    env_value = os.environ.get(env_name)
    if env_value and env_value.strip():
        return env_value.strip()

    try:
        value = config[key]
    except KeyError:
        raise ConfigError(
            f"Missing `{key}`. Set {env_name} environment variable "
            f"or add `{key}` to {config_path}."
        ) from None

    if not isinstance(value, str) or not value.strip():
        raise ConfigError(
            f"Invalid `{key}` in {config_path}; expected a non-empty string."
        )
    return value.strip()


def _get_positive_number(
    config: dict, config_path: Path, key: str, default: float
) -> float:
    value: Any = config.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Invalid `{key}` in {config_path}; expected a number.")
    if value <= 0:
        raise ConfigError(
            f"Invalid `{key}` in {config_path}; expected a positive number."
        )
    return value


def parse_settings(config: dict, config_path: Path) -> ZapdeskSettings:
    backend_url = _get_string(config, config_path, "backend_url", ENV_BACKEND_URL)
    if not backend_url.startswith(("http://", "https://")):
        raise ConfigError(
            f"Invalid `backend_url` in {config_path}; expected an http(s) URL."
        )
    cooldown = _get_positive_number(
        config, config_path, "send_cooldown_ms", DEFAULT_SEND_COOLDOWN_MS
    )
    return ZapdeskSettings(
        backend_url=backend_url.rstrip("/"),
        api_key=_get_string(config, config_path, "api_key", ENV_API_KEY),
        organization_id=_get_string(
            config, config_path, "organization_id", ENV_ORGANIZATION_ID
        ),
        user_id=_get_string(config, config_path, "user_id", ENV_USER_ID),
        send_cooldown_ms=int(cooldown),
        message_poll_interval_s=float(
            _get_positive_number(
                config,
                config_path,
                "message_poll_interval_s",
                DEFAULT_MESSAGE_POLL_INTERVAL_S,
            )
        ),
        conversation_poll_interval_s=float(
            _get_positive_number(
                config,
                config_path,
                "conversation_poll_interval_s",
                DEFAULT_CONVERSATION_POLL_INTERVAL_S,
            )
        ),
        probe_timeout_s=float(
            _get_positive_number(
                config, config_path, "probe_timeout_s", DEFAULT_PROBE_TIMEOUT_S
            )
        ),
        request_timeout_s=float(
            _get_positive_number(
                config, config_path, "request_timeout_s", DEFAULT_REQUEST_TIMEOUT_S
            )
        ),
    )


def load_settings(path: str | Path | None = None) -> tuple[ZapdeskSettings, Path]:
    config, config_path = load_config(path)
    return parse_settings(config, config_path), config_path
