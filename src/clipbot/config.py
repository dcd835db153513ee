from __future__ import annotations

import tempfile
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

HOME_CONFIG_PATH = Path.home() / ".clipbot" / "clipbot.toml"


class ConfigError(RuntimeError):
    pass


def default_scratch_dir() -> Path:
    return Path(tempfile.gettempdir()) / "clipbot"


@dataclass(frozen=True, slots=True)
class BotSettings:
    bot_token: str
    ffmpeg: str = "ffmpeg"
    scratch_dir: Path = default_scratch_dir()
    session_ttl_s: float = 30 * 60
    sweep_interval_s: float = 5 * 60
    max_concurrent_jobs: int = 4
    sample_seconds: int = 15
    allowed_chat_ids: frozenset[int] | None = None


def read_config_file(path: Path) -> dict[str, Any]:
    if path.exists() and not path.is_file():
        raise ConfigError(f"Config path {path} exists but is not a file.") from None
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(f"Missing config file {path}.") from None
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    try:
        return tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed TOML in {path}: {exc}") from None


def _get_str(raw: dict[str, Any], key: str, *, path: Path, default: str) -> str:
    value = raw.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Invalid `{key}` in {path}; expected a non-empty string.")
    return value.strip()


def _get_number(
    raw: dict[str, Any], key: str, *, path: Path, default: float
) -> float:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"Invalid `{key}` in {path}; expected a positive number.")
    return float(value)


def _get_int(raw: dict[str, Any], key: str, *, path: Path, default: int) -> int:
    value = raw.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"Invalid `{key}` in {path}; expected a positive integer.")
    return value


def _get_chat_ids(raw: dict[str, Any], *, path: Path) -> frozenset[int] | None:
    value = raw.get("allowed_chat_ids")
    if value is None:
        return None
    if not isinstance(value, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in value
    ):
        raise ConfigError(
            f"Invalid `allowed_chat_ids` in {path}; expected a list of chat ids."
        )
    return frozenset(value)


def settings_from_dict(
    raw: dict[str, Any],
    *,
    path: Path,
    token_override: str | None = None,
) -> BotSettings:
    token = token_override if token_override is not None else raw.get("bot_token")
    if not isinstance(token, str) or not token.strip():
        raise ConfigError(
            f"Missing `bot_token` in {path}; set it or pass --token before running."
        )
    scratch_dir = raw.get("scratch_dir")
    if scratch_dir is None:
        scratch_path = default_scratch_dir()
    elif isinstance(scratch_dir, str) and scratch_dir.strip():
        scratch_path = Path(scratch_dir).expanduser()
    else:
        raise ConfigError(
            f"Invalid `scratch_dir` in {path}; expected a non-empty string."
        )
    return BotSettings(
        bot_token=token.strip(),
        ffmpeg=_get_str(raw, "ffmpeg", path=path, default="ffmpeg"),
        scratch_dir=scratch_path,
        session_ttl_s=_get_number(raw, "session_ttl_s", path=path, default=30 * 60),
        sweep_interval_s=_get_number(
            raw, "sweep_interval_s", path=path, default=5 * 60
        ),
        max_concurrent_jobs=_get_int(
            raw, "max_concurrent_jobs", path=path, default=4
        ),
        sample_seconds=_get_int(raw, "sample_seconds", path=path, default=15),
        allowed_chat_ids=_get_chat_ids(raw, path=path),
    )


def load_settings(
    path: Path | None = None, *, token_override: str | None = None
) -> tuple[BotSettings, Path]:
    """Load settings from TOML.

    A missing default config is fine when the token comes from the command
    line; an explicitly named config must exist.
    """
    config_path = path or HOME_CONFIG_PATH
    if path is None and token_override is not None and not config_path.exists():
        raw: dict[str, Any] = {}
    else:
        raw = read_config_file(config_path)
    return (
        settings_from_dict(raw, path=config_path, token_override=token_override),
        config_path,
    )
