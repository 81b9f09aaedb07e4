from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

from platformdirs import user_config_path

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_RAW_URL = "https://raw.githubusercontent.com"
DEFAULT_REGISTRY_URL = "https://tnjnfvbcdcucqdptbjoo.supabase.co/functions/v1"
DEFAULT_TIMEOUT_S = 30.0

CONFIG_PATH_ENV = "UPDOSE_CONFIG_PATH"
CONFIG_FILENAME = "config.json"


@dataclass(frozen=True)
class Config:
    github_token: str | None = None
    github_api_url: str = DEFAULT_GITHUB_API_URL
    raw_url: str = DEFAULT_RAW_URL
    registry_url: str = DEFAULT_REGISTRY_URL
    timeout_s: float = DEFAULT_TIMEOUT_S


def config_path(path_override: str | Path | None = None) -> Path:
    raw = path_override if path_override is not None else os.getenv(CONFIG_PATH_ENV)
    if raw:
        return Path(raw).expanduser()
    return user_config_path("updose") / CONFIG_FILENAME


def _coerce_field(name: str, value: Any) -> Any:
    """Returns the value to keep for a config field, or raises ValueError."""
    if name == "timeout_s":
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValueError("must be a positive number")
        return float(value)
    if name == "github_token":
        if value is None or isinstance(value, str):
            return value or None
        raise ValueError("must be a string")
    if not isinstance(value, str) or not value:
        raise ValueError("must be a non-empty string")
    return value


def load_config(path_override: str | Path | None = None, *, warnings: list[str] | None = None) -> Config:
    """
    Read the per-user config file.

    A missing file gives the defaults. An unreadable file, or a field with the
    wrong type, falls back to the defaults for what it affects; the reason is
    appended to `warnings` when a list is given.
    """
    sink = warnings if warnings is not None else []
    path = config_path(path_override)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return Config()
    except (json.JSONDecodeError, UnicodeDecodeError):
        sink.append(f"Config file {path} is corrupted; using defaults.")
        return Config()

    if not isinstance(raw, dict):
        sink.append(f"Config file {path} must contain a JSON object; using defaults.")
        return Config()

    values: dict[str, Any] = {}
    for f in fields(Config):
        if f.name not in raw:
            continue
        try:
            values[f.name] = _coerce_field(f.name, raw[f.name])
        except ValueError as e:
            sink.append(f'Ignoring config field "{f.name}": {e}')
    return Config(**values)


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    # The file may hold a GitHub token: create it owner-only from the start.
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as fh:
        json.dump(asdict(cfg), fh, indent=2, sort_keys=True)
        fh.write("\n")
    os.replace(tmp, path)
    return path


def resolve_config(
    base: Config,
    *,
    github_token: str | None = None,
    registry_url: str | None = None,
    timeout_s: float | None = None,
) -> Config:
    # Env overrides config; explicit arguments override both.
    token = github_token or os.getenv("GITHUB_TOKEN") or base.github_token
    registry = registry_url or os.getenv("UPDOSE_API_URL") or base.registry_url
    timeout = timeout_s or os.getenv("UPDOSE_TIMEOUT_S") or base.timeout_s
    try:
        timeout_f = float(timeout)
    except (TypeError, ValueError):
        timeout_f = base.timeout_s

    return Config(
        github_token=token,
        github_api_url=base.github_api_url,
        raw_url=base.raw_url,
        registry_url=registry,
        timeout_s=timeout_f,
    )


def redact_token(token: str | None) -> str | None:
    """Keep the token type prefix (up to the first underscore) and the last four characters."""
    if not token:
        return token
    if len(token) <= 8:
        return "*" * len(token)
    prefix_len = token.find("_") + 1 if 0 < token.find("_") < 12 else 0
    return f"{token[:prefix_len]}***{token[-4:]}"
