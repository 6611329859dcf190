"""Config loading for allowsync.

Reads a YAML config file:

    token: ghp_xxxxxxxxxxxx
    allow_file: /etc/nginx/conf.d/github-hooks.allow
    repeat: 3600
    after_update_hook: "nginx -t && nginx -s reload"

Raises ConfigError on a missing, unreadable or invalid file; the caller
(run.main) turns that into a stderr message and exit status 1 before the
reconciliation loop starts.

Config search order:
  1. `config_path` argument (CLI positional argument)
  2. ALLOWSYNC_CONFIG environment variable (if set)
  3. `./allowsync.yaml` (working directory, for development)
  4. `/etc/allowsync/config.yaml` (system-wide deployments)

An explicitly given path (1 or 2) must exist; it never falls through to the
defaults.

Environment variable overrides (applied after the file is parsed):
  ALLOWSYNC_TOKEN    : overrides token (keeps the secret out of the file)
  ALLOWSYNC_REPEAT   : overrides repeat
  ALLOWSYNC_LOG_LEVEL: overrides log_level
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional

import yaml

from allowsync.constants import DEFAULT_FETCH_TIMEOUT, DEFAULT_META_FIELD, GITHUB_API_META_URL
from allowsync.errors import ConfigError
from allowsync.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Validation sets ─────────────────────────────────────────────────────────

VALID_LOG_LEVELS: frozenset[str] = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})

REQUIRED_FIELDS: tuple[str, ...] = ("token", "allow_file", "repeat", "after_update_hook")

# Default config search paths (explicit path / ALLOWSYNC_CONFIG tried first)
DEFAULT_CONFIG_PATHS = [
    "allowsync.yaml",
    "/etc/allowsync/config.yaml",
]


# ─── Dataclass ───────────────────────────────────────────────────────────────


@dataclass
class Config:
    """Root configuration object populated from the YAML config file.

    token:             GitHub API token sent to the meta endpoint.
    allow_file:        Path of the nginx allow-list include file.
    repeat:            Seconds between two reconciliation cycles.
    after_update_hook: Shell command run after the allow-list changed.
    meta_url:          Meta endpoint (override for GitHub Enterprise Server).
    meta_field:        Array of the meta document holding the CIDRs.
    fetch_timeout:     Total HTTP timeout for one fetch, in seconds.
    hook_timeout:      Kill the hook after this many seconds (None: wait forever).
    """

    token: str
    allow_file: str
    repeat: int
    after_update_hook: str
    meta_url: str = GITHUB_API_META_URL
    meta_field: str = DEFAULT_META_FIELD
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    hook_timeout: Optional[float] = None
    log_level: str = "INFO"
    json_logs: bool = True
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct and validate a Config from a parsed YAML mapping.

        Unknown keys are ignored with a warning.

        Raises:
            ConfigError: a required field is missing or a value has the wrong type.
        """
        source = path or "<config>"
        missing = [name for name in REQUIRED_FIELDS if raw.get(name) in (None, "")]
        if missing:
            raise ConfigError(
                f"{source} is missing required field(s): {', '.join(missing)}"
            )

        unknown = sorted(set(raw) - set(cls.__dataclass_fields__) - {"path"})
        if unknown:
            logger.warning("Unknown config keys ignored", keys=unknown, path=path)

        hook_timeout = raw.get("hook_timeout")
        return cls(
            token=_require_str(raw, "token", source),
            allow_file=os.path.expanduser(_require_str(raw, "allow_file", source)),
            repeat=_require_positive_int(raw["repeat"], "repeat", source),
            after_update_hook=_require_str(raw, "after_update_hook", source),
            meta_url=_require_str(raw, "meta_url", source, GITHUB_API_META_URL),
            meta_field=_require_str(raw, "meta_field", source, DEFAULT_META_FIELD),
            fetch_timeout=_require_positive_float(
                raw.get("fetch_timeout", DEFAULT_FETCH_TIMEOUT), "fetch_timeout", source
            ),
            hook_timeout=(
                None
                if hook_timeout is None
                else _require_positive_float(hook_timeout, "hook_timeout", source)
            ),
            log_level=_require_log_level(raw.get("log_level", "INFO"), source),
            json_logs=bool(raw.get("json_logs", True)),
            path=path,
        )


# ─── Field validators ────────────────────────────────────────────────────────


def _require_str(raw: dict, name: str, source: str, default: Optional[str] = None) -> str:
    value = raw.get(name, default)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{source}: '{name}' must be a non-empty string, got {value!r}")
    return value


def _require_positive_int(value: Any, name: str, source: str) -> int:
    # bool is an int subclass; `repeat: yes` must not mean 1 second
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"{source}: '{name}' must be a positive integer, got {value!r}")
    return value


def _require_positive_float(value: Any, name: str, source: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{source}: '{name}' must be a positive number, got {value!r}")
    return float(value)


def _require_log_level(value: Any, source: str) -> str:
    level = str(value).upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(
            f"{source}: invalid log_level {value!r}. Supported values: {sorted(VALID_LOG_LEVELS)}"
        )
    return level


# ─── Config loading ───────────────────────────────────────────────────────────


def _find_config(config_path: Optional[str]) -> str:
    explicit = config_path or os.environ.get("ALLOWSYNC_CONFIG")
    if explicit:
        expanded = os.path.expanduser(explicit)
        if not os.path.isfile(expanded):
            raise ConfigError(f"Config file not found: {expanded}")
        return expanded

    for candidate in DEFAULT_CONFIG_PATHS:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            return expanded
    raise ConfigError(
        f"No config file found (searched: {', '.join(DEFAULT_CONFIG_PATHS)})"
    )


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate allowsync configuration.

    Returns:
        Config with file values, defaults for optional fields, and env
        overrides applied.

    Raises:
        ConfigError: no config file, unreadable file, invalid YAML, non-mapping
                     document, missing required field, invalid value, or an
                     invalid environment override.
    """
    found_path = _find_config(config_path)
    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {found_path}", str(exc)) from exc
    except OSError as exc:
        raise ConfigError(f"Could not read {found_path}", str(exc)) from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(
            f"{found_path} is not a valid YAML mapping. "
            "The config file must be a YAML dictionary at the top level."
        )

    _apply_env_overrides(raw)
    config = Config.from_dict(raw, path=found_path)

    logger.info(
        "Config loaded",
        path=found_path,
        allow_file=config.allow_file,
        repeat=config.repeat,
        meta_url=config.meta_url,
    )
    return config


def _apply_env_overrides(raw: dict) -> None:
    """Apply ALLOWSYNC_* environment overrides to the raw mapping in-place.

    Raises:
        ConfigError: If ALLOWSYNC_REPEAT is set but not a valid integer.
    """
    env_token = os.environ.get("ALLOWSYNC_TOKEN")
    if env_token:
        raw["token"] = env_token

    env_repeat = os.environ.get("ALLOWSYNC_REPEAT")
    if env_repeat is not None:
        try:
            raw["repeat"] = int(env_repeat)
        except ValueError as exc:
            raise ConfigError(
                f"ALLOWSYNC_REPEAT environment variable is not a valid integer: '{env_repeat}'"
            ) from exc

    env_log_level = os.environ.get("ALLOWSYNC_LOG_LEVEL")
    if env_log_level:
        raw["log_level"] = env_log_level
