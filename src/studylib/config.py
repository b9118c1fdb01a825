"""Configuration for the studylib server.

Settings come from three layers, later layers winning:

1. ``ServerConfig`` defaults
2. A YAML file: ``$STUDYLIB_CONFIG`` if set, otherwise
   ``$XDG_CONFIG_HOME/studylib/config.yaml`` when it exists
3. Environment variables:

    STUDYLIB_DB: SQLite path (":memory:" for a shared in-memory database)
    STUDYLIB_JWT_SECRET: Signing key for access tokens
    STUDYLIB_TOKEN_TTL_MINUTES: Access token lifetime
    STUDYLIB_ENV: "development" or "production"
    STUDYLIB_LOG_LEVEL: Root log level for the server
    STUDYLIB_AUTO_VERIFY: Mark new users verified at registration
    STUDYLIB_GLOBAL_ROOM: Room used by the global chat
"""

from __future__ import annotations

import logging
import os
import secrets
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

ENVIRONMENTS = ("development", "production")

_TRUE_VALUES = ("1", "true", "yes", "on")


class StudylibConfigError(Exception):
    """Raised when the server configuration is invalid."""

    pass


def get_config_dir() -> Path:
    """Get the configuration directory path."""
    config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return Path(config_home) / "studylib"


def get_config_path() -> Path:
    """Get the config file path, honouring STUDYLIB_CONFIG."""
    explicit = os.environ.get("STUDYLIB_CONFIG")
    if explicit:
        return Path(explicit)
    return get_config_dir() / "config.yaml"


@dataclass
class ServerConfig:
    """Server settings.

    Examples:
        # Defaults plus file and environment overrides
        config = ServerConfig.load()

        # Explicit values (tests)
        config = ServerConfig(jwt_secret="s3cret", auto_verify=False)
    """

    db_path: str = ":memory:"
    """SQLite database path."""

    jwt_secret: str | None = None
    """HS256 signing key. Required in production."""

    token_ttl_minutes: int = 60 * 24
    """Lifetime of issued access tokens."""

    environment: str = "development"
    """'development' or 'production'. Production hides internal error messages."""

    log_level: str = "INFO"

    auto_verify: bool = True
    """Mark users verified at registration (email/OTP verification is not available)."""

    global_room: str = "general"
    """Room backing the global chat."""

    max_message_length: int = 1000

    _generated_secret: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        self._validate()
        if not self.jwt_secret:
            # Tokens will not survive a restart
            self.jwt_secret = secrets.token_hex(32)
            self._generated_secret = True
            logger.warning("No STUDYLIB_JWT_SECRET configured, using a random per-process secret")

    def _validate(self) -> None:
        if self.environment not in ENVIRONMENTS:
            raise StudylibConfigError(
                f"environment must be one of {', '.join(ENVIRONMENTS)}, got {self.environment!r}"
            )
        if self.token_ttl_minutes <= 0:
            raise StudylibConfigError("token_ttl_minutes must be positive")
        if self.max_message_length <= 0:
            raise StudylibConfigError("max_message_length must be positive")
        if not self.global_room:
            raise StudylibConfigError("global_room cannot be empty")
        if self.environment == "production" and not self.jwt_secret:
            raise StudylibConfigError("jwt_secret is required in production")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def has_generated_secret(self) -> bool:
        """True if the signing key was generated because none was configured."""
        return self._generated_secret

    @classmethod
    def load(cls, path: Path | None = None) -> "ServerConfig":
        """Load config from file (if present) and environment."""
        data = _read_file(path or get_config_path())
        data.update(_read_env())

        known = {f.name for f in fields(cls) if not f.name.startswith("_")}
        unknown = set(data) - known
        if unknown:
            raise StudylibConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        return cls(**data)

    def save(self, path: Path | None = None) -> Path:
        """Save config to a YAML file. The generated secret is never written."""
        path = path or get_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {k: v for k, v in asdict(self).items() if not k.startswith("_")}
        if self._generated_secret:
            data.pop("jwt_secret")

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        return path

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary (for debugging/logging). Secrets are masked."""
        data = {k: v for k, v in asdict(self).items() if not k.startswith("_")}
        data["jwt_secret"] = "***" if self.jwt_secret else None
        return data


def _read_file(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise StudylibConfigError(f"Config file {path} must contain a mapping")
    return data


def _read_env() -> dict[str, Any]:
    env = os.environ
    data: dict[str, Any] = {}

    if "STUDYLIB_DB" in env:
        data["db_path"] = env["STUDYLIB_DB"]
    if env.get("STUDYLIB_JWT_SECRET"):
        data["jwt_secret"] = env["STUDYLIB_JWT_SECRET"]
    if env.get("STUDYLIB_TOKEN_TTL_MINUTES"):
        try:
            data["token_ttl_minutes"] = int(env["STUDYLIB_TOKEN_TTL_MINUTES"])
        except ValueError as e:
            raise StudylibConfigError("STUDYLIB_TOKEN_TTL_MINUTES must be an integer") from e
    if env.get("STUDYLIB_ENV"):
        data["environment"] = env["STUDYLIB_ENV"].lower()
    if env.get("STUDYLIB_LOG_LEVEL"):
        data["log_level"] = env["STUDYLIB_LOG_LEVEL"].upper()
    if "STUDYLIB_AUTO_VERIFY" in env:
        data["auto_verify"] = env["STUDYLIB_AUTO_VERIFY"].lower() in _TRUE_VALUES
    if env.get("STUDYLIB_GLOBAL_ROOM"):
        data["global_room"] = env["STUDYLIB_GLOBAL_ROOM"]

    return data


# --- Process-wide config ---

_config: ServerConfig | None = None


def get_config() -> ServerConfig:
    """Get the loaded server config, loading it on first call."""
    global _config
    if _config is None:
        _config = ServerConfig.load()
    return _config


def set_config(config: ServerConfig) -> None:
    """Replace the loaded config (tests, CLI overrides)."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget the loaded config so the next get_config() reloads it."""
    global _config
    _config = None
