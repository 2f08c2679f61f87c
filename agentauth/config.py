# agentauth/config.py
import json
import os
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PORT = 9999
DEFAULT_BIND = "127.0.0.1"


class ConfigError(Exception):
    """Config file missing, malformed, or referencing unset variables."""


class Settings(BaseSettings):
    # Backend definitions live in a JSON file (see load_config).
    config_path: str = "agentauth.json"   # AGENTAUTH_CONFIG_PATH

    # Listener overrides; None means "use the value from the config file".
    port: int | None = None               # AGENTAUTH_PORT
    bind: str | None = None               # AGENTAUTH_BIND

    # NDJSON audit trail; overrides "auditLog" from the config file.
    audit_log: str | None = None          # AGENTAUTH_AUDIT_LOG

    # No proxy-level timeout by default; set to bound slow upstreams (seconds).
    upstream_timeout: float | None = None  # AGENTAUTH_UPSTREAM_TIMEOUT

    log_level: str = "INFO"               # AGENTAUTH_LOG_LEVEL

    model_config = SettingsConfigDict(
        env_prefix="AGENTAUTH_", env_file=".env", case_sensitive=False, extra="ignore"
    )


class BackendConfig(BaseModel):
    target: str
    headers: dict[str, str] = {}
    allowed_paths: list[str] = Field(default_factory=list, alias="allowedPaths")
    max_body_bytes: int | None = Field(default=None, alias="maxBodyBytes")

    model_config = {"populate_by_name": True}

    @field_validator("target")
    @classmethod
    def target_not_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must have a \"target\" URL")
        return v.strip()


class ProxyConfig(BaseModel):
    port: int = DEFAULT_PORT
    bind: str = DEFAULT_BIND
    audit_log: str | None = Field(default=None, alias="auditLog")
    backends: dict[str, BackendConfig]

    model_config = {"populate_by_name": True}

    @field_validator("backends")
    @classmethod
    def at_least_one_backend(cls, v: dict[str, BackendConfig]) -> dict[str, BackendConfig]:
        if not v:
            raise ValueError("config must have at least one backend")
        return v


def _resolve_env(config: ProxyConfig, environ: Mapping[str, str]) -> None:
    # Header values of the form "$NAME" are read from the environment.
    for name, backend in config.backends.items():
        for key, value in list(backend.headers.items()):
            if not value.startswith("$"):
                continue
            env_var = value[1:]
            resolved = environ.get(env_var)
            if not resolved:
                raise ConfigError(
                    f'Backend "{name}" header "{key}" references ${env_var} but it is not set'
                )
            backend.headers[key] = resolved


def load_config(path: str | os.PathLike, environ: Mapping[str, str] | None = None) -> ProxyConfig:
    """Read, validate and resolve a JSON config file."""
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"Cannot read config {path}: {exc.strerror or exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config {path} is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict) or not isinstance(raw.get("backends"), dict):
        raise ConfigError('Config must have a "backends" object')

    try:
        config = ProxyConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config {path}: {exc}") from exc

    _resolve_env(config, os.environ if environ is None else environ)
    return config


settings = Settings()
