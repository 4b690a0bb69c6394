"""
Sync Agent Configuration

Two layers:

- ``AgentConfig`` is the JSON startup file (authority address, env, app id,
  token, author, managed nginx.conf path).  Every field is required and is
  validated before the agent touches the network or the managed file.
- ``RuntimeSettings`` loads PROXY_SYNC_ prefixed environment variables using
  pydantic-settings (log destination, log level, nginx binary, command
  timeout, startup file location).
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .config_env import (
    BACKUP_SUFFIX,
    DEFAULT_CLUSTER,
    DEFAULT_CONFIG_PATH,
    DEFAULT_LOG_FILE,
    DEFAULT_NAMESPACE,
    ENV_FILE,
)


class AgentConfigError(RuntimeError):
    """The startup configuration could not be read, parsed or validated."""


# Startup file keys are matched case-insensitively, ignoring underscores,
# so both ``AppId`` and ``app_id`` resolve to the same field.
_FIELD_ALIASES = {
    "ip": "Ip",
    "env": "Env",
    "appid": "AppId",
    "token": "Token",
    "createdby": "CreatedBy",
    "nginxconfpath": "NginxConfPath",
}


class AgentConfig(BaseModel):
    """Immutable startup configuration for one managed nginx.conf."""

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        validate_default=True,
        extra="ignore",
    )

    ip: str = Field(default="", alias="Ip", description="Apollo portal address")
    env: str = Field(default="", alias="Env", description="Managed config environment")
    app_id: str = Field(default="", alias="AppId", description="Managed config AppId")
    token: str = Field(default="", alias="Token", description="Open API token")
    created_by: str = Field(default="", alias="CreatedBy", description="Change author")
    nginx_conf_path: str = Field(
        default="",
        alias="NginxConfPath",
        description="nginx config file path",
    )

    @model_validator(mode="before")
    @classmethod
    def _canonicalise_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        out: Dict[str, Any] = {}
        for key, value in data.items():
            alias = _FIELD_ALIASES.get(str(key).replace("_", "").lower())
            if alias is not None:
                out[alias] = value
        return out

    @field_validator("*", mode="before")
    @classmethod
    def _require_non_empty(cls, v, info):
        text = "" if v is None else str(v).strip()
        if not text:
            field = cls.model_fields[info.field_name]
            raise ValueError(
                f"missing required field: {field.alias} ({field.description})"
            )
        return text

    @field_validator("ip")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    # --- Helpers ---

    @property
    def managed_path(self) -> Path:
        return Path(self.nginx_conf_path)

    @property
    def backup_path(self) -> Path:
        return Path(self.nginx_conf_path + BACKUP_SUFFIX)

    @property
    def namespace_url(self) -> str:
        return (
            f"{self.ip}/openapi/v1/envs/{self.env}/apps/{self.app_id}"
            f"/clusters/{DEFAULT_CLUSTER}/namespaces/{DEFAULT_NAMESPACE}"
        )


def load_agent_config(path: Union[str, Path]) -> AgentConfig:
    """Read and validate the JSON startup file at *path*."""
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise AgentConfigError(f"Cannot read agent config {config_path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise AgentConfigError(f"Invalid JSON in agent config {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise AgentConfigError(f"Agent config must be a JSON object: {config_path}")

    try:
        return AgentConfig.model_validate(raw)
    except ValidationError as exc:
        problems = "; ".join(
            str(err.get("msg", "")).removeprefix("Value error, ") for err in exc.errors()
        )
        raise AgentConfigError(f"Invalid agent config {config_path}: {problems}") from exc


class RuntimeSettings(BaseSettings):
    """Process-level settings that are not part of the startup file."""

    model_config = SettingsConfigDict(
        env_prefix="PROXY_SYNC_",
        env_file=ENV_FILE,
        extra="ignore",
    )

    config_path: str = Field(
        default=DEFAULT_CONFIG_PATH,
        description="Path of the JSON startup file",
    )

    # --- Process control ---
    nginx_bin: str = Field(
        default="nginx",
        description="nginx executable used for config test and reload",
    )
    command_timeout_s: float = Field(
        default=60.0,
        gt=0,
        description=(
            "Upper bound in seconds for one nginx invocation. "
            "A timed out invocation counts as a failure."
        ),
    )

    # --- Logging ---
    log_file: str = Field(default=DEFAULT_LOG_FILE, description="Append-only log file")
    log_level: str = Field(default="INFO", description="Log level")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_log_level(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v
