"""Configuration management for Fleet MCP."""

from __future__ import annotations

import getpass
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _default_branch_prefix() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "fleet"
    return f"{user.strip().lower() or 'fleet'}/"


class FleetSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    default_program: str = Field(default="claude", validation_alias="FLEET_PROGRAM")
    home: Path = Field(default=Path("~/.fleet-mcp"), validation_alias="FLEET_HOME")
    repo_path: Path = Field(default=Path("."), validation_alias="FLEET_REPO_PATH")
    branch_prefix: str = Field(
        default_factory=_default_branch_prefix, validation_alias="FLEET_BRANCH_PREFIX"
    )
    session_prefix: str = Field(default="fleet_", validation_alias="FLEET_SESSION_PREFIX")
    git_remote: str = Field(default="origin", validation_alias="FLEET_GIT_REMOTE")
    poll_interval: float = Field(default=0.5, validation_alias="FLEET_POLL_INTERVAL")
    instance_limit: int = Field(default=10, validation_alias="FLEET_INSTANCE_LIMIT")
    auto_accept_prompts: bool = Field(default=False, validation_alias="FLEET_AUTO_YES")
    ready_timeout: float = Field(default=5.0, validation_alias="FLEET_READY_TIMEOUT")
    profile_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("profiles"),), validation_alias="FLEET_PROFILE_PATHS"
    )
    log_level: str = Field(default="INFO", validation_alias="FLEET_LOG_LEVEL")

    @property
    def state_path(self) -> Path:
        return self.home / "instances.json"

    @property
    def worktree_root(self) -> Path:
        return self.home / "worktrees"

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "FLEET_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("branch_prefix")
    @classmethod
    def _normalize_branch_prefix(cls, value: str) -> str:
        value = value.strip()
        if value and not value.endswith("/"):
            value += "/"
        return value

    @field_validator("session_prefix")
    @classmethod
    def _validate_session_prefix(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("FLEET_SESSION_PREFIX must not be empty")
        if any(char in value for char in ".: \t"):
            raise ValueError("FLEET_SESSION_PREFIX must not contain '.', ':' or whitespace")
        return value

    @field_validator("poll_interval")
    @classmethod
    def _validate_poll_interval(cls, value: float) -> float:
        if not 0 < value < 1:
            raise ValueError("FLEET_POLL_INTERVAL must be between 0 and 1 second")
        return value

    @field_validator("instance_limit")
    @classmethod
    def _validate_instance_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("FLEET_INSTANCE_LIMIT must be >= 1")
        return value

    @field_validator("profile_paths", mode="before")
    @classmethod
    def _parse_profile_paths(cls, value):
        if value is None or value == "":
            return (Path("profiles"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("profiles"),)
        raise TypeError("FLEET_PROFILE_PATHS must be a list of paths or a path-separated string")


@lru_cache(maxsize=1)
def get_settings() -> FleetSettings:
    """Return cached settings instance."""

    settings = FleetSettings()
    settings.home = settings.home.expanduser().resolve()
    settings.repo_path = settings.repo_path.expanduser().resolve()
    settings.profile_paths = tuple(path.expanduser().resolve() for path in settings.profile_paths)
    return settings


__all__ = ["FleetSettings", "get_settings"]
