"""Configuration management for the automation core."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Annotated
import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_HOST_PORTS: tuple[int, ...] = (5173, 3000)


def _split_ints(value, *, label: str) -> tuple[int, ...]:
    if value is None or value == "":
        return ()
    if isinstance(value, int):
        return (value,)
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = list(value)
    else:
        raise TypeError(f"{label} must be a comma-separated string or a sequence of integers")
    parsed: list[int] = []
    for item in items:
        try:
            number = int(item)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"{label} contains a non-integer value: {item!r}") from exc
        if number <= 0:
            raise ValueError(f"{label} values must be positive integers")
        if number not in parsed:
            parsed.append(number)
    return tuple(parsed)


class AutomationSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    server_url: str = Field(default="http://localhost:5000", validation_alias="LUCID_SERVER_URL")
    request_timeout: float = Field(default=10.0, validation_alias="LUCID_REQUEST_TIMEOUT")
    job_poll_interval: float = Field(default=2.0, validation_alias="LUCID_JOB_POLL_INTERVAL")
    job_poll_retries: int = Field(default=3, validation_alias="LUCID_JOB_POLL_RETRIES")
    autofix_max_attempts: int | None = Field(
        default=None, validation_alias="LUCID_AUTOFIX_MAX_ATTEMPTS"
    )
    host_ports: Annotated[tuple[int, ...], NoDecode] = Field(
        default=DEFAULT_HOST_PORTS, validation_alias="LUCID_HOST_PORTS"
    )
    protected_pids: Annotated[tuple[int, ...], NoDecode] = Field(
        default=(), validation_alias="LUCID_PROTECTED_PIDS"
    )
    reclaim_timeout_ms: int = Field(default=5000, validation_alias="LUCID_RECLAIM_TIMEOUT_MS")
    reclaim_interval_ms: int = Field(default=250, validation_alias="LUCID_RECLAIM_INTERVAL_MS")
    trunk_branch: str = Field(default="main", validation_alias="LUCID_TRUNK_BRANCH")
    project_paths: Annotated[tuple[Path, ...], NoDecode] = Field(
        default=(Path("projects"),), validation_alias="LUCID_PROJECT_PATHS"
    )
    chroma_persist_path: Path = Field(
        default=Path("./storage/chroma"), validation_alias="CHROMA_PERSIST_PATH"
    )
    log_level: str = Field(default="INFO", validation_alias="LUCID_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "LUCID_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("server_url")
    @classmethod
    def _normalize_server_url(cls, value: str) -> str:
        normalized = value.strip().rstrip("/")
        if not normalized.startswith(("http://", "https://")):
            raise ValueError("LUCID_SERVER_URL must be an http(s) URL")
        return normalized

    @field_validator("host_ports", mode="before")
    @classmethod
    def _parse_host_ports(cls, value):
        ports = _split_ints(value, label="LUCID_HOST_PORTS")
        return tuple(dict.fromkeys((*DEFAULT_HOST_PORTS, *ports)))

    @field_validator("protected_pids", mode="before")
    @classmethod
    def _parse_protected_pids(cls, value):
        return _split_ints(value, label="LUCID_PROTECTED_PIDS")

    @field_validator("project_paths", mode="before")
    @classmethod
    def _parse_project_paths(cls, value):
        if value is None or value == "":
            return (Path("projects"),)
        if isinstance(value, (list, tuple)):
            return tuple(Path(str(item)) for item in value)
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(os.pathsep) if part.strip()]
            return tuple(Path(part) for part in parts) or (Path("projects"),)
        raise TypeError("LUCID_PROJECT_PATHS must be a list of paths or a path-separated string")

    @field_validator("request_timeout", "job_poll_interval")
    @classmethod
    def _validate_positive_seconds(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts and poll intervals must be greater than zero")
        return value

    @field_validator("job_poll_retries")
    @classmethod
    def _validate_poll_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("LUCID_JOB_POLL_RETRIES must be >= 0")
        return value

    @field_validator("autofix_max_attempts", mode="before")
    @classmethod
    def _validate_max_attempts(cls, value):
        if value is None or value == "":
            return None
        number = int(value)
        if number < 1:
            raise ValueError("LUCID_AUTOFIX_MAX_ATTEMPTS must be >= 1")
        return number

    @field_validator("reclaim_timeout_ms", "reclaim_interval_ms")
    @classmethod
    def _validate_reclaim_window(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Reclaim timeout and interval must be >= 1 ms")
        return value


@lru_cache(maxsize=1)
def get_settings() -> AutomationSettings:
    """Return cached settings instance."""

    settings = AutomationSettings()
    settings.chroma_persist_path = settings.chroma_persist_path.expanduser().resolve()
    settings.project_paths = tuple(path.expanduser().resolve() for path in settings.project_paths)
    return settings


__all__ = ["AutomationSettings", "DEFAULT_HOST_PORTS", "get_settings"]
