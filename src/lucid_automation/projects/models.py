"""Project definitions consumed by the automation core."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

_FRONTEND_PORTS = {"react": 5173, "vue": 5173, "nextjs": 3000, "angular": 4200}
_BACKEND_PORTS = {"express": 3000, "nestjs": 3000, "fastapi": 5000, "flask": 5000, "django": 8000}
DEFAULT_FRONTEND_PORT = 5173
DEFAULT_BACKEND_PORT = 3000


class WorkspaceSettings(BaseModel):
    """Framework and dev-server port for one side of a project."""

    framework: str | None = Field(default=None, description="Framework name, e.g. react or fastapi.")
    port: int | None = Field(default=None, description="Explicit dev-server port.")

    @field_validator("framework")
    @classmethod
    def _normalize_framework(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip().lower()
        return normalized or None

    @field_validator("port")
    @classmethod
    def _validate_port(cls, value: int | None) -> int | None:
        if value is not None and not 0 < value < 65536:
            raise ValueError("Port must be between 1 and 65535")
        return value


class TestingSettings(BaseModel):
    """Custom-vs-global test configuration for a project."""

    __test__ = False

    use_global: bool = Field(default=True, description="Use the global coverage target.")
    coverage_target: int = Field(default=100, description="Coverage percentage, 50..100 in steps of 10.")

    @field_validator("coverage_target")
    @classmethod
    def _validate_coverage_target(cls, value: int) -> int:
        if value < 50 or value > 100 or value % 10:
            raise ValueError("Coverage target must be between 50 and 100 in steps of 10")
        return value


class ProjectProfile(BaseModel):
    """A project the automation core can run jobs for."""

    id: str = Field(..., description="Unique identifier for the project.")
    name: str | None = Field(default=None, description="Display name.")
    path: Path | None = Field(default=None, description="Project root on disk.")
    frontend: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    backend: WorkspaceSettings = Field(default_factory=WorkspaceSettings)
    testing: TestingSettings = Field(default_factory=TestingSettings)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("Project id must not be empty")
        return normalized

    def derive_ports(self) -> list[int]:
        frontend = self.frontend.port or _FRONTEND_PORTS.get(
            self.frontend.framework or "", DEFAULT_FRONTEND_PORT
        )
        backend = self.backend.port or _BACKEND_PORTS.get(
            self.backend.framework or "", DEFAULT_BACKEND_PORT
        )
        return list(dict.fromkeys((frontend, backend)))

    def coverage_target(self, global_testing: TestingSettings | None = None) -> int:
        if self.testing.use_global:
            return (global_testing or TestingSettings()).coverage_target
        return self.testing.coverage_target

    def workspace_path(self, name: str) -> Path:
        if self.path is None:
            raise ValueError(f"Project '{self.id}' has no path configured")
        return self.path / name if name else self.path


__all__ = ["ProjectProfile", "TestingSettings", "WorkspaceSettings"]
