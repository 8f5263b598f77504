"""Project loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import ProjectProfile


class ProjectLoadError(RuntimeError):
    """Raised when one or more project files cannot be parsed."""


class ProjectLoader:
    """Loads project definitions from YAML files on disk."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def load_all(self) -> dict[str, ProjectProfile]:
        """Load projects from all configured search paths.

        Later search paths override earlier ones when project ids collide.
        Relative project paths resolve against the YAML file's directory.
        """

        if not self._search_paths:
            return {}

        projects: dict[str, ProjectProfile] = {}
        errors: list[str] = []

        for base in self._search_paths:
            for path in sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")):
                try:
                    document = yaml.safe_load(path.read_text(encoding="utf-8"))
                except yaml.YAMLError as exc:
                    errors.append(f"Failed to parse YAML in {path}: {exc}")
                    continue

                if document is None:
                    continue

                try:
                    project = ProjectProfile.model_validate(document)
                except ValidationError as exc:
                    errors.append(f"Project validation error in {path}: {exc}")
                    continue

                if project.path is not None and not project.path.is_absolute():
                    project = project.model_copy(
                        update={"path": (path.parent / project.path).resolve()}
                    )
                projects[project.id] = project

        if errors:
            raise ProjectLoadError("; ".join(errors))

        return projects

    def get(self, project_id: str) -> ProjectProfile:
        projects = self.load_all()
        try:
            return projects[project_id]
        except KeyError as exc:
            raise ProjectLoadError(f"Project '{project_id}' not found in search paths") from exc


__all__ = ["ProjectLoadError", "ProjectLoader"]
