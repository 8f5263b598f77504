"""Project definitions and loader exports."""

from .loader import ProjectLoadError, ProjectLoader
from .models import ProjectProfile, TestingSettings, WorkspaceSettings

__all__ = [
    "ProjectLoadError",
    "ProjectLoader",
    "ProjectProfile",
    "TestingSettings",
    "WorkspaceSettings",
]
