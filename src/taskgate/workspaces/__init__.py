"""Workspace profile models and loader exports."""

from .loader import WorkspaceLoadError, WorkspaceLoader
from .models import WorkspaceProfile

__all__ = ["WorkspaceLoadError", "WorkspaceLoader", "WorkspaceProfile"]
