"""Workspace profile discovery.

Profiles are parsed once and cached. Each lookup stats the YAML files in the
search paths and reparses only when a file was added, removed or modified, so
submissions do not pay for YAML parsing on the event loop.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import yaml
from pydantic import ValidationError

from .models import WorkspaceProfile

logger = logging.getLogger(__name__)

Fingerprint = tuple[tuple[str, int, int], ...]


class WorkspaceLoadError(RuntimeError):
    """Raised when one or more workspace files cannot be parsed."""


class WorkspaceLoader:
    """Resolve target names to workspace profiles defined in YAML."""

    def __init__(self, search_paths: Iterable[Path] | None = None) -> None:
        paths = [Path(path) for path in (search_paths or [])]
        self._search_paths: list[Path] = [path for path in paths if path.exists()]
        self._fingerprint: Fingerprint | None = None
        self._workspaces: dict[str, WorkspaceProfile] = {}
        self._error: WorkspaceLoadError | None = None

    @property
    def search_paths(self) -> list[Path]:
        return list(self._search_paths)

    def _files(self) -> list[Path]:
        files: list[Path] = []
        for base in self._search_paths:
            files.extend(sorted(base.glob("*.yml")) + sorted(base.glob("*.yaml")))
        return files

    @staticmethod
    def _fingerprint_of(files: list[Path]) -> Fingerprint:
        entries = []
        for path in files:
            try:
                stat = path.stat()
            except OSError:
                continue
            entries.append((str(path), stat.st_mtime_ns, stat.st_size))
        return tuple(entries)

    def load_all(self) -> dict[str, WorkspaceProfile]:
        """Return every workspace; later search paths win when ids collide.

        Raises :class:`WorkspaceLoadError` while any file is invalid.
        """

        files = self._files()
        fingerprint = self._fingerprint_of(files)
        if fingerprint != self._fingerprint:
            self._workspaces, self._error = self._parse(files)
            self._fingerprint = fingerprint
            logger.debug(
                "Workspaces reloaded",
                extra={"count": len(self._workspaces), "invalid": self._error is not None},
            )
        if self._error is not None:
            raise self._error
        return dict(self._workspaces)

    def get(self, workspace_id: str) -> WorkspaceProfile | None:
        return self.load_all().get(workspace_id)

    @staticmethod
    def _parse(files: list[Path]) -> tuple[dict[str, WorkspaceProfile], WorkspaceLoadError | None]:
        workspaces: dict[str, WorkspaceProfile] = {}
        errors: list[str] = []

        for path in files:
            try:
                document = yaml.safe_load(path.read_text(encoding="utf-8"))
            except OSError as exc:
                errors.append(f"Failed to read {path}: {exc}")
                continue
            except yaml.YAMLError as exc:
                errors.append(f"Failed to parse YAML in {path}: {exc}")
                continue
            if document is None:
                continue
            try:
                workspace = WorkspaceProfile.model_validate(document)
            except ValidationError as exc:
                errors.append(f"Workspace validation error in {path}: {exc}")
                continue
            workspaces[workspace.id] = workspace

        return workspaces, WorkspaceLoadError("; ".join(errors)) if errors else None


__all__ = ["WorkspaceLoadError", "WorkspaceLoader", "WorkspaceProfile"]
