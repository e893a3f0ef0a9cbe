"""
Project Registry - which projects take part in aggregation.

Projects are keyed by their resolved path. Linking is idempotent, and
unlinking only deactivates the entry so aggregation history stays intact.
"""

import hashlib
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..core.global_store import GlobalStore
from ..core.models import Project, ProjectMetadata
from ..errors import InputError, NotFoundError

logger = logging.getLogger(__name__)


def normalize_project_path(path: str) -> str:
    if not isinstance(path, str) or not path.strip():
        raise InputError("Project path is required")
    return str(Path(path.strip()).expanduser().resolve())


def project_id_for(path: str) -> str:
    return f"proj_{hashlib.sha256(path.encode()).hexdigest()[:12]}"


class ProjectRegistry:
    """
    Registry of linked projects, backed by the global store.

    Example:
        registry = ProjectRegistry(global_store)
        project_id = registry.link_project("~/code/app", ProjectMetadata(primary_language="typescript"))
        registry.unlink_project(project_id)
    """

    def __init__(self, store: GlobalStore):
        self.store = store

    def link_project(
        self,
        path: str,
        metadata: Optional[Union[ProjectMetadata, Dict]] = None,
        require_exists: bool = True,
    ) -> str:
        """
        Register a project, or refresh an existing registration.

        Relinking a known path keeps its id and sync checkpoint, updates the
        provided metadata and reactivates it.

        Returns:
            The project id
        """
        resolved = normalize_project_path(path)
        if require_exists and not Path(resolved).is_dir():
            raise InputError(f"Project path does not exist: {resolved}")
        if isinstance(metadata, dict):
            metadata = ProjectMetadata(
                name=metadata.get("name"),
                primary_language=metadata.get("primary_language"),
                frameworks=list(metadata.get("frameworks") or []),
            )
        metadata = metadata or ProjectMetadata()

        existing = self.store.get_project_by_path(resolved)
        if existing is not None:
            if metadata.name:
                existing.name = metadata.name
            if metadata.primary_language:
                existing.primary_language = metadata.primary_language
            if metadata.frameworks:
                existing.frameworks = sorted(set(metadata.frameworks))
            reactivated = not existing.is_active
            existing.is_active = True
            self.store.save_project(existing)
            logger.info(f"Relinked project {existing.name} ({existing.id}){' - reactivated' if reactivated else ''}")
            return existing.id

        project = Project(
            id=project_id_for(resolved),
            path=resolved,
            name=metadata.name or Path(resolved).name,
            primary_language=metadata.primary_language,
            frameworks=sorted(set(metadata.frameworks)),
            linked_at=datetime.now(),
        )
        self.store.save_project(project)
        logger.info(f"Linked project {project.name} ({project.id}) at {resolved}")
        return project.id

    def unlink_project(self, project_id: str) -> Project:
        """Deactivate a project. Its past contributions stay in the aggregations."""
        project = self.get_project(project_id)
        if project.is_active:
            project.is_active = False
            self.store.save_project(project)
            logger.info(f"Unlinked project {project.name} ({project.id})")
        return project

    def get_project(self, project_id: str) -> Project:
        project = self.store.get_project(project_id)
        if project is None:
            raise NotFoundError(f"Unknown project id: {project_id}")
        return project

    def resolve(self, project: str) -> Project:
        """Look up a project by id or by path."""
        if not isinstance(project, str) or not project.strip():
            raise InputError("Project id or path is required")
        found = self.store.get_project(project)
        if found is None and not project.startswith("proj_"):
            found = self.store.get_project_by_path(normalize_project_path(project))
        if found is None:
            raise NotFoundError(f"Unknown project: {project}")
        return found

    def list_projects(self, include_inactive: bool = False) -> List[Project]:
        return self.store.list_projects(active_only=not include_inactive)

    def active_project_ids(self) -> List[str]:
        return [p.id for p in self.store.list_projects(active_only=True)]

    def update_project_stats(
        self,
        project_id: str,
        pattern_count: int,
        concept_count: int,
        primary_language: Optional[str] = None,
    ) -> Project:
        """Refresh dashboard counters after a sync."""
        project = self.get_project(project_id)
        project.pattern_count = pattern_count
        project.concept_count = concept_count
        if primary_language and not project.primary_language:
            project.primary_language = primary_language
        self.store.save_project(project)
        return project

    def advance_checkpoint(self, project_id: str, version: int) -> bool:
        return self.store.advance_checkpoint(project_id, version)
