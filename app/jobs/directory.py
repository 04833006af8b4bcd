"""Project directory: the access-control collaborator for the job store.

Answers "is this user a member of the team owning this project" and resolves
projects and uploads. Team/project/upload CRUD lives elsewhere; this is a
read-only view of it.
"""

from abc import ABC, abstractmethod
from typing import Dict, Optional, Set, Tuple

from app.jobs.models import Project, Upload


class ProjectDirectory(ABC):
    """Abstract read-only view of projects, uploads and team memberships."""

    @abstractmethod
    async def is_member(self, user_id: str, project_id: str) -> bool:
        """True when the user belongs to the team owning the project."""
        ...

    @abstractmethod
    async def get_project(self, project_id: str) -> Optional[Project]:
        ...

    @abstractmethod
    async def get_upload(self, upload_id: str) -> Optional[Upload]:
        ...


class InMemoryProjectDirectory(ProjectDirectory):
    """Directory held in dictionaries. Used by tests and the memory backend."""

    def __init__(self):
        self._projects: Dict[str, Project] = {}
        self._uploads: Dict[str, Upload] = {}
        self._memberships: Set[Tuple[str, str]] = set()  # (team_id, user_id)

    def add_project(self, project: Project) -> Project:
        self._projects[project.id] = project
        return project

    def add_upload(self, upload: Upload) -> Upload:
        self._uploads[upload.id] = upload
        return upload

    def add_member(self, team_id: str, user_id: str) -> None:
        self._memberships.add((team_id, user_id))

    async def is_member(self, user_id: str, project_id: str) -> bool:
        project = self._projects.get(project_id)
        if project is None:
            return False
        return (project.team_id, user_id) in self._memberships

    async def get_project(self, project_id: str) -> Optional[Project]:
        return self._projects.get(project_id)

    async def get_upload(self, upload_id: str) -> Optional[Upload]:
        return self._uploads.get(upload_id)
