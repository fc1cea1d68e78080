"""
Project ownership lookups.

Projects themselves are managed elsewhere; generation only needs to know
who owns a project before touching any of its jobs.
"""

import asyncio
import logging
from typing import Optional

from .errors import StorageError

logger = logging.getLogger(__name__)


class ProjectDirectory:
    async def get_owner(self, project_id: str) -> Optional[str]:
        """Return the owning user id, or None if the project does not exist."""
        raise NotImplementedError


def parse_project_owners(value: str) -> dict[str, str]:
    """
    Parse "project:user,project:user" into {project: user}.
    Used to seed the in-memory directory when Supabase is not configured.
    """
    owners: dict[str, str] = {}
    for pair in value.split(","):
        pair = pair.strip()
        if not pair:
            continue
        project_id, sep, user_id = pair.partition(":")
        if not sep or not project_id.strip() or not user_id.strip():
            raise ValueError(f"Invalid project owner entry {pair!r}; expected project:user")
        owners[project_id.strip()] = user_id.strip()
    return owners


class InMemoryProjectDirectory(ProjectDirectory):
    def __init__(self, owners: Optional[dict[str, str]] = None):
        self._owners = dict(owners or {})

    def register(self, project_id: str, user_id: str) -> None:
        self._owners[project_id] = user_id

    async def get_owner(self, project_id: str) -> Optional[str]:
        return self._owners.get(project_id)


class SupabaseProjectDirectory(ProjectDirectory):
    """Reads `projects.user_id`."""

    def __init__(self, client, table: str = "projects"):
        self._client = client
        self._table = table

    async def get_owner(self, project_id: str) -> Optional[str]:
        query = self._client.table(self._table).select("user_id").eq("id", project_id).limit(1)
        try:
            result = await asyncio.to_thread(query.execute)
        except Exception as e:
            raise StorageError(f"Project lookup failed: {e}") from e
        if not result.data:
            return None
        return result.data[0]["user_id"]
