"""
Durable state for generation jobs and their room units.

Two implementations share one contract:
  InMemoryJobStore  — single-process store for development and tests
  SupabaseJobStore  — `generation_jobs` + `room_video_units` tables

Unit writes are guarded transitions: they only land when the unit is still
in one of the expected statuses. Job writes are compare-and-set on
`version`: the mutation runs against a fresh read and is retried if someone
else wrote in between. Job-level writes never touch unit rows.
"""

import asyncio
import logging
from typing import Callable, Iterable, Optional

from pydantic_core import to_jsonable_python

from .errors import StorageError
from .models import Job, JobStatus, RoomVideoUnit, UnitStatus, utcnow

logger = logging.getLogger(__name__)

# A mutation returns False to leave the job untouched
JobMutation = Callable[[Job], Optional[bool]]

ACTIVE_JOB_STATUSES = (JobStatus.WAITING, JobStatus.PROCESSING_ROOMS, JobStatus.COMPOSING_VIDEO)

_PROTECTED_UNIT_FIELDS = {"id", "status", "position", "room_id"}


def _check_unit_fields(fields: dict) -> None:
    unknown = set(fields) - set(RoomVideoUnit.model_fields)
    if unknown:
        raise ValueError(f"Unknown unit fields: {sorted(unknown)}")
    protected = set(fields) & _PROTECTED_UNIT_FIELDS
    if protected:
        raise ValueError(f"Unit fields cannot be changed by a transition: {sorted(protected)}")


class JobStore:
    """Persistence contract used by the orchestrator."""

    async def create_job(self, job: Job) -> Job:
        raise NotImplementedError

    async def get_job(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    async def list_project_jobs(self, project_id: str) -> list[Job]:
        """All jobs for a project, newest first."""
        raise NotImplementedError

    async def list_active_jobs(self) -> list[Job]:
        raise NotImplementedError

    async def transition_unit(
        self,
        job_id: str,
        unit_id: str,
        from_statuses: Iterable[UnitStatus],
        to_status: UnitStatus,
        **fields,
    ) -> Optional[RoomVideoUnit]:
        """
        Move a unit to `to_status` and set `fields`, but only if its current
        status is one of `from_statuses`.

        Returns the updated unit, or None when the guard did not match (or
        the job/unit no longer exists).
        """
        raise NotImplementedError

    async def update_job(self, job_id: str, mutate: JobMutation) -> Optional[Job]:
        """
        Apply `mutate` to the current job state and persist the job-level
        fields atomically.

        Returns the stored job, or None if the job is missing or the
        mutation declined by returning False.
        """
        raise NotImplementedError

    async def delete_project_jobs(self, project_id: str) -> list[Job]:
        """Delete every job (and unit) of a project. Returns what was deleted."""
        raise NotImplementedError


# ═════════════════════════════════════════════════════════════════════════════
# In-memory
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryJobStore(JobStore):
    """Process-local store. State is lost on restart."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        self._lock = asyncio.Lock()

    async def create_job(self, job: Job) -> Job:
        async with self._lock:
            if job.id in self._jobs:
                raise StorageError(f"Job {job.id} already exists")
            stored = job.model_copy(deep=True)
            stored.recount()
            self._jobs[job.id] = stored
            return stored.model_copy(deep=True)

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def list_project_jobs(self, project_id: str) -> list[Job]:
        async with self._lock:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values() if j.project_id == project_id]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    async def list_active_jobs(self) -> list[Job]:
        async with self._lock:
            return [
                j.model_copy(deep=True)
                for j in self._jobs.values()
                if j.status in ACTIVE_JOB_STATUSES
            ]

    async def transition_unit(self, job_id, unit_id, from_statuses, to_status, **fields):
        _check_unit_fields(fields)
        allowed = set(from_statuses)
        async with self._lock:
            job = self._jobs.get(job_id)
            unit = job.unit(unit_id) if job else None
            if unit is None or unit.status not in allowed:
                return None
            for key, value in fields.items():
                setattr(unit, key, value)
            unit.status = to_status
            unit.updated_at = utcnow()
            return unit.model_copy(deep=True)

    async def update_job(self, job_id: str, mutate: JobMutation) -> Optional[Job]:
        async with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                return None
            draft = current.model_copy(deep=True)
            if mutate(draft) is False:
                return None
            # Unit rows belong to transition_unit
            draft.room_units = current.room_units
            draft.version = current.version + 1
            draft.updated_at = utcnow()
            self._jobs[job_id] = draft
            return draft.model_copy(deep=True)

    async def delete_project_jobs(self, project_id: str) -> list[Job]:
        async with self._lock:
            doomed = [j for j in self._jobs.values() if j.project_id == project_id]
            for job in doomed:
                del self._jobs[job.id]
            return doomed


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

JOBS_TABLE = "generation_jobs"
UNITS_TABLE = "room_video_units"
MAX_CAS_ATTEMPTS = 5


def _job_row(job: Job) -> dict:
    return job.model_dump(mode="json", exclude={"room_units"})


def _unit_row(job_id: str, unit: RoomVideoUnit) -> dict:
    row = unit.model_dump(mode="json")
    row["job_id"] = job_id
    return row


def _job_from_rows(row: dict, unit_rows: list[dict]) -> Job:
    units = sorted(unit_rows, key=lambda u: u.get("position", 0))
    return Job.model_validate({**row, "room_units": units})


class SupabaseJobStore(JobStore):
    """
    Jobs in `generation_jobs`, units in `room_video_units` (FK with
    ON DELETE CASCADE). The supabase client is synchronous, so every
    request runs in a worker thread.
    """

    def __init__(self, client):
        self._client = client

    async def _execute(self, query):
        try:
            return await asyncio.to_thread(query.execute)
        except Exception as e:
            raise StorageError(f"Supabase request failed: {e}") from e

    async def _units_for(self, job_ids: list[str]) -> dict[str, list[dict]]:
        grouped: dict[str, list[dict]] = {job_id: [] for job_id in job_ids}
        if not job_ids:
            return grouped
        result = await self._execute(
            self._client.table(UNITS_TABLE).select("*").in_("job_id", job_ids).order("position")
        )
        for row in result.data or []:
            grouped.setdefault(row["job_id"], []).append(row)
        return grouped

    async def create_job(self, job: Job) -> Job:
        stored = job.model_copy(deep=True)
        stored.recount()
        await self._execute(self._client.table(JOBS_TABLE).insert(_job_row(stored)))
        if stored.room_units:
            try:
                await self._execute(
                    self._client.table(UNITS_TABLE).insert(
                        [_unit_row(stored.id, u) for u in stored.room_units]
                    )
                )
            except StorageError:
                # Don't leave a job without units behind
                await self._execute(self._client.table(JOBS_TABLE).delete().eq("id", stored.id))
                raise
        logger.info(f"Created job {stored.id} with {len(stored.room_units)} unit(s)")
        return stored

    async def get_job(self, job_id: str) -> Optional[Job]:
        # Job row first, then units: a CAS on the version read here can
        # never be paired with unit state older than that version.
        result = await self._execute(
            self._client.table(JOBS_TABLE).select("*").eq("id", job_id).limit(1)
        )
        if not result.data:
            return None
        units = await self._units_for([job_id])
        return _job_from_rows(result.data[0], units[job_id])

    async def _load_many(self, query) -> list[Job]:
        result = await self._execute(query)
        rows = result.data or []
        units = await self._units_for([row["id"] for row in rows])
        return [_job_from_rows(row, units[row["id"]]) for row in rows]

    async def list_project_jobs(self, project_id: str) -> list[Job]:
        return await self._load_many(
            self._client.table(JOBS_TABLE)
            .select("*")
            .eq("project_id", project_id)
            .order("created_at", desc=True)
        )

    async def list_active_jobs(self) -> list[Job]:
        return await self._load_many(
            self._client.table(JOBS_TABLE)
            .select("*")
            .in_("status", [s.value for s in ACTIVE_JOB_STATUSES])
        )

    async def transition_unit(self, job_id, unit_id, from_statuses, to_status, **fields):
        _check_unit_fields(fields)
        payload = to_jsonable_python(fields)
        payload["status"] = to_status.value
        payload["updated_at"] = utcnow().isoformat()
        result = await self._execute(
            self._client.table(UNITS_TABLE)
            .update(payload)
            .eq("id", unit_id)
            .eq("job_id", job_id)
            .in_("status", [s.value for s in from_statuses])
        )
        if not result.data:
            return None
        return RoomVideoUnit.model_validate(result.data[0])

    async def update_job(self, job_id: str, mutate: JobMutation) -> Optional[Job]:
        for attempt in range(MAX_CAS_ATTEMPTS):
            job = await self.get_job(job_id)
            if job is None:
                return None
            expected_version = job.version
            if mutate(job) is False:
                return None
            job.version = expected_version + 1
            job.updated_at = utcnow()
            row = _job_row(job)
            for immutable in ("id", "project_id", "user_id", "created_at"):
                row.pop(immutable, None)
            result = await self._execute(
                self._client.table(JOBS_TABLE)
                .update(row)
                .eq("id", job_id)
                .eq("version", expected_version)
            )
            if result.data:
                return job
            logger.debug(f"Version conflict on job {job_id} (attempt {attempt + 1}/{MAX_CAS_ATTEMPTS})")
        raise StorageError(f"Job {job_id} kept changing during update; gave up after {MAX_CAS_ATTEMPTS} attempts")

    async def delete_project_jobs(self, project_id: str) -> list[Job]:
        jobs = await self.list_project_jobs(project_id)
        if jobs:
            await self._execute(self._client.table(JOBS_TABLE).delete().eq("project_id", project_id))
            logger.info(f"Deleted {len(jobs)} generation job(s) for project {project_id}")
        return jobs
