"""
Generation Orchestrator — owns the Job state machine.

Job:   waiting → processing_rooms → composing_video → completed
                        │                   │
                        └──────→ failed ←───┘        (zero successes, policy,
                                                      composition error, cancel)
Unit:  waiting → in-progress → completed | failed    (retry: failed → waiting)

Entry points:
  start_generation   — validate, persist job + units, hand off to the dispatcher
  run_job            — background: dispatch units (bounded), then advance
  retry_failed_units — reset failed units and re-open the job
  cancel_job         — mark a running job failed; in-flight calls finish
  get_job / get_jobs / get_progress / get_final_video
  delete_project_generation — cascade when a project is deleted
  recover_active_jobs       — resume after a restart (no-queue deployments)

Unit errors never escape run_job: they are recorded on the unit and the
remaining rooms keep going.
"""

import os
import uuid
import asyncio
import logging
from collections import defaultdict
from typing import Optional

from .. import metrics
from .composition import CompositionStage
from .dispatcher import JobDispatcher
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    ValidationError,
    describe_error,
)
from .executor import RoomVideoExecutor
from .job_store import JobStore
from .models import (
    ALLOWED_DURATIONS,
    ORIENTATION_ASPECT_RATIOS,
    CompositionOptions,
    FinalVideo,
    GenerationPlan,
    Job,
    JobStatus,
    ProgressSnapshot,
    RoomVideoUnit,
    UnitSettings,
    UnitStatus,
    utcnow,
)
from .progress import build_progress
from .projects import ProjectDirectory

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

ROOM_CONCURRENCY = int(os.getenv("ROOM_CONCURRENCY", "3"))
MIN_SUCCESS_RATIO = float(os.getenv("MIN_SUCCESS_RATIO", "0"))
MAX_ROOMS = 20

ALL_ROOMS_FAILED = "all rooms failed"
CANCELLED_BY_USER = "cancelled by user"


def _is_http_url(url: str) -> bool:
    return isinstance(url, str) and url.startswith(("http://", "https://"))


def validate_plan(plan: GenerationPlan) -> None:
    """Reject malformed plans before anything is persisted."""
    if not plan.rooms:
        raise ValidationError("Plan must contain at least one room")
    if len(plan.rooms) > MAX_ROOMS:
        raise ValidationError(f"Plan has {len(plan.rooms)} rooms; the limit is {MAX_ROOMS}")
    if plan.duration not in ALLOWED_DURATIONS:
        raise ValidationError(f"Duration must be one of {list(ALLOWED_DURATIONS)} seconds")
    if plan.orientation not in ORIENTATION_ASPECT_RATIOS:
        raise ValidationError(f"Orientation must be one of {sorted(ORIENTATION_ASPECT_RATIOS)}")

    seen: set[str] = set()
    for index, room in enumerate(plan.rooms):
        if not room.room_id.strip() or not room.room_name.strip():
            raise ValidationError(f"Room {index + 1} needs an id and a name")
        if room.room_id in seen:
            raise ValidationError(f"Duplicate room id {room.room_id!r}")
        seen.add(room.room_id)
        if not room.images:
            raise ValidationError(f"Room {room.room_name!r} has no images")
        bad = [url for url in room.images if not _is_http_url(url)]
        if bad:
            raise ValidationError(f"Room {room.room_name!r} has invalid image URLs: {bad[:3]}")

    if plan.logo and not _is_http_url(plan.logo.url):
        raise ValidationError("Logo URL must be http(s)")
    if plan.subtitles and not plan.subtitles.text.strip():
        raise ValidationError("Subtitles were requested without any text")


def build_job(user_id: str, project_id: str, plan: GenerationPlan) -> Job:
    aspect_ratio = ORIENTATION_ASPECT_RATIOS[plan.orientation]
    settings = UnitSettings(
        duration=plan.duration,
        aspect_ratio=aspect_ratio,
        directions=plan.directions.strip(),
    )
    units = [
        RoomVideoUnit(
            id=str(uuid.uuid4()),
            room_id=room.room_id,
            room_name=room.room_name.strip(),
            room_type=(room.room_type or "other").lower(),
            position=index,
            images=list(room.images),
            settings=settings.model_copy(update={"scene_descriptions": list(room.scene_descriptions)}),
        )
        for index, room in enumerate(plan.rooms)
    ]
    return Job(
        id=str(uuid.uuid4()),
        project_id=project_id,
        user_id=user_id,
        total_rooms=len(units),
        room_units=units,
        composition=CompositionOptions(
            aspect_ratio=aspect_ratio,
            transitions=plan.transitions,
            logo=plan.logo,
            subtitles=plan.subtitles,
        ),
    )


# ── Job mutations (run inside JobStore.update_job) ───────────────────────────

def _recount(job: Job) -> None:
    job.recount()


def _mark_processing(job: Job) -> Optional[bool]:
    if job.status != JobStatus.WAITING:
        return False
    job.status = JobStatus.PROCESSING_ROOMS


def _fail_with(message: str):
    def mutate(job: Job) -> Optional[bool]:
        if job.is_terminal or job.status == JobStatus.COMPOSING_VIDEO:
            return False
        job.recount()
        job.status = JobStatus.FAILED
        job.error = message
    return mutate


def _begin_composing(job: Job) -> Optional[bool]:
    if job.status != JobStatus.PROCESSING_ROOMS or not job.all_units_terminal():
        return False
    job.recount()
    job.status = JobStatus.COMPOSING_VIDEO


def _finish_completed(final_video: FinalVideo):
    def mutate(job: Job) -> Optional[bool]:
        if job.status != JobStatus.COMPOSING_VIDEO:
            return False
        job.recount()
        job.status = JobStatus.COMPLETED
        job.final_video = final_video
        job.error = None
    return mutate


def _finish_failed(message: str):
    def mutate(job: Job) -> Optional[bool]:
        if job.status != JobStatus.COMPOSING_VIDEO:
            return False
        job.status = JobStatus.FAILED
        job.error = message
    return mutate


def _cancel(job: Job) -> Optional[bool]:
    if job.is_terminal:
        return False
    job.status = JobStatus.FAILED
    job.error = CANCELLED_BY_USER
    job.cancelled = True


def _failed_among(job: Job, unit_ids: list[str]) -> list[str]:
    """The requested ids that name a currently failed unit, deduplicated."""
    failed = []
    for unit_id in dict.fromkeys(unit_ids):
        unit = job.unit(unit_id)
        if unit is not None and unit.status == UnitStatus.FAILED:
            failed.append(unit_id)
    return failed


def _reopen(job: Job) -> None:
    job.recount()
    if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
        job.status = JobStatus.PROCESSING_ROOMS
        job.error = None
        job.final_video = None


class GenerationOrchestrator:
    def __init__(
        self,
        store: JobStore,
        projects: ProjectDirectory,
        executor: RoomVideoExecutor,
        compositor: CompositionStage,
        dispatcher: JobDispatcher,
        storage=None,
        concurrency: int = ROOM_CONCURRENCY,
        min_success_ratio: float = MIN_SUCCESS_RATIO,
    ):
        self.store = store
        self.projects = projects
        self.executor = executor
        self.compositor = compositor
        self.dispatcher = dispatcher
        self.storage = storage
        self.min_success_ratio = min_success_ratio
        # One pool for every job: the provider's concurrency ceiling is global
        self._slots = asyncio.Semaphore(max(1, concurrency))
        # Serializes "start composing" against retry for the same job
        self._job_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        dispatcher.bind(self.run_job)

    # ── Ownership ────────────────────────────────────────────────────────────

    async def _authorize_project(self, user_id: str, project_id: str) -> None:
        owner = await self.projects.get_owner(project_id)
        if owner is None:
            raise NotFoundError(f"Project {project_id} not found")
        if owner != user_id:
            raise ForbiddenError("You do not have access to this project")

    async def _owned_job(self, user_id: str, job_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        await self._authorize_project(user_id, job.project_id)
        return job

    # ── Start ────────────────────────────────────────────────────────────────

    async def start_generation(self, user_id: str, project_id: str, plan: GenerationPlan) -> Job:
        validate_plan(plan)
        await self._authorize_project(user_id, project_id)

        job = await self.store.create_job(build_job(user_id, project_id, plan))
        metrics.inc_counter("jobs.started")
        logger.info(f"Job {job.id} created for project {project_id}: {job.total_rooms} room(s)")

        self.dispatcher.submit(job.id)
        return job

    # ── Background run ───────────────────────────────────────────────────────

    async def run_job(self, job_id: str, resume: bool = False) -> None:
        """Dispatch every pending unit of a job, then advance it."""
        job = await self.store.get_job(job_id)
        if job is None:
            logger.warning(f"Job {job_id} no longer exists; nothing to run")
            return
        if job.is_terminal:
            logger.info(f"Job {job_id} is already {job.status.value}; nothing to run")
            self._release_lock(job_id)
            return

        if job.status == JobStatus.COMPOSING_VIDEO:
            if resume:
                # The process died mid-render; every unit is already terminal
                logger.info(f"Job {job_id} was composing before a restart; composing again")
                await self._compose(job)
                self._release_lock(job_id)
            return

        await self.store.update_job(job_id, _mark_processing)

        pending = [
            unit for unit in sorted(job.room_units, key=lambda u: u.position)
            if unit.status == UnitStatus.WAITING
            or (resume and unit.status == UnitStatus.IN_PROGRESS)
        ]
        if pending:
            logger.info(f"Job {job_id}: dispatching {len(pending)} room(s)")
            await asyncio.gather(*(self._run_unit(job_id, unit) for unit in pending))

        await self._advance(job_id)

        finished = await self.store.get_job(job_id)
        if finished is None or finished.is_terminal:
            self._release_lock(job_id)

    def _release_lock(self, job_id: str) -> None:
        lock = self._job_locks.get(job_id)
        if lock is not None and not lock.locked():
            del self._job_locks[job_id]

    async def _run_unit(self, job_id: str, unit: RoomVideoUnit) -> None:
        async with self._slots:
            job = await self.store.get_job(job_id)
            if job is None or job.is_terminal:
                logger.info(f"Skipping room {unit.room_name!r}: job {job_id} is no longer running")
                return

            if unit.status == UnitStatus.WAITING:
                started = await self.store.transition_unit(
                    job_id, unit.id, {UnitStatus.WAITING}, UnitStatus.IN_PROGRESS,
                    started_at=utcnow(), progress=None,
                )
                if started is None:
                    logger.info(f"Room {unit.id} was picked up elsewhere; skipping")
                    return
                unit = started

            async def on_submitted(request_id: str) -> None:
                await self.store.transition_unit(
                    job_id, unit.id, {UnitStatus.IN_PROGRESS}, UnitStatus.IN_PROGRESS,
                    provider_request_id=request_id,
                )

            async def on_progress(pct: float) -> None:
                await self.store.transition_unit(
                    job_id, unit.id, {UnitStatus.IN_PROGRESS}, UnitStatus.IN_PROGRESS,
                    progress=pct,
                )

            try:
                output = await self.executor.execute(
                    job, unit, on_submitted=on_submitted, on_progress=on_progress
                )
            except Exception as e:
                message = describe_error(e)
                logger.error(f"Room {unit.room_name!r} ({unit.id}) failed: {message}", exc_info=True)
                metrics.inc_counter("units.failed")
                metrics.record_error("unit", e.__class__.__name__, message, job_id)
                await self.store.transition_unit(
                    job_id, unit.id, {UnitStatus.IN_PROGRESS}, UnitStatus.FAILED,
                    error=message,
                    progress=None,
                    attempts=getattr(e, "attempts", None) or unit.attempts,
                    completed_at=utcnow(),
                )
            else:
                metrics.inc_counter("units.completed")
                await self.store.transition_unit(
                    job_id, unit.id, {UnitStatus.IN_PROGRESS}, UnitStatus.COMPLETED,
                    output_url=output.output_url,
                    thumbnail_url=output.thumbnail_url,
                    duration=output.duration,
                    attempts=output.attempts,
                    progress=None,
                    error=None,
                    completed_at=utcnow(),
                )

            # Counters follow the units even after cancellation; status does not
            await self.store.update_job(job_id, _recount)

    async def _advance(self, job_id: str) -> None:
        """Once every unit is terminal: fail the job or compose it."""
        async with self._job_locks[job_id]:
            job = await self.store.get_job(job_id)
            if job is None or job.status != JobStatus.PROCESSING_ROOMS:
                return
            if not job.all_units_terminal():
                return

            successes = job.successful_units()
            if not successes:
                await self._fail_job(job_id, ALL_ROOMS_FAILED)
                return
            if len(successes) < job.total_rooms * self.min_success_ratio:
                await self._fail_job(
                    job_id, f"only {len(successes)} of {job.total_rooms} rooms succeeded"
                )
                return

            composing = await self.store.update_job(job_id, _begin_composing)
            if composing is None:
                return

        await self._compose(composing)

    async def _fail_job(self, job_id: str, message: str) -> None:
        failed = await self.store.update_job(job_id, _fail_with(message))
        if failed is not None:
            metrics.inc_counter("jobs.failed")
            logger.warning(f"Job {job_id} failed: {message}")

    async def _compose(self, job: Job) -> None:
        units = job.successful_units()
        try:
            final_video = await self.compositor.compose(job, units)
        except Exception as e:
            message = describe_error(e)
            logger.error(f"Composition failed for job {job.id}: {message}", exc_info=True)
            metrics.record_error("composition", e.__class__.__name__, message, job.id)
            if await self.store.update_job(job.id, _finish_failed(message)) is not None:
                metrics.inc_counter("jobs.failed")
            return

        finished = await self.store.update_job(job.id, _finish_completed(final_video))
        if finished is None:
            logger.info(f"Job {job.id} was cancelled during composition; discarding final video")
            await self._discard_blob(final_video.video_url)
            if final_video.thumbnail_url:
                await self._discard_blob(final_video.thumbnail_url)
            return

        metrics.inc_counter("jobs.completed")
        logger.info(
            f"Job {job.id} completed: {finished.completed_rooms}/{finished.total_rooms} room(s), "
            f"failed={finished.failed_room_ids}"
        )

    async def _discard_blob(self, url: str) -> None:
        if self.storage is None:
            return
        try:
            await self.storage.delete(url)
        except StorageError as e:
            # Non-fatal: an orphaned blob is only wasted space
            logger.warning(f"Could not delete {url}: {e}")

    # ── Retry / Cancel ───────────────────────────────────────────────────────

    async def retry_failed_units(self, user_id: str, job_id: str, unit_ids: list[str]) -> tuple[Job, list[str]]:
        """
        Reset the named failed units to waiting and re-run the job.
        Ids that are unknown or not failed are ignored.
        """
        job = await self._owned_job(user_id, job_id)
        if not _failed_among(job, unit_ids):
            logger.info(f"Retry on job {job_id}: no failed units among {unit_ids}; nothing to do")
            return job, []
        if job.cancelled:
            raise ConflictError("A cancelled job cannot be retried")

        retried: list[str] = []
        async with self._job_locks[job_id]:
            job = await self.store.get_job(job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            if job.status == JobStatus.COMPOSING_VIDEO:
                raise ConflictError("The final video is being composed; retry once it finishes")

            for unit_id in _failed_among(job, unit_ids):
                reset = await self.store.transition_unit(
                    job_id, unit_id, {UnitStatus.FAILED}, UnitStatus.WAITING,
                    error=None,
                    progress=None,
                    provider_request_id=None,
                    started_at=None,
                    completed_at=None,
                    attempts=0,
                )
                if reset is not None:
                    retried.append(unit_id)

            if not retried:
                logger.info(f"Retry on job {job_id}: no failed units among {unit_ids}; nothing to do")
                return job, []

            job = await self.store.update_job(job_id, _reopen)

        metrics.inc_counter("units.retried", len(retried))
        logger.info(f"Job {job_id}: retrying {len(retried)} room(s)")
        self.dispatcher.submit(job_id)
        return job, retried

    async def cancel_job(self, user_id: str, job_id: str) -> Job:
        job = await self._owned_job(user_id, job_id)
        cancelled = await self.store.update_job(job_id, _cancel)
        if cancelled is None:
            current = await self.store.get_job(job_id)
            status = current.status.value if current else job.status.value
            raise ConflictError(f"Job is already {status}")
        metrics.inc_counter("jobs.cancelled")
        logger.info(f"Job {job_id} cancelled by user")
        return cancelled

    # ── Queries ──────────────────────────────────────────────────────────────

    async def get_job(self, user_id: str, job_id: str) -> Job:
        return await self._owned_job(user_id, job_id)

    async def get_jobs(self, user_id: str, job_ids: list[str]) -> list[Job]:
        """Batch poll: unknown ids are skipped; any foreign job is forbidden."""
        jobs = []
        for job_id in dict.fromkeys(job_ids):
            job = await self.store.get_job(job_id)
            if job is None:
                continue
            await self._authorize_project(user_id, job.project_id)
            jobs.append(job)
        if not jobs:
            raise NotFoundError("No matching jobs found")
        return jobs

    async def get_progress(self, user_id: str, job_id: str) -> ProgressSnapshot:
        return build_progress(await self._owned_job(user_id, job_id))

    async def get_final_video(self, user_id: str, project_id: str) -> tuple[Job, FinalVideo]:
        await self._authorize_project(user_id, project_id)
        jobs = await self.store.list_project_jobs(project_id)
        latest = jobs[0] if jobs else None
        if latest is None or latest.status != JobStatus.COMPLETED or latest.final_video is None:
            raise NotFoundError("Final video not found. Generation may still be in progress.")
        return latest, latest.final_video

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def delete_project_generation(self, user_id: str, project_id: str) -> list[Job]:
        """Cascade for project deletion: drop jobs, units and their blobs."""
        await self._authorize_project(user_id, project_id)
        deleted = await self.store.delete_project_jobs(project_id)
        for job in deleted:
            self._job_locks.pop(job.id, None)
            urls = [u for unit in job.room_units for u in (unit.output_url, unit.thumbnail_url) if u]
            if job.final_video:
                urls.extend(u for u in (job.final_video.video_url, job.final_video.thumbnail_url) if u)
            for url in urls:
                await self._discard_blob(url)
        return deleted

    async def recover_active_jobs(self) -> int:
        """Re-submit every unfinished job after a restart."""
        jobs = await self.store.list_active_jobs()
        for job in jobs:
            logger.info(f"Resuming job {job.id} ({job.status.value})")
            self.dispatcher.submit(job.id, resume=True)
        return len(jobs)
