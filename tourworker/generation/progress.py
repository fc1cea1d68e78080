"""
Progress projection for polling clients.

Everything here is derived from Job + unit state on each request and never
written back. The time estimate is a flat per-room allowance; it is a rough
hint for the UI, not a promise.
"""

from .models import Job, JobStatus, ProgressSnapshot, ProgressStep, UnitStatus

# ── Config ───────────────────────────────────────────────────────────────────

PER_UNIT_SECONDS = 60


def overall_progress(job: Job) -> float:
    """(completed × 100 + Σ partial of in-progress units) / total units."""
    total = len(job.room_units)
    if total == 0:
        return 0.0
    completed = sum(1 for u in job.room_units if u.status == UnitStatus.COMPLETED)
    partial = sum(
        min(max(u.progress or 0.0, 0.0), 100.0)
        for u in job.room_units
        if u.status == UnitStatus.IN_PROGRESS
    )
    return round((completed * 100 + partial) / total, 1)


def current_step_label(job: Job) -> str:
    """First in-progress unit, else the last unit by order."""
    ordered = sorted(job.room_units, key=lambda u: u.position)
    if not ordered:
        return ""
    for unit in ordered:
        if unit.status == UnitStatus.IN_PROGRESS:
            return unit.room_name
    return ordered[-1].room_name


def estimate_remaining_seconds(job: Job) -> int:
    remaining = sum(1 for u in job.room_units if not u.is_terminal)
    return remaining * PER_UNIT_SECONDS


def build_progress(job: Job) -> ProgressSnapshot:
    ordered = sorted(job.room_units, key=lambda u: u.position)
    steps = [
        ProgressStep(
            id=unit.id,
            label=unit.room_name,
            status=unit.status,
            progress=unit.progress if unit.status == UnitStatus.IN_PROGRESS else None,
            duration=unit.duration,
            error=unit.error,
        )
        for unit in ordered
    ]
    return ProgressSnapshot(
        job_id=job.id,
        status=job.status,
        overall_progress=overall_progress(job),
        current_step=current_step_label(job),
        total_steps=len(ordered),
        completed_steps=sum(1 for u in ordered if u.status == UnitStatus.COMPLETED),
        estimated_time_remaining_seconds=estimate_remaining_seconds(job),
        steps=steps,
        is_complete=job.status == JobStatus.COMPLETED,
        has_failed=job.status == JobStatus.FAILED,
    )
