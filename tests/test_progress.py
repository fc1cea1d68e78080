from conftest import PROJECT, USER, make_plan
from tourworker.generation.models import JobStatus, UnitStatus
from tourworker.generation.orchestrator import build_job
from tourworker.generation.progress import (
    PER_UNIT_SECONDS,
    build_progress,
    current_step_label,
    estimate_remaining_seconds,
    overall_progress,
)


def four_room_job():
    return build_job(USER, PROJECT, make_plan("living-room", "kitchen", "bedroom", "office"))


def test_overall_progress_blends_completed_and_partial_units():
    job = four_room_job()
    living, kitchen, bedroom, office = job.room_units
    living.status = UnitStatus.COMPLETED
    kitchen.status = UnitStatus.IN_PROGRESS
    kitchen.progress = 40.0
    bedroom.status = UnitStatus.FAILED
    bedroom.progress = 90.0   # stale, ignored once failed

    assert overall_progress(job) == 35.0


def test_partial_progress_is_clamped():
    job = four_room_job()
    job.room_units[0].status = UnitStatus.IN_PROGRESS
    job.room_units[0].progress = 250.0
    job.room_units[1].status = UnitStatus.IN_PROGRESS
    job.room_units[1].progress = -10.0

    assert overall_progress(job) == 25.0


def test_empty_job_has_zero_progress():
    job = build_job(USER, PROJECT, make_plan("kitchen"))
    job.room_units = []
    assert overall_progress(job) == 0.0
    assert current_step_label(job) == ""


def test_current_step_is_first_running_room_else_last_room():
    job = four_room_job()
    assert current_step_label(job) == "Office"

    job.room_units[2].status = UnitStatus.IN_PROGRESS
    job.room_units[3].status = UnitStatus.IN_PROGRESS
    assert current_step_label(job) == "Bedroom"


def test_estimate_counts_unfinished_rooms():
    job = four_room_job()
    job.room_units[0].status = UnitStatus.COMPLETED
    job.room_units[1].status = UnitStatus.FAILED
    job.room_units[2].status = UnitStatus.IN_PROGRESS

    assert estimate_remaining_seconds(job) == 2 * PER_UNIT_SECONDS


def test_snapshot_steps_follow_plan_order():
    job = four_room_job()
    job.room_units.reverse()
    job.room_units[0].status = UnitStatus.FAILED
    job.room_units[0].error = "Provider rejected the request: nope"
    job.status = JobStatus.FAILED

    snapshot = build_progress(job)

    assert [s.label for s in snapshot.steps] == ["Living Room", "Kitchen", "Bedroom", "Office"]
    assert snapshot.steps[-1].error == "Provider rejected the request: nope"
    assert snapshot.total_steps == 4
    assert snapshot.completed_steps == 0
    assert snapshot.has_failed and not snapshot.is_complete


def test_step_progress_only_shown_while_running():
    job = four_room_job()
    job.room_units[0].status = UnitStatus.COMPLETED
    job.room_units[0].progress = 80.0
    job.room_units[1].status = UnitStatus.IN_PROGRESS
    job.room_units[1].progress = 80.0

    steps = build_progress(job).steps
    assert steps[0].progress is None
    assert steps[1].progress == 80.0
