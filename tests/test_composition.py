from io import BytesIO

import pytest
from PIL import Image

from conftest import PROJECT, USER, FakeRenderer, MemoryStorage, fake_fetch, make_plan
from tourworker.generation.composition import CompositionStage
from tourworker.generation.errors import CompositionError
from tourworker.generation.models import LogoOverlay, SubtitleTrack, UnitStatus
from tourworker.generation.orchestrator import build_job


def png_bytes(size=(1200, 600)) -> bytes:
    output = BytesIO()
    Image.new("RGBA", size, (255, 0, 0, 128)).save(output, format="PNG")
    return output.getvalue()


async def fetch_with_logo(url: str) -> bytes:
    if url.endswith("logo.png"):
        return png_bytes()
    return await fake_fetch(url)


def completed_job(**settings):
    job = build_job(USER, PROJECT, make_plan("living-room", "kitchen", "bedroom", **settings))
    for unit in job.room_units:
        unit.status = UnitStatus.COMPLETED
        unit.output_url = f"https://cdn.test/clips/{unit.room_id}.mp4"
        unit.duration = 5.0
    return job


async def test_compose_uploads_final_video_and_thumbnail():
    storage, renderer = MemoryStorage(), FakeRenderer()
    job = completed_job()

    final = await CompositionStage(storage, fetch=fake_fetch, render=renderer).compose(job, job.successful_units())

    prefix = f"{USER}/projects/{PROJECT}/generations/{job.id}"
    assert final.video_url == f"https://cdn.test/{prefix}/final.mp4"
    assert final.thumbnail_url == f"https://cdn.test/{prefix}/final.jpg"
    assert storage.objects[f"{prefix}/final.mp4"] == b"final-video"
    assert final.file_size == len(b"final-video")
    assert final.duration == 14.0
    assert final.unit_ids == [u.id for u in job.room_units]


async def test_clips_are_rendered_in_given_order():
    renderer = FakeRenderer()
    job = completed_job()
    units = [job.room_units[0], job.room_units[2]]

    await CompositionStage(MemoryStorage(), fetch=fake_fetch, render=renderer).compose(job, units)

    assert renderer.clip_contents[0] == [
        b"bytes:https://cdn.test/clips/living-room.mp4",
        b"bytes:https://cdn.test/clips/bedroom.mp4",
    ]


async def test_overlay_options_reach_the_renderer():
    renderer = FakeRenderer()
    job = completed_job(
        orientation="square",
        transitions=False,
        logo=LogoOverlay(url="https://img.test/brand/logo.png", position="top-left"),
        subtitles=SubtitleTrack(text="Welcome home"),
    )

    await CompositionStage(MemoryStorage(), fetch=fetch_with_logo, render=renderer).compose(
        job, job.successful_units()
    )

    [request] = renderer.requests
    assert request.aspect_ratio == "1:1"
    assert request.transitions is False
    assert request.logo_position == "top-left"
    assert request.subtitle_text == "Welcome home"
    assert request.logo_path.endswith("logo.png")


async def test_render_failure_becomes_composition_error():
    renderer = FakeRenderer()
    renderer.error = OSError("ffmpeg not found")
    job = completed_job()

    with pytest.raises(CompositionError, match="ffmpeg not found"):
        await CompositionStage(MemoryStorage(), fetch=fake_fetch, render=renderer).compose(
            job, job.successful_units()
        )


async def test_unreadable_logo_fails_composition():
    job = completed_job(logo=LogoOverlay(url="https://img.test/brand/logo.svg"))
    with pytest.raises(CompositionError, match="Logo is not a readable image"):
        await CompositionStage(MemoryStorage(), fetch=fake_fetch, render=FakeRenderer()).compose(
            job, job.successful_units()
        )


async def test_units_without_clips_are_refused():
    job = completed_job()
    job.room_units[1].output_url = None
    with pytest.raises(CompositionError, match="Kitchen"):
        await CompositionStage(MemoryStorage(), fetch=fake_fetch, render=FakeRenderer()).compose(
            job, job.successful_units()
        )


async def test_compose_requires_units():
    with pytest.raises(ValueError):
        await CompositionStage(MemoryStorage(), fetch=fake_fetch, render=FakeRenderer()).compose(completed_job(), [])
