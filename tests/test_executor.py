import asyncio

import pytest

from conftest import PROJECT, USER, FakeProvider, MemoryStorage, fake_fetch, fake_inspect, make_plan
from tourworker import metrics
from tourworker.generation.errors import (
    ProviderRateLimited,
    ProviderRejectedError,
    ProviderTimeout,
    ProviderTransientError,
)
from tourworker.generation.executor import RoomVideoExecutor
from tourworker.generation.orchestrator import build_job


def make_executor(provider, storage, **overrides):
    options = dict(
        fetch=fake_fetch,
        inspect=fake_inspect,
        max_attempts=3,
        base_delay=0,
        max_delay=0,
        jitter=0,
    )
    options.update(overrides)
    return RoomVideoExecutor(provider=provider, storage=storage, **options)


@pytest.fixture
def job():
    return build_job(USER, PROJECT, make_plan("kitchen"))


async def test_success_stores_clip_and_thumbnail_under_deterministic_keys(job):
    provider, storage = FakeProvider(), MemoryStorage()
    unit = job.room_units[0]

    output = await make_executor(provider, storage).execute(job, unit)

    prefix = f"{USER}/projects/{PROJECT}/generations/{job.id}/rooms/{unit.id}"
    assert output.output_url == f"https://cdn.test/{prefix}.mp4"
    assert output.thumbnail_url == f"https://cdn.test/{prefix}.jpg"
    assert output.duration == 5.0
    assert output.attempts == 1
    assert storage.objects[f"{prefix}.mp4"] == b"bytes:https://provider.test/kitchen/1.mp4"
    assert storage.content_types[f"{prefix}.jpg"] == "image/jpeg"


async def test_prompt_and_images_come_from_the_room(job):
    provider = FakeProvider()
    unit = job.room_units[0]
    unit.images = [f"https://img.test/kitchen/{i}.jpg" for i in range(6)] + ["https://img.test/kitchen/0.jpg"]

    await make_executor(provider, MemoryStorage()).execute(job, unit)

    [call] = provider.calls
    assert call["image_urls"] == [f"https://img.test/kitchen/{i}.jpg" for i in range(4)]
    assert "kitchen" in call["prompt"]


async def test_transient_errors_are_retried(job):
    provider = FakeProvider()
    provider.fail("kitchen", ProviderTransientError("502"), ProviderRateLimited("slow down"))

    output = await make_executor(provider, MemoryStorage()).execute(job, job.room_units[0])

    assert output.attempts == 3
    assert len(provider.calls) == 3
    assert metrics.get_snapshot()["counters"]["units.retries"] == 2


async def test_rejection_is_not_retried(job):
    provider = FakeProvider()
    provider.fail("kitchen", ProviderRejectedError("content policy"))

    with pytest.raises(ProviderRejectedError) as exc_info:
        await make_executor(provider, MemoryStorage()).execute(job, job.room_units[0])

    assert exc_info.value.attempts == 1
    assert len(provider.calls) == 1


async def test_gives_up_after_max_attempts(job):
    provider = FakeProvider()
    provider.fail("kitchen", *[ProviderTransientError(f"boom {i}") for i in range(5)])

    with pytest.raises(ProviderTransientError, match="boom 2") as exc_info:
        await make_executor(provider, MemoryStorage()).execute(job, job.room_units[0])

    assert exc_info.value.attempts == 3
    assert len(provider.calls) == 3


async def test_timeout_is_retried(job):
    class SlowOnceProvider(FakeProvider):
        async def generate(self, prompt, image_urls, **kwargs):
            if not self.calls:
                self.calls.append({"room_id": "kitchen", "request_id": kwargs.get("request_id")})
                await asyncio.sleep(10)
            return await super().generate(prompt, image_urls, **kwargs)

    provider = SlowOnceProvider()
    output = await make_executor(provider, MemoryStorage(), call_timeout=0.05).execute(job, job.room_units[0])

    assert output.attempts == 2
    assert metrics.get_snapshot()["counters"]["errors.unit_ProviderTimeout"] == 1


async def test_timeout_on_last_attempt_raises_provider_timeout(job):
    class HangingProvider(FakeProvider):
        async def generate(self, prompt, image_urls, **kwargs):
            await asyncio.sleep(10)

    with pytest.raises(ProviderTimeout) as exc_info:
        await make_executor(HangingProvider(), MemoryStorage(), call_timeout=0.01, max_attempts=2).execute(
            job, job.room_units[0]
        )
    assert exc_info.value.attempts == 2


async def test_storage_failure_is_retried_without_regenerating(job):
    provider, storage = FakeProvider(), MemoryStorage()
    storage.put_failures = 1

    output = await make_executor(provider, storage).execute(job, job.room_units[0])

    assert output.attempts == 2
    assert len(provider.calls) == 1
    assert output.output_url.endswith(".mp4")


async def test_resumes_recorded_request_once(job):
    provider = FakeProvider()
    provider.fail("kitchen", ProviderTransientError("lost"))
    unit = job.room_units[0]
    unit.provider_request_id = "req-old"

    await make_executor(provider, MemoryStorage()).execute(job, unit)

    assert [c["request_id"] for c in provider.calls] == ["req-old", None]


async def test_callbacks_receive_request_id_and_progress(job):
    submitted, progress = [], []

    async def on_submitted(request_id):
        submitted.append(request_id)

    async def on_progress(pct):
        progress.append(pct)

    await make_executor(FakeProvider(), MemoryStorage()).execute(
        job, job.room_units[0], on_submitted=on_submitted, on_progress=on_progress
    )

    assert submitted == ["req-kitchen-1"]
    assert progress == [50.0]


async def test_clip_inspection_failure_falls_back_to_planned_duration(job):
    def broken_inspect(data):
        raise OSError("ffmpeg missing")

    output = await make_executor(FakeProvider(), MemoryStorage(), inspect=broken_inspect).execute(
        job, job.room_units[0]
    )

    assert output.duration == float(job.room_units[0].settings.duration)
    assert output.thumbnail_url is None


async def test_room_without_images_is_rejected(job):
    unit = job.room_units[0]
    unit.images = []
    with pytest.raises(ProviderRejectedError):
        await make_executor(FakeProvider(), MemoryStorage()).execute(job, unit)
