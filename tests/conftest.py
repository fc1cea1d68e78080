import asyncio
import threading
from typing import Optional

import pytest

from tourworker import metrics
from tourworker.generation.composition import CompositionStage
from tourworker.generation.dispatcher import LocalDispatcher
from tourworker.generation.errors import StorageError
from tourworker.generation.executor import RoomVideoExecutor
from tourworker.generation.job_store import InMemoryJobStore
from tourworker.generation.media import ClipInfo, RenderRequest, expected_duration
from tourworker.generation.models import GenerationPlan, RoomPlan
from tourworker.generation.orchestrator import GenerationOrchestrator
from tourworker.generation.projects import InMemoryProjectDirectory

USER = "user-1"
OTHER_USER = "user-2"
PROJECT = "project-1"
CLIP_SECONDS = 5.0


def room_id_from(image_urls: list[str]) -> str:
    # https://img.test/{room_id}/{n}.jpg
    return image_urls[0].split("/")[3]


def make_plan(*room_ids: str, **settings) -> GenerationPlan:
    rooms = [
        RoomPlan(
            room_id=room_id,
            room_name=room_id.replace("-", " ").title(),
            room_type="kitchen" if "kitchen" in room_id else "other",
            images=[f"https://img.test/{room_id}/1.jpg", f"https://img.test/{room_id}/2.jpg"],
        )
        for room_id in room_ids
    ]
    return GenerationPlan(rooms=rooms, **settings)


class FakeProvider:
    """
    Stands in for KlingClient. `script[room_id]` is a list of outcomes, one
    per call: an exception instance to raise, or None to succeed.
    """

    def __init__(self):
        self.script: dict[str, list[Optional[Exception]]] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.calls: list[dict] = []
        self.active = 0
        self.max_active = 0
        self.progress_reports: list[float] = []

    def fail(self, room_id: str, *errors: Exception) -> None:
        self.script[room_id] = list(errors)

    def hold(self, room_id: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[room_id] = gate
        return gate

    def calls_for(self, room_id: str) -> list[dict]:
        return [c for c in self.calls if c["room_id"] == room_id]

    async def generate(self, prompt, image_urls, *, duration=5, aspect_ratio="16:9",
                       request_id=None, on_submitted=None, on_progress=None):
        room_id = room_id_from(image_urls)
        attempt = len(self.calls_for(room_id)) + 1
        self.calls.append({
            "room_id": room_id,
            "prompt": prompt,
            "image_urls": list(image_urls),
            "duration": duration,
            "aspect_ratio": aspect_ratio,
            "request_id": request_id,
        })
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if request_id is None and on_submitted:
                await on_submitted(f"req-{room_id}-{attempt}")
            if on_progress:
                await on_progress(50.0)
                self.progress_reports.append(50.0)
            gate = self.gates.get(room_id)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            outcomes = self.script.get(room_id) or []
            if outcomes:
                error = outcomes.pop(0)
                if error is not None:
                    raise error
            return f"https://provider.test/{room_id}/{attempt}.mp4"
        finally:
            self.active -= 1


class MemoryStorage:
    def __init__(self):
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.put_failures = 0
        self.deleted: list[str] = []

    def url_for(self, key: str) -> str:
        return f"https://cdn.test/{key}"

    async def put(self, key: str, data: bytes, content_type: str = "video/mp4") -> str:
        if self.put_failures:
            self.put_failures -= 1
            raise StorageError(f"Upload failed for {key}: simulated outage")
        self.objects[key] = data
        self.content_types[key] = content_type
        return self.url_for(key)

    async def delete(self, url: str) -> None:
        key = url.removeprefix("https://cdn.test/")
        if key not in self.objects:
            raise StorageError(f"No such object: {url}")
        del self.objects[key]
        self.deleted.append(url)

    def has(self, url: str) -> bool:
        return url.removeprefix("https://cdn.test/") in self.objects


async def fake_fetch(url: str) -> bytes:
    return f"bytes:{url}".encode()


def fake_inspect(data: bytes) -> ClipInfo:
    return ClipInfo(duration=CLIP_SECONDS, thumbnail=b"jpeg")


class FakeRenderer:
    def __init__(self):
        self.requests: list[RenderRequest] = []
        self.clip_contents: list[list[bytes]] = []
        self.block: Optional[threading.Event] = None
        self.started = threading.Event()
        self.error: Optional[Exception] = None

    def __call__(self, request: RenderRequest) -> float:
        self.requests.append(request)
        contents = []
        for path in request.clip_paths:
            with open(path, "rb") as f:
                contents.append(f.read())
        self.clip_contents.append(contents)
        self.started.set()
        if self.block is not None:
            self.block.wait(timeout=5)
        if self.error is not None:
            raise self.error
        with open(request.output_path, "wb") as f:
            f.write(b"final-video")
        with open(request.thumbnail_path, "wb") as f:
            f.write(b"final-thumb")
        return expected_duration([CLIP_SECONDS] * len(request.clip_paths), request.transitions)


class Harness:
    def __init__(self, store: Optional[InMemoryJobStore] = None):
        self.store = store or InMemoryJobStore()
        self.projects = InMemoryProjectDirectory({PROJECT: USER})
        self.provider = FakeProvider()
        self.storage = MemoryStorage()
        self.renderer = FakeRenderer()
        self.executor = RoomVideoExecutor(
            provider=self.provider,
            storage=self.storage,
            fetch=fake_fetch,
            inspect=fake_inspect,
            max_attempts=3,
            base_delay=0,
            max_delay=0,
            jitter=0,
        )
        self.compositor = CompositionStage(storage=self.storage, fetch=fake_fetch, render=self.renderer)
        self.dispatcher = LocalDispatcher()
        self.orchestrator = GenerationOrchestrator(
            store=self.store,
            projects=self.projects,
            executor=self.executor,
            compositor=self.compositor,
            dispatcher=self.dispatcher,
            storage=self.storage,
            concurrency=3,
        )

    async def start(self, plan: GenerationPlan, user_id: str = USER, project_id: str = PROJECT):
        return await self.orchestrator.start_generation(user_id, project_id, plan)

    async def run(self, plan: GenerationPlan):
        job = await self.start(plan)
        await self.dispatcher.drain()
        return await self.store.get_job(job.id)

    async def settle(self, job_id: str):
        await self.dispatcher.drain()
        return await self.store.get_job(job_id)


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def harness():
    return Harness()
