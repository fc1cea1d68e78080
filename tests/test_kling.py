import json

import httpx
import pytest

from tourworker.generation.errors import (
    ProviderRateLimited,
    ProviderRejectedError,
    ProviderTimeout,
    ProviderTransientError,
)
from tourworker.kling import KlingClient, _app_id, _progress_from_logs

ENDPOINT = "fal-ai/kling-video/v1.6/standard/elements"
STATUS_PATH = "/fal-ai/kling-video/requests/req-1/status"
RESULT_PATH = "/fal-ai/kling-video/requests/req-1"


class FalServer:
    """Scripted fal.ai queue: statuses are served in order, the last one repeats."""

    def __init__(self, statuses=None, submit=None, result=None):
        self.statuses = list(statuses or [{"status": "COMPLETED"}])
        self.submit = submit or httpx.Response(200, json={"request_id": "req-1"})
        self.result = result or httpx.Response(200, json={"video": {"url": "https://fal.media/out.mp4"}})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            return self.submit
        if request.url.path == STATUS_PATH:
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            if isinstance(status, httpx.Response):
                return status
            return httpx.Response(200, json=status)
        if request.url.path == RESULT_PATH:
            return self.result
        return httpx.Response(404)


def client_for(server: FalServer, **kwargs) -> KlingClient:
    options = dict(api_key="test-key", endpoint=ENDPOINT, poll_interval=0, max_poll_seconds=5)
    options.update(kwargs)
    return KlingClient(transport=httpx.MockTransport(server), **options)


async def test_submit_poll_and_fetch():
    server = FalServer(statuses=[{"status": "IN_QUEUE"}, {"status": "IN_PROGRESS"}, {"status": "COMPLETED"}])
    submitted = []

    async def on_submitted(request_id):
        submitted.append(request_id)

    url = await client_for(server).generate(
        "pan slowly", ["https://img.test/a.jpg"], duration=10, aspect_ratio="9:16", on_submitted=on_submitted
    )

    assert url == "https://fal.media/out.mp4"
    assert submitted == ["req-1"]
    submit = server.requests[0]
    assert submit.url.path == f"/{ENDPOINT}"
    assert submit.headers["Authorization"] == "Key test-key"
    body = json.loads(submit.content)
    assert body["duration"] == "10"
    assert body["aspect_ratio"] == "9:16"
    assert body["input_image_urls"] == ["https://img.test/a.jpg"]


async def test_resume_skips_submission():
    server = FalServer()
    url = await client_for(server).generate("p", ["https://img.test/a.jpg"], request_id="req-1")

    assert url == "https://fal.media/out.mp4"
    assert all(r.method == "GET" for r in server.requests)


async def test_progress_is_read_from_logs():
    server = FalServer(statuses=[
        {"status": "IN_PROGRESS", "logs": [{"message": "step 3/10"}, {"message": "Generating 42%"}]},
        {"status": "COMPLETED"},
    ])
    seen = []

    async def on_progress(pct):
        seen.append(pct)

    await client_for(server).generate("p", ["https://img.test/a.jpg"], on_progress=on_progress)
    assert seen == [42.0]


@pytest.mark.parametrize("response, error", [
    (httpx.Response(429, headers={"Retry-After": "7"}), ProviderRateLimited),
    (httpx.Response(503, text="overloaded"), ProviderTransientError),
    (httpx.Response(408), ProviderTimeout),
    (httpx.Response(422, text="bad image"), ProviderRejectedError),
])
async def test_submit_errors_are_classified(response, error):
    with pytest.raises(error) as exc_info:
        await client_for(FalServer(submit=response)).generate("p", ["https://img.test/a.jpg"])
    if error is ProviderRateLimited:
        assert exc_info.value.retry_after == 7.0


async def test_missing_video_is_a_rejection():
    server = FalServer(result=httpx.Response(200, json={"video": None}))
    with pytest.raises(ProviderRejectedError):
        await client_for(server).generate("p", ["https://img.test/a.jpg"])


async def test_failed_status_is_transient():
    server = FalServer(statuses=[{"status": "FAILED"}])
    with pytest.raises(ProviderTransientError):
        await client_for(server).generate("p", ["https://img.test/a.jpg"])


async def test_poll_deadline_raises_timeout():
    server = FalServer(statuses=[{"status": "IN_QUEUE"}])
    with pytest.raises(ProviderTimeout):
        await client_for(server, max_poll_seconds=0).generate("p", ["https://img.test/a.jpg"])


async def test_transient_poll_errors_are_tolerated():
    server = FalServer(statuses=[httpx.Response(502), httpx.Response(502), {"status": "COMPLETED"}])
    url = await client_for(server).generate("p", ["https://img.test/a.jpg"])
    assert url == "https://fal.media/out.mp4"


async def test_missing_key_is_rejected():
    with pytest.raises(ProviderRejectedError, match="FAL_KEY"):
        await client_for(FalServer(), api_key="").generate("p", ["https://img.test/a.jpg"])


def test_helpers():
    assert _app_id(ENDPOINT) == "fal-ai/kling-video"
    assert _progress_from_logs({"logs": [{"message": "100%"}, {"message": "no number"}]}) == 100.0
    assert _progress_from_logs({}) is None
