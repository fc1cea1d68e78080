"""
Kling video generation via fal.ai REST queue API.

One room clip per request: up to 4 room photos as elements + a camera prompt.

fal.ai queue protocol:
  POST /{endpoint}                              → { request_id, status_url, response_url }
  GET  /{app}/requests/{request_id}/status      → { status: IN_QUEUE|IN_PROGRESS|COMPLETED }
  GET  /{app}/requests/{request_id}             → { video: { url, file_size } }

HTTP failures are classified for the executor's retry policy:
  429            → ProviderRateLimited (honours Retry-After)
  408 / timeouts → ProviderTimeout
  5xx / network  → ProviderTransientError
  other 4xx      → ProviderRejectedError
"""

import os
import re
import asyncio
import logging
from typing import Awaitable, Callable, Optional

import httpx

from .backoff import parse_retry_after
from .generation.errors import (
    ProviderRateLimited,
    ProviderRejectedError,
    ProviderTimeout,
    ProviderTransientError,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FAL_KEY = os.getenv("FAL_KEY") or os.getenv("FAL_API_KEY", "")
FAL_QUEUE_BASE = "https://queue.fal.run"
KLING_ENDPOINT = os.getenv("KLING_ENDPOINT", "fal-ai/kling-video/v1.6/standard/elements")

REQUEST_TIMEOUT = 60        # seconds per HTTP call
POLL_INTERVAL = 5           # seconds between status checks
MAX_POLL_SECONDS = 600      # 10 minutes per generation
MAX_POLL_ERRORS = 5         # consecutive transient poll failures tolerated

NEGATIVE_PROMPT = "blur, distort, low quality, warped walls, people, text overlay"

_PERCENT_RE = re.compile(r"(\d{1,3})(?:\.\d+)?\s*%")

SubmittedCallback = Callable[[str], Awaitable[None]]
ProgressCallback = Callable[[float], Awaitable[None]]


def _app_id(endpoint: str) -> str:
    """fal serves status/result under the app id (owner/app), not the full path."""
    return "/".join(endpoint.split("/")[:2])


def _raise_for_status(resp: httpx.Response, stage: str) -> None:
    code = resp.status_code
    if code < 400:
        return
    detail = resp.text[:300]
    if code == 429:
        raise ProviderRateLimited(
            f"Kling {stage} rate limited",
            retry_after=parse_retry_after(resp.headers.get("Retry-After")),
        )
    if code == 408:
        raise ProviderTimeout(f"Kling {stage} timed out upstream")
    if code >= 500:
        raise ProviderTransientError(f"Kling {stage} failed with {code}: {detail}")
    raise ProviderRejectedError(f"Kling {stage} rejected with {code}: {detail}")


def _progress_from_logs(status_data: dict) -> Optional[float]:
    """Best-effort percentage from the latest fal log line, if it reports one."""
    for entry in reversed(status_data.get("logs") or []):
        match = _PERCENT_RE.search(str(entry.get("message", "")))
        if match:
            return min(float(match.group(1)), 100.0)
    return None


class KlingClient:
    """Video provider used by the room executor."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: str = KLING_ENDPOINT,
        poll_interval: float = POLL_INTERVAL,
        max_poll_seconds: float = MAX_POLL_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else FAL_KEY
        self.endpoint = endpoint
        self.poll_interval = poll_interval
        self.max_poll_seconds = max_poll_seconds
        self._transport = transport

    def _headers(self) -> dict:
        if not self.api_key:
            raise ProviderRejectedError("FAL_KEY not set")
        return {
            "Authorization": f"Key {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=FAL_QUEUE_BASE,
            headers=self._headers(),
            timeout=REQUEST_TIMEOUT,
            transport=self._transport,
        )

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, stage: str, **kwargs) -> dict:
        try:
            resp = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Kling {stage} request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Kling {stage} network error: {e}") from e
        _raise_for_status(resp, stage)
        return resp.json()

    async def generate(
        self,
        prompt: str,
        image_urls: list[str],
        *,
        duration: int = 5,
        aspect_ratio: str = "16:9",
        request_id: Optional[str] = None,
        on_submitted: Optional[SubmittedCallback] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """
        Generate one clip and return the provider's video URL.

        Pass `request_id` to resume polling a request submitted earlier
        (e.g. before a worker restart) instead of submitting a new one.
        """
        async with self._client() as client:
            if request_id is None:
                request_id = await self._submit(client, prompt, image_urls, duration, aspect_ratio)
                if on_submitted:
                    await on_submitted(request_id)
            else:
                logger.info(f"[Kling] Resuming request_id={request_id}")

            await self._wait_for_completion(client, request_id, on_progress)
            return await self._fetch_result(client, request_id)

    async def _submit(self, client, prompt, image_urls, duration, aspect_ratio) -> str:
        if not image_urls:
            raise ProviderRejectedError("At least one input image is required")
        payload = {
            "prompt": prompt,
            "input_image_urls": image_urls,
            "duration": str(duration),
            "aspect_ratio": aspect_ratio,
            "negative_prompt": NEGATIVE_PROMPT,
        }
        logger.info(f"[Kling] Submitting {len(image_urls)} image(s) to {self.endpoint} ({duration}s, {aspect_ratio})")
        data = await self._request(client, "POST", f"/{self.endpoint}", "submit", json=payload)
        request_id = data.get("request_id")
        if not request_id:
            raise ProviderTransientError(f"No request_id in fal.ai response: {str(data)[:200]}")
        logger.info(f"[Kling] Queued: request_id={request_id}")
        return request_id

    async def _wait_for_completion(self, client, request_id: str, on_progress: Optional[ProgressCallback]) -> None:
        status_url = f"/{_app_id(self.endpoint)}/requests/{request_id}/status"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_poll_seconds
        poll_errors = 0

        while True:
            try:
                status_data = await self._request(client, "GET", status_url, "status", params={"logs": 1})
                poll_errors = 0
            except ProviderTransientError as e:
                poll_errors += 1
                if poll_errors > MAX_POLL_ERRORS:
                    raise
                logger.warning(f"[Kling] Status poll error ({poll_errors}/{MAX_POLL_ERRORS}): {e}")
                status_data = {}

            status = status_data.get("status", "")
            if status == "COMPLETED":
                return
            if status and status not in ("IN_QUEUE", "IN_PROGRESS"):
                raise ProviderTransientError(f"Unexpected Kling status {status!r} for {request_id}")

            if status == "IN_PROGRESS" and on_progress:
                pct = _progress_from_logs(status_data)
                if pct is not None:
                    await on_progress(pct)

            if loop.time() >= deadline:
                raise ProviderTimeout(
                    f"Kling request {request_id} not finished after {self.max_poll_seconds}s"
                )
            logger.debug(f"[Kling] {request_id}: {status or 'unknown'}")
            await asyncio.sleep(self.poll_interval)

    async def _fetch_result(self, client, request_id: str) -> str:
        result_url = f"/{_app_id(self.endpoint)}/requests/{request_id}"
        data = await self._request(client, "GET", result_url, "result")
        video_url = (data.get("video") or {}).get("url")
        if not video_url:
            raise ProviderRejectedError(f"Kling returned no video for {request_id}: {str(data)[:200]}")
        logger.info(f"[Kling] Completed: request_id={request_id}")
        return video_url
