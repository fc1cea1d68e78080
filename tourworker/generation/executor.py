"""
RoomVideoUnit executor: one room's photos in, one stored clip out.

  1. Pick up to 4 photos and build the camera prompt for the room
  2. Call the video provider under a hard wall-clock timeout
  3. Download the provider output, read duration + first frame
  4. Upload clip and thumbnail under deterministic keys

Transient failures (timeouts, rate limits, 5xx, storage) are retried with
capped exponential backoff. Rejected requests fail on the spot. If the
provider succeeded but storage failed, the retry re-uses the provider URL
instead of generating the clip again.
"""

import os
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from .. import metrics
from ..backoff import backoff_delay
from ..prompts import build_room_prompt, select_best_images
from .errors import (
    TRANSIENT_ERRORS,
    GenerationError,
    ProviderRateLimited,
    ProviderRejectedError,
    ProviderTimeout,
)
from .media import ClipInfo, inspect_clip
from .models import Job, RoomVideoUnit
from .storage import download_bytes, room_clip_key, room_thumbnail_key

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

MAX_ATTEMPTS = int(os.getenv("UNIT_MAX_ATTEMPTS", "3"))
CALL_TIMEOUT = float(os.getenv("UNIT_CALL_TIMEOUT", "900"))   # seconds per provider call
BASE_DELAY = 1.0
MAX_DELAY = 30.0
RATE_LIMIT_MIN_DELAY = 10.0


@dataclass
class UnitOutput:
    output_url: str
    thumbnail_url: Optional[str]
    duration: float
    attempts: int


class RoomVideoExecutor:
    def __init__(
        self,
        provider,
        storage,
        fetch: Callable[[str], Awaitable[bytes]] = download_bytes,
        inspect: Callable[[bytes], ClipInfo] = inspect_clip,
        max_attempts: int = MAX_ATTEMPTS,
        call_timeout: float = CALL_TIMEOUT,
        base_delay: float = BASE_DELAY,
        max_delay: float = MAX_DELAY,
        jitter: float = 1.0,
    ):
        self.provider = provider
        self.storage = storage
        self.fetch = fetch
        self.inspect = inspect
        self.max_attempts = max(1, max_attempts)
        self.call_timeout = call_timeout
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def _retry_delay(self, attempt: int, error: Exception) -> float:
        retry_after = getattr(error, "retry_after", None)
        if retry_after is None and isinstance(error, ProviderRateLimited):
            retry_after = min(RATE_LIMIT_MIN_DELAY, self.max_delay)
        return backoff_delay(
            attempt,
            base=self.base_delay,
            cap=self.max_delay,
            jitter=self.jitter,
            retry_after=retry_after,
        )

    async def execute(
        self,
        job: Job,
        unit: RoomVideoUnit,
        on_submitted: Optional[Callable[[str], Awaitable[None]]] = None,
        on_progress: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> UnitOutput:
        """
        Produce and store the clip for `unit`.

        Raises the last error once attempts are exhausted (or immediately for
        rejected requests); the error's `attempts` records how many were used.
        """
        images = select_best_images(unit.images)
        if not images:
            raise ProviderRejectedError(f"No images available for room {unit.room_name!r}")
        prompt = build_room_prompt(
            unit.room_name, unit.room_type, unit.settings.directions, unit.settings.scene_descriptions
        )

        # A request id recorded before a restart is resumed once; retries submit fresh
        resume_request_id = unit.provider_request_id
        provider_url: Optional[str] = None
        started = time.monotonic()

        for attempt in range(1, self.max_attempts + 1):
            try:
                if provider_url is None:
                    provider_url = await asyncio.wait_for(
                        self.provider.generate(
                            prompt,
                            images,
                            duration=unit.settings.duration,
                            aspect_ratio=unit.settings.aspect_ratio.value,
                            request_id=resume_request_id,
                            on_submitted=on_submitted,
                            on_progress=on_progress,
                        ),
                        timeout=self.call_timeout,
                    )
                output = await self._persist(job, unit, provider_url)
                output.attempts = attempt
                metrics.record_latency("unit_generation", (time.monotonic() - started) * 1000)
                logger.info(
                    f"Room {unit.room_name!r} ({unit.id}) done in {attempt} attempt(s): {output.output_url}"
                )
                return output
            except asyncio.TimeoutError:
                error: Exception = ProviderTimeout(
                    f"No result for room {unit.room_name!r} within {self.call_timeout:.0f}s"
                )
            except ProviderRejectedError as e:
                e.attempts = attempt
                logger.error(f"Room {unit.room_name!r} ({unit.id}) rejected: {e}")
                raise
            except TRANSIENT_ERRORS as e:
                error = e
            finally:
                resume_request_id = None

            metrics.inc_counter(f"errors.unit_{error.__class__.__name__}")
            if attempt == self.max_attempts:
                if isinstance(error, GenerationError):
                    error.attempts = attempt
                logger.error(
                    f"Room {unit.room_name!r} ({unit.id}) failed after {attempt} attempt(s): {error}"
                )
                raise error

            delay = self._retry_delay(attempt, error)
            metrics.inc_counter("units.retries")
            logger.warning(
                f"Room {unit.room_name!r} attempt {attempt}/{self.max_attempts} failed: {error} "
                f"— retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)

    async def _persist(self, job: Job, unit: RoomVideoUnit, provider_url: str) -> UnitOutput:
        """Copy the provider output into our bucket; same keys on every attempt."""
        data = await self.fetch(provider_url)

        try:
            info = await asyncio.to_thread(self.inspect, data)
        except Exception as e:
            logger.warning(f"Could not inspect clip for unit {unit.id}, using planned duration: {e}")
            info = ClipInfo(duration=float(unit.settings.duration), thumbnail=None)

        video_key = room_clip_key(job.user_id, job.project_id, job.id, unit.id)
        output_url = await self.storage.put(video_key, data, "video/mp4")

        thumbnail_url = None
        if info.thumbnail:
            thumb_key = room_thumbnail_key(job.user_id, job.project_id, job.id, unit.id)
            thumbnail_url = await self.storage.put(thumb_key, info.thumbnail, "image/jpeg")

        return UnitOutput(
            output_url=output_url,
            thumbnail_url=thumbnail_url,
            duration=info.duration,
            attempts=0,
        )
