"""
Composition stage: successful room clips (in plan order) → one final video.

Downloads the clips and optional logo into a scratch directory, renders
with moviepy in a worker thread, then uploads the video and thumbnail.
Failures here are surfaced as CompositionError and never retried
automatically.
"""

import os
import time
import asyncio
import logging
import tempfile
from typing import Awaitable, Callable

from .. import metrics
from .errors import CompositionError
from .media import RenderRequest, prepare_logo, render_walkthrough
from .models import FinalVideo, Job, RoomVideoUnit
from .storage import download_bytes, final_thumbnail_key, final_video_key

logger = logging.getLogger(__name__)


class CompositionStage:
    def __init__(
        self,
        storage,
        fetch: Callable[[str], Awaitable[bytes]] = download_bytes,
        render: Callable[[RenderRequest], float] = render_walkthrough,
    ):
        self.storage = storage
        self.fetch = fetch
        self.render = render

    async def compose(self, job: Job, units: list[RoomVideoUnit]) -> FinalVideo:
        if not units:
            raise ValueError("compose() called with no successful rooms")

        started = time.monotonic()
        labels = ", ".join(u.room_name for u in units)
        logger.info(f"Composing job {job.id} from {len(units)} room(s): {labels}")

        try:
            with tempfile.TemporaryDirectory(prefix=f"compose-{job.id}-") as tmp:
                request = await self._prepare(job, units, tmp)
                duration = await asyncio.to_thread(self.render, request)

                with open(request.output_path, "rb") as f:
                    video_bytes = f.read()
                thumbnail_bytes = None
                if os.path.exists(request.thumbnail_path):
                    with open(request.thumbnail_path, "rb") as f:
                        thumbnail_bytes = f.read()

            video_url = await self.storage.put(
                final_video_key(job.user_id, job.project_id, job.id), video_bytes, "video/mp4"
            )
            thumbnail_url = None
            if thumbnail_bytes:
                thumbnail_url = await self.storage.put(
                    final_thumbnail_key(job.user_id, job.project_id, job.id), thumbnail_bytes, "image/jpeg"
                )
        except CompositionError:
            raise
        except Exception as e:
            metrics.inc_counter("errors.composition")
            raise CompositionError(str(e) or e.__class__.__name__) from e

        metrics.record_latency("composition", (time.monotonic() - started) * 1000)
        logger.info(f"Composed job {job.id}: {video_url} ({duration:.1f}s, {len(video_bytes)} bytes)")
        return FinalVideo(
            video_url=video_url,
            thumbnail_url=thumbnail_url,
            duration=round(duration, 3),
            file_size=len(video_bytes),
            unit_ids=[u.id for u in units],
        )

    async def _prepare(self, job: Job, units: list[RoomVideoUnit], tmp: str) -> RenderRequest:
        options = job.composition
        missing = [u.room_name for u in units if not u.output_url]
        if missing:
            raise CompositionError(f"Rooms without a stored clip: {', '.join(missing)}")

        clips = await asyncio.gather(*(self.fetch(u.output_url) for u in units))
        clip_paths = []
        for index, data in enumerate(clips):
            path = os.path.join(tmp, f"room_{index:02d}.mp4")
            with open(path, "wb") as f:
                f.write(data)
            clip_paths.append(path)

        logo_path = None
        if options.logo:
            logo_bytes = await asyncio.to_thread(prepare_logo, await self.fetch(options.logo.url))
            logo_path = os.path.join(tmp, "logo.png")
            with open(logo_path, "wb") as f:
                f.write(logo_bytes)

        return RenderRequest(
            clip_paths=clip_paths,
            output_path=os.path.join(tmp, "final.mp4"),
            thumbnail_path=os.path.join(tmp, "final.jpg"),
            aspect_ratio=options.aspect_ratio.value,
            transitions=options.transitions,
            logo_path=logo_path,
            logo_position=options.logo.position.value if options.logo else "bottom-right",
            subtitle_text=options.subtitles.text if options.subtitles else None,
            subtitle_font=options.subtitles.font if options.subtitles else None,
        )
