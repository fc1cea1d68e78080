"""
moviepy rendering for walkthrough videos.

Everything here is synchronous and CPU/ffmpeg bound; callers run it in a
worker thread. moviepy is imported lazily so the API process starts even
where ffmpeg is missing.
"""

import os
import logging
import tempfile
from io import BytesIO
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

OUTPUT_SIZES = {
    "16:9": (1280, 720),
    "9:16": (720, 1280),
    "1:1": (720, 720),
}
FPS = 30
CROSSFADE_SECONDS = 0.5

LOGO_MAX_SIZE = 500             # px, longest side
LOGO_MAX_FRAME_FRACTION = 0.25  # of frame width
LOGO_MARGIN = 20                # px from the corner

SUBTITLE_MAX_CHARS = 40
SUBTITLE_FONT_SIZE = 42
SUBTITLE_BOTTOM_MARGIN = 60


@dataclass
class SubtitleCue:
    start: float
    end: float
    text: str


@dataclass
class ClipInfo:
    duration: float
    thumbnail: Optional[bytes] = None


@dataclass
class RenderRequest:
    clip_paths: list[str]
    output_path: str
    thumbnail_path: str
    aspect_ratio: str = "16:9"
    transitions: bool = True
    logo_path: Optional[str] = None
    logo_position: str = "bottom-right"
    subtitle_text: Optional[str] = None
    subtitle_font: Optional[str] = None


# ── Layout helpers ───────────────────────────────────────────────────────────

def expected_duration(durations: list[float], transitions: bool = True) -> float:
    """Length of the concatenated video; each crossfade overlaps two clips."""
    total = sum(durations)
    if transitions and len(durations) > 1:
        total -= (len(durations) - 1) * CROSSFADE_SECONDS
    return round(total, 3)


def prepare_logo(data: bytes) -> bytes:
    """Normalize an uploaded logo to an RGBA PNG no larger than LOGO_MAX_SIZE."""
    try:
        img = Image.open(BytesIO(data)).convert("RGBA")
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Logo is not a readable image: {e}") from e
    img.thumbnail((LOGO_MAX_SIZE, LOGO_MAX_SIZE))
    output = BytesIO()
    img.save(output, format="PNG")
    return output.getvalue()


def logo_scale(logo_size: tuple[int, int], frame_size: tuple[int, int]) -> float:
    logo_w, logo_h = logo_size
    frame_w, _ = frame_size
    return min(
        1.0,
        LOGO_MAX_SIZE / max(logo_w, logo_h, 1),
        (frame_w * LOGO_MAX_FRAME_FRACTION) / max(logo_w, 1),
    )


def logo_position(
    position: str,
    frame_size: tuple[int, int],
    logo_size: tuple[int, int],
    margin: int = LOGO_MARGIN,
) -> tuple[int, int]:
    frame_w, frame_h = frame_size
    logo_w, logo_h = logo_size
    left, top = margin, margin
    right = frame_w - logo_w - margin
    bottom = frame_h - logo_h - margin
    return {
        "top-left": (left, top),
        "top-right": (right, top),
        "bottom-left": (left, bottom),
        "bottom-right": (right, bottom),
    }.get(position, (right, bottom))


def chunk_subtitle_text(text: str, max_chars: int = SUBTITLE_MAX_CHARS) -> list[str]:
    """Split text into lines of at most `max_chars`, breaking on words."""
    chunks: list[str] = []
    current = ""
    for word in text.split():
        while len(word) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(word[:max_chars])
            word = word[max_chars:]
        if not word:
            continue
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= max_chars:
            current = candidate
        else:
            chunks.append(current)
            current = word
    if current:
        chunks.append(current)
    return chunks


def build_subtitle_cues(
    text: str,
    total_duration: float,
    max_chars: int = SUBTITLE_MAX_CHARS,
) -> list[SubtitleCue]:
    """Spread the script evenly over the video, in reading order."""
    chunks = chunk_subtitle_text(text, max_chars)
    if not chunks or total_duration <= 0:
        return []
    slot = total_duration / len(chunks)
    cues = [
        SubtitleCue(start=round(i * slot, 3), end=round((i + 1) * slot, 3), text=chunk)
        for i, chunk in enumerate(chunks)
    ]
    cues[-1].end = round(total_duration, 3)
    return cues


# ── Rendering ────────────────────────────────────────────────────────────────

def _fit_to_frame(clip, size: tuple[int, int]):
    from moviepy import CompositeVideoClip

    frame_w, frame_h = size
    clip_w, clip_h = clip.size
    scale = min(frame_w / clip_w, frame_h / clip_h)
    fitted = clip.resized(scale).with_position("center")
    return CompositeVideoClip([fitted], size=size, bg_color=(0, 0, 0))


def _logo_layer(path: str, position: str, size: tuple[int, int], duration: float):
    from moviepy import ImageClip

    logo = ImageClip(path)
    scale = logo_scale(logo.size, size)
    if scale < 1.0:
        logo = logo.resized(scale)
    x, y = logo_position(position, size, logo.size)
    return logo.with_duration(duration).with_position((x, y))


def _subtitle_layers(text: str, font: Optional[str], size: tuple[int, int], duration: float) -> list:
    from moviepy import TextClip

    if font and not os.path.isfile(font):
        logger.warning(f"Subtitle font {font!r} not found, using default font")
        font = None

    frame_w, frame_h = size
    layers = []
    for cue in build_subtitle_cues(text, duration):
        caption = TextClip(
            font=font,
            text=cue.text,
            font_size=SUBTITLE_FONT_SIZE,
            color="white",
            stroke_color="black",
            stroke_width=2,
            method="caption",
            size=(int(frame_w * 0.9), None),
            text_align="center",
        )
        layers.append(
            caption.with_start(cue.start)
            .with_duration(cue.end - cue.start)
            .with_position(("center", frame_h - caption.h - SUBTITLE_BOTTOM_MARGIN))
        )
    return layers


def render_walkthrough(request: RenderRequest) -> float:
    """
    Render the final video to `request.output_path` and its first frame to
    `request.thumbnail_path`. Returns the rendered duration in seconds.
    """
    from moviepy import CompositeVideoClip, concatenate_videoclips, vfx, VideoFileClip

    if not request.clip_paths:
        raise ValueError("render_walkthrough needs at least one clip")

    size = OUTPUT_SIZES.get(request.aspect_ratio, OUTPUT_SIZES["16:9"])
    sources = []
    try:
        fitted = []
        for path in request.clip_paths:
            source = VideoFileClip(path, audio=False)
            sources.append(source)
            fitted.append(_fit_to_frame(source, size))

        if request.transitions and len(fitted) > 1:
            faded = [fitted[0]] + [
                clip.with_effects([vfx.CrossFadeIn(CROSSFADE_SECONDS)]) for clip in fitted[1:]
            ]
            video = concatenate_videoclips(faded, method="compose", padding=-CROSSFADE_SECONDS)
        else:
            video = concatenate_videoclips(fitted, method="compose")

        layers = [video]
        if request.logo_path:
            layers.append(_logo_layer(request.logo_path, request.logo_position, size, video.duration))
        if request.subtitle_text:
            layers.extend(_subtitle_layers(request.subtitle_text, request.subtitle_font, size, video.duration))
        final = CompositeVideoClip(layers, size=size) if len(layers) > 1 else video

        logger.info(
            f"Rendering {len(sources)} clip(s) at {size[0]}x{size[1]} "
            f"({final.duration:.1f}s) → {request.output_path}"
        )
        final.write_videofile(
            request.output_path,
            fps=FPS,
            codec="libx264",
            audio=False,
            ffmpeg_params=["-pix_fmt", "yuv420p"],
            logger=None,
        )
        final.save_frame(request.thumbnail_path, t=0)
        return float(final.duration)
    finally:
        for source in sources:
            source.close()


def inspect_clip(data: bytes) -> ClipInfo:
    """Duration and a first-frame JPEG for a downloaded room clip."""
    from moviepy import VideoFileClip

    with tempfile.TemporaryDirectory(prefix="clip-") as tmp:
        clip_path = os.path.join(tmp, "clip.mp4")
        thumb_path = os.path.join(tmp, "thumb.jpg")
        with open(clip_path, "wb") as f:
            f.write(data)

        clip = VideoFileClip(clip_path, audio=False)
        try:
            duration = float(clip.duration)
            clip.save_frame(thumb_path, t=0)
        finally:
            clip.close()

        with open(thumb_path, "rb") as f:
            return ClipInfo(duration=duration, thumbnail=f.read())
