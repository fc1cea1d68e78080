"""
Pydantic models and enums for walkthrough video generation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Statuses ─────────────────────────────────────────────────────────────────

class JobStatus(str, Enum):
    WAITING = "waiting"
    PROCESSING_ROOMS = "processing_rooms"
    COMPOSING_VIDEO = "composing_video"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETED, JobStatus.FAILED}


class UnitStatus(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_UNIT_STATUSES = {UnitStatus.COMPLETED, UnitStatus.FAILED}


# ── Plan ─────────────────────────────────────────────────────────────────────

class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    VERTICAL = "9:16"
    SQUARE = "1:1"


ORIENTATION_ASPECT_RATIOS = {
    "landscape": AspectRatio.LANDSCAPE,
    "vertical": AspectRatio.VERTICAL,
    "square": AspectRatio.SQUARE,
}

ALLOWED_DURATIONS = (5, 10)


class LogoPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"


class LogoOverlay(BaseModel):
    url: str
    position: LogoPosition = LogoPosition.BOTTOM_RIGHT


class SubtitleTrack(BaseModel):
    text: str
    font: Optional[str] = Field(None, description="Path to a .ttf/.otf font; Pillow default when unset")


class RoomPlan(BaseModel):
    room_id: str
    room_name: str
    room_type: Optional[str] = Field(None, description="Classifier category, e.g. 'kitchen'")
    images: list[str] = Field(default_factory=list)
    scene_descriptions: list[str] = Field(
        default_factory=list, description="What the photos show; replaces the generic layout instruction"
    )


class GenerationPlan(BaseModel):
    """The walkthrough the user confirmed: rooms in final video order plus settings."""
    rooms: list[RoomPlan] = Field(default_factory=list)
    duration: int = 5
    orientation: str = "landscape"
    directions: str = ""
    logo: Optional[LogoOverlay] = None
    subtitles: Optional[SubtitleTrack] = None
    transitions: bool = True


# ── Job state ────────────────────────────────────────────────────────────────

class UnitSettings(BaseModel):
    duration: int = 5
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    directions: str = ""
    scene_descriptions: list[str] = Field(default_factory=list)


class CompositionOptions(BaseModel):
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    transitions: bool = True
    logo: Optional[LogoOverlay] = None
    subtitles: Optional[SubtitleTrack] = None


class RoomVideoUnit(BaseModel):
    id: str
    room_id: str
    room_name: str
    room_type: str = "other"
    position: int = 0
    images: list[str] = Field(default_factory=list)
    settings: UnitSettings = Field(default_factory=UnitSettings)
    status: UnitStatus = UnitStatus.WAITING
    attempts: int = 0
    provider_request_id: Optional[str] = None
    progress: Optional[float] = None
    output_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_UNIT_STATUSES


class FinalVideo(BaseModel):
    video_url: str
    thumbnail_url: Optional[str] = None
    duration: float
    file_size: int
    unit_ids: list[str] = Field(default_factory=list)


class Job(BaseModel):
    id: str
    project_id: str
    user_id: str
    status: JobStatus = JobStatus.WAITING
    total_rooms: int = 0
    completed_rooms: int = 0
    failed_room_ids: list[str] = Field(default_factory=list)
    room_units: list[RoomVideoUnit] = Field(default_factory=list)
    composition: CompositionOptions = Field(default_factory=CompositionOptions)
    final_video: Optional[FinalVideo] = None
    error: Optional[str] = None
    cancelled: bool = False
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def unit(self, unit_id: str) -> Optional[RoomVideoUnit]:
        for unit in self.room_units:
            if unit.id == unit_id:
                return unit
        return None

    def all_units_terminal(self) -> bool:
        return all(u.is_terminal for u in self.room_units)

    def successful_units(self) -> list[RoomVideoUnit]:
        """Completed units in plan order."""
        ordered = sorted(self.room_units, key=lambda u: u.position)
        return [u for u in ordered if u.status == UnitStatus.COMPLETED]

    def recount(self) -> None:
        """Derive the job counters from unit state."""
        self.completed_rooms = sum(1 for u in self.room_units if u.status == UnitStatus.COMPLETED)
        self.failed_room_ids = [u.id for u in self.room_units if u.status == UnitStatus.FAILED]


# ── Progress ─────────────────────────────────────────────────────────────────

class ProgressStep(BaseModel):
    id: str
    label: str
    status: UnitStatus
    progress: Optional[float] = None
    duration: Optional[float] = None
    error: Optional[str] = None


class ProgressSnapshot(BaseModel):
    job_id: str
    status: JobStatus
    overall_progress: float = 0.0
    current_step: str = ""
    total_steps: int = 0
    completed_steps: int = 0
    estimated_time_remaining_seconds: int = 0
    steps: list[ProgressStep] = Field(default_factory=list)
    is_complete: bool = False
    has_failed: bool = False


# ── API Request / Response Models ────────────────────────────────────────────

class StartGenerationRequest(BaseModel):
    project_id: str
    plan: GenerationPlan


class StartGenerationResponse(BaseModel):
    job_id: str
    status: JobStatus
    estimated_completion_time_seconds: int


class JobStatusResponse(BaseModel):
    job: Job
    progress: ProgressSnapshot


class BatchProgressRequest(BaseModel):
    job_ids: list[str] = Field(..., description="Jobs to poll in one round trip")


class BatchProgressResponse(BaseModel):
    jobs: list[JobStatusResponse]


class RetryRequest(BaseModel):
    job_id: str
    unit_ids: list[str] = Field(default_factory=list)


class RetryResponse(BaseModel):
    job_id: str
    status: JobStatus
    retried_unit_ids: list[str] = Field(default_factory=list)


class CancelRequest(BaseModel):
    job_id: str


class CancelResponse(BaseModel):
    job_id: str
    status: JobStatus
    error: Optional[str] = None


class FinalVideoResponse(BaseModel):
    project_id: str
    job_id: str
    video_url: str
    thumbnail_url: Optional[str] = None
    duration: float
    file_size: int
    failed_room_ids: list[str] = Field(default_factory=list)


class DeleteProjectResponse(BaseModel):
    project_id: str
    deleted_jobs: int
