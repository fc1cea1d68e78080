"""
Walkthrough Generation

One Job per confirmed plan: every room becomes a RoomVideoUnit that is
generated independently (bounded concurrency, retries, partial success),
then the successful clips are composed into a single final video.
"""

from .models import Job, JobStatus, RoomVideoUnit, UnitStatus, GenerationPlan
from .orchestrator import GenerationOrchestrator
from .routes import generation_router

__all__ = [
    "GenerationOrchestrator",
    "generation_router",
    "GenerationPlan",
    "Job",
    "JobStatus",
    "RoomVideoUnit",
    "UnitStatus",
]
