import os
import time
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from supabase import Client, create_client

from . import metrics
from . import queue as job_queue
from .auth_middleware import WorkerAuthMiddleware
from .kling import KlingClient
from .vision import DEFAULT_CONCURRENCY, BatchClassificationResult, BatchStatistics, VisionClassifier, batch_statistics
from .generation.composition import CompositionStage
from .generation.dispatcher import JobDispatcher, LocalDispatcher, RedisDispatcher
from .generation.executor import RoomVideoExecutor
from .generation.job_store import InMemoryJobStore, SupabaseJobStore
from .generation.orchestrator import GenerationOrchestrator
from .generation.projects import InMemoryProjectDirectory, SupabaseProjectDirectory, parse_project_owners
from .generation.routes import generation_router, set_orchestrator
from .generation.storage import ObjectStorage

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ────────────────────────────────────────────────────────────────────
# 0 requeues every in-flight job id on startup (single consumer). With several
# workers on one queue, set it above the longest expected job run.
QUEUE_STARTUP_STALE_SECONDS = float(os.getenv("QUEUE_STARTUP_STALE_SECONDS", "0"))
# Without Supabase: "project:user,project:user" pairs for the in-memory directory
LOCAL_PROJECT_OWNERS = os.getenv("LOCAL_PROJECT_OWNERS", "")

# ── Lazy Supabase client ──────────────────────────────────────────────────────
_supabase_client: Optional[Client] = None


def get_supabase() -> Optional[Client]:
    """Get or create the Supabase client. Returns None if it is not configured."""
    global _supabase_client
    if _supabase_client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            return None
        _supabase_client = create_client(url, key)
    return _supabase_client


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            import redis
            client = redis.from_url(redis_url, decode_responses=False)
            try:
                client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
                _redis_client = client
            except redis.RedisError as e:
                logger.warning(f"Redis connection failed: {e}; running jobs in-process")
    return _redis_client


# ── Wiring ────────────────────────────────────────────────────────────────────

def build_orchestrator(dispatcher: JobDispatcher) -> GenerationOrchestrator:
    sb = get_supabase()
    if sb is not None:
        store = SupabaseJobStore(sb)
        projects = SupabaseProjectDirectory(sb)
    else:
        logger.warning("Supabase not configured; using the in-memory job store (state is lost on restart)")
        store = InMemoryJobStore()
        owners = parse_project_owners(LOCAL_PROJECT_OWNERS)
        if not owners:
            logger.warning("LOCAL_PROJECT_OWNERS is empty; every generation request will get 404")
        projects = InMemoryProjectDirectory(owners)

    storage = ObjectStorage()
    return GenerationOrchestrator(
        store=store,
        projects=projects,
        executor=RoomVideoExecutor(provider=KlingClient(), storage=storage),
        compositor=CompositionStage(storage=storage),
        dispatcher=dispatcher,
        storage=storage,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Worker starting up...")
    metrics.set_gauge("start_time", time.time())

    r = get_redis()
    dispatcher: JobDispatcher = RedisDispatcher(r) if r is not None else LocalDispatcher()
    orchestrator = build_orchestrator(dispatcher)
    set_orchestrator(orchestrator)

    if r is not None:
        # Job ids left in processing belong to a worker that died
        recovered = job_queue.recover_stale_jobs(r, stale_after=QUEUE_STARTUP_STALE_SECONDS)
        if recovered:
            logger.info(f"Recovered {recovered} stale job(s) from a previous session")
        dispatcher.start(asyncio.get_running_loop())
    else:
        logger.info("No Redis; jobs run as in-process tasks")
        resumed = await orchestrator.recover_active_jobs()
        if resumed:
            logger.info(f"Resumed {resumed} unfinished job(s)")

    yield

    logger.info("Worker shutting down...")
    dispatcher.stop()
    await dispatcher.drain(timeout=float(os.getenv("SHUTDOWN_GRACE_SECONDS", "30")))
    set_orchestrator(None)


app = FastAPI(lifespan=lifespan)
app.add_middleware(WorkerAuthMiddleware)
app.include_router(generation_router)


@app.get("/health")
def health_check():
    """Verify the worker is running and env vars are configured."""
    return {
        "status": "ok",
        "fal_key_set": bool(os.environ.get("FAL_KEY") or os.environ.get("FAL_API_KEY")),
        "gemini_api_key_set": bool(os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")),
        "supabase_url_set": bool(os.environ.get("SUPABASE_URL")),
        "redis_url_set": bool(os.environ.get("REDIS_URL")),
        "r2_configured": bool(os.environ.get("R2_ACCOUNT_ID") and os.environ.get("R2_PUBLIC_URL")),
    }


@app.get("/metrics")
def metrics_endpoint():
    """Return a snapshot of all worker metrics."""
    r = get_redis()
    if r is not None:
        try:
            metrics.set_gauge("queue_depth", job_queue.get_queue_length(r))
            metrics.set_gauge("processing_count", job_queue.get_processing_count(r))
            metrics.set_gauge("dead_letter_count", len(job_queue.get_dead_letter_jobs(r)))
        except Exception as e:
            logger.warning(f"Could not read queue gauges: {e}")
    return metrics.get_snapshot()


# ── Classification ────────────────────────────────────────────────────────────

class ClassifyImagesRequest(BaseModel):
    image_urls: list[str] = Field(..., min_length=1, max_length=200)
    concurrency: int = DEFAULT_CONCURRENCY


class ClassifyImagesResponse(BaseModel):
    results: list[BatchClassificationResult]
    statistics: BatchStatistics


_classifier: Optional[VisionClassifier] = None


def get_classifier() -> VisionClassifier:
    global _classifier
    if _classifier is None:
        _classifier = VisionClassifier()
    return _classifier


@app.post("/classify-images", response_model=ClassifyImagesResponse)
async def classify_images(request: ClassifyImagesRequest):
    """Suggest a room category for each uploaded photo."""
    metrics.inc_counter("requests.classify_images")
    try:
        results = await get_classifier().classify_batch(request.image_urls, concurrency=request.concurrency)
    except Exception as e:
        logger.error(f"Image classification failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return ClassifyImagesResponse(results=results, statistics=batch_statistics(results))


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8080))
    uvicorn.run("tourworker.main:app", host="0.0.0.0", port=port)
