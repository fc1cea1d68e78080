"""
Room classification via Google Gemini 2.0 Flash (vision) REST.

- classify_room: one image → { category, confidence, reasoning, features }
- classify_batch: many images with bounded concurrency; per-image failures
  are reported in the result list instead of failing the batch.
"""

import os
import json
import time
import base64
import asyncio
import logging
from collections import defaultdict
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from .backoff import backoff_delay, parse_retry_after
from .prompts import ROOM_TYPES
from .generation.errors import (
    ProviderRateLimited,
    ProviderRejectedError,
    ProviderTimeout,
    ProviderTransientError,
    describe_error,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"
VISION_MODEL = os.getenv("VISION_MODEL", "gemini-2.0-flash")

DEFAULT_TIMEOUT = 30        # seconds per image, including retries' individual calls
DEFAULT_MAX_RETRIES = 2
DEFAULT_CONCURRENCY = 10
MAX_CONCURRENCY = 25


CLASSIFICATION_PROMPT = """You are an expert real estate image classifier. Analyze this property image and classify the room type.

IMPORTANT CLASSIFICATION RULES:
1. Choose the MOST SPECIFIC category that fits the image
2. Only use "other" if the image truly doesn't fit any category
3. Consider the primary purpose of the space shown
4. Look for distinctive features (appliances, furniture, fixtures)

AVAILABLE CATEGORIES:
- exterior-front: Front view of house/building exterior, curb appeal shots
- exterior-backyard: Backyard, patio, deck, pool, or rear exterior views
- living-room: Living room, family room, den, or great room
- kitchen: Kitchen or kitchenette with cooking appliances
- dining-room: Formal or casual dining room, breakfast nook
- bedroom: Any bedroom (master, guest, children's room)
- bathroom: Bathroom, powder room, or ensuite
- garage: Garage, carport, or parking area
- office: Home office, study, library, or workspace
- laundry-room: Laundry room, utility room, or mudroom
- basement: Basement, cellar, or below-grade space
- other: Hallways, closets, storage, or unclear spaces

Return ONLY this JSON (no markdown):
{
  "category": "<one of the categories above>",
  "confidence": <number between 0 and 1>,
  "reasoning": "<brief 1-2 sentence explanation>",
  "features": ["<feature1>", "<feature2>", "<feature3>"]
}"""


# ── Models ───────────────────────────────────────────────────────────────────

class RoomClassification(BaseModel):
    category: str
    confidence: float
    reasoning: str = ""
    features: list[str] = Field(default_factory=list)


class BatchClassificationResult(BaseModel):
    image_url: str
    success: bool
    classification: Optional[RoomClassification] = None
    error: Optional[str] = None
    duration_ms: float = 0.0


class BatchStatistics(BaseModel):
    total: int
    successful: int
    failed: int
    category_count: dict[str, int] = Field(default_factory=dict)
    average_confidence: float = 0.0


# ── Helpers ──────────────────────────────────────────────────────────────────

def _guess_mime(url: str) -> str:
    lower = url.lower()
    if ".png" in lower:
        return "image/png"
    if ".webp" in lower:
        return "image/webp"
    return "image/jpeg"


def _parse_json_response(text: str) -> dict:
    """Parse JSON from Gemini response, handling markdown code blocks."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        if "```" in text:
            json_block = text.split("```")[1]
            if json_block.startswith("json"):
                json_block = json_block[4:]
            try:
                return json.loads(json_block.strip())
            except json.JSONDecodeError:
                pass
        raise ProviderRejectedError(f"Gemini returned invalid JSON: {text[:200]}")


def normalize_classification(parsed: dict) -> RoomClassification:
    category = str(parsed.get("category", "other")).strip().lower()
    if category not in ROOM_TYPES:
        logger.warning(f"Unknown room category {category!r}, using 'other'")
        category = "other"
    try:
        confidence = float(parsed.get("confidence", 0))
    except (TypeError, ValueError):
        confidence = 0.0
    features = parsed.get("features") or []
    return RoomClassification(
        category=category,
        confidence=min(max(confidence, 0.0), 1.0),
        reasoning=str(parsed.get("reasoning", "")),
        features=[str(f) for f in features if f],
    )


def batch_statistics(results: list[BatchClassificationResult]) -> BatchStatistics:
    successful = [r for r in results if r.success and r.classification]
    category_count: dict[str, int] = defaultdict(int)
    for r in successful:
        category_count[r.classification.category] += 1
    confidences = [r.classification.confidence for r in successful]
    return BatchStatistics(
        total=len(results),
        successful=len(successful),
        failed=len(results) - len(successful),
        category_count=dict(category_count),
        average_confidence=round(sum(confidences) / len(confidences), 3) if confidences else 0.0,
    )


# ── Classifier ───────────────────────────────────────────────────────────────

class VisionClassifier:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = VISION_MODEL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_base_delay: float = 1.0,
    ):
        self.api_key = api_key if api_key is not None else GEMINI_API_KEY
        self.model = model
        self.retry_base_delay = retry_base_delay
        self._transport = transport

    def _api_url(self) -> str:
        return f"{API_BASE}/models/{self.model}:generateContent?key={self.api_key}"

    async def _classify_once(self, client: httpx.AsyncClient, image_url: str) -> RoomClassification:
        try:
            image_resp = await client.get(image_url, follow_redirects=True)
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Image download failed: {e}") from e
        if image_resp.status_code >= 400:
            raise ProviderRejectedError(f"Image download failed with {image_resp.status_code}: {image_url}")

        body = {
            "contents": [{
                "parts": [
                    {"inlineData": {
                        "mimeType": _guess_mime(image_url),
                        "data": base64.b64encode(image_resp.content).decode(),
                    }},
                    {"text": CLASSIFICATION_PROMPT},
                ],
            }],
            "generationConfig": {"temperature": 0.1, "responseMimeType": "application/json"},
        }
        try:
            resp = await client.post(self._api_url(), json=body)
        except httpx.TimeoutException as e:
            raise ProviderTimeout(f"Gemini request timed out: {e}") from e
        except httpx.TransportError as e:
            raise ProviderTransientError(f"Gemini network error: {e}") from e

        if resp.status_code == 429:
            raise ProviderRateLimited(
                "Gemini rate limited",
                retry_after=parse_retry_after(resp.headers.get("Retry-After")),
            )
        if resp.status_code >= 500:
            raise ProviderTransientError(f"Gemini API error {resp.status_code}: {resp.text[:300]}")
        if resp.status_code != 200:
            raise ProviderRejectedError(f"Gemini API error {resp.status_code}: {resp.text[:300]}")

        try:
            text = resp.json()["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderRejectedError(f"Unexpected Gemini response shape: {resp.text[:200]}") from e
        return normalize_classification(_parse_json_response(text))

    async def classify_room(
        self,
        image_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> RoomClassification:
        """Classify one image, retrying transient failures."""
        if not self.api_key:
            raise ProviderRejectedError("GEMINI_API_KEY not set")

        async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
            for attempt in range(max_retries + 1):
                try:
                    return await asyncio.wait_for(self._classify_once(client, image_url), timeout)
                except asyncio.TimeoutError:
                    error = ProviderTimeout(f"Classification timed out after {timeout}s")
                except ProviderTransientError as e:
                    error = e

                if attempt == max_retries:
                    raise error
                delay = backoff_delay(
                    attempt + 1,
                    base=self.retry_base_delay,
                    jitter=0.0,
                    retry_after=getattr(error, "retry_after", None),
                )
                logger.warning(
                    f"Classification attempt {attempt + 1}/{max_retries + 1} failed for {image_url}: "
                    f"{error} — retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

    async def classify_batch(
        self,
        image_urls: list[str],
        concurrency: int = DEFAULT_CONCURRENCY,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> list[BatchClassificationResult]:
        """Classify many images; results come back in input order."""
        semaphore = asyncio.Semaphore(max(1, min(concurrency, MAX_CONCURRENCY)))

        async def _one(url: str) -> BatchClassificationResult:
            async with semaphore:
                started = time.monotonic()
                try:
                    classification = await self.classify_room(url, timeout=timeout, max_retries=max_retries)
                    return BatchClassificationResult(
                        image_url=url,
                        success=True,
                        classification=classification,
                        duration_ms=(time.monotonic() - started) * 1000,
                    )
                except Exception as e:
                    logger.error(f"Classification failed for {url}: {e}")
                    return BatchClassificationResult(
                        image_url=url,
                        success=False,
                        error=describe_error(e),
                        duration_ms=(time.monotonic() - started) * 1000,
                    )

        results = await asyncio.gather(*(_one(url) for url in image_urls))
        stats = batch_statistics(results)
        logger.info(f"Classified {stats.successful}/{stats.total} image(s) ({stats.failed} failed)")
        return list(results)
