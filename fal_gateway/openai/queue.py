"""Client for the fal.ai queue API (submit -> poll status -> fetch result).

Every job is driven by exactly one ``FalQueueClient.run`` call: the handle it
creates never leaves that call and is not polled again once a terminal status
has been seen. Nothing is shared between concurrent runs except the pooled
``httpx.AsyncClient``.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass
from typing import Any, Optional, Union

import httpx
import orjson
from loguru import logger

from .gateway import ModelBinding, ProviderError
from .sizing import ASPECT_RATIOS, normalize_aspect_ratio

MIN_IMAGES = 1
MAX_IMAGES = 4
TERMINAL_FAILURE_STATUSES = ("FAILED", "CANCELLED")


@dataclass(frozen=True)
class QueueSettings:
    max_attempts: int = 45
    poll_interval_seconds: float = 2.0
    # A >=500 status check inside the last N attempts fails the job.
    escalation_window: int = 4

    def in_escalation_window(self, attempt: int) -> bool:
        return attempt > self.max_attempts - self.escalation_window


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    image_count: int = 1
    aspect_ratio: str = "1:1"

    def __post_init__(self) -> None:
        if not self.prompt:
            raise ValueError("prompt must not be empty")
        if not MIN_IMAGES <= self.image_count <= MAX_IMAGES:
            raise ValueError(f"image_count must be between {MIN_IMAGES} and {MAX_IMAGES}")
        if self.aspect_ratio not in ASPECT_RATIOS:
            raise ValueError(f"unsupported aspect ratio {self.aspect_ratio!r}")

    @classmethod
    def build(cls, prompt: str, n: Any = 1, size: Any = None) -> "GenerationRequest":
        """Clamp ``n`` into range and normalize ``size`` the way the OpenAI endpoints expect."""
        try:
            count = int(n)
        except (TypeError, ValueError):
            count = MIN_IMAGES
        count = max(MIN_IMAGES, min(MAX_IMAGES, count))
        return cls(prompt=prompt, image_count=count, aspect_ratio=normalize_aspect_ratio(size))

    def to_payload(self) -> dict[str, Any]:
        return {
            "prompt": self.prompt,
            "num_images": self.image_count,
            "aspect_ratio": self.aspect_ratio,
        }


@dataclass(frozen=True)
class JobHandle:
    request_id: str
    binding: ModelBinding

    @property
    def status_url(self) -> str:
        return self.binding.status_url(self.request_id)

    @property
    def result_url(self) -> str:
        return self.binding.result_url(self.request_id)

    def __str__(self) -> str:
        return f"{self.binding.display_name} ({self.request_id})"


@dataclass(frozen=True)
class JobCompleted:
    request_id: str
    images: tuple[dict[str, Any], ...]

    @property
    def urls(self) -> list[str]:
        return [image["url"] for image in self.images]


@dataclass(frozen=True)
class JobFailed:
    reason: str
    request_id: Optional[str] = None


@dataclass(frozen=True)
class JobTimedOut:
    request_id: str
    model: str
    attempts: int

    @property
    def reason(self) -> str:
        return f"Image generation timed out for {self.model} request {self.request_id}."


JobOutcome = Union[JobCompleted, JobFailed, JobTimedOut]


def _loads(response: httpx.Response) -> Any:
    try:
        return orjson.loads(response.content)
    except orjson.JSONDecodeError:
        return None


class FalQueueClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        settings: Optional[QueueSettings] = None,
    ):
        self.http = http
        self.api_key = api_key
        self.settings = settings or QueueSettings()

    def _headers(self, *, json_body: bool = False) -> dict[str, str]:
        headers = {"Authorization": f"Key {self.api_key}", "Accept": "application/json"}
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    async def run(self, request: GenerationRequest, binding: ModelBinding) -> JobOutcome:
        submitted = await self.submit(request, binding)
        if not isinstance(submitted, JobHandle):
            return submitted
        terminal = await self.wait(submitted)
        if terminal is not None:
            return terminal
        return await self.fetch_result(submitted)

    async def generate(self, request: GenerationRequest, binding: ModelBinding) -> JobCompleted:
        """Like ``run`` but raises ``ProviderError`` for anything except a completed job."""
        outcome = await self.run(request, binding)
        if isinstance(outcome, JobCompleted):
            return outcome
        raise ProviderError(outcome.reason, outcome)

    async def submit(self, request: GenerationRequest, binding: ModelBinding) -> Union[JobHandle, JobFailed]:
        name = binding.display_name
        try:
            response = await self.http.post(
                binding.submit_url,
                headers=self._headers(json_body=True),
                content=orjson.dumps(request.to_payload()),
            )
        except httpx.HTTPError as exc:
            logger.error("Fal.ai submission to {} failed: {}", name, exc)
            return JobFailed(f"Fal.ai API request to {name} failed: {exc}")

        if not response.is_success:
            return JobFailed(
                f"Fal.ai API request to {name} failed with status {response.status_code}: {response.text}"
            )

        body = _loads(response)
        request_id = body.get("request_id") if isinstance(body, dict) else None
        if not request_id:
            return JobFailed(f"Fal.ai submission to {name} did not yield a request_id.")

        handle = JobHandle(request_id=str(request_id), binding=binding)
        logger.info("Fal.ai job submitted for {}. Request ID: {}", name, handle.request_id)
        return handle

    async def wait(self, handle: JobHandle) -> Optional[JobOutcome]:
        """Poll until the job leaves the queue.

        Returns ``None`` once the job is ``COMPLETED`` (the result still has to be
        fetched), otherwise the terminal ``JobFailed`` / ``JobTimedOut``.
        """
        settings = self.settings
        for attempt in range(1, settings.max_attempts + 1):
            await asyncio.sleep(settings.poll_interval_seconds)
            try:
                response = await self.http.get(handle.status_url, headers=self._headers())
            except httpx.HTTPError as exc:
                logger.warning(
                    "Network error during Fal.ai status check for {} (attempt {}): {}. Retrying...",
                    handle,
                    attempt,
                    exc,
                )
                continue

            if not response.is_success:
                logger.warning(
                    "Fal.ai status check for {} failed (attempt {}): {} {}. Retrying...",
                    handle,
                    attempt,
                    response.status_code,
                    response.text,
                )
                if response.status_code >= 500 and settings.in_escalation_window(attempt):
                    logger.error("Giving up on {} after server error on attempt {}", handle, attempt)
                    return JobFailed(
                        f"Fal.ai status check for {handle} failed repeatedly. Last status: {response.status_code}",
                        handle.request_id,
                    )
                continue

            status_data = _loads(response)
            if not isinstance(status_data, dict):
                logger.warning("Unreadable Fal.ai status payload for {} (attempt {}). Retrying...", handle, attempt)
                continue

            status = status_data.get("status")
            logger.debug("Polling attempt {}/{} for {}. Status: {}", attempt, settings.max_attempts, handle, status)
            if status == "COMPLETED":
                return None
            if status in TERMINAL_FAILURE_STATUSES:
                logs = status_data.get("logs")
                detail = orjson.dumps(logs).decode("utf-8") if logs else "No logs."
                logger.error("Fal.ai request for {} ended with {}", handle, status)
                return JobFailed(f"Fal.ai request for {handle} {status}. Logs: {detail}", handle.request_id)

        logger.error("Fal.ai request for {} timed out after {} attempts", handle, settings.max_attempts)
        return JobTimedOut(handle.request_id, handle.binding.display_name, settings.max_attempts)

    async def fetch_result(self, handle: JobHandle) -> Union[JobCompleted, JobFailed]:
        try:
            response = await self.http.get(handle.result_url, headers=self._headers())
        except httpx.HTTPError as exc:
            return JobFailed(f"Failed to fetch result for completed Fal.ai job {handle}: {exc}", handle.request_id)

        if not response.is_success:
            return JobFailed(
                f"Failed to fetch result for completed Fal.ai job {handle} "
                f"(status {response.status_code}): {response.text}",
                handle.request_id,
            )

        data = _loads(response)
        raw_images = data.get("images") if isinstance(data, dict) else None
        images = tuple(
            image
            for image in (raw_images if isinstance(raw_images, list) else [])
            if isinstance(image, dict) and isinstance(image.get("url"), str)
        )
        if not images:
            return JobFailed(f"Fal.ai job {handle} completed but returned no images.", handle.request_id)
        return JobCompleted(handle.request_id, images)

    async def fetch_image_b64(self, url: str) -> str:
        try:
            response = await self.http.get(url)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Failed to download image from Fal.ai: {url} ({exc})") from exc
        if not response.is_success:
            raise ProviderError(f"Failed to download image from Fal.ai: {url}")
        return base64.b64encode(response.content).decode("ascii")
