from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from .errors import (
    TAG_CREDENTIAL_INVALID,
    TAG_CREDENTIAL_MISSING,
    TAG_INVALID_REQUEST,
    TAG_NETWORK,
    TAG_QUOTA_EXCEEDED,
    PollError,
    SubmissionError,
    TrackerError,
)
from .models import VideoOperation

logger = structlog.get_logger(__name__)


class VideoFetchError(Exception):
    """A finished video could not be fetched from the generation service."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GeminiVideoClient:
    """Thin helper to submit and poll Veo long-running operations over REST."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        model: str = "veo-3.1-fast-generate-preview",
        resolution: str = "720p",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip('/')
        self.model = model
        self.resolution = resolution
        self._api_key = api_key or None
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=5.0),
            transport=transport,
        )

    @property
    def has_api_key(self) -> bool:
        return self._api_key is not None

    def set_api_key(self, api_key: str) -> None:
        self._api_key = api_key.strip() or None

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self, category: type[TrackerError]) -> dict[str, str]:
        if self._api_key is None:
            raise category("API_KEY environment variable not set.", tag=TAG_CREDENTIAL_MISSING)
        return {"x-goog-api-key": self._api_key}

    @staticmethod
    def _error_tag(status_code: int, status_text: str | None, message: str) -> str | None:
        if status_code in (401, 403) or status_text in ("UNAUTHENTICATED", "PERMISSION_DENIED"):
            return TAG_CREDENTIAL_INVALID
        if status_code == 429 or status_text == "RESOURCE_EXHAUSTED":
            return TAG_QUOTA_EXCEEDED
        if status_code == 400 or status_text == "INVALID_ARGUMENT":
            return TAG_INVALID_REQUEST
        # A 404 is left untagged; the tracker recognises the "entity not found" wording itself
        return None

    def _raise_for_status(self, resp: httpx.Response, category: type[TrackerError]) -> None:
        if resp.status_code < 400:
            return
        message = f"HTTP {resp.status_code}"
        status_text: str | None = None
        try:
            payload = resp.json()
        except ValueError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
            error = payload["error"]
            if isinstance(error.get("message"), str) and error["message"]:
                message = error["message"]
            if isinstance(error.get("status"), str):
                status_text = error["status"]
        elif resp.text:
            message = f"HTTP {resp.status_code}: {resp.text[:200]}"
        raise category(message, tag=self._error_tag(resp.status_code, status_text, message))

    @staticmethod
    def _extract_video_uri(payload: dict[str, Any]) -> str | None:
        response = payload.get("response")
        if not isinstance(response, dict):
            return None
        # REST shape first, then the SDK's camel-cased shape
        container = response.get("generateVideoResponse")
        samples = container.get("generatedSamples") if isinstance(container, dict) else None
        if not isinstance(samples, list):
            samples = response.get("generatedVideos")
        if not isinstance(samples, list) or not samples:
            return None
        first = samples[0]
        video = first.get("video") if isinstance(first, dict) else None
        uri = video.get("uri") if isinstance(video, dict) else None
        return uri if isinstance(uri, str) and uri else None

    def _parse_operation(self, resp: httpx.Response, category: type[TrackerError]) -> VideoOperation:
        try:
            payload = resp.json()
        except ValueError as exc:
            raise category(f"Unreadable operation payload: {exc}") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("name"), str):
            raise category(f"Unexpected operation payload: {type(payload).__name__}")
        if isinstance(payload.get("error"), dict):
            # A finished operation can carry its own failure instead of a response
            error = payload["error"]
            message = str(error.get("message") or "Video generation failed")
            raise category(message)
        return VideoOperation(
            name=payload["name"],
            done=bool(payload.get("done", False)),
            result_uri=self._extract_video_uri(payload),
            raw=payload,
        )

    async def submit(self, prompt_text: str, options: dict[str, Any]) -> VideoOperation:
        """Start a video generation operation."""
        headers = self._headers(SubmissionError)
        body = {
            "instances": [{"prompt": prompt_text}],
            "parameters": {
                "aspectRatio": options.get("aspect_ratio", "16:9"),
                "resolution": self.resolution,
                "numberOfVideos": 1,
            },
        }
        url = f"{self.base_url}/models/{self.model}:predictLongRunning"
        try:
            resp = await self._client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise SubmissionError(
                f"Could not reach generation service: {exc.__class__.__name__}", tag=TAG_NETWORK
            ) from exc
        self._raise_for_status(resp, SubmissionError)
        operation = self._parse_operation(resp, SubmissionError)
        logger.info("gemini.operation.submitted", operation=operation.name, model=self.model)
        return operation

    async def poll(self, operation: VideoOperation) -> VideoOperation:
        """Fetch the current state of a previously submitted operation."""
        headers = self._headers(PollError)
        url = f"{self.base_url}/{operation.name.lstrip('/')}"
        try:
            resp = await self._client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            raise PollError(
                f"Could not reach generation service: {exc.__class__.__name__}", tag=TAG_NETWORK
            ) from exc
        self._raise_for_status(resp, PollError)
        return self._parse_operation(resp, PollError)

    async def open_video(self, uri: str) -> httpx.Response:
        """Start streaming a finished video; the API key travels as a header.

        The caller owns the returned response and must ``aclose()`` it.
        """
        if self._api_key is None:
            raise VideoFetchError("API key not configured")
        request = self._client.build_request(
            "GET", uri, headers={"x-goog-api-key": self._api_key}, timeout=httpx.Timeout(60.0, connect=5.0)
        )
        try:
            resp = await self._client.send(request, stream=True, follow_redirects=True)
        except httpx.HTTPError as exc:
            raise VideoFetchError(f"Could not reach generation service: {exc.__class__.__name__}") from exc
        if resp.status_code >= 400:
            await resp.aclose()
            raise VideoFetchError(f"Video download failed (HTTP {resp.status_code})", status_code=resp.status_code)
        return resp

    async def ping(self) -> bool:
        try:
            resp = await self._client.get(f"{self.base_url}/models", params={"pageSize": 1})
            return resp.status_code < 500
        except Exception:
            return False
