"""Image generation backends: the boundary to the remote model."""
from __future__ import annotations

import base64
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Union
from urllib.parse import quote

import httpx
from jsonschema import Draft7Validator

from config import (
    GEMINI_API_BASE,
    GEMINI_API_KEY,
    GEMINI_MODEL,
    GENERATION_TIMEOUT_S,
    USE_MOCK_BACKEND,
)
from jobs.errors import GenerationFailed, GenerationRejected, GenerationTimeout
from observability.logger import get_logger

LOGGER = get_logger("imagejobs.services.image_backend")

PROMPT_TEMPLATE = "Generate an image: {prompt}"
RETRYABLE_STATUSES = frozenset({408, 409, 425, 429, 500, 502, 503, 504})
REJECTION_FINISH_REASONS = frozenset(
    {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "SPII", "IMAGE_SAFETY", "RECITATION"}
)

GEMINI_RESPONSE_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "candidates": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "content": {
                        "type": "object",
                        "properties": {
                            "parts": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "properties": {
                                        "text": {"type": "string"},
                                        "inlineData": {
                                            "type": "object",
                                            "properties": {
                                                "mimeType": {"type": "string"},
                                                "data": {"type": "string"},
                                            },
                                            "required": ["data"],
                                        },
                                    },
                                },
                            }
                        },
                    },
                    "finishReason": {"type": "string"},
                },
            },
        },
        "promptFeedback": {
            "type": "object",
            "properties": {"blockReason": {"type": "string"}},
        },
    },
}
_RESPONSE_VALIDATOR = Draft7Validator(GEMINI_RESPONSE_SCHEMA)


@dataclass(frozen=True)
class GenerationResult:
    image_url: str
    mime_type: Optional[str] = None


def to_data_url(data: Union[bytes, str], mime_type: str = "image/png") -> str:
    """Build a ``data:`` URL from raw bytes or an already base64-encoded string."""

    if isinstance(data, bytes):
        encoded = base64.b64encode(data).decode("ascii")
    else:
        encoded = data.strip()
    return f"data:{mime_type or 'image/png'};base64,{encoded}"


class ImageBackend(ABC):
    """Prompt in, image URL out. Implementations must be safe to call concurrently.

    Failures are raised as ``GenerationFailed`` (or a subclass); any other
    exception escaping ``generate`` is treated by the caller as a failure too.
    """

    name = "abstract"

    @abstractmethod
    def generate(self, prompt: str) -> GenerationResult:
        ...

    def close(self) -> None:
        return None


class GeminiImageBackend(ImageBackend):
    """Calls the Gemini ``generateContent`` endpoint and returns inline image data."""

    name = "gemini"

    def __init__(
        self,
        *,
        api_key: str = GEMINI_API_KEY,
        model: str = GEMINI_MODEL,
        api_base: str = GEMINI_API_BASE,
        timeout_s: float = GENERATION_TIMEOUT_S,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        self._api_base = api_base.rstrip("/")
        self._timeout_s = float(timeout_s)
        self._client = http_client
        self._owns_client = http_client is None
        self._client_lock = threading.Lock()

    @property
    def endpoint(self) -> str:
        return f"{self._api_base}/models/{self._model}:generateContent"

    def _acquire_client(self) -> httpx.Client:
        with self._client_lock:
            if self._client is None:
                timeout = httpx.Timeout(
                    timeout=self._timeout_s,
                    connect=min(10.0, self._timeout_s),
                )
                self._client = httpx.Client(
                    timeout=timeout,
                    limits=httpx.Limits(max_connections=16, max_keepalive_connections=8),
                )
            return self._client

    def close(self) -> None:
        with self._client_lock:
            if self._client is not None and self._owns_client:
                self._client.close()
            self._client = None

    def build_payload(self, prompt: str) -> Dict[str, Any]:
        return {
            "contents": [{"parts": [{"text": PROMPT_TEMPLATE.format(prompt=prompt)}]}],
            "generationConfig": {
                "temperature": 1,
                "topK": 40,
                "topP": 0.95,
                "responseModalities": ["TEXT", "IMAGE"],
            },
        }

    def generate(self, prompt: str) -> GenerationResult:
        if not self._api_key:
            raise GenerationFailed("Gemini API key not configured", retryable=False)

        client = self._acquire_client()
        started_at = time.perf_counter()
        try:
            response = client.post(
                self.endpoint,
                json=self.build_payload(prompt),
                headers={"Content-Type": "application/json"},
                params={"key": self._api_key},
            )
        except httpx.TimeoutException as exc:
            raise GenerationTimeout(
                f"Image generation timed out after {self._timeout_s:g}s"
            ) from exc
        except httpx.TransportError as exc:
            raise GenerationFailed(
                f"Failed to call image backend: {exc.__class__.__name__}", retryable=True
            ) from exc

        duration_ms = int((time.perf_counter() - started_at) * 1000)
        LOGGER.info(
            "image_backend_response",
            extra={"model": self._model, "http_status": response.status_code, "duration_ms": duration_ms},
        )

        if response.status_code != 200:
            detail = _extract_error_message(response)
            message = f"Image backend error (HTTP {response.status_code})"
            if detail:
                message = f"{message}: {detail}"
            raise GenerationFailed(message, retryable=response.status_code in RETRYABLE_STATUSES)

        try:
            payload = response.json()
        except ValueError as exc:
            raise GenerationFailed("Failed to parse image backend response") from exc
        return parse_gemini_response(payload)


def parse_gemini_response(payload: Any) -> GenerationResult:
    """Extract the first inline image from a ``generateContent`` response."""

    errors = sorted(_RESPONSE_VALIDATOR.iter_errors(payload), key=lambda error: list(error.path))
    if errors:
        raise GenerationFailed(f"Malformed image backend response: {errors[0].message}")

    feedback = payload.get("promptFeedback") or {}
    block_reason = feedback.get("blockReason")
    if block_reason:
        raise GenerationRejected(f"Prompt rejected by content policy: {block_reason}")

    candidates = payload.get("candidates") or []
    for part in _iter_parts(candidates):
        inline = part.get("inlineData")
        if isinstance(inline, dict) and str(inline.get("data") or "").strip():
            mime_type = str(inline.get("mimeType") or "image/png")
            return GenerationResult(image_url=to_data_url(inline["data"], mime_type), mime_type=mime_type)

    for candidate in candidates:
        reason = str(candidate.get("finishReason") or "").upper()
        if reason in REJECTION_FINISH_REASONS:
            raise GenerationRejected(f"Prompt rejected by content policy: {reason}")

    raise GenerationFailed("No image generated in response")


def _iter_parts(candidates: Iterable[Dict[str, Any]]) -> Iterable[Dict[str, Any]]:
    for candidate in candidates:
        content = candidate.get("content") or {}
        for part in content.get("parts") or []:
            yield part


def _extract_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return (response.text or "").strip()[:300]
    if isinstance(payload, dict):
        error_block = payload.get("error")
        if isinstance(error_block, dict):
            return str(error_block.get("message") or "").strip()
        if isinstance(error_block, str):
            return error_block.strip()
    return ""


class MockImageBackend(ImageBackend):
    """Offline backend returning a deterministic placeholder image URL."""

    name = "mock"

    def __init__(self, *, latency_s: float = 0.0, base_url: str = "https://placehold.co/512x512") -> None:
        self._latency_s = max(0.0, float(latency_s))
        self._base_url = base_url.rstrip("/")

    def generate(self, prompt: str) -> GenerationResult:
        if self._latency_s:
            time.sleep(self._latency_s)
        return GenerationResult(image_url=f"{self._base_url}?text={quote(prompt[:80])}", mime_type="image/png")


def build_backend(*, use_mock: bool = USE_MOCK_BACKEND) -> ImageBackend:
    if use_mock:
        LOGGER.info("image_backend_selected", extra={"backend": MockImageBackend.name})
        return MockImageBackend()
    LOGGER.info("image_backend_selected", extra={"backend": GeminiImageBackend.name, "model": GEMINI_MODEL})
    return GeminiImageBackend()


__all__ = [
    "GeminiImageBackend",
    "GenerationResult",
    "ImageBackend",
    "MockImageBackend",
    "build_backend",
    "parse_gemini_response",
    "to_data_url",
]
