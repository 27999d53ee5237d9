from __future__ import annotations

import base64
import sys
from pathlib import Path
from typing import Iterable, List, Optional

import httpx
import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from jobs.errors import GenerationFailed, GenerationRejected, GenerationTimeout  # noqa: E402
from services.image_backend import (  # noqa: E402
    PROMPT_TEMPLATE,
    GeminiImageBackend,
    MockImageBackend,
    build_backend,
    parse_gemini_response,
    to_data_url,
)

ENDPOINT = "https://gemini.test/v1beta/models/test-model:generateContent"
PNG_B64 = base64.b64encode(b"\x89PNG fake").decode("ascii")


class DummyClient:
    def __init__(self, responses: Iterable[object]):
        self._responses = list(responses)
        self.requests: List[dict] = []

    def post(self, url, json=None, headers=None, params=None, **kwargs):
        self.requests.append({"url": url, "json": json, "headers": headers, "params": params})
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        return None


def _response(status_code: int, payload: Optional[object] = None, text: str = "") -> httpx.Response:
    request = httpx.Request("POST", ENDPOINT)
    if payload is not None:
        return httpx.Response(status_code, request=request, json=payload)
    return httpx.Response(status_code, request=request, text=text)


def _backend(*responses: object, api_key: str = "test-key") -> tuple[GeminiImageBackend, DummyClient]:
    client = DummyClient(responses)
    backend = GeminiImageBackend(
        api_key=api_key,
        model="test-model",
        api_base="https://gemini.test/v1beta/",
        timeout_s=30,
        http_client=client,  # type: ignore[arg-type]
    )
    return backend, client


def _image_payload(mime: str = "image/png") -> dict:
    return {
        "candidates": [
            {
                "content": {
                    "parts": [
                        {"text": "Here is your image"},
                        {"inlineData": {"mimeType": mime, "data": PNG_B64}},
                    ]
                },
                "finishReason": "STOP",
            }
        ]
    }


def test_generate_returns_data_url_from_inline_image():
    backend, client = _backend(_response(200, _image_payload("image/jpeg")))

    result = backend.generate("a red cube")

    assert result.image_url == f"data:image/jpeg;base64,{PNG_B64}"
    assert result.mime_type == "image/jpeg"
    assert len(client.requests) == 1
    sent = client.requests[0]
    assert sent["url"] == ENDPOINT
    assert sent["params"] == {"key": "test-key"}
    assert sent["json"]["contents"][0]["parts"][0]["text"] == PROMPT_TEMPLATE.format(prompt="a red cube")
    assert sent["json"]["generationConfig"]["responseModalities"] == ["TEXT", "IMAGE"]


def test_missing_api_key_fails_without_calling_backend():
    backend, client = _backend(api_key="")

    with pytest.raises(GenerationFailed) as excinfo:
        backend.generate("a red cube")

    assert "API key" in str(excinfo.value)
    assert excinfo.value.retryable is False
    assert client.requests == []


def test_timeout_maps_to_generation_timeout():
    backend, _ = _backend(httpx.ReadTimeout("timeout", request=httpx.Request("POST", ENDPOINT)))

    with pytest.raises(GenerationTimeout) as excinfo:
        backend.generate("a red cube")

    assert excinfo.value.retryable is True
    assert "timed out after 30s" in excinfo.value.message


def test_transport_error_is_retryable_failure():
    backend, _ = _backend(httpx.ConnectError("refused", request=httpx.Request("POST", ENDPOINT)))

    with pytest.raises(GenerationFailed) as excinfo:
        backend.generate("a red cube")

    assert not isinstance(excinfo.value, GenerationTimeout)
    assert excinfo.value.retryable is True


def test_server_error_is_retryable():
    backend, _ = _backend(_response(503, {"error": {"message": "overloaded"}}))

    with pytest.raises(GenerationFailed) as excinfo:
        backend.generate("a red cube")

    assert excinfo.value.retryable is True
    assert excinfo.value.message == "Image backend error (HTTP 503): overloaded"


def test_client_error_is_not_retryable():
    backend, _ = _backend(_response(400, text="bad request body"))

    with pytest.raises(GenerationFailed) as excinfo:
        backend.generate("a red cube")

    assert excinfo.value.retryable is False
    assert "HTTP 400" in excinfo.value.message
    assert "bad request body" in excinfo.value.message


def test_unparseable_body_fails():
    backend, _ = _backend(_response(200, text="<html>not json</html>"))

    with pytest.raises(GenerationFailed) as excinfo:
        backend.generate("a red cube")

    assert excinfo.value.message == "Failed to parse image backend response"


def test_blocked_prompt_is_rejected():
    payload = {"promptFeedback": {"blockReason": "SAFETY"}}

    with pytest.raises(GenerationRejected) as excinfo:
        parse_gemini_response(payload)

    assert excinfo.value.retryable is False
    assert "SAFETY" in excinfo.value.message


def test_safety_finish_without_image_is_rejected():
    payload = {"candidates": [{"content": {"parts": []}, "finishReason": "IMAGE_SAFETY"}]}

    with pytest.raises(GenerationRejected):
        parse_gemini_response(payload)


def test_text_only_response_fails():
    payload = {"candidates": [{"content": {"parts": [{"text": "I cannot draw"}]}, "finishReason": "STOP"}]}

    with pytest.raises(GenerationFailed) as excinfo:
        parse_gemini_response(payload)

    assert excinfo.value.message == "No image generated in response"


@pytest.mark.parametrize(
    "payload",
    [
        ["not", "an", "object"],
        {"candidates": "nope"},
        {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png"}}]}}]},
    ],
)
def test_malformed_payload_fails_schema_validation(payload):
    with pytest.raises(GenerationFailed) as excinfo:
        parse_gemini_response(payload)

    assert excinfo.value.message.startswith("Malformed image backend response")


def test_to_data_url_accepts_bytes_and_base64_text():
    assert to_data_url(b"abc", "image/gif") == "data:image/gif;base64,YWJj"
    assert to_data_url(" YWJj \n") == "data:image/png;base64,YWJj"


def test_mock_backend_is_deterministic():
    backend = MockImageBackend()

    first = backend.generate("a red cube")
    second = backend.generate("a red cube")

    assert first == second
    assert first.image_url.startswith("https://placehold.co/")
    assert "a%20red%20cube" in first.image_url


def test_build_backend_selects_mock():
    assert isinstance(build_backend(use_mock=True), MockImageBackend)
    assert isinstance(build_backend(use_mock=False), GeminiImageBackend)
