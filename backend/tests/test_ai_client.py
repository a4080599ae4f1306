"""
Unit tests for the Gemini classification client.
HTTP calls are served by httpx.MockTransport.
"""
import pytest
import base64
import json
from pathlib import Path
import sys
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import httpx

from services.ai_client import GeminiClient, build_payload, extract_json_object
from services.errors import ErrorCode, HubError


def _gemini_answer(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def _client(handler):
    return GeminiClient(api_key="test-key", model="gemini-test", transport=httpx.MockTransport(handler))


class TestExtractJsonObject:

    def test_json_inside_prose(self):
        text = 'Here you go:\n```json\n{"vendorName": "Acme", "amount": "5"}\n```'
        assert extract_json_object(text) == {"vendorName": "Acme", "amount": "5"}

    def test_no_json(self):
        assert extract_json_object("I could not read this document") is None
        assert extract_json_object("") is None
        assert extract_json_object("{broken") is None


class TestBuildPayload:

    def test_image_sent_inline(self):
        payload = build_payload(b"\x89PNG", "image/png", "scan.png")
        parts = payload["contents"][0]["parts"]
        assert parts[1]["inline_data"]["mime_type"] == "image/png"
        assert base64.b64decode(parts[1]["inline_data"]["data"]) == b"\x89PNG"
        assert payload["generationConfig"]["temperature"] == 0.1

    def test_pdf_described(self):
        payload = build_payload(b"%PDF", "application/pdf", "inv.pdf", size=1234, created_at="2024-01-05")
        text = payload["contents"][0]["parts"][0]["text"]
        assert "PDF Document: inv.pdf" in text
        assert "File Size: 1234 bytes" in text

    def test_text_content_included(self):
        payload = build_payload(b"Total: 10.00", "text/plain", "note.txt")
        assert payload["contents"][0]["parts"][0]["text"].endswith("Document content:\nTotal: 10.00")


@pytest.mark.asyncio
class TestGeminiClient:
    """analyze_document over a mocked transport."""

    async def test_successful_call(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_gemini_answer('{"vendorName": "Acme", "confidence": 0.9}'))

        response = await _client(handler).analyze_document(b"%PDF", "application/pdf", "inv.pdf")

        assert response.data == {"vendorName": "Acme", "confidence": 0.9}
        assert response.model_name == "gemini-test"
        assert "gemini-test:generateContent" in seen["url"]
        assert "key=test-key" in seen["url"]
        assert seen["body"]["contents"][0]["parts"][0]["text"]

    async def test_non_200_is_api_limit(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "Resource exhausted"}})

        with pytest.raises(HubError) as exc:
            await _client(handler).analyze_document(b"x", "text/plain", "a.txt")
        assert exc.value.code == ErrorCode.API_LIMIT_EXCEEDED
        assert "Resource exhausted" in exc.value.message
        assert exc.value.details["status_code"] == 429

    async def test_transport_error_is_api_limit(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(HubError) as exc:
            await _client(handler).analyze_document(b"x", "text/plain", "a.txt")
        assert exc.value.code == ErrorCode.API_LIMIT_EXCEEDED

    async def test_missing_candidates(self):
        def handler(request):
            return httpx.Response(200, json={"candidates": []})

        with pytest.raises(HubError) as exc:
            await _client(handler).analyze_document(b"x", "text/plain", "a.txt")
        assert exc.value.code == ErrorCode.PROCESSING_FAILED
        assert exc.value.message == "Invalid AI response structure"

    async def test_answer_without_json(self):
        def handler(request):
            return httpx.Response(200, json=_gemini_answer("Sorry, unreadable."))

        with pytest.raises(HubError) as exc:
            await _client(handler).analyze_document(b"x", "text/plain", "a.txt")
        assert exc.value.code == ErrorCode.PROCESSING_FAILED

    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        client = GeminiClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        with pytest.raises(HubError) as exc:
            await client.analyze_document(b"x", "text/plain", "a.txt")
        assert exc.value.code == ErrorCode.INVALID_INPUT
