"""
Tests for the Extraction Client
===============================

Tests for:
- Request validation before any network activity
- Request shape (prompt, generation config, credential header)
- Progress checkpoints
- Provider error classification
- Streaming with cancellation and supersession
- Credential storage helpers

The Gemini API is replaced by httpx.MockTransport.
"""

import json
from typing import Callable, List

import httpx
import pytest

from hornet_lite.errors import AIErrorCode, ExtractionError
from hornet_lite.llm_client import (
    CONTEXT_END,
    CONTEXT_START,
    PREDEFINED_PROMPTS,
    ExtractionClient,
    ExtractionOptions,
    build_prompt,
    classify_error,
    get_api_key,
    set_api_key,
)
from hornet_lite.retrieval import TRUNCATION_MARKER

API_KEY = "AIza" + "x" * 35
CONTEXT = "ผู้กล่าวหา นางสาวจิรัชญาณิช กัดดีเดโช แจ้งความเมื่อวันที่ 24 กันยายน 2567"


# =============================================================================
# Helpers
# =============================================================================

def gemini_response(text: str = "ผู้กล่าวหา: นางสาวจิรัชญาณิช", finish_reason: str = "STOP") -> dict:
    return {
        "candidates": [{
            "content": {"role": "model", "parts": [{"text": text}]},
            "finishReason": finish_reason,
        }],
        "usageMetadata": {"promptTokenCount": 120, "candidatesTokenCount": 15},
    }


def sse_body(fragments: List[str]) -> bytes:
    events = []
    for i, fragment in enumerate(fragments):
        event = gemini_response(fragment, "STOP" if i == len(fragments) - 1 else None)
        if event["candidates"][0]["finishReason"] is None:
            del event["candidates"][0]["finishReason"]
        events.append("data: " + json.dumps(event, ensure_ascii=False) + "\r\n\r\n")
    return "".join(events).encode("utf-8")


class Recorder:
    """MockTransport handler that records requests and replays one response"""

    def __init__(self, respond: Callable[[httpx.Request], httpx.Response]):
        self.respond = respond
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.respond(request)


def make_client(settings, handler) -> ExtractionClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ExtractionClient(settings=settings, http_client=http)


def ok(payload: dict = None):
    return Recorder(lambda request: httpx.Response(200, json=payload or gemini_response()))


def failing(status: int, body: dict = None):
    return Recorder(lambda request: httpx.Response(status, json=body) if body else httpx.Response(status))


# =============================================================================
# Prompt
# =============================================================================

class TestBuildPrompt:
    """Prompt layout"""

    def test_layout(self):
        prompt = build_prompt(CONTEXT, "สรุปคดี")

        assert prompt.index(CONTEXT_START) < prompt.index(CONTEXT) < prompt.index(CONTEXT_END)
        assert "คำสั่งจากผู้ใช้: สรุปคดี" in prompt
        assert "ไม่พบข้อมูลดังกล่าวในเอกสาร" in prompt

    def test_long_context_truncated(self):
        prompt = build_prompt("ก" * 100, "สรุป", max_chars=10)

        assert "ก" * 10 + TRUNCATION_MARKER in prompt
        assert "ก" * 11 not in prompt

    def test_predefined_prompts(self):
        assert set(PREDEFINED_PROMPTS) == {
            "extract_people", "extract_dates", "extract_charges",
            "extract_evidence", "summarize", "extract_contacts",
        }


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Fail fast before the network"""

    @pytest.mark.asyncio
    async def test_missing_credential_makes_no_request(self, settings):
        """Empty credential -> NO_API_KEY, no request sent"""
        handler = ok()
        client = make_client(settings, handler)

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", api_key="")

        assert exc.value.code == AIErrorCode.NO_API_KEY.value
        assert exc.value.message == "กรุณากรอก API Key ก่อนใช้งาน"
        assert handler.requests == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("context,instruction,code", [
        ("", "สรุป", AIErrorCode.NO_DOCUMENT),
        ("   \n", "สรุป", AIErrorCode.NO_DOCUMENT),
        (CONTEXT, "", AIErrorCode.NO_PROMPT),
        (CONTEXT, "  ", AIErrorCode.NO_PROMPT),
    ])
    async def test_missing_input(self, settings, context, instruction, code):
        handler = ok()
        client = make_client(settings, handler)

        with pytest.raises(ExtractionError) as exc:
            await client.extract(context, instruction, api_key=API_KEY)

        assert exc.value.code == code.value
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_settings_key_used_as_fallback(self, settings):
        settings.gemini_api_key = API_KEY
        handler = ok()
        client = make_client(settings, handler)

        await client.extract(CONTEXT, "สรุป")
        assert handler.requests[0].headers["x-goog-api-key"] == API_KEY

    @pytest.mark.asyncio
    async def test_explicit_empty_key_not_replaced(self, settings):
        """An empty key passed explicitly fails even when GEMINI_API_KEY is configured"""
        settings.gemini_api_key = API_KEY
        handler = ok()
        client = make_client(settings, handler)

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", api_key="")

        assert exc.value.code == AIErrorCode.NO_API_KEY.value
        assert handler.requests == []

    def test_stream_explicit_empty_key(self, settings):
        settings.gemini_api_key = API_KEY
        client = make_client(settings, ok())
        with pytest.raises(ExtractionError) as exc:
            client.stream(CONTEXT, "สรุป", api_key="")
        assert exc.value.code == AIErrorCode.NO_API_KEY.value

    def test_stream_validates_immediately(self, settings):
        client = make_client(settings, ok())
        with pytest.raises(ExtractionError) as exc:
            client.stream(CONTEXT, "สรุป", api_key=None)
        assert exc.value.code == AIErrorCode.NO_API_KEY.value


# =============================================================================
# Extraction
# =============================================================================

class TestExtract:
    """Atomic extraction"""

    @pytest.mark.asyncio
    async def test_request_and_result(self, settings):
        handler = ok()
        client = make_client(settings, handler)

        result = await client.extract(CONTEXT, PREDEFINED_PROMPTS["extract_people"], api_key=API_KEY)

        assert result.text == "ผู้กล่าวหา: นางสาวจิรัชญาณิช"
        assert result.metadata == {"prompt_tokens": 120, "completion_tokens": 15, "finish_reason": "STOP"}

        request = handler.requests[0]
        assert request.url.path.endswith("/models/gemini-2.0-flash:generateContent")
        assert "key" not in request.url.params
        assert request.headers["x-goog-api-key"] == API_KEY

        payload = json.loads(request.content)
        assert payload["generationConfig"] == {
            "maxOutputTokens": 4096, "temperature": 0.3, "topP": 0.8, "topK": 40,
        }
        prompt = payload["contents"][0]["parts"][0]["text"]
        assert CONTEXT in prompt
        assert PREDEFINED_PROMPTS["extract_people"] in prompt

    @pytest.mark.asyncio
    async def test_options_override(self, settings):
        handler = ok()
        client = make_client(settings, handler)

        await client.extract(CONTEXT, "สรุป", API_KEY, ExtractionOptions(
            model="gemini-1.5-pro", temperature=0.0, max_output_tokens=256,
        ))

        request = handler.requests[0]
        payload = json.loads(request.content)
        assert request.url.path.endswith("gemini-1.5-pro:generateContent")
        assert payload["generationConfig"]["temperature"] == 0.0
        assert payload["generationConfig"]["maxOutputTokens"] == 256

    @pytest.mark.asyncio
    async def test_progress_checkpoints(self, settings):
        updates = []
        client = make_client(settings, ok())

        await client.extract(CONTEXT, "สรุป", API_KEY, ExtractionOptions(on_progress=updates.append))

        assert [u.progress for u in updates] == [10, 30, 50, 90, 100]
        assert updates[-1].status == "completed"

    @pytest.mark.asyncio
    async def test_failure_reports_zero(self, settings):
        updates = []
        client = make_client(settings, failing(500))

        with pytest.raises(ExtractionError):
            await client.extract(CONTEXT, "สรุป", API_KEY, ExtractionOptions(on_progress=updates.append))

        assert updates[-1].progress == 0
        assert updates[-1].status == "failed"


# =============================================================================
# Error Classification
# =============================================================================

class TestErrorClassification:
    """Provider code table, string fallback, HTTP status"""

    @pytest.mark.asyncio
    async def test_invalid_key_reason(self, settings):
        body = {"error": {
            "code": 400,
            "message": "API key not valid. Please pass a valid API key.",
            "status": "INVALID_ARGUMENT",
            "details": [{"@type": "type.googleapis.com/google.rpc.ErrorInfo", "reason": "API_KEY_INVALID"}],
        }}
        client = make_client(settings, failing(400, body))

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", API_KEY)

        assert exc.value.code == AIErrorCode.INVALID_API_KEY.value
        assert exc.value.metadata["original_error"].startswith("API key not valid")

    @pytest.mark.asyncio
    async def test_quota_exhausted(self, settings):
        body = {"error": {"code": 429, "message": "You exceeded your current quota.", "status": "RESOURCE_EXHAUSTED"}}
        client = make_client(settings, failing(429, body))

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", API_KEY)
        assert exc.value.code == AIErrorCode.QUOTA_EXCEEDED.value

    @pytest.mark.asyncio
    async def test_rate_limited_without_body(self, settings):
        client = make_client(settings, failing(429))

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", API_KEY)
        assert exc.value.code == AIErrorCode.RATE_LIMITED.value

    @pytest.mark.asyncio
    async def test_forbidden_status(self, settings):
        client = make_client(settings, failing(403))

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", API_KEY)
        assert exc.value.code == AIErrorCode.INVALID_API_KEY.value

    @pytest.mark.asyncio
    async def test_blocked_prompt(self, settings):
        client = make_client(settings, ok({"promptFeedback": {"blockReason": "SAFETY"}}))

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", API_KEY)
        assert exc.value.code == AIErrorCode.CONTENT_FILTERED.value

    @pytest.mark.asyncio
    async def test_safety_finish_without_text(self, settings):
        client = make_client(settings, ok(gemini_response("", "SAFETY")))

        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", API_KEY)
        assert exc.value.code == AIErrorCode.CONTENT_FILTERED.value

    @pytest.mark.asyncio
    async def test_network_error(self, settings):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(settings, handler)
        with pytest.raises(ExtractionError) as exc:
            await client.extract(CONTEXT, "สรุป", API_KEY)

        assert exc.value.code == AIErrorCode.NETWORK_ERROR.value
        assert exc.value.message == "ไม่สามารถเชื่อมต่อ AI ได้ กรุณาตรวจสอบอินเทอร์เน็ต"

    def test_provider_code_wins_over_markers(self):
        assert classify_error("quota 429", provider_code="SAFETY").code == AIErrorCode.CONTENT_FILTERED.value

    def test_marker_fallback(self):
        assert classify_error("API key not valid").code == AIErrorCode.INVALID_API_KEY.value
        assert classify_error("RATE_LIMIT reached").code == AIErrorCode.RATE_LIMITED.value
        assert classify_error("response blocked").code == AIErrorCode.CONTENT_FILTERED.value
        assert classify_error(RuntimeError("failed to fetch")).code == AIErrorCode.NETWORK_ERROR.value

    def test_unknown_keeps_message(self):
        error = classify_error(RuntimeError("something odd"))

        assert error.code == AIErrorCode.UNKNOWN_ERROR.value
        assert error.message == "เกิดข้อผิดพลาด: something odd"
        assert error.metadata["original_error"] == "something odd"

    def test_message_distinct_from_code(self):
        error = classify_error("", status_code=401)
        assert error.message and error.message != error.code


# =============================================================================
# Streaming
# =============================================================================

def streaming(fragments: List[str]) -> Recorder:
    return Recorder(lambda request: httpx.Response(
        200,
        content=sse_body(fragments),
        headers={"Content-Type": "text/event-stream"},
    ))


class TestStreaming:
    """Incremental delivery"""

    @pytest.mark.asyncio
    async def test_stream_fragments(self, settings):
        handler = streaming(["ผู้กล่าวหา: ", "นางสาว", "จิรัชญาณิช"])
        client = make_client(settings, handler)

        stream = client.stream(CONTEXT, "สรุป", API_KEY)
        fragments = [f async for f in stream]

        assert fragments == ["ผู้กล่าวหา: ", "นางสาว", "จิรัชญาณิช"]
        assert stream.text == "ผู้กล่าวหา: นางสาวจิรัชญาณิช"
        assert stream.result.text == stream.text
        assert stream.result.metadata["finish_reason"] == "STOP"

        request = handler.requests[0]
        assert request.url.path.endswith(":streamGenerateContent")
        assert request.url.params["alt"] == "sse"

    @pytest.mark.asyncio
    async def test_stream_matches_extract(self, settings):
        """Collected stream text equals the atomic result for the same answer"""
        client = make_client(settings, streaming(["ผู้กล่าวหา: ", "นางสาวจิรัชญาณิช"]))
        streamed = await client.stream(CONTEXT, "สรุป", API_KEY).collect()

        atomic = await make_client(settings, ok()).extract(CONTEXT, "สรุป", API_KEY)
        assert streamed.text == atomic.text

    @pytest.mark.asyncio
    async def test_new_stream_supersedes_old(self, settings):
        """A newer stream stops the older one at its next fragment"""
        client = make_client(settings, streaming(["หนึ่ง", "สอง", "สาม"]))

        first = client.stream(CONTEXT, "คำสั่งแรก", API_KEY)
        iterator = first.__aiter__()
        assert await iterator.__anext__() == "หนึ่ง"

        second = client.stream(CONTEXT, "คำสั่งที่สอง", API_KEY)
        remaining = [f async for f in first]

        assert remaining == []
        assert first.superseded
        assert first.result is None
        assert (await second.collect()).text == "หนึ่งสองสาม"

    @pytest.mark.asyncio
    async def test_cancel(self, settings):
        client = make_client(settings, streaming(["หนึ่ง", "สอง"]))
        stream = client.stream(CONTEXT, "สรุป", API_KEY)

        received = []
        async for fragment in stream:
            received.append(fragment)
            stream.cancel()

        assert received == ["หนึ่ง"]
        assert stream.cancelled
        assert await stream.collect() is None

    @pytest.mark.asyncio
    async def test_stream_error_classified(self, settings):
        body = {"error": {"code": 429, "message": "Too many requests", "status": "RATE_LIMIT_EXCEEDED"}}
        client = make_client(settings, failing(429, body))

        with pytest.raises(ExtractionError) as exc:
            await client.stream(CONTEXT, "สรุป", API_KEY).collect()
        assert exc.value.code == AIErrorCode.RATE_LIMITED.value


# =============================================================================
# Credentials
# =============================================================================

class TestCredentials:
    """API key validation and storage"""

    @pytest.mark.asyncio
    async def test_validate_api_key(self, settings):
        assert (await make_client(settings, ok()).validate_api_key(API_KEY)).valid

        result = await make_client(settings, failing(403)).validate_api_key("AIzaBAD")
        assert not result.valid
        assert result.code == AIErrorCode.INVALID_API_KEY.value

        missing = await make_client(settings, ok()).validate_api_key("")
        assert missing.code == AIErrorCode.NO_API_KEY.value

    def test_store_and_remove_key(self, storage, settings):
        assert get_api_key(storage, settings) == ""

        assert set_api_key(storage, API_KEY)
        assert get_api_key(storage, settings) == API_KEY

        assert set_api_key(storage, "")
        assert get_api_key(storage, settings) == ""

    def test_env_key_fallback(self, storage, settings):
        settings.gemini_api_key = "AIza-from-env"
        assert get_api_key(storage, settings) == "AIza-from-env"

    def test_key_never_logged(self, storage, caplog):
        caplog.set_level("DEBUG")
        set_api_key(storage, "short-key-123")

        assert "short-key-123" not in caplog.text
        assert "format appears invalid" in caplog.text
