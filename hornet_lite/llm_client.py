"""
Extraction Client (Google Gemini)
=================================

Sends a bounded document context plus a user instruction to the language
model and returns the answer text.

Supports:
- Atomic extraction (`:generateContent`)
- Incremental extraction (`:streamGenerateContent?alt=sse`) as a
  cancellable async iterator; a newer stream supersedes an older one
- Error classification into a closed set of codes with Thai messages

Never logs the credential, the context or the response text.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple, Union

import httpx

from .config import Settings, get_settings
from .errors import AIErrorCode, ExtractionError, StorageError
from .retrieval import truncate_context
from .schemas import AIStatus, ProgressUpdate
from .storage import STORAGE_KEYS, LocalStorage

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


# =============================================================================
# Prompt
# =============================================================================

SYSTEM_PROMPT = """คุณเป็นผู้ช่วยวิเคราะห์เอกสารคดีอาชญากรรมของตำรวจไทย

หน้าที่ของคุณ:
1. วิเคราะห์เนื้อหาที่ OCR มาจากเอกสาร
2. สกัดข้อมูลตามคำสั่งของผู้ใช้
3. ตอบเป็นภาษาไทยที่เป็นทางการ
4. อ้างอิงจากเนื้อหาในเอกสารเท่านั้น

กฎสำคัญ:
- หากไม่พบข้อมูล ให้ตอบว่า "ไม่พบข้อมูลดังกล่าวในเอกสาร"
- อย่าสมมติข้อมูลที่ไม่มีในเอกสาร
- รักษาความลับของข้อมูล
- จัดรูปแบบคำตอบให้อ่านง่าย"""

CONTEXT_START = "=== เนื้อหาจากเอกสาร ==="
CONTEXT_END = "=== จบเนื้อหา ==="

PREDEFINED_PROMPTS = {
    "extract_people": "สกัดรายชื่อบุคคลทั้งหมดที่ปรากฏในเอกสาร พร้อมระบุบทบาท (ผู้กล่าวหา/ผู้ต้องหา/พยาน)",
    "extract_dates": "ระบุวันที่สำคัญทั้งหมดในเอกสาร เช่น วันเกิดเหตุ วันแจ้งความ วันจับกุม",
    "extract_charges": "สรุปข้อหาหรือความผิดที่กล่าวหาในคดีนี้",
    "extract_evidence": "ระบุหลักฐานทั้งหมดที่กล่าวถึงในเอกสาร",
    "summarize": "สรุปใจความสำคัญของเอกสารนี้ใน 3-5 ประโยค",
    "extract_contacts": "สกัดข้อมูลติดต่อทั้งหมด (เบอร์โทร, ที่อยู่, อีเมล)",
}


def build_prompt(context: str, instruction: str, max_chars: int = 30000) -> str:
    """
    Build the full prompt: system instruction, delimited context, user instruction.

    The context is truncated to max_chars (prefix kept, marker appended).
    """
    return (
        f"{SYSTEM_PROMPT}\n\n"
        f"{CONTEXT_START}\n"
        f"{truncate_context(context, max_chars)}\n"
        f"{CONTEXT_END}\n\n"
        f"คำสั่งจากผู้ใช้: {instruction}\n\n"
        f"โปรดวิเคราะห์และตอบตามคำสั่งข้างต้น:"
    )


# =============================================================================
# Error classification
# =============================================================================

ERROR_MESSAGES = {
    AIErrorCode.NO_API_KEY: "กรุณากรอก API Key ก่อนใช้งาน",
    AIErrorCode.NO_DOCUMENT: "ไม่มีเอกสารสำหรับวิเคราะห์",
    AIErrorCode.NO_PROMPT: "กรุณาใส่คำสั่งสำหรับ AI",
    AIErrorCode.INVALID_API_KEY: "API Key ไม่ถูกต้อง กรุณาตรวจสอบและลองใหม่อีกครั้ง",
    AIErrorCode.RATE_LIMITED: "เรียกใช้ AI บ่อยเกินไป กรุณารอสักครู่แล้วลองใหม่",
    AIErrorCode.QUOTA_EXCEEDED: "เกินโควต้าการใช้งาน AI กรุณาตรวจสอบบัญชี Google AI Studio",
    AIErrorCode.CONTENT_FILTERED: "เนื้อหาถูกกรองโดยระบบความปลอดภัย กรุณาปรับคำสั่งหรือเอกสาร",
    AIErrorCode.NETWORK_ERROR: "ไม่สามารถเชื่อมต่อ AI ได้ กรุณาตรวจสอบอินเทอร์เน็ต",
}

# Provider reason/status codes (google.rpc ErrorInfo.reason, error.status, finish/block reasons)
PROVIDER_CODES = {
    "API_KEY_INVALID": AIErrorCode.INVALID_API_KEY,
    "API_KEY_EXPIRED": AIErrorCode.INVALID_API_KEY,
    "PERMISSION_DENIED": AIErrorCode.INVALID_API_KEY,
    "UNAUTHENTICATED": AIErrorCode.INVALID_API_KEY,
    "RATE_LIMIT_EXCEEDED": AIErrorCode.RATE_LIMITED,
    "RESOURCE_EXHAUSTED": AIErrorCode.RATE_LIMITED,
    "QUOTA_EXCEEDED": AIErrorCode.QUOTA_EXCEEDED,
    "SAFETY": AIErrorCode.CONTENT_FILTERED,
    "BLOCKLIST": AIErrorCode.CONTENT_FILTERED,
    "PROHIBITED_CONTENT": AIErrorCode.CONTENT_FILTERED,
    "SPII": AIErrorCode.CONTENT_FILTERED,
    "RECITATION": AIErrorCode.CONTENT_FILTERED,
    "UNAVAILABLE": AIErrorCode.NETWORK_ERROR,
    "DEADLINE_EXCEEDED": AIErrorCode.NETWORK_ERROR,
}

# Checked in order against the raw error message
_MESSAGE_MARKERS = (
    (("API_KEY_INVALID", "API key not valid"), AIErrorCode.INVALID_API_KEY),
    (("RATE_LIMIT", "429"), AIErrorCode.RATE_LIMITED),
    (("QUOTA", "quota"), AIErrorCode.QUOTA_EXCEEDED),
    (("SAFETY", "blocked"), AIErrorCode.CONTENT_FILTERED),
    (("network", "fetch", "connect"), AIErrorCode.NETWORK_ERROR),
)

HTTP_STATUS_CODES = {
    401: AIErrorCode.INVALID_API_KEY,
    403: AIErrorCode.INVALID_API_KEY,
    429: AIErrorCode.RATE_LIMITED,
}

_BLOCKING_FINISH_REASONS = {"SAFETY", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII", "RECITATION"}


def _make_error(code: AIErrorCode, original: str) -> ExtractionError:
    message = ERROR_MESSAGES.get(code) or f"เกิดข้อผิดพลาด: {original}"
    return ExtractionError(message, code, metadata={"original_error": original})


def classify_error(
    error: Union[BaseException, str],
    provider_code: Optional[str] = None,
    status_code: Optional[int] = None
) -> ExtractionError:
    """
    Classify a provider failure into an ExtractionError.

    Resolution order:
    1. Provider code table
    2. Marker strings in the message
    3. HTTP status table
    4. UNKNOWN_ERROR with the original message

    Args:
        error: Exception or raw message
        provider_code: Provider reason/status code, if known
        status_code: HTTP status code, if known

    Returns:
        ExtractionError (not raised)
    """
    if isinstance(error, ExtractionError):
        return error

    original = str(error) or type(error).__name__

    if provider_code:
        code = PROVIDER_CODES.get(provider_code.upper())
        if code == AIErrorCode.RATE_LIMITED and "quota" in original.lower():
            code = AIErrorCode.QUOTA_EXCEEDED
        if code is not None:
            return _make_error(code, original)

    if isinstance(error, httpx.TransportError):
        return _make_error(AIErrorCode.NETWORK_ERROR, original)

    for markers, code in _MESSAGE_MARKERS:
        if any(marker in original for marker in markers):
            return _make_error(code, original)

    if status_code in HTTP_STATUS_CODES:
        return _make_error(HTTP_STATUS_CODES[status_code], original)

    return _make_error(AIErrorCode.UNKNOWN_ERROR, original)


def _provider_error(body: Any) -> Tuple[Optional[str], str]:
    """(provider_code, message) from a Gemini error body"""
    if not isinstance(body, dict) or not isinstance(body.get("error"), dict):
        return None, ""
    err = body["error"]
    message = str(err.get("message") or "")
    for detail in err.get("details") or []:
        if isinstance(detail, dict) and detail.get("reason"):
            return detail["reason"], message
    return err.get("status"), message


def _http_error(response: httpx.Response) -> ExtractionError:
    try:
        body = response.json()
    except ValueError:
        body = None
    provider_code, message = _provider_error(body)
    return classify_error(
        message or f"HTTP {response.status_code}",
        provider_code=provider_code,
        status_code=response.status_code,
    )


def validate_request(context: Optional[str], instruction: Optional[str], api_key: Optional[str]):
    """Fail fast before any network activity"""
    if not api_key:
        raise ExtractionError(ERROR_MESSAGES[AIErrorCode.NO_API_KEY], AIErrorCode.NO_API_KEY)
    if not context or not context.strip():
        raise ExtractionError(ERROR_MESSAGES[AIErrorCode.NO_DOCUMENT], AIErrorCode.NO_DOCUMENT)
    if not instruction or not instruction.strip():
        raise ExtractionError(ERROR_MESSAGES[AIErrorCode.NO_PROMPT], AIErrorCode.NO_PROMPT)


# =============================================================================
# Options / results
# =============================================================================

@dataclass
class ExtractionOptions:
    """Per-call overrides; None falls back to Settings"""
    model: Optional[str] = None
    max_output_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_context_chars: Optional[int] = None
    on_progress: Optional[ProgressCallback] = None


@dataclass
class ExtractionResult:
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class KeyValidation:
    valid: bool
    error: Optional[str] = None
    code: Optional[str] = None


def _candidate_parts(data: Dict[str, Any]) -> Tuple[str, Optional[str], Dict[str, Any]]:
    """
    (text, finish_reason, usage) from a generateContent response or SSE event.

    Raises:
        ExtractionError: CONTENT_FILTERED when the prompt was blocked
    """
    feedback = data.get("promptFeedback") or {}
    if feedback.get("blockReason"):
        raise _make_error(AIErrorCode.CONTENT_FILTERED, f"Prompt blocked: {feedback['blockReason']}")

    candidates = data.get("candidates") or []
    candidate = candidates[0] if candidates else {}
    parts = (candidate.get("content") or {}).get("parts") or []
    text = "".join(part.get("text") or "" for part in parts)
    return text, candidate.get("finishReason"), data.get("usageMetadata") or {}


def _build_result(text: str, finish_reason: Optional[str], usage: Dict[str, Any]) -> ExtractionResult:
    if not text and finish_reason in _BLOCKING_FINISH_REASONS:
        raise _make_error(AIErrorCode.CONTENT_FILTERED, f"Response blocked: finishReason={finish_reason}")
    return ExtractionResult(
        text=text,
        metadata={
            "prompt_tokens": usage.get("promptTokenCount"),
            "completion_tokens": usage.get("candidatesTokenCount"),
            "finish_reason": finish_reason,
        },
    )


def _noop(update: ProgressUpdate):
    pass


# =============================================================================
# Streaming
# =============================================================================

class ExtractionStream:
    """
    Incremental extraction result.

    Usage:
        stream = client.stream(context, "สรุปคดี", api_key)
        async for fragment in stream:
            print(fragment, end="")
        result = stream.result

    A stream stops yielding (and closes its HTTP response) once it is
    cancelled or superseded by a newer stream from the same client.
    """

    def __init__(
        self,
        client: "ExtractionClient",
        url: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
        on_progress: ProgressCallback
    ):
        self._client = client
        self._url = url
        self._payload = payload
        self._headers = headers
        self._report = on_progress
        self._generator: Optional[AsyncIterator[str]] = None

        self.text = ""
        self.result: Optional[ExtractionResult] = None
        self.cancelled = False
        self.superseded = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.superseded)

    def cancel(self):
        self.cancelled = True

    def _supersede(self):
        self.superseded = True

    def __aiter__(self) -> AsyncIterator[str]:
        if self._generator is None:
            self._generator = self._run()
        return self._generator

    async def collect(self) -> Optional[ExtractionResult]:
        """Drain the stream; None if it was cancelled or superseded"""
        async for _ in self:
            pass
        return self.result

    async def _run(self) -> AsyncIterator[str]:
        finish_reason = None
        usage: Dict[str, Any] = {}
        try:
            http = await self._client._get_client()
            self._report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=50, message="กำลังส่งคำขอ..."))

            async with http.stream("POST", self._url, json=self._payload, headers=self._headers) as response:
                if response.is_error:
                    await response.aread()
                    raise _http_error(response)

                async for line in response.aiter_lines():
                    if not self.active:
                        logger.info(
                            f"AI stream stopped: cancelled={self.cancelled} "
                            f"superseded={self.superseded} chars={len(self.text)}"
                        )
                        return
                    if not line.startswith("data:"):
                        continue
                    raw = line[len("data:"):].strip()
                    if not raw:
                        continue

                    fragment, reason, event_usage = _candidate_parts(json.loads(raw))
                    finish_reason = reason or finish_reason
                    usage = event_usage or usage
                    if fragment:
                        self.text += fragment
                        yield fragment

            if not self.active:
                return

            self._report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=90, message="ได้รับคำตอบแล้ว"))
            self.result = _build_result(self.text, finish_reason, usage)

        except Exception as e:
            error = classify_error(e)
            logger.error(f"AI stream failed: code={error.code}")
            self._report(ProgressUpdate(status=AIStatus.FAILED.value, progress=0, message=error.message))
            raise error from e
        finally:
            self._client._release(self)

        logger.info(f"AI stream completed: response_chars={len(self.text)} finish_reason={finish_reason}")
        self._report(ProgressUpdate(status=AIStatus.COMPLETED.value, progress=100, message="เสร็จสิ้น"))


# =============================================================================
# Client
# =============================================================================

class ExtractionClient:
    """
    Gemini client for document extraction.

    Usage:
        client = ExtractionClient()
        result = await client.extract(context, PREDEFINED_PROMPTS["summarize"], api_key)
    """

    def __init__(self, settings: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._http_client = http_client
        self._owns_client = http_client is None
        self._active_stream: Optional[ExtractionStream] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.settings.llm_timeout)
            self._owns_client = True
        return self._http_client

    async def close(self):
        """Close HTTP client (only if created here)"""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "ExtractionClient":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    # -------------------------------------------------------------------------
    # Request building
    # -------------------------------------------------------------------------

    def _url(self, model: str, method: str) -> str:
        return f"{self.settings.gemini_base_url.rstrip('/')}/models/{model}:{method}"

    @staticmethod
    def _headers(api_key: str) -> Dict[str, str]:
        # Header rather than ?key= so the key never shows up in request logs
        return {"x-goog-api-key": api_key, "Content-Type": "application/json"}

    def _payload(self, prompt: str, options: ExtractionOptions) -> Dict[str, Any]:
        s = self.settings
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "maxOutputTokens": options.max_output_tokens or s.max_output_tokens,
                "temperature": s.temperature if options.temperature is None else options.temperature,
                "topP": s.top_p if options.top_p is None else options.top_p,
                "topK": options.top_k or s.top_k,
            },
        }

    def _resolve_key(self, api_key: Optional[str]) -> Optional[str]:
        return self.settings.gemini_api_key if api_key is None else api_key

    # -------------------------------------------------------------------------
    # Extraction
    # -------------------------------------------------------------------------

    async def extract(
        self,
        context: str,
        instruction: str,
        api_key: Optional[str] = None,
        options: Optional[ExtractionOptions] = None
    ) -> ExtractionResult:
        """
        Run one extraction request.

        Args:
            context: Assembled document text
            instruction: User instruction (free text or a PREDEFINED_PROMPTS value)
            api_key: Credential; falls back to Settings.gemini_api_key
            options: Per-call overrides and progress callback

        Returns:
            ExtractionResult with text and token/finish metadata

        Raises:
            ExtractionError: validation (before any request) or classified provider failure
        """
        options = options or ExtractionOptions()
        api_key = self._resolve_key(api_key)
        validate_request(context, instruction, api_key)
        report = options.on_progress or _noop

        logger.info(
            f"AI extraction started: context_chars={len(context)} "
            f"instruction_chars={len(instruction)}"
        )
        report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=10, message="กำลังเตรียม AI..."))

        try:
            http = await self._get_client()
            model = options.model or self.settings.gemini_model
            prompt = build_prompt(context, instruction, options.max_context_chars or self.settings.context_max_chars)
            report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=30, message="กำลังสร้างคำสั่ง..."))

            report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=50, message="กำลังส่งคำขอ..."))
            response = await http.post(
                self._url(model, "generateContent"),
                json=self._payload(prompt, options),
                headers=self._headers(api_key),
            )
            if response.is_error:
                raise _http_error(response)

            report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=90, message="ได้รับคำตอบแล้ว"))
            result = _build_result(*_candidate_parts(response.json()))

        except Exception as e:
            error = classify_error(e)
            logger.error(f"AI extraction failed: code={error.code}")
            report(ProgressUpdate(status=AIStatus.FAILED.value, progress=0, message=error.message))
            raise error from e

        logger.info(
            f"AI extraction completed: response_chars={len(result.text)} "
            f"finish_reason={result.metadata.get('finish_reason')}"
        )
        report(ProgressUpdate(status=AIStatus.COMPLETED.value, progress=100, message="เสร็จสิ้น"))
        return result

    def stream(
        self,
        context: str,
        instruction: str,
        api_key: Optional[str] = None,
        options: Optional[ExtractionOptions] = None
    ) -> ExtractionStream:
        """
        Start an incremental extraction.

        Validation runs immediately. Any stream previously started on this
        client is marked superseded and stops at its next fragment.
        """
        options = options or ExtractionOptions()
        api_key = self._resolve_key(api_key)
        validate_request(context, instruction, api_key)
        report = options.on_progress or _noop
        report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=10, message="กำลังเตรียม AI..."))

        model = options.model or self.settings.gemini_model
        prompt = build_prompt(context, instruction, options.max_context_chars or self.settings.context_max_chars)
        report(ProgressUpdate(status=AIStatus.PROCESSING.value, progress=30, message="กำลังสร้างคำสั่ง..."))

        if self._active_stream is not None and self._active_stream.active:
            logger.info("Superseding previous AI stream")
            self._active_stream._supersede()

        stream = ExtractionStream(
            self,
            self._url(model, "streamGenerateContent") + "?alt=sse",
            self._payload(prompt, options),
            self._headers(api_key),
            report,
        )
        self._active_stream = stream

        logger.info(
            f"AI stream started: context_chars={len(context)} "
            f"instruction_chars={len(instruction)}"
        )
        return stream

    def _release(self, stream: ExtractionStream):
        if self._active_stream is stream:
            self._active_stream = None

    async def validate_api_key(self, api_key: Optional[str]) -> KeyValidation:
        """Check a credential with a minimal request"""
        if not api_key:
            return KeyValidation(
                valid=False,
                error=ERROR_MESSAGES[AIErrorCode.NO_API_KEY],
                code=AIErrorCode.NO_API_KEY.value,
            )

        try:
            http = await self._get_client()
            response = await http.post(
                self._url(self.settings.gemini_model, "generateContent"),
                json={
                    "contents": [{"role": "user", "parts": [{"text": "test"}]}],
                    "generationConfig": {"maxOutputTokens": 1},
                },
                headers=self._headers(api_key),
            )
            if response.is_error:
                raise _http_error(response)
        except Exception as e:
            error = classify_error(e)
            logger.warning(f"API key validation failed: code={error.code}")
            return KeyValidation(valid=False, error=error.message, code=error.code)

        return KeyValidation(valid=True)


# =============================================================================
# Credential storage
# =============================================================================

def get_api_key(storage: Optional[LocalStorage] = None, settings: Optional[Settings] = None) -> str:
    """Stored key first, then GEMINI_API_KEY; empty string if neither"""
    if storage is not None:
        try:
            stored = storage.get_item(STORAGE_KEYS["api_key"])
            if stored:
                return stored
        except StorageError as e:
            logger.error(f"Failed to retrieve API key: code={e.code}")
    return (settings or get_settings()).gemini_api_key or ""


def set_api_key(storage: LocalStorage, key: Optional[str]) -> bool:
    """Save (or, when empty, remove) the stored API key"""
    try:
        if not key:
            storage.remove_item(STORAGE_KEYS["api_key"])
            logger.info("API key removed")
            return True

        if not key.startswith("AIza") or len(key) < 30:
            logger.warning("API key format appears invalid")

        storage.set_item(STORAGE_KEYS["api_key"], key)
        logger.info("API key saved")
        return True
    except StorageError as e:
        logger.error(f"Failed to save API key: code={e.code}")
        return False
