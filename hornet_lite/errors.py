"""
Error Types
===========

Shared error shape for every component:
- message: short Thai message, safe to show to the user
- code: stable classification string (closed set per component)
- metadata: extra diagnostics (e.g. original provider message)

Validation failures are raised before any engine/network work.
Provider failures are classified at the boundary and re-raised as the same shape.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class OCRErrorCode(str, Enum):
    """OCR Gateway classifications"""
    NO_FILE = "OCR_NO_FILE"
    FILE_TOO_LARGE = "OCR_FILE_TOO_LARGE"
    UNSUPPORTED_TYPE = "OCR_UNSUPPORTED_TYPE"
    PROCESSING_FAILED = "OCR_PROCESSING_FAILED"
    NO_TEXT_FOUND = "OCR_NO_TEXT_FOUND"
    WORKER_ERROR = "OCR_WORKER_ERROR"


class AIErrorCode(str, Enum):
    """Extraction Client classifications"""
    NO_API_KEY = "AI_NO_API_KEY"
    INVALID_API_KEY = "AI_INVALID_API_KEY"
    RATE_LIMITED = "AI_RATE_LIMITED"
    QUOTA_EXCEEDED = "AI_QUOTA_EXCEEDED"
    NETWORK_ERROR = "AI_NETWORK_ERROR"
    CONTENT_FILTERED = "AI_CONTENT_FILTERED"
    UNKNOWN_ERROR = "AI_UNKNOWN_ERROR"

    # Input validation (raised before any request)
    NO_DOCUMENT = "AI_NO_DOCUMENT"
    NO_PROMPT = "AI_NO_PROMPT"


class StorageErrorCode(str, Enum):
    """Persistence classifications"""
    READ_FAILED = "STORAGE_READ_FAILED"
    WRITE_FAILED = "STORAGE_WRITE_FAILED"
    SERIALIZE_FAILED = "STORAGE_SERIALIZE_FAILED"
    DESERIALIZE_FAILED = "STORAGE_DESERIALIZE_FAILED"
    QUOTA_EXCEEDED = "STORAGE_QUOTA_EXCEEDED"


class CaseErrorCode(str, Enum):
    """Case Store classifications"""
    CASE_NOT_FOUND = "CASE_NOT_FOUND"
    CASE_NUMBER_EXISTS = "CASE_NUMBER_EXISTS"
    INVALID_TRANSITION = "CASE_INVALID_TRANSITION"
    TRANSITION_PRECONDITION = "CASE_TRANSITION_PRECONDITION"
    INVALID_FIELD = "CASE_INVALID_FIELD"


class HornetError(Exception):
    """Base error with code and metadata"""

    default_code: str = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = str(code.value if isinstance(code, Enum) else (code or self.default_code))
        self.metadata = metadata or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Display/serialization form"""
        return {
            "message": self.message,
            "code": self.code,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class OCRError(HornetError):
    default_code = OCRErrorCode.PROCESSING_FAILED.value


class ExtractionError(HornetError):
    default_code = AIErrorCode.UNKNOWN_ERROR.value


class StorageError(HornetError):
    default_code = StorageErrorCode.WRITE_FAILED.value


class CaseStoreError(HornetError):
    default_code = CaseErrorCode.CASE_NOT_FOUND.value
