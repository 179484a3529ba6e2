"""
Ingest Base Types
=================

Input and engine-boundary types for the OCR pipeline.
"""

import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union


SUPPORTED_IMAGE_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/bmp",
)

_EXT_MAPPING = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "bmp": "image/bmp",
    "tif": "image/tiff",
    "tiff": "image/tiff",
    "pdf": "application/pdf",
    "txt": "text/plain",
}


def detect_mime_type(filename: str, data: Optional[bytes] = None) -> str:
    """
    Detect MIME type from filename and optionally file content.

    Args:
        filename: File name
        data: Optional file content for magic number detection

    Returns:
        MIME type string ("application/octet-stream" if unknown)
    """
    ext = filename.lower().rsplit(".", 1)[-1] if "." in filename else ""
    if ext in _EXT_MAPPING:
        return _EXT_MAPPING[ext]

    mime_type, _ = mimetypes.guess_type(filename)
    if mime_type:
        return mime_type

    if data:
        if data[:8] == b"\x89PNG\r\n\x1a\n":
            return "image/png"
        if data[:2] == b"\xff\xd8":
            return "image/jpeg"
        if data[:6] in (b"GIF87a", b"GIF89a"):
            return "image/gif"
        if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
            return "image/webp"
        if data[:2] == b"BM":
            return "image/bmp"
        if data[:4] == b"%PDF":
            return "application/pdf"

    return "application/octet-stream"


@dataclass
class ImageFile:
    """
    Binary image payload handed to the OCR gateway.
    """
    filename: str
    data: bytes
    mime_type: str = ""

    def __post_init__(self):
        if not self.mime_type:
            self.mime_type = detect_mime_type(self.filename, self.data)

    @property
    def size(self) -> int:
        return len(self.data or b"")

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "ImageFile":
        path = Path(path)
        data = path.read_bytes()
        return cls(filename=path.name, data=data, mime_type=detect_mime_type(path.name, data))


@dataclass
class EngineEvent:
    """
    Raw milestone reported by an OCR engine.

    status: engine-specific stage name (e.g. "recognizing text")
    progress: 0.0-1.0 within that stage
    """
    status: str
    progress: float = 0.0


@dataclass
class EngineResult:
    """Raw engine output before gateway normalization"""
    text: str
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)
