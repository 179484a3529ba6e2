"""
Tests for the OCR Gateway
=========================

Tests for:
- Pre-flight validation (no engine work on invalid input)
- Progress remapping onto 0-100
- Error classification
- Sequential batch with per-file failures

A fake engine stands in for Tesseract.
"""

from typing import Callable, List, Optional

import pytest

from hornet_lite.errors import OCRError, OCRErrorCode
from hornet_lite.ingest.base import EngineEvent, EngineResult, ImageFile, detect_mime_type
from hornet_lite.ingest.ocr import (
    BatchOptions,
    OCREngine,
    OCRGateway,
    OCROptions,
    StubEngine,
    map_engine_event,
)

PNG_HEADER = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


# =============================================================================
# Fixtures
# =============================================================================

class FakeEngine(OCREngine):
    """Engine returning canned text per call, emitting Tesseract-like milestones"""

    def __init__(self, outputs: Optional[List] = None):
        self.outputs = list(outputs or ["บันทึกคำให้การ\nผู้กล่าวหา"])
        self.calls: List[str] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def is_available(self) -> bool:
        return True

    def recognize(
        self,
        image_data: bytes,
        languages: str = "tha+eng",
        on_event: Optional[Callable[[EngineEvent], None]] = None
    ) -> EngineResult:
        self.calls.append(languages)
        emit = on_event or (lambda event: None)
        emit(EngineEvent("loading tesseract core", 1.0))
        emit(EngineEvent("loading language traineddata", 1.0))
        emit(EngineEvent("initializing api", 1.0))
        emit(EngineEvent("recognizing text", 0.0))
        emit(EngineEvent("recognizing text", 0.5))
        emit(EngineEvent("recognizing text", 1.0))

        output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(output, Exception):
            raise output
        return EngineResult(text=output, confidence=87.5)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def gateway(engine, settings):
    return OCRGateway(engine=engine, settings=settings)


def png(name: str = "scan.png", size: int = 0) -> ImageFile:
    data = PNG_HEADER + b"\x00" * size
    return ImageFile(filename=name, data=data)


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Invalid input is rejected before the engine runs"""

    def test_missing_file(self, gateway, engine):
        with pytest.raises(OCRError) as exc:
            gateway.extract(None)
        assert exc.value.code == OCRErrorCode.NO_FILE.value
        assert engine.calls == []

    def test_empty_payload(self, gateway, engine):
        with pytest.raises(OCRError) as exc:
            gateway.extract(ImageFile(filename="empty.png", data=b""))
        assert exc.value.code == OCRErrorCode.NO_FILE.value

    def test_file_too_large(self, gateway, engine):
        """Files over 10MB are rejected with the size in the message"""
        with pytest.raises(OCRError) as exc:
            gateway.extract(png(size=10 * 1024 * 1024))
        assert exc.value.code == OCRErrorCode.FILE_TOO_LARGE.value
        assert "MB" in exc.value.message
        assert engine.calls == []

    def test_unsupported_type(self, gateway, engine):
        with pytest.raises(OCRError) as exc:
            gateway.extract(ImageFile(filename="scan.pdf", data=b"%PDF-1.7"))
        assert exc.value.code == OCRErrorCode.UNSUPPORTED_TYPE.value
        assert engine.calls == []

    def test_mime_detection(self):
        """Extension first, then magic numbers"""
        assert detect_mime_type("a.JPG") == "image/jpeg"
        assert detect_mime_type("noext", PNG_HEADER) == "image/png"
        assert detect_mime_type("noext", b"GIF89a....") == "image/gif"
        assert detect_mime_type("noext", b"????") == "application/octet-stream"


# =============================================================================
# Extraction
# =============================================================================

class TestExtract:
    """Single image extraction"""

    def test_successful_extraction(self, gateway, engine):
        """Text is trimmed and metadata describes the run"""
        engine.outputs = ["  บันทึกคำให้การ\nผู้กล่าวหา นางสาวจิรัชญาณิช  "]
        result = gateway.extract(png())

        assert result.text == "บันทึกคำให้การ\nผู้กล่าวหา นางสาวจิรัชญาณิช"
        assert result.confidence == 87.5
        assert result.metadata["filename"] == "scan.png"
        assert result.metadata["languages"] == "tha+eng"
        assert result.metadata["line_count"] == 2
        assert result.metadata["word_count"] == 3
        assert result.metadata["processing_time_ms"] >= 0

    def test_progress_sequence(self, gateway):
        """Progress runs 0 -> engine milestones -> 100 on one scale"""
        updates = []
        gateway.extract(png(), OCROptions(on_progress=updates.append))

        progress = [u.progress for u in updates]
        assert progress == [0, 5, 20, 30, 30, 62, 95, 100]
        assert updates[-1].status == "completed"
        assert all(u.message for u in updates)

    def test_custom_languages(self, gateway, engine):
        gateway.extract(png(), OCROptions(languages="eng"))
        assert engine.calls == ["eng"]

    def test_no_text_found(self, gateway, engine):
        """Whitespace-only output is NO_TEXT_FOUND and reports failure"""
        engine.outputs = ["  \n "]
        updates = []
        with pytest.raises(OCRError) as exc:
            gateway.extract(png(), OCROptions(on_progress=updates.append))

        assert exc.value.code == OCRErrorCode.NO_TEXT_FOUND.value
        assert updates[-1].status == "failed"
        assert updates[-1].progress == 0

    def test_engine_crash_is_processing_failed(self, gateway, engine):
        """Unexpected engine exceptions keep the original message in metadata"""
        engine.outputs = [RuntimeError("tesseract segfault")]
        with pytest.raises(OCRError) as exc:
            gateway.extract(png())

        assert exc.value.code == OCRErrorCode.PROCESSING_FAILED.value
        assert exc.value.metadata["original_error"] == "tesseract segfault"

    def test_stub_engine_is_worker_error(self, settings):
        gateway = OCRGateway(engine=StubEngine(), settings=settings)
        with pytest.raises(OCRError) as exc:
            gateway.extract(png())
        assert exc.value.code == OCRErrorCode.WORKER_ERROR.value

    def test_unknown_engine_stage_ignored(self):
        assert map_engine_event(EngineEvent("something else", 0.3)) is None


# =============================================================================
# Batch
# =============================================================================

class TestBatch:
    """Sequential batch processing"""

    def test_failures_recorded_per_slot(self, gateway, engine):
        """A failing file does not stop the batch"""
        engine.outputs = ["หน้าแรก", "   ", "หน้าสาม"]
        images = [png("p1.png"), png("p2.png"), png("p3.png")]

        batch = gateway.batch_extract(images)

        assert [r.success for r in batch.results] == [True, False, True]
        assert batch.results[1].code == OCRErrorCode.NO_TEXT_FOUND.value
        assert batch.results[2].result.text == "หน้าสาม"
        assert batch.summary == {"total": 3, "success": 2, "failed": 1}

    def test_invalid_file_in_batch(self, gateway):
        images = [png("ok.png"), ImageFile(filename="doc.txt", data=b"hello")]
        batch = gateway.batch_extract(images)

        assert batch.summary == {"total": 2, "success": 1, "failed": 1}
        assert batch.results[1].code == OCRErrorCode.UNSUPPORTED_TYPE.value

    def test_batch_progress(self, gateway):
        """Batch progress is reported before each file; file progress carries the index"""
        batch_updates, file_updates = [], []
        gateway.batch_extract(
            [png("a.png"), png("b.png")],
            BatchOptions(on_batch_progress=batch_updates.append, on_file_progress=file_updates.append),
        )

        assert [(b.current, b.total, b.progress, b.current_file) for b in batch_updates] == [
            (1, 2, 50, "a.png"),
            (2, 2, 100, "b.png"),
        ]
        assert {f.file_index for f in file_updates} == {0, 1}
        assert file_updates[-1].filename == "b.png"
        assert file_updates[-1].update.progress == 100
