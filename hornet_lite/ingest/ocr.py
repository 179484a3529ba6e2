"""
OCR Gateway
===========

Validates image uploads and drives an OCR engine (Tesseract by default).

- Pre-flight validation: missing file, size ceiling (10MB), image type allow-list
- Engine progress remapped onto a single 0-100 scale
- "OCR ran but found nothing" is a distinct failure (NO_TEXT_FOUND)
- Batch mode is sequential: the engine handles one job at a time
"""

import io
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..config import Settings, get_settings
from ..errors import OCRError, OCRErrorCode
from ..schemas import BatchProgress, FileProgress, OCRStatus, ProgressUpdate
from .base import SUPPORTED_IMAGE_TYPES, EngineEvent, EngineResult, ImageFile

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


class OCRNotImplementedError(OCRError):
    """OCR engine is not available"""
    default_code = OCRErrorCode.WORKER_ERROR.value


# =============================================================================
# Engines
# =============================================================================

class OCREngine(ABC):
    """
    Abstract base class for OCR engines.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """OCR engine name"""
        pass

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Check if OCR engine is available"""
        pass

    @abstractmethod
    def recognize(
        self,
        image_data: bytes,
        languages: str = "tha+eng",
        on_event: Optional[Callable[[EngineEvent], None]] = None
    ) -> EngineResult:
        """
        Recognize text in a single image.

        Args:
            image_data: Image bytes (PNG/JPG/etc.)
            languages: OCR language set, e.g. "tha+eng"
            on_event: Receives engine milestones

        Returns:
            EngineResult with raw text and 0-100 confidence
        """
        pass


class TesseractEngine(OCREngine):
    """
    Tesseract OCR engine.

    Requires tesseract-ocr to be installed on the system.
    For Thai: apt-get install tesseract-ocr-tha
    """

    def __init__(self):
        self._available = None
        self._pytesseract = None

    @property
    def name(self) -> str:
        return "tesseract"

    @property
    def is_available(self) -> bool:
        if self._available is None:
            try:
                import pytesseract
                # Test if tesseract is installed
                pytesseract.get_tesseract_version()
                self._pytesseract = pytesseract
                self._available = True
            except Exception as e:
                logger.debug(f"Tesseract not available: {e}")
                self._available = False
        return self._available

    def _ensure_available(self):
        if not self.is_available:
            raise OCRNotImplementedError(
                "ไม่พบระบบ OCR กรุณาติดตั้ง Tesseract (apt-get install tesseract-ocr tesseract-ocr-tha)"
            )

    def _check_languages(self, languages: str):
        installed = set(self._pytesseract.get_languages(config=""))
        missing = [lang for lang in languages.split("+") if lang not in installed]
        if missing:
            raise OCRNotImplementedError(
                f"ไม่พบข้อมูลภาษาสำหรับ OCR: {', '.join(missing)}",
                metadata={"missing_languages": missing},
            )

    def recognize(
        self,
        image_data: bytes,
        languages: str = "tha+eng",
        on_event: Optional[Callable[[EngineEvent], None]] = None
    ) -> EngineResult:
        emit = on_event or (lambda event: None)

        emit(EngineEvent("loading tesseract core"))
        self._ensure_available()

        emit(EngineEvent("loading language traineddata"))
        self._check_languages(languages)

        from PIL import Image

        emit(EngineEvent("initializing api"))
        image = Image.open(io.BytesIO(image_data))
        width, height = image.size

        emit(EngineEvent("recognizing text", 0.0))
        text = self._pytesseract.image_to_string(
            image,
            lang=languages,
            config="--psm 3"  # Automatic page segmentation
        )
        emit(EngineEvent("recognizing text", 0.5))

        ocr_data = self._pytesseract.image_to_data(
            image,
            lang=languages,
            output_type=self._pytesseract.Output.DICT
        )
        emit(EngineEvent("recognizing text", 1.0))

        return EngineResult(
            text=text,
            confidence=self._mean_confidence(ocr_data),
            metadata={"ocr_engine": self.name, "width": width, "height": height},
        )

    @staticmethod
    def _mean_confidence(ocr_data: Dict[str, List[Any]]) -> float:
        """Average word confidence, ignoring non-word entries (conf -1)"""
        scores = []
        for text, conf in zip(ocr_data.get("text", []), ocr_data.get("conf", [])):
            try:
                value = float(conf)
            except (TypeError, ValueError):
                continue
            if value >= 0 and str(text).strip():
                scores.append(value)
        if not scores:
            return 0.0
        return round(sum(scores) / len(scores), 2)


class StubEngine(OCREngine):
    """
    Stub engine used when no OCR engine is available.
    """

    @property
    def name(self) -> str:
        return "stub"

    @property
    def is_available(self) -> bool:
        return True  # Always "available" but will error

    def recognize(
        self,
        image_data: bytes,
        languages: str = "tha+eng",
        on_event: Optional[Callable[[EngineEvent], None]] = None
    ) -> EngineResult:
        raise OCRNotImplementedError(
            "ยังไม่ได้ตั้งค่าระบบ OCR กรุณาติดตั้ง Tesseract"
        )


def get_ocr_engine() -> OCREngine:
    """
    Get the best available OCR engine.

    OCR_MODE=stub forces the stub engine (useful for demos without Tesseract).
    """
    ocr_mode = os.getenv("OCR_MODE", "auto").lower()

    if ocr_mode != "stub":
        tesseract = TesseractEngine()
        if tesseract.is_available:
            logger.info("🔧 OCR Mode: Tesseract")
            return tesseract

    logger.warning("⚠️ No OCR engine available! Image uploads will fail.")
    return StubEngine()


# =============================================================================
# Options / Results
# =============================================================================

@dataclass
class OCROptions:
    """
    Options for a single extraction.

    Attributes:
        languages: Engine language set (default: settings.ocr_languages)
        on_progress: Receives ProgressUpdate on the 0-100 scale
    """
    languages: Optional[str] = None
    on_progress: Optional[ProgressCallback] = None


@dataclass
class BatchOptions:
    """
    Options for batch extraction.

    Attributes:
        languages: Engine language set
        on_file_progress: Receives FileProgress for the file being processed
        on_batch_progress: Receives BatchProgress before each file starts
    """
    languages: Optional[str] = None
    on_file_progress: Optional[Callable[[FileProgress], None]] = None
    on_batch_progress: Optional[Callable[[BatchProgress], None]] = None


@dataclass
class OCRResult:
    """Normalized OCR output"""
    text: str
    confidence: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchItemResult:
    """Per-file slot in a batch; failures are recorded, not raised"""
    filename: str
    success: bool
    result: Optional[OCRResult] = None
    error: Optional[str] = None
    code: Optional[str] = None


@dataclass
class BatchResult:
    results: List[BatchItemResult] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        success = sum(1 for r in self.results if r.success)
        return {
            "total": len(self.results),
            "success": success,
            "failed": len(self.results) - success,
        }


# Engine stage -> (progress, message)
_STAGE_PROGRESS = {
    "loading tesseract core": (5, "กำลังโหลด OCR Engine..."),
    "initializing tesseract": (10, "กำลังเริ่มต้น OCR..."),
    "loading language traineddata": (20, "กำลังโหลดข้อมูลภาษาไทย..."),
    "initializing api": (30, "กำลังเตรียมระบบ..."),
}

RECOGNITION_START = 30
RECOGNITION_SPAN = 65


def map_engine_event(event: EngineEvent) -> Optional[ProgressUpdate]:
    """Map an engine milestone onto the 0-100 scale (None for unknown stages)"""
    if event.status == "recognizing text":
        fraction = min(max(event.progress, 0.0), 1.0)
        return ProgressUpdate(
            status=OCRStatus.PROCESSING.value,
            progress=round(RECOGNITION_START + fraction * RECOGNITION_SPAN),
            message=f"กำลังอ่านข้อความ... {round(fraction * 100)}%",
        )

    stage = _STAGE_PROGRESS.get(event.status)
    if stage is None:
        return None
    progress, message = stage
    return ProgressUpdate(status=OCRStatus.PROCESSING.value, progress=progress, message=message)


# =============================================================================
# Gateway
# =============================================================================

class OCRGateway:
    """
    Validates input images and runs them through an OCR engine.

    Usage:
        gateway = OCRGateway()
        result = gateway.extract(ImageFile.from_path("scan.png"))
    """

    def __init__(self, engine: Optional[OCREngine] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._engine = engine

    @property
    def engine(self) -> OCREngine:
        if self._engine is None:
            self._engine = get_ocr_engine()
        return self._engine

    def validate(self, image: Optional[ImageFile]) -> None:
        """
        Pre-flight validation. Raises OCRError before any engine work.
        """
        if image is None or not image.data:
            raise OCRError("ไม่ได้เลือกไฟล์", OCRErrorCode.NO_FILE)

        max_size = self.settings.ocr_max_file_size
        if image.size > max_size:
            size_mb = image.size / 1024 / 1024
            raise OCRError(
                f"ไฟล์ใหญ่เกินไป ({size_mb:.2f}MB) สูงสุด {max_size // (1024 * 1024)}MB",
                OCRErrorCode.FILE_TOO_LARGE,
                metadata={"file_size": image.size, "max_size": max_size},
            )

        if image.mime_type not in SUPPORTED_IMAGE_TYPES:
            raise OCRError(
                f"ไม่รองรับไฟล์ประเภท {image.mime_type} กรุณาใช้ JPG, PNG หรือ GIF",
                OCRErrorCode.UNSUPPORTED_TYPE,
                metadata={"mime_type": image.mime_type},
            )

    def extract(self, image: ImageFile, options: Optional[OCROptions] = None) -> OCRResult:
        """
        Extract text from a single image.

        Args:
            image: ImageFile payload
            options: OCROptions

        Returns:
            OCRResult (text, confidence 0-100, metadata)

        Raises:
            OCRError: NO_FILE / FILE_TOO_LARGE / UNSUPPORTED_TYPE (before the engine runs),
                NO_TEXT_FOUND, WORKER_ERROR, PROCESSING_FAILED
        """
        options = options or OCROptions()
        languages = options.languages or self.settings.ocr_languages
        report = options.on_progress or (lambda update: None)

        self.validate(image)

        logger.info(
            f"OCR processing started: filename={image.filename} "
            f"size={image.size} type={image.mime_type}"
        )
        report(ProgressUpdate(
            status=OCRStatus.PROCESSING.value,
            progress=0,
            message="เริ่มต้นการอ่านเอกสาร...",
        ))

        def on_event(event: EngineEvent):
            update = map_engine_event(event)
            if update is not None:
                report(update)

        try:
            started = time.perf_counter()
            raw = self.engine.recognize(image.data, languages, on_event)
            processing_time_ms = int((time.perf_counter() - started) * 1000)

            text = (raw.text or "").strip()
            if not text:
                logger.warning(f"OCR completed but no text found: filename={image.filename}")
                raise OCRError(
                    "ไม่พบข้อความในภาพ กรุณาตรวจสอบภาพอีกครั้ง",
                    OCRErrorCode.NO_TEXT_FOUND,
                )

            logger.info(
                f"OCR processing completed: filename={image.filename} chars={len(text)} "
                f"confidence={raw.confidence} time_ms={processing_time_ms}"
            )
            report(ProgressUpdate(
                status=OCRStatus.COMPLETED.value,
                progress=100,
                message="อ่านเอกสารเสร็จสมบูรณ์",
            ))

            return OCRResult(
                text=text,
                confidence=raw.confidence,
                metadata={
                    "filename": image.filename,
                    "file_size": image.size,
                    "processing_time_ms": processing_time_ms,
                    "languages": languages,
                    "word_count": len(text.split()),
                    "line_count": len(text.split("\n")),
                    **raw.metadata,
                },
            )

        except OCRError as e:
            if e.code != OCRErrorCode.NO_TEXT_FOUND.value:
                logger.error(f"OCR engine error: filename={image.filename} code={e.code}")
            self._report_failure(report)
            raise

        except Exception as e:
            logger.error(f"OCR processing failed: filename={image.filename} error={e}")
            self._report_failure(report)
            raise OCRError(
                f"ไม่สามารถอ่านเอกสารได้: {e}",
                OCRErrorCode.PROCESSING_FAILED,
                metadata={"original_error": str(e)},
            ) from e

    @staticmethod
    def _report_failure(report: ProgressCallback):
        report(ProgressUpdate(
            status=OCRStatus.FAILED.value,
            progress=0,
            message="เกิดข้อผิดพลาดในการอ่านเอกสาร",
        ))

    def batch_extract(
        self,
        images: Sequence[ImageFile],
        options: Optional[BatchOptions] = None
    ) -> BatchResult:
        """
        Process images one after another.

        A failing file is recorded in its own slot; the batch continues.
        """
        options = options or BatchOptions()
        batch = BatchResult()
        total = len(images)

        for index, image in enumerate(images):
            filename = image.filename if image is not None else ""

            if options.on_batch_progress:
                options.on_batch_progress(BatchProgress(
                    current=index + 1,
                    total=total,
                    progress=round((index + 1) / total * 100),
                    current_file=filename,
                ))

            def on_progress(update: ProgressUpdate, _index=index, _filename=filename):
                if options.on_file_progress:
                    options.on_file_progress(FileProgress(
                        file_index=_index,
                        filename=_filename,
                        update=update,
                    ))

            try:
                result = self.extract(image, OCROptions(languages=options.languages, on_progress=on_progress))
                batch.results.append(BatchItemResult(filename=filename, success=True, result=result))
            except OCRError as e:
                batch.results.append(BatchItemResult(
                    filename=filename,
                    success=False,
                    error=e.message,
                    code=e.code,
                ))

        summary = batch.summary
        logger.info(
            f"Batch OCR completed: total={summary['total']} "
            f"success={summary['success']} failed={summary['failed']}"
        )
        return batch
