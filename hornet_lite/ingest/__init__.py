"""
Ingest Pipeline
===============

Image OCR, text cleanup and chunking.
Produces raw text + chunks with offsets into that text.
"""

from .base import ImageFile, EngineEvent, EngineResult, SUPPORTED_IMAGE_TYPES, detect_mime_type
from .chunker import ChunkOptions, chunk_text, chunk_text_simple, reconstruct_text
from .cleaner import ExtractedPatterns, clean_ocr_text, extract_patterns, validate_national_id
from .ocr import (
    OCREngine, TesseractEngine, StubEngine, OCRNotImplementedError, get_ocr_engine,
    OCRGateway, OCROptions, OCRResult, BatchOptions, BatchResult, BatchItemResult,
)

__all__ = [
    # Base types
    "ImageFile", "EngineEvent", "EngineResult", "SUPPORTED_IMAGE_TYPES", "detect_mime_type",
    # Chunking
    "ChunkOptions", "chunk_text", "chunk_text_simple", "reconstruct_text",
    # Cleanup
    "ExtractedPatterns", "clean_ocr_text", "extract_patterns", "validate_national_id",
    # OCR
    "OCREngine", "TesseractEngine", "StubEngine", "OCRNotImplementedError", "get_ocr_engine",
    "OCRGateway", "OCROptions", "OCRResult", "BatchOptions", "BatchResult", "BatchItemResult",
]
