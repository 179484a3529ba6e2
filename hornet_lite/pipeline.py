"""
Case Pipeline
=============

Composition of the components:

    image -> OCR Gateway -> cleanup -> Text Chunker -> Case Store
    case documents -> Context Assembler -> Extraction Client -> answer

OCR is CPU-bound and blocking, so it runs in a worker thread.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Tuple

from .case_store import CaseStore
from .errors import CaseErrorCode, CaseStoreError
from .ingest.base import ImageFile
from .ingest.chunker import ChunkOptions, chunk_text
from .ingest.cleaner import clean_ocr_text
from .ingest.ocr import BatchOptions, BatchResult, OCRGateway, OCROptions, OCRResult
from .llm_client import ExtractionClient, ExtractionOptions, ExtractionResult
from .models import UploadedDocument
from .retrieval import assemble_context

logger = logging.getLogger(__name__)


def _require_case(store: CaseStore, case_id: str):
    case = store.get(case_id)
    if case is None:
        raise CaseStoreError(
            "ไม่พบคดีที่ระบุ",
            CaseErrorCode.CASE_NOT_FOUND,
            metadata={"case_id": case_id},
        )
    return case


def _store_result(
    store: CaseStore,
    case_id: str,
    filename: str,
    result: OCRResult,
    chunk_options: Optional[ChunkOptions],
    clean: bool
) -> UploadedDocument:
    text = clean_ocr_text(result.text) if clean else result.text
    document = store.add_document(
        case_id,
        filename=filename,
        raw_text=text,
        chunks=chunk_text(text, chunk_options),
        confidence=result.confidence,
        metadata=result.metadata,
    )
    if document is None:
        # Case deleted while OCR was running
        raise CaseStoreError("ไม่พบคดีที่ระบุ", CaseErrorCode.CASE_NOT_FOUND, metadata={"case_id": case_id})
    return document


async def ingest_image(
    store: CaseStore,
    case_id: str,
    image: ImageFile,
    gateway: OCRGateway,
    chunk_options: Optional[ChunkOptions] = None,
    ocr_options: Optional[OCROptions] = None,
    clean: bool = True
) -> UploadedDocument:
    """
    OCR one image and attach it to a case as a chunked document.

    Args:
        store: Case store
        case_id: Owning case (checked before any OCR work)
        image: Image payload
        gateway: OCR gateway
        chunk_options: Chunking options (default 500 / 50 / preserve sentences)
        ocr_options: Languages and progress callback
        clean: Apply clean_ocr_text before chunking

    Returns:
        The stored UploadedDocument

    Raises:
        CaseStoreError: CASE_NOT_FOUND
        OCRError: validation or engine failure
    """
    _require_case(store, case_id)

    result = await asyncio.to_thread(gateway.extract, image, ocr_options)
    document = _store_result(store, case_id, image.filename, result, chunk_options, clean)

    logger.info(
        f"Document ingested: case_id={case_id} document_id={document.id} "
        f"chars={len(document.raw_text)} chunks={len(document.chunks)} "
        f"confidence={document.confidence:.1f}"
    )
    return document


async def ingest_images(
    store: CaseStore,
    case_id: str,
    images: Sequence[ImageFile],
    gateway: OCRGateway,
    chunk_options: Optional[ChunkOptions] = None,
    batch_options: Optional[BatchOptions] = None,
    clean: bool = True
) -> Tuple[BatchResult, List[UploadedDocument]]:
    """
    OCR a batch of images; successful slots become documents, failed slots
    are reported in the BatchResult.
    """
    _require_case(store, case_id)

    batch = await asyncio.to_thread(gateway.batch_extract, list(images), batch_options)
    documents = [
        _store_result(store, case_id, item.filename, item.result, chunk_options, clean)
        for item in batch.results
        if item.success and item.result is not None
    ]

    logger.info(f"Batch ingested: case_id={case_id} summary={batch.summary}")
    return batch, documents


async def extract_for_case(
    store: CaseStore,
    case_id: str,
    instruction: str,
    client: ExtractionClient,
    api_key: Optional[str] = None,
    options: Optional[ExtractionOptions] = None
) -> ExtractionResult:
    """Assemble a case's document context and run one extraction over it"""
    case = _require_case(store, case_id)
    max_chars = (options.max_context_chars if options else None) or client.settings.context_max_chars
    context = assemble_context(case.uploaded_documents, max_chars=max_chars)
    return await client.extract(context, instruction, api_key, options)


def rechunk_document(document: UploadedDocument, options: Optional[ChunkOptions] = None) -> UploadedDocument:
    """Regenerate a document's chunks from its raw text"""
    return document.model_copy(update={"chunks": chunk_text(document.raw_text, options)})
