"""
Context Assembly for Case-RAG
=============================

Builds the retrieval context handed to the language model:
all of a case's document texts, in document order, joined by a separator
and capped at a fixed character budget.

Truncation keeps the prefix and drops the suffix, so the same document
set always yields the same context.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

from .models import UploadedDocument

logger = logging.getLogger(__name__)


MAX_CONTEXT_CHARS = 30000
DOCUMENT_SEPARATOR = "\n\n---\n\n"
TRUNCATION_MARKER = "\n\n[... เนื้อหาถูกตัดทอนเนื่องจากยาวเกินไป ...]"


@dataclass
class ContextStats:
    """Size summary of an assembled context"""
    document_count: int
    total_chars: int
    truncated: bool


def truncate_context(text: str, max_chars: int = MAX_CONTEXT_CHARS) -> str:
    """Keep the first max_chars characters and append the truncation marker"""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def join_documents(documents: Sequence[UploadedDocument], separator: str = DOCUMENT_SEPARATOR) -> str:
    return separator.join(doc.raw_text for doc in documents)


def assemble_context(
    documents: Sequence[UploadedDocument],
    max_chars: int = MAX_CONTEXT_CHARS,
    separator: str = DOCUMENT_SEPARATOR
) -> str:
    """
    Assemble a case's documents into a single bounded context.

    Args:
        documents: The case's uploaded documents, in list order
        max_chars: Character budget before truncation
        separator: Inserted between documents

    Returns:
        Context text; ends with TRUNCATION_MARKER when the budget was exceeded
    """
    context = join_documents(documents, separator)
    bounded = truncate_context(context, max_chars)

    if len(context) > max_chars:
        logger.info(
            f"Context truncated: documents={len(documents)} "
            f"chars={len(context)} limit={max_chars}"
        )

    return bounded


def context_stats(
    documents: Sequence[UploadedDocument],
    max_chars: int = MAX_CONTEXT_CHARS,
    separator: str = DOCUMENT_SEPARATOR
) -> ContextStats:
    total = len(join_documents(documents, separator))
    return ContextStats(
        document_count=len(documents),
        total_chars=total,
        truncated=total > max_chars,
    )
