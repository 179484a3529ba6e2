#!/usr/bin/env python3
"""
Command-line entry point for Hornet Lite.

Usage:
    hornet seed
    hornet create --title "ฉ้อโกง"
    hornet add-person 7070/2568 --type defendant --first-name สมชาย
    hornet ocr 7070/2568 scan1.png scan2.jpg
    hornet extract 7070/2568 --preset summarize
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from .case_store import CaseStore, demo_cases
from .config import Settings, get_settings
from .errors import HornetError
from .ingest.base import ImageFile
from .ingest.chunker import ChunkOptions
from .ingest.ocr import BatchOptions, OCRGateway
from .llm_client import PREDEFINED_PROMPTS, ExtractionClient, get_api_key, set_api_key
from .models import Case
from .pipeline import extract_for_case, ingest_images
from .retrieval import context_stats
from .schemas import CASE_STATUS_LABELS, CaseStatus, PersonType
from .storage import LocalStorage

logger = logging.getLogger(__name__)


def _print_json(data: Any):
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def _case_summary(case: Case) -> dict:
    return {
        "id": case.id,
        "caseNumber": case.case_number,
        "title": case.title,
        "status": case.status.value,
        "statusLabel": CASE_STATUS_LABELS[case.status],
        "people": len(case.people),
        "documents": len(case.uploaded_documents),
        "updatedAt": case.updated_at.isoformat(),
    }


def _resolve_case(store: CaseStore, ref: str) -> Case:
    """Look a case up by id or case number"""
    case = store.get(ref) or store.get_by_case_number(ref)
    if case is None:
        raise HornetError(f"ไม่พบคดี {ref}", "CASE_NOT_FOUND")
    return case


# =============================================================================
# Commands
# =============================================================================

def cmd_seed(store: CaseStore, args, settings: Settings) -> int:
    if store.cases and not args.force:
        print("มีข้อมูลคดีอยู่แล้ว (ใช้ --force เพื่อแทนที่)", file=sys.stderr)
        return 1
    store.reset(demo_cases())
    _print_json([_case_summary(c) for c in store.cases])
    return 0


def cmd_list(store: CaseStore, args, settings: Settings) -> int:
    _print_json([_case_summary(c) for c in store.filter_by_status(args.status)])
    return 0


def cmd_create(store: CaseStore, args, settings: Settings) -> int:
    fields = {"description": args.description or ""}
    if args.title:
        fields["title"] = args.title
    if args.case_number:
        fields["case_number"] = args.case_number
    _print_json(_case_summary(store.create(**fields)))
    return 0


def cmd_show(store: CaseStore, args, settings: Settings) -> int:
    case = _resolve_case(store, args.case)
    data = case.to_json_dict()
    if not args.full:
        for doc in data["uploadedDocuments"]:
            doc.pop("chunks", None)
            doc["rawText"] = doc["rawText"][:200]
    _print_json(data)
    return 0


def cmd_add_person(store: CaseStore, args, settings: Settings) -> int:
    case = _resolve_case(store, args.case)
    person = store.add_person(
        case.id,
        type=args.type,
        prefix=args.prefix or "",
        first_name=args.first_name or "",
        last_name=args.last_name or "",
        gender=args.gender,
        phone=args.phone or "",
    )
    _print_json(person.to_json_dict())
    return 0


def cmd_transition(store: CaseStore, args, settings: Settings) -> int:
    case = _resolve_case(store, args.case)
    result = store.transition_status(case.id, args.status)
    if not result.success:
        print(f"❌ {result.error}", file=sys.stderr)
        return 1
    _print_json(_case_summary(result.case))
    return 0


def cmd_search(store: CaseStore, args, settings: Settings) -> int:
    _print_json([_case_summary(c) for c in store.search(args.query)])
    return 0


def cmd_stats(store: CaseStore, args, settings: Settings) -> int:
    stats = store.statistics()
    _print_json({
        "totalCases": stats.total_cases,
        "byStatus": stats.by_status,
        "totalPeople": stats.total_people,
        "totalDocuments": stats.total_documents,
    })
    return 0


def cmd_ocr(store: CaseStore, args, settings: Settings) -> int:
    case = _resolve_case(store, args.case)
    images = [ImageFile.from_path(p) for p in args.files]

    def on_file(progress):
        print(
            f"[{progress.file_index + 1}/{len(images)}] {progress.filename}: "
            f"{progress.update.progress}% {progress.update.message}",
            file=sys.stderr,
        )

    batch, documents = asyncio.run(ingest_images(
        store,
        case.id,
        images,
        OCRGateway(settings=settings),
        chunk_options=ChunkOptions(
            chunk_size=args.chunk_size or settings.chunk_size,
            overlap=settings.chunk_overlap if args.overlap is None else args.overlap,
            preserve_sentences=settings.chunk_preserve_sentences,
        ),
        batch_options=BatchOptions(languages=args.lang, on_file_progress=on_file),
        clean=not args.no_clean,
    ))

    for item in batch.results:
        if not item.success:
            print(f"❌ {item.filename}: {item.error} ({item.code})", file=sys.stderr)

    _print_json({
        "summary": batch.summary,
        "documents": [
            {"id": d.id, "filename": d.filename, "chars": len(d.raw_text),
             "chunks": len(d.chunks), "confidence": d.confidence}
            for d in documents
        ],
    })
    return 0 if batch.summary["failed"] == 0 else 1


def cmd_extract(store: CaseStore, args, settings: Settings) -> int:
    case = _resolve_case(store, args.case)
    instruction = PREDEFINED_PROMPTS[args.preset] if args.preset else args.instruction

    stats = context_stats(case.uploaded_documents, settings.context_max_chars)
    logger.info(
        f"Extracting: case={case.case_number} documents={stats.document_count} "
        f"chars={stats.total_chars} truncated={stats.truncated}"
    )

    api_key = get_api_key(args.storage, settings)

    async def run():
        async with ExtractionClient(settings) as client:
            return await extract_for_case(store, case.id, instruction, client, api_key)

    result = asyncio.run(run())
    print(result.text)
    return 0


def cmd_set_key(store: CaseStore, args, settings: Settings) -> int:
    ok = set_api_key(args.storage, args.key)
    if ok and args.key and args.validate:
        async def check():
            async with ExtractionClient(settings) as client:
                return await client.validate_api_key(args.key)

        validation = asyncio.run(check())
        if not validation.valid:
            print(f"❌ {validation.error}", file=sys.stderr)
            return 1
        print("✅ API Key ใช้งานได้")
    return 0 if ok else 1


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="hornet", description="Hornet Lite case documentation tool")
    parser.add_argument("--storage-path", help="Local storage directory (default: STORAGE_PATH)")
    parser.add_argument("--log-level", "-l", help="Logging level (default: LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("seed", help="Load the demonstration cases")
    p.add_argument("--force", action="store_true", help="Replace existing cases")
    p.set_defaults(func=cmd_seed)

    p = sub.add_parser("list", help="List cases")
    p.add_argument("--status", choices=["all"] + [s.value for s in CaseStatus], default="all")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("create", help="Create a draft case")
    p.add_argument("--title")
    p.add_argument("--description")
    p.add_argument("--case-number")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("show", help="Show one case (id or case number)")
    p.add_argument("case")
    p.add_argument("--full", action="store_true", help="Include raw text and chunks")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("add-person", help="Add a person to a case")
    p.add_argument("case")
    p.add_argument("--type", choices=[t.value for t in PersonType], default=PersonType.RELATED.value)
    p.add_argument("--prefix")
    p.add_argument("--first-name")
    p.add_argument("--last-name")
    p.add_argument("--gender", choices=["male", "female", "other"])
    p.add_argument("--phone")
    p.set_defaults(func=cmd_add_person)

    p = sub.add_parser("transition", help="Change case status")
    p.add_argument("case")
    p.add_argument("status", choices=[s.value for s in CaseStatus])
    p.set_defaults(func=cmd_transition)

    p = sub.add_parser("search", help="Search cases")
    p.add_argument("query")
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("stats", help="Case statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("ocr", help="OCR images into a case")
    p.add_argument("case")
    p.add_argument("files", nargs="+", type=Path)
    p.add_argument("--lang", help="Tesseract languages (default: OCR_LANGUAGES)")
    p.add_argument("--chunk-size", type=int)
    p.add_argument("--overlap", type=int)
    p.add_argument("--no-clean", action="store_true", help="Keep raw OCR text")
    p.set_defaults(func=cmd_ocr)

    p = sub.add_parser("extract", help="Ask the language model about a case")
    p.add_argument("case")
    group = p.add_mutually_exclusive_group(required=True)
    group.add_argument("instruction", nargs="?")
    group.add_argument("--preset", choices=sorted(PREDEFINED_PROMPTS))
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("set-key", help="Save the Gemini API key (empty string removes it)")
    p.add_argument("key")
    p.add_argument("--validate", action="store_true", help="Send a test request")
    p.set_defaults(func=cmd_set_key)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, (args.log_level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    storage = LocalStorage(args.storage_path or settings.storage_path, settings=settings)
    args.storage = storage
    store = CaseStore(storage, sync_tabs=False)
    try:
        return args.func(store, args, settings)
    except HornetError as e:
        print(f"❌ {e.message} ({e.code})", file=sys.stderr)
        return 1
    finally:
        store.close()
        storage.close()


if __name__ == "__main__":
    sys.exit(main())
