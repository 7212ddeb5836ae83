#!/usr/bin/env python3
"""Re-extract text for a company's documents and refresh keywords/cross-references.

Usage:
  python scripts/reindex_documents.py --company <company-id> [--force | --only-empty] [--type SWP --type POL] [--limit 100]
  python scripts/reindex_documents.py --company <company-id> --report

Ctrl-C stops the batch after the current document; completed documents stay committed.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.dcms.config import load_config
from app.dcms.storage import storage_from_config
from app.dcms.modules.document_control.extraction import DefaultTextExtractor
from app.dcms.modules.document_control.reindex import documents_needing_reindex, reindex_documents
from scripts._db_utils import database_url_from_env, script_session

logger = logging.getLogger("reindex_documents")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--company", required=True, help="Company id")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--force", action="store_true", help="Re-index documents that already have text")
    mode.add_argument("--only-empty", action="store_true", help="Only documents with no extracted text")
    parser.add_argument("--type", dest="types", action="append", default=[], help="Document type code (repeatable)")
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--offset", type=int, default=0)
    parser.add_argument("--delay-ms", type=int, default=None, help="Pause between documents")
    parser.add_argument("--report", action="store_true", help="List documents needing re-index and exit")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = load_config()
    db_url = database_url_from_env()

    if args.report:
        with script_session(db_url) as s:
            rows = documents_needing_reindex(s, args.company)
        for r in rows:
            print(f"{r.control_number}\t{r.reason}")
        print(f"{len(rows)} document(s) need re-indexing.")
        return 0

    cancel = threading.Event()

    def _on_sigint(signum, frame):
        logger.warning("Interrupt received; stopping after the current document.")
        cancel.set()

    signal.signal(signal.SIGINT, _on_sigint)

    def _progress(done: int, total: int, result) -> None:
        state = "skipped" if result.skipped else ("ok" if result.success else f"FAILED: {result.error}")
        print(f"[{done}/{total}] {result.control_number} {state}", flush=True)

    delay_ms = args.delay_ms if args.delay_ms is not None else config["DOC_REINDEX_DELAY_MS"]
    with script_session(db_url) as s:
        summary = reindex_documents(
            s,
            args.company,
            extractor=DefaultTextExtractor(),
            storage=storage_from_config(config),
            force=args.force,
            only_empty=args.only_empty,
            document_types=args.types or None,
            limit=args.limit,
            offset=args.offset,
            delay_seconds=delay_ms / 1000.0,
            on_progress=_progress,
            cancel_event=cancel,
        )

    print(
        f"Done: total={summary.total} successful={summary.successful} failed={summary.failed} "
        f"skipped={summary.skipped} cancelled={summary.cancelled} ({summary.duration_ms} ms)"
    )
    return 1 if summary.failed else 0


if __name__ == "__main__":
    sys.exit(main())
