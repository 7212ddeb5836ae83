#!/usr/bin/env python3
"""Daily maintenance: flag overdue reviews and acknowledgments.

Usage:
  python scripts/run_sweeps.py [--company <company-id>]
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from app.dcms.modules.document_control.distribution import update_overdue_acknowledgments
from app.dcms.modules.document_control.reviews import mark_overdue_reviews
from scripts._db_utils import database_url_from_env, script_session


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Flag overdue reviews and acknowledgments")
    parser.add_argument("--company", default=None, help="Limit to one company (default: all)")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    with script_session(database_url_from_env()) as s:
        reviews = mark_overdue_reviews(s, company_id=args.company)
        acks = update_overdue_acknowledgments(s, company_id=args.company)

    print(f"Reviews marked overdue: {reviews}")
    print(f"Acknowledgments marked overdue: {acks}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
