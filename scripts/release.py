"""
Release phase for a deploy.

Steps, in order:
1. alembic upgrade head against DATABASE_URL
2. seed permissions, the admin user and the standard document types
3. give every company the system folders it is missing
4. flag reviews and acknowledgments that went overdue while the service was down

Every step is idempotent, so running a release twice is harmless.

Usage:
  python scripts/release.py [--skip-migrate] [--skip-sweeps]
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _database_url() -> str:
    db_url = (os.environ.get("DATABASE_URL") or "").strip()
    if not db_url:
        raise RuntimeError("Missing required environment variable DATABASE_URL.")
    env = (os.environ.get("ENV") or "").strip().lower()
    if env in ("prod", "production") and db_url.startswith("sqlite"):
        raise RuntimeError("Refusing to release against sqlite in production. Point DATABASE_URL at Postgres.")
    return db_url


def migrate(db_url: str) -> None:
    from alembic import command
    from alembic.config import Config

    cfg = Config(str(ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(ROOT / "migrations"))
    cfg.set_main_option("sqlalchemy.url", db_url)
    command.upgrade(cfg, "head")


def backfill_company_folders(db_url: str) -> int:
    from sqlalchemy import select

    from app.dcms.modules.document_control.folders import initialize_company_folders
    from app.dcms.modules.document_control.models import Company
    from scripts._db_utils import script_session

    created = 0
    with script_session(db_url) as s:
        for company_id in s.scalars(select(Company.id)):
            created += initialize_company_folders(s, company_id)
    return created


def run_sweeps(db_url: str) -> tuple[int, int]:
    from app.dcms.modules.document_control.distribution import update_overdue_acknowledgments
    from app.dcms.modules.document_control.reviews import mark_overdue_reviews
    from scripts._db_utils import script_session

    with script_session(db_url) as s:
        return mark_overdue_reviews(s), update_overdue_acknowledgments(s)


def run_release(*, skip_migrate: bool = False, skip_sweeps: bool = False) -> None:
    db_url = _database_url()
    print("=== cordocs release start ===", flush=True)

    if skip_migrate:
        print("Skipping migrations.", flush=True)
    else:
        print("Running Alembic migrations...", flush=True)
        migrate(db_url)

    from scripts import init_db

    init_db.seed_only(database_url=db_url)
    print("Seeded permissions, admin and document types.", flush=True)

    print(f"System folders created: {backfill_company_folders(db_url)}", flush=True)

    if not skip_sweeps:
        reviews, acks = run_sweeps(db_url)
        print(f"Overdue sweep: reviews={reviews} acknowledgments={acks}", flush=True)

    print("=== cordocs release done ===", flush=True)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Migrate, seed and sweep before serving traffic")
    parser.add_argument("--skip-migrate", action="store_true")
    parser.add_argument("--skip-sweeps", action="store_true")
    args = parser.parse_args(argv)
    run_release(skip_migrate=args.skip_migrate, skip_sweeps=args.skip_sweeps)


if __name__ == "__main__":
    main()
