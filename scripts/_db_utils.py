from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.dcms.db import create_db_engine, make_sessionmaker


@contextmanager
def script_session(db_url: str):
    """Commit-or-rollback session for CLI scripts; uses the app's engine setup (SQLite SAVEPOINT hooks included)."""
    engine = create_db_engine(db_url)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()


def database_url_from_env(default: str = "sqlite:///cordocs.db") -> str:
    import os

    return (os.environ.get("DATABASE_URL") or default).strip()
