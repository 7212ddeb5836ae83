import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Settings:
    secret_key: str
    env: str
    database_url: str

    storage_backend: str
    storage_root: str
    s3_endpoint: str
    s3_region: str
    s3_bucket: str
    s3_access_key_id: str
    s3_secret_access_key: str

    # document control
    review_window_days: int
    ack_deadline_days: int
    auto_link_min_confidence: int
    retention_years: int
    reindex_delay_ms: int
    reindex_batch_size: int


def _getenv(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer (got {raw!r}).") from None


def load_settings() -> Settings:
    return Settings(
        secret_key=_getenv("SECRET_KEY", "change-me"),
        env=_getenv("ENV", "development"),
        database_url=_getenv("DATABASE_URL", "sqlite:///cordocs.db"),
        storage_backend=_getenv("STORAGE_BACKEND", "local"),
        storage_root=_getenv("STORAGE_ROOT", ""),
        s3_endpoint=_getenv("S3_ENDPOINT", ""),
        s3_region=_getenv("S3_REGION", "nyc3"),
        s3_bucket=_getenv("S3_BUCKET", ""),
        s3_access_key_id=_getenv("S3_ACCESS_KEY_ID", ""),
        s3_secret_access_key=_getenv("S3_SECRET_ACCESS_KEY", ""),
        review_window_days=_getenv_int("DOC_REVIEW_WINDOW_DAYS", 30),
        ack_deadline_days=_getenv_int("DOC_ACK_DEADLINE_DAYS", 14),
        auto_link_min_confidence=_getenv_int("DOC_AUTO_LINK_MIN_CONFIDENCE", 50),
        retention_years=_getenv_int("DOC_RETENTION_YEARS", 7),
        reindex_delay_ms=_getenv_int("DOC_REINDEX_DELAY_MS", 100),
        reindex_batch_size=_getenv_int("DOC_REINDEX_BATCH_SIZE", 50),
    )


def load_config() -> dict:
    s = load_settings()
    is_production = s.env in ("prod", "production")
    return {
        "SECRET_KEY": s.secret_key,
        "ENV": s.env,
        "DATABASE_URL": s.database_url,
        "STORAGE_BACKEND": s.storage_backend,
        "STORAGE_ROOT": s.storage_root,
        "S3_ENDPOINT": s.s3_endpoint,
        "S3_REGION": s.s3_region,
        "S3_BUCKET": s.s3_bucket,
        "S3_ACCESS_KEY_ID": s.s3_access_key_id,
        "S3_SECRET_ACCESS_KEY": s.s3_secret_access_key,
        "DOC_REVIEW_WINDOW_DAYS": s.review_window_days,
        "DOC_ACK_DEADLINE_DAYS": s.ack_deadline_days,
        "DOC_AUTO_LINK_MIN_CONFIDENCE": s.auto_link_min_confidence,
        "DOC_RETENTION_YEARS": s.retention_years,
        "DOC_REINDEX_DELAY_MS": s.reindex_delay_ms,
        "DOC_REINDEX_BATCH_SIZE": s.reindex_batch_size,
        # security defaults
        "SESSION_COOKIE_HTTPONLY": True,
        "SESSION_COOKIE_SAMESITE": "Lax",
        "SESSION_COOKIE_SECURE": is_production,  # Require HTTPS in production
        # file upload limits (25MB)
        "MAX_CONTENT_LENGTH": 25 * 1024 * 1024,
    }
