"""
Shared configuration for Context Palace core.
"""

from __future__ import annotations

import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("contextpalace")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(env_name: str, default: float) -> float:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _derive_effective_backends(db_backend: str, vector_backend: str) -> tuple[str, str]:
    db_effective = db_backend if db_backend in {"postgres", "sqlite"} else "postgres"
    vector_effective = vector_backend if vector_backend in {"pgvector", "none"} else "none"
    if db_effective == "sqlite" and vector_effective == "pgvector":
        vector_effective = "none"
    return db_effective, vector_effective


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
VECTOR_BACKEND = os.environ.get("VECTOR_BACKEND", "pgvector").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/contextpalace.db")
DATABASE_URL = os.environ.get("DATABASE_URL")
DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
    DB_BACKEND,
    VECTOR_BACKEND,
)

# Database initialization controls
AUTO_CREATE_EXTENSIONS = _get_bool("AUTO_CREATE_EXTENSIONS", True)
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)

# Identity defaults (overridden per request by X-CP-Project / X-CP-Agent)
DEFAULT_PROJECT = os.environ.get("CP_PROJECT", "default").strip() or "default"
DEFAULT_AGENT = os.environ.get("CP_AGENT", "agent").strip() or "agent"
SHARD_ID_PREFIX = os.environ.get("CP_SHARD_ID_PREFIX", "pf").strip() or "pf"

# Hierarchy bounds
TRAVERSAL_DEPTH_CAP = 20
SOFT_DEPTH_LIMIT = _get_int("CP_SOFT_DEPTH_LIMIT", 5)
EXPAND_MAX_DEPTH = 5
ACCESS_LOG_MAX = 50
HOT_DEFAULT_MIN_DEPTH = 1
HOT_DEFAULT_LIMIT = _get_int("CP_HOT_DEFAULT_LIMIT", 20)
CYCLE_AUDIT_INTERVAL_SECONDS = _get_int("CP_CYCLE_AUDIT_INTERVAL_SECONDS", 0)

# Request/input limits
MAX_RESULT_LIMIT = _get_int("CP_MAX_RESULT_LIMIT", 100)
MAX_TEXT_LENGTH = _get_int("CP_MAX_TEXT_LENGTH", 64000)
MAX_TITLE_LENGTH = _get_int("CP_MAX_TITLE_LENGTH", 500)
MAX_SUMMARY_LENGTH = _get_int("CP_MAX_SUMMARY_LENGTH", 2000)
MAX_LIST_ITEMS = _get_int("CP_MAX_LIST_ITEMS", 50)
MAX_LIST_ITEM_LENGTH = _get_int("CP_MAX_LIST_ITEM_LENGTH", 100)
MAX_EMBEDDING_TEXT_LENGTH = _get_int("CP_MAX_EMBEDDING_TEXT_LENGTH", 8000)
TOOL_INVENTORY_RETRY_SECONDS = _get_int("CP_TOOL_INVENTORY_RETRY_SECONDS", 5)

# Embedding settings
OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
EMBEDDING_PROVIDER = os.environ.get("EMBEDDING_PROVIDER", "openai").strip().lower()
EMBEDDING_MODEL = os.environ.get("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIM = _get_int("EMBEDDING_DIM", 1536)

# OpenAI retry/backoff
EMBEDDING_TIMEOUT_SECONDS = _get_float("EMBEDDING_TIMEOUT_SECONDS", 30.0)
EMBEDDING_RETRY_MAX = _get_int("EMBEDDING_RETRY_MAX", 2)
EMBEDDING_RETRY_BACKOFF_SECONDS = _get_float("EMBEDDING_RETRY_BACKOFF_SECONDS", 0.5)
EMBEDDING_RETRY_JITTER_SECONDS = _get_float("EMBEDDING_RETRY_JITTER_SECONDS", 0.25)
EMBEDDING_FAILURE_THRESHOLD = _get_int("EMBEDDING_FAILURE_THRESHOLD", 5)
EMBEDDING_COOLDOWN_SECONDS = _get_int("EMBEDDING_COOLDOWN_SECONDS", 60)


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL, DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if VECTOR_BACKEND not in {"pgvector", "none"}:
        errors.append("VECTOR_BACKEND must be 'pgvector' or 'none'")

    if DB_BACKEND == "sqlite" and VECTOR_BACKEND == "pgvector":
        errors.append("VECTOR_BACKEND=pgvector requires DB_BACKEND=postgres")

    if EMBEDDING_PROVIDER not in {"openai", "none"}:
        errors.append("EMBEDDING_PROVIDER must be 'openai' or 'none'")

    if SOFT_DEPTH_LIMIT < 1 or SOFT_DEPTH_LIMIT > TRAVERSAL_DEPTH_CAP:
        errors.append(f"CP_SOFT_DEPTH_LIMIT must be between 1 and {TRAVERSAL_DEPTH_CAP}")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    DB_BACKEND_EFFECTIVE, VECTOR_BACKEND_EFFECTIVE = _derive_effective_backends(
        DB_BACKEND,
        VECTOR_BACKEND,
    )

    if VECTOR_BACKEND_EFFECTIVE == "pgvector":
        from core.models import PGVECTOR_AVAILABLE

        if not PGVECTOR_AVAILABLE:
            errors.append("pgvector package is required when VECTOR_BACKEND=pgvector")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
