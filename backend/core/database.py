from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, TypeVar

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import Session, sessionmaker


logger = logging.getLogger(__name__)

T = TypeVar("T")


class DatabaseUnavailableError(RuntimeError):
    """Raised when the database is temporarily unreachable (transient connectivity failure)."""


_RETRY_DELAYS_SECONDS: list[float] = [0.2, 0.5, 1.0]


def _iter_exception_messages(exc: BaseException) -> Iterable[str]:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        seen.add(id(cur))
        msg = str(cur)
        if msg:
            yield msg
        cur = getattr(cur, "__cause__", None) or getattr(cur, "__context__", None)


def is_transient_db_connectivity_error(exc: BaseException) -> bool:
    """Heuristically detect transient DB connectivity failures (DNS/timeouts/refused/locked).

    We intentionally do NOT treat constraint/validation/SQL errors as transient.
    """

    joined = "\n".join(m.lower() for m in _iter_exception_messages(exc))

    # DNS resolution failures
    if "getaddrinfo failed" in joined:
        return True
    if "could not translate host name" in joined:
        return True
    if "name or service not known" in joined:
        return True

    # Connection refused / reset / closed
    if "connection refused" in joined:
        return True
    if "actively refused" in joined:
        return True
    if "connection reset" in joined:
        return True
    if "server closed the connection unexpectedly" in joined:
        return True

    # Timeouts
    if "timeout" in joined:
        return True
    if "timed out" in joined:
        return True

    # SQLite writer contention (local/dev deployments)
    if "database is locked" in joined:
        return True

    return False


def normalize_database_url(url: str) -> str:
    url = url.strip()

    # Normalize common Postgres URLs to SQLAlchemy's psycopg2 dialect.
    if url.startswith("postgresql://"):
        url = "postgresql+psycopg2://" + url.removeprefix("postgresql://")
    elif url.startswith("postgres://"):
        url = "postgresql+psycopg2://" + url.removeprefix("postgres://")
    elif url.startswith("postgresql+psycopg://"):
        url = "postgresql+psycopg2://" + url.removeprefix("postgresql+psycopg://")
    return url


def create_db_engine(database_url: str) -> Engine:
    url = normalize_database_url(database_url)
    parsed = make_url(url)

    if parsed.get_backend_name() == "sqlite":
        # Worker threads share the engine; each unit of work opens its own connection.
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 15})

    connect_args: dict[str, object] = {"connect_timeout": 3}

    # Supabase requires SSL. If the URL doesn't specify sslmode, force it for *.supabase.com.
    host = (parsed.host or "").lower()
    if host.endswith("supabase.com") and "sslmode" not in (parsed.query or {}):
        connect_args["sslmode"] = "require"

    # pool_pre_ping helps with stale pooled connections.
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    # Rows handed to callers must stay readable after commit (they are read outside the session).
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create missing tables. Idempotent: safe across restarts."""
    from models.base import Base
    import models  # noqa: F401  (registers every mapper on Base.metadata)

    Base.metadata.create_all(engine)


def run_with_retry(session_factory: sessionmaker[Session], work: Callable[[Session], T]) -> T:
    """Run ``work`` in its own transaction, retrying transient storage failures.

    Domain errors raised by ``work`` propagate unchanged and are never retried.
    """

    last_exc: BaseException | None = None
    for attempt in range(len(_RETRY_DELAYS_SECONDS) + 1):
        db = session_factory()
        try:
            result = work(db)
            db.commit()
            return result
        except (OperationalError, DBAPIError) as exc:
            db.rollback()
            last_exc = exc
            if not is_transient_db_connectivity_error(exc) or attempt >= len(_RETRY_DELAYS_SECONDS):
                if is_transient_db_connectivity_error(exc):
                    break
                raise
            logger.warning("Transient storage error (attempt %s); retrying", attempt + 1, exc_info=exc)
            time.sleep(_RETRY_DELAYS_SECONDS[attempt])
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    raise DatabaseUnavailableError("Database temporarily unavailable") from last_exc


def validate_db_connection(engine: Engine) -> bool:
    """Explicitly validate DB connectivity with a lightweight query."""

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        if is_transient_db_connectivity_error(exc):
            return False
        raise
    return True
