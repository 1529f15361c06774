from __future__ import annotations

import contextvars
import logging
import logging.handlers
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from core.config import BACKEND_DIR


# Generation job currently handled by this thread ("-" outside workers).
_current_job: contextvars.ContextVar[str] = contextvars.ContextVar("timetable_job", default="-")


class JobContextFilter(logging.Filter):
    """Stamps every record with the generation job the emitting worker is running."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.job_id = _current_job.get()
        return True


@contextmanager
def job_context(job_id: object) -> Iterator[None]:
    token = _current_job.set(str(job_id))
    try:
        yield
    finally:
        _current_job.reset(token)


def current_job_id() -> str:
    return _current_job.get()


def setup_logging(*, environment: str) -> None:
    """Configure application logging.

    Development logs to the console at DEBUG. Production adds a rotating
    file under ``backend/logs`` and logs at INFO. Records carry the worker
    thread and the generation job id so interleaved solver runs can be told
    apart.

    Calling it again is a no-op once the root logger has handlers.
    """

    root = logging.getLogger()
    if root.handlers:
        return

    env = (environment or "development").lower().strip()
    level = logging.INFO if env == "production" else logging.DEBUG

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s [%(threadName)s job=%(job_id)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
    job_filter = JobContextFilter()

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    console.addFilter(job_filter)
    handlers.append(console)

    if env == "production":
        logs_dir = Path(BACKEND_DIR) / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)

        solver_log = logging.handlers.RotatingFileHandler(
            logs_dir / "timetable.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        solver_log.setLevel(level)
        solver_log.setFormatter(formatter)
        solver_log.addFilter(job_filter)
        handlers.append(solver_log)

    logging.basicConfig(level=level, handlers=handlers)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
