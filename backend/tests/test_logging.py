from __future__ import annotations

import logging
import uuid

from core.logging import JobContextFilter, current_job_id, job_context


def _record() -> logging.LogRecord:
    return logging.LogRecord("services.orchestrator", logging.INFO, __file__, 1, "hello", None, None)


def test_records_outside_workers_have_no_job():
    rec = _record()
    assert JobContextFilter().filter(rec) is True
    assert rec.job_id == "-"


def test_job_context_stamps_and_restores():
    job_id = uuid.uuid4()
    with job_context(job_id):
        assert current_job_id() == str(job_id)
        rec = _record()
        JobContextFilter().filter(rec)
        assert rec.job_id == str(job_id)
    assert current_job_id() == "-"
