import os
import sys

sys.path.append(
    os.path.abspath(
        os.path.join(os.path.dirname(__file__), "..", "..")
    )
)

import pytest

from media_pipeline.core.errors import DispatchUnavailable
from media_pipeline.services.dispatcher import PROCESSED, DispatchResult
from media_pipeline.workers import tasks


def _dispatch_returning(outcome, seen):
    async def dispatch(job_id):
        seen.append(job_id)
        return outcome

    return dispatch


def test_unstarted_job_is_retried(monkeypatch):
    seen = []
    monkeypatch.setattr(
        tasks,
        "_dispatch",
        _dispatch_returning(DispatchResult(False, 503, "Job store unavailable"), seen),
    )

    with pytest.raises(DispatchUnavailable) as exc_info:
        tasks.process_job("job-1")

    assert seen == ["job-1"]
    assert exc_info.value.status_code == 503
    assert "Job store unavailable" in str(exc_info.value)


def test_processed_job_is_acknowledged(monkeypatch):
    monkeypatch.setattr(tasks, "_dispatch", _dispatch_returning(PROCESSED, []))

    assert tasks.process_job("job-1") == {"success": True, "message": "Job processed successfully"}


def test_missing_job_is_not_retried(monkeypatch):
    outcome = DispatchResult(False, 404, "Job not found")
    monkeypatch.setattr(tasks, "_dispatch", _dispatch_returning(outcome, []))

    assert tasks.process_job("gone") == {"success": False, "error": "Job not found"}


def test_process_job_retry_policy():
    assert tasks.process_job.max_retries == tasks.MAX_RETRIES
    assert tasks.process_job.default_retry_delay == tasks.RETRY_DELAY_SECONDS
