import base64
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from media_pipeline.core.config import Settings
from media_pipeline.core.errors import QueueUnavailable
from media_pipeline.core.schemas import TERMINAL_STATUSES, Job, JobPayload
from media_pipeline.services.job_store import JobStore, load_record

Deliver = Callable[[str], Awaitable[None]]

# Allowed status moves. processing -> processing advances progress.
TRANSITIONS = {
    "queued": ("processing",),
    "processing": ("processing", "completed", "failed"),
    "completed": (),
    "failed": (),
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.isoformat()


def parse_job(raw: Any) -> Job:
    return Job.model_validate(load_record(raw))


def encode_buffer(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_buffer(data: str) -> bytes:
    return base64.b64decode(data)


@dataclass
class EnqueueResult:
    job_id: str
    estimated_time: int


class JobQueue:
    """
    Owns every job record. All status changes go through here as atomic
    read-modify-writes, so duplicate or late deliveries cannot move a job
    backwards or out of a terminal state.
    """

    def __init__(self, store: JobStore, deliver: Deliver, settings: Settings):
        self.store = store
        self.deliver = deliver
        self.settings = settings

    async def enqueue(self, kind: str, payload: JobPayload) -> EnqueueResult:
        job_id = str(uuid.uuid4())
        now = _iso(utc_now())
        job = Job(
            id=job_id,
            type=kind,
            status="queued",
            progress=0,
            payload=payload,
            created_at=now,
            updated_at=now,
        )

        try:
            created = await self.store.create(job_id, job.to_record())
        except Exception as exc:
            logging.exception("Job store unavailable while enqueueing %s job", kind)
            raise QueueUnavailable() from exc
        if not created:
            raise QueueUnavailable("Job id collision")

        try:
            await self.deliver(job_id)
        except Exception as exc:
            logging.exception("Delivery transport unavailable for job %s", job_id)
            try:
                await self.store.delete(job_id)
            except Exception:
                logging.exception("Could not remove undeliverable job %s", job_id)
            raise QueueUnavailable() from exc

        logging.info("Job %s enqueued (%s, %d bytes)", job_id, kind, payload.file.size)
        return EnqueueResult(
            job_id=job_id,
            estimated_time=self.settings.estimate_seconds(kind, payload.file.size),
        )

    async def get_job_status(self, job_id: str) -> Optional[Job]:
        raw = await self.store.read(job_id)
        if raw is None:
            return None
        return parse_job(raw)

    async def update_job_status(
        self,
        job_id: str,
        status: str,
        progress: int,
        expected_status: Optional[str] = None,
    ) -> bool:
        """
        Move a job to `status` with at least `progress`.

        Only non-terminal statuses are accepted here; completion and failure go
        through `save_job_result` and `fail_job`. No-op (returns False) when
        the job is missing, already terminal, the transition is not allowed, or
        `expected_status` does not match. Progress never decreases.
        """
        if status in TERMINAL_STATUSES:
            raise ValueError(f"Use save_job_result or fail_job to set {status}")

        def mutate(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            current = record["status"]
            if expected_status is not None and current != expected_status:
                return None
            if status not in TRANSITIONS.get(current, ()):
                return None
            now = _iso(utc_now())
            record["status"] = status
            record["progress"] = max(int(record.get("progress", 0)), min(int(progress), 100))
            record["updatedAt"] = now
            return record

        _, written = await self.store.update(job_id, mutate)
        return written

    async def claim(self, job_id: str, progress: int = 10) -> bool:
        """queued -> processing. Only one caller per job ever gets True."""
        claimed = await self.update_job_status(
            job_id, "processing", progress, expected_status="queued"
        )
        if claimed:
            logging.info("Job %s claimed for processing", job_id)
        return claimed

    async def save_job_result(self, job_id: str, result: Dict[str, Any]) -> bool:
        """
        Mark completed with `result`. Re-saving a completed job replaces the
        result only; a failed or never-started job is left alone.
        """

        def mutate(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if record["status"] not in ("processing", "completed"):
                return None
            now = _iso(utc_now())
            record["status"] = "completed"
            record["progress"] = 100
            record["result"] = result
            record["error"] = None
            record["updatedAt"] = now
            if not record.get("completedAt"):
                record["completedAt"] = now
            return record

        _, written = await self.store.update(job_id, mutate)
        if written:
            logging.info("Job %s completed", job_id)
        else:
            logging.warning("Result for job %s was not saved (job missing or failed)", job_id)
        return written

    async def fail_job(
        self,
        job_id: str,
        message: str,
        stale_before: Optional[datetime] = None,
    ) -> bool:
        """
        Mark a processing job failed with `message`. Never raises: if the
        store write fails the error is logged as critical and False is
        returned.

        With `stale_before`, the job is failed only if its last update is
        older than that instant.
        """

        def mutate(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if "failed" not in TRANSITIONS.get(record["status"], ()):
                return None
            if stale_before is not None and (
                datetime.fromisoformat(record["updatedAt"]) > stale_before
            ):
                return None
            now = _iso(utc_now())
            record["status"] = "failed"
            record["error"] = message
            record["result"] = None
            record["updatedAt"] = now
            record["completedAt"] = now
            return record

        try:
            _, written = await self.store.update(job_id, mutate)
        except Exception:
            logging.critical(
                "Could not record failure for job %s: %s", job_id, message, exc_info=True
            )
            return False
        if written:
            logging.info("Job %s failed: %s", job_id, message)
        return written

    async def pending_job_ids(self) -> AsyncIterator[str]:
        async for job_id in self.store.iter_ids():
            raw = await self.store.read(job_id)
            if raw is not None and load_record(raw).get("status") == "queued":
                yield job_id

    async def reap_stale_jobs(self, max_age_seconds: Optional[int] = None) -> List[str]:
        """Fail jobs stuck in processing with no update for `max_age_seconds`."""
        max_age = max_age_seconds if max_age_seconds is not None else self.settings.stale_job_seconds
        cutoff = utc_now() - timedelta(seconds=max_age)
        reaped: List[str] = []

        async for job_id in self.store.iter_ids():
            raw = await self.store.read(job_id)
            if raw is None:
                continue
            record = load_record(raw)
            if record.get("status") != "processing":
                continue
            updated_at = datetime.fromisoformat(record["updatedAt"])
            if updated_at > cutoff:
                continue
            if await self.fail_job(job_id, "Job timed out", stale_before=cutoff):
                logging.warning("Reaped stale job %s (last update %s)", job_id, record["updatedAt"])
                reaped.append(job_id)

        return reaped

    async def redeliver_stalled_jobs(self, max_age_seconds: Optional[int] = None) -> List[str]:
        """
        Deliver again every job still queued `max_age_seconds` after its last
        update, e.g. because a delivery was lost or could not claim the job.
        The job's `updatedAt` is refreshed so it is not redelivered on every
        sweep.
        """
        max_age = max_age_seconds if max_age_seconds is not None else self.settings.stale_job_seconds
        cutoff = utc_now() - timedelta(seconds=max_age)
        redelivered: List[str] = []

        def touch(record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
            if record["status"] != "queued":
                return None
            if datetime.fromisoformat(record["updatedAt"]) > cutoff:
                return None
            record["updatedAt"] = _iso(utc_now())
            return record

        async for job_id in self.store.iter_ids():
            _, written = await self.store.update(job_id, touch)
            if not written:
                continue
            try:
                await self.deliver(job_id)
            except Exception:
                logging.exception("Could not redeliver stalled job %s", job_id)
                continue
            logging.warning("Redelivered stalled job %s", job_id)
            redelivered.append(job_id)

        return redelivered
