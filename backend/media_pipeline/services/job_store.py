import asyncio
import json
import os
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

import redis.asyncio as redis
from redis.exceptions import WatchError

from media_pipeline.core.config import Settings

RawRecord = Union[str, bytes, Dict[str, Any]]

# Returns the new record, or None to leave the stored one untouched.
Mutation = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]


def load_record(raw: RawRecord) -> Dict[str, Any]:
    """Backends may hand back a JSON string or an already decoded dict."""
    if isinstance(raw, dict):
        return dict(raw)
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


class JobStore:
    """
    Key-value storage for job records.

    `update` is an atomic read-modify-write: the mutation sees the current
    record and its result is written only if nobody changed the record in
    between.
    """

    async def create(self, job_id: str, record: Dict[str, Any]) -> bool:
        raise NotImplementedError

    async def read(self, job_id: str) -> Optional[RawRecord]:
        raise NotImplementedError

    async def update(self, job_id: str, mutate: Mutation) -> Tuple[Optional[Dict[str, Any]], bool]:
        """Returns (current record or None if missing, whether it was written)."""
        raise NotImplementedError

    async def delete(self, job_id: str) -> None:
        raise NotImplementedError

    def iter_ids(self) -> AsyncIterator[str]:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class RedisJobStore(JobStore):
    def __init__(self, client: redis.Redis, prefix: str = "job:", ttl_seconds: Optional[int] = None):
        self.client = client
        self.prefix = prefix
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, url: str, prefix: str = "job:", ttl_seconds: Optional[int] = None) -> "RedisJobStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix, ttl_seconds)

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}{job_id}"

    async def create(self, job_id: str, record: Dict[str, Any]) -> bool:
        created = await self.client.set(
            self._key(job_id), json.dumps(record), nx=True, ex=self.ttl_seconds
        )
        return bool(created)

    async def read(self, job_id: str) -> Optional[RawRecord]:
        return await self.client.get(self._key(job_id))

    async def update(self, job_id: str, mutate: Mutation) -> Tuple[Optional[Dict[str, Any]], bool]:
        key = self._key(job_id)
        async with self.client.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.unwatch()
                        return None, False
                    current = load_record(raw)
                    updated = mutate(dict(current))
                    if updated is None:
                        await pipe.unwatch()
                        return current, False
                    pipe.multi()
                    # Refresh TTL on update
                    pipe.set(key, json.dumps(updated), ex=self.ttl_seconds)
                    await pipe.execute()
                    return updated, True
                except WatchError:
                    continue

    async def delete(self, job_id: str) -> None:
        await self.client.delete(self._key(job_id))

    async def iter_ids(self) -> AsyncIterator[str]:
        async for key in self.client.scan_iter(match=f"{self.prefix}*"):
            yield key[len(self.prefix):]

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    async def close(self) -> None:
        await self.client.aclose()


class MemoryJobStore(JobStore):
    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def create(self, job_id: str, record: Dict[str, Any]) -> bool:
        async with self._lock:
            if job_id in self._records:
                return False
            self._records[job_id] = dict(record)
            return True

    async def read(self, job_id: str) -> Optional[RawRecord]:
        record = self._records.get(job_id)
        return dict(record) if record is not None else None

    async def update(self, job_id: str, mutate: Mutation) -> Tuple[Optional[Dict[str, Any]], bool]:
        async with self._lock:
            current = self._records.get(job_id)
            if current is None:
                return None, False
            updated = mutate(dict(current))
            if updated is None:
                return dict(current), False
            self._records[job_id] = dict(updated)
            return dict(updated), True

    async def delete(self, job_id: str) -> None:
        async with self._lock:
            self._records.pop(job_id, None)

    async def iter_ids(self) -> AsyncIterator[str]:
        for job_id in list(self._records):
            yield job_id


class FileJobStore(JobStore):
    """
    One JSON file per job. Atomic within a single process only. File I/O
    runs in worker threads so the event loop is never blocked on disk.
    """

    def __init__(self, jobs_dir: str):
        self.jobs_dir = jobs_dir
        self._lock = asyncio.Lock()

    def job_path(self, job_id: str) -> str:
        return os.path.join(self.jobs_dir, f"{job_id}.json")

    def _write(self, job_id: str, record: Dict[str, Any]) -> None:
        os.makedirs(self.jobs_dir, exist_ok=True)
        tmp_path = self.job_path(job_id) + ".tmp"
        with open(tmp_path, "w") as f:
            json.dump(record, f)
        os.replace(tmp_path, self.job_path(job_id))

    def _read(self, job_id: str) -> Optional[str]:
        path = self.job_path(job_id)
        if not os.path.exists(path):
            return None
        with open(path, "r") as f:
            return f.read()

    def _create(self, job_id: str, record: Dict[str, Any]) -> bool:
        if os.path.exists(self.job_path(job_id)):
            return False
        self._write(job_id, record)
        return True

    def _remove(self, job_id: str) -> None:
        path = self.job_path(job_id)
        if os.path.exists(path):
            os.remove(path)

    def _list_ids(self) -> List[str]:
        if not os.path.isdir(self.jobs_dir):
            return []
        return [
            name[: -len(".json")]
            for name in sorted(os.listdir(self.jobs_dir))
            if name.endswith(".json")
        ]

    async def create(self, job_id: str, record: Dict[str, Any]) -> bool:
        async with self._lock:
            return await asyncio.to_thread(self._create, job_id, record)

    async def read(self, job_id: str) -> Optional[RawRecord]:
        return await asyncio.to_thread(self._read, job_id)

    async def update(self, job_id: str, mutate: Mutation) -> Tuple[Optional[Dict[str, Any]], bool]:
        async with self._lock:
            raw = await asyncio.to_thread(self._read, job_id)
            if raw is None:
                return None, False
            current = load_record(raw)
            updated = mutate(dict(current))
            if updated is None:
                return current, False
            await asyncio.to_thread(self._write, job_id, updated)
            return updated, True

    async def delete(self, job_id: str) -> None:
        async with self._lock:
            await asyncio.to_thread(self._remove, job_id)

    async def iter_ids(self) -> AsyncIterator[str]:
        for job_id in await asyncio.to_thread(self._list_ids):
            yield job_id


def get_job_store(settings: Settings) -> JobStore:
    if settings.redis_url:
        return RedisJobStore.from_url(
            settings.redis_url,
            prefix=settings.redis_prefix,
            ttl_seconds=settings.job_ttl_seconds,
        )
    return FileJobStore(settings.jobs_dir)
