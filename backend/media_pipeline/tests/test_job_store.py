import os
import sys

sys.path.append(
    os.path.abspath(
        os.path.join(os.path.dirname(__file__), "..", "..")
    )
)

import asyncio
import json
import threading

import pytest

from media_pipeline.services.job_store import FileJobStore, MemoryJobStore, get_job_store, load_record
from media_pipeline.tests.fakes import make_settings


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryJobStore()
    return FileJobStore(str(tmp_path / "jobs"))


@pytest.mark.asyncio
async def test_create_refuses_existing_id(store):
    assert await store.create("a", {"status": "queued", "progress": 0})
    assert await store.create("a", {"status": "failed", "progress": 0}) is False
    assert load_record(await store.read("a"))["status"] == "queued"


@pytest.mark.asyncio
async def test_update_applies_mutation(store):
    await store.create("a", {"status": "queued", "progress": 0})

    def start(record):
        record["status"] = "processing"
        record["progress"] = 10
        return record

    record, written = await store.update("a", start)

    assert written is True
    assert record["status"] == "processing"
    assert load_record(await store.read("a"))["progress"] == 10


@pytest.mark.asyncio
async def test_update_returning_none_writes_nothing(store):
    await store.create("a", {"status": "completed", "progress": 100})

    record, written = await store.update("a", lambda record: None)

    assert written is False
    assert record["status"] == "completed"


@pytest.mark.asyncio
async def test_update_missing_job(store):
    assert await store.update("missing", lambda record: record) == (None, False)
    assert await store.read("missing") is None


@pytest.mark.asyncio
async def test_delete_and_iter_ids(store):
    for job_id in ("a", "b", "c"):
        await store.create(job_id, {"status": "queued"})
    await store.delete("b")
    await store.delete("never-existed")

    assert sorted([job_id async for job_id in store.iter_ids()]) == ["a", "c"]
    assert await store.ping() is True


@pytest.mark.asyncio
async def test_file_store_writes_plain_json(tmp_path):
    store = FileJobStore(str(tmp_path / "jobs"))
    await store.create("a", {"status": "queued", "progress": 0})

    with open(store.job_path("a")) as f:
        assert json.load(f) == {"status": "queued", "progress": 0}
    assert not os.path.exists(store.job_path("a") + ".tmp")

@pytest.mark.asyncio
async def test_file_store_concurrent_updates_all_persist(tmp_path):
    store = FileJobStore(str(tmp_path / "jobs"))
    await store.create("a", {"status": "processing", "progress": 0})

    def bump(record):
        record["progress"] += 1
        return record

    await asyncio.gather(*(store.update("a", bump) for _ in range(20)))

    assert load_record(await store.read("a"))["progress"] == 20


@pytest.mark.asyncio
async def test_file_store_disk_access_runs_off_event_loop(tmp_path):
    store = FileJobStore(str(tmp_path / "jobs"))
    loop_thread = threading.get_ident()
    seen = []
    original_read, original_write = store._read, store._write

    def read(job_id):
        seen.append(threading.get_ident())
        return original_read(job_id)

    def write(job_id, record):
        seen.append(threading.get_ident())
        original_write(job_id, record)

    store._read = read
    store._write = write

    await store.create("a", {"status": "queued", "progress": 0})
    await store.update("a", lambda record: dict(record, progress=5))
    await store.read("a")

    assert len(seen) == 4
    assert loop_thread not in seen


def test_load_record_accepts_all_encodings():
    record = {"id": "a", "status": "queued"}
    assert load_record(record) == record
    assert load_record(json.dumps(record)) == record
    assert load_record(json.dumps(record).encode()) == record


def test_store_selection_follows_settings(tmp_path):
    assert isinstance(get_job_store(make_settings(tmp_path)), FileJobStore)
