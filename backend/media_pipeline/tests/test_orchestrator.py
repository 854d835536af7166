import os
import sys

sys.path.append(
    os.path.abspath(
        os.path.join(os.path.dirname(__file__), "..", "..")
    )
)

import pytest

from media_pipeline.services.compressor import CompressionResult
from media_pipeline.services.job_queue import JobQueue
from media_pipeline.services.orchestrator import JobOrchestrator
from media_pipeline.tests.fakes import (
    Deliveries,
    FakeCompressor,
    FakeObjectStore,
    RecordingStore,
    make_payload,
    make_result,
    make_settings,
)


async def _setup(kind, result=None, error=None, object_store=None, data=b"x" * 1000):
    store = RecordingStore()
    queue = JobQueue(store, Deliveries(), make_settings())
    compressor = FakeCompressor(result=result, error=error)
    object_store = object_store or FakeObjectStore()
    orchestrator = JobOrchestrator(queue, compressor, object_store)
    job_id = (await queue.enqueue(kind, make_payload(kind, data=data))).job_id
    return job_id, queue, store, compressor, object_store, orchestrator


@pytest.mark.asyncio
async def test_image_job_completes_with_variants_and_thumbnails():
    result = make_result("image", ["80%", "60%"], ["200px"], sizes=[400, 250])
    job_id, queue, store, _, object_store, orchestrator = await _setup("image", result=result)

    assert await orchestrator.process(job_id) is True

    job = await queue.get_job_status(job_id)
    assert job.status == "completed"
    assert job.progress == 100
    assert job.completed_at is not None
    assert job.error is None

    results = job.result
    assert [c["quality"] for c in results["compressed"]] == ["80%", "60%"]
    assert [t["size"] for t in results["thumbnails"]] == ["200px"]
    assert results["original"]["size"] == 1000
    assert results["original"]["url"] == f"https://cdn.test/image/{job_id}/original.jpg"
    assert results["compressed"][0]["url"] == f"https://cdn.test/image/{job_id}/compressed-80%.webp"
    assert results["thumbnails"][0]["url"] == f"https://cdn.test/image/{job_id}/thumbnail-200px.webp"
    assert results["thumbnails"][0]["dimensions"] == {"width": 200, "height": 150}
    assert results["compressionRatio"] == "60.00%"

    assert set(object_store.objects) == {
        f"image/{job_id}/original.jpg",
        f"image/{job_id}/compressed-80%.webp",
        f"image/{job_id}/compressed-60%.webp",
        f"image/{job_id}/thumbnail-200px.webp",
    }
    assert object_store.objects[f"image/{job_id}/original.jpg"][1] == "image/jpeg"


@pytest.mark.asyncio
async def test_progress_checkpoints_are_monotonic():
    result = make_result("video", ["720p", "480p"], ["4s", "8s"])
    job_id, _, store, _, _, orchestrator = await _setup("video", result=result)

    await orchestrator.process(job_id)

    history = store.history[job_id]
    assert history == [
        ("queued", 0),
        ("processing", 10),
        ("processing", 20),
        ("processing", 60),
        ("processing", 90),
        ("completed", 100),
    ]


@pytest.mark.asyncio
async def test_audio_checkpoints_and_result_shape():
    result = make_result("audio", ["192k", "128k"], sizes=[600, 400])
    job_id, queue, store, _, _, orchestrator = await _setup("audio", result=result)

    await orchestrator.process(job_id)

    assert [p for _, p in store.history[job_id]] == [0, 10, 30, 70, 90, 100]
    results = (await queue.get_job_status(job_id)).result
    assert "thumbnails" not in results
    assert results["compressed"][0] == {
        "bitrate": "192k",
        "url": f"https://cdn.test/audio/{job_id}/compressed-192k.mp3",
        "size": 600,
        "format": "mp3",
        "sampleRate": 44100,
    }
    assert results["original"]["duration"] == 12.5
    assert results["compressionRatio"] == "40.00%"


@pytest.mark.asyncio
async def test_result_order_survives_out_of_order_uploads():
    # later variants finish first
    delays = {"compressed-A": 0.05, "compressed-B": 0.02, "compressed-C": 0.0}

    def delay(path):
        return next((d for key, d in delays.items() if key in path), 0.03)

    object_store = FakeObjectStore(delay=delay)
    result = make_result("image", ["A", "B", "C"], sizes=[300, 200, 100])
    job_id, queue, _, _, _, orchestrator = await _setup("image", result=result, object_store=object_store)

    await orchestrator.process(job_id)

    finished = [p.rsplit("/", 1)[1] for p in object_store.completion_order]
    assert finished.index("compressed-C.webp") < finished.index("compressed-A.webp")

    compressed = (await queue.get_job_status(job_id)).result["compressed"]
    assert [c["quality"] for c in compressed] == ["A", "B", "C"]
    assert [c["size"] for c in compressed] == [300, 200, 100]
    assert [c["url"].rsplit("/", 1)[1] for c in compressed] == [
        "compressed-A.webp",
        "compressed-B.webp",
        "compressed-C.webp",
    ]


@pytest.mark.asyncio
async def test_compressor_reporting_failure_fails_job_without_uploads():
    result = CompressionResult.failed("image", "Input is not a decodable image")
    job_id, queue, _, _, object_store, orchestrator = await _setup("image", result=result)

    assert await orchestrator.process(job_id) is False

    job = await queue.get_job_status(job_id)
    assert job.status == "failed"
    assert job.error == "Compression failed"
    assert job.result is None
    assert object_store.objects == {}


@pytest.mark.asyncio
async def test_compressor_exception_fails_job_with_stable_message():
    job_id, queue, _, _, object_store, orchestrator = await _setup(
        "video", error=RuntimeError("ffmpeg exploded")
    )

    await orchestrator.process(job_id)

    job = await queue.get_job_status(job_id)
    assert job.status == "failed"
    assert job.error == "Compression failed"
    assert object_store.objects == {}


@pytest.mark.asyncio
async def test_upload_failure_fails_job_and_cleans_up_siblings():
    object_store = FakeObjectStore(fail_on="compressed-60%")
    result = make_result("image", ["80%", "60%"], ["200px"])
    job_id, queue, _, _, _, orchestrator = await _setup("image", result=result, object_store=object_store)

    await orchestrator.process(job_id)

    job = await queue.get_job_status(job_id)
    assert job.status == "failed"
    assert job.error.startswith("Upload failed")
    assert job.result is None
    assert object_store.objects == {}
    assert len(object_store.deleted) == 3


@pytest.mark.asyncio
async def test_zero_variants_gives_zero_ratio():
    result = make_result("audio", [])
    job_id, queue, _, _, _, orchestrator = await _setup("audio", result=result)

    await orchestrator.process(job_id)

    job = await queue.get_job_status(job_id)
    assert job.status == "completed"
    assert job.result["compressed"] == []
    assert job.result["compressionRatio"] == "0%"


@pytest.mark.asyncio
async def test_process_is_a_noop_unless_queued():
    result = make_result("image", ["80%"])
    job_id, queue, _, compressor, object_store, orchestrator = await _setup("image", result=result)

    assert await orchestrator.process(job_id) is True
    uploads = dict(object_store.objects)

    assert await orchestrator.process(job_id) is False
    assert len(compressor.calls) == 1
    assert object_store.objects == uploads
    assert (await queue.get_job_status(job_id)).status == "completed"


@pytest.mark.asyncio
async def test_options_reach_compressor_unchanged():
    result = make_result("image", ["80%", "60%"], ["200px"])
    job_id, _, _, compressor, _, orchestrator = await _setup("image", result=result)

    await orchestrator.process(job_id)

    assert compressor.calls == [
        ("image", {"qualities": [80, 60], "thumbnails": [200], "format": "webp", "stripMetadata": True})
    ]


class ReapingCompressor(FakeCompressor):
    """Lets the stale job reaper fire while compression is running."""

    queue = None

    async def compress(self, buffer, kind, options):
        await self.queue.reap_stale_jobs(max_age_seconds=-1)
        return await super().compress(buffer, kind, options)


class ReapingObjectStore(FakeObjectStore):
    """Lets the stale job reaper fire during the first upload."""

    queue = None

    async def upload(self, data, path, content_type=None):
        if not self.completion_order:
            await self.queue.reap_stale_jobs(max_age_seconds=-1)
        return await super().upload(data, path, content_type)


@pytest.mark.asyncio
async def test_job_reaped_during_compression_is_not_uploaded():
    store = RecordingStore()
    queue = JobQueue(store, Deliveries(), make_settings())
    compressor = ReapingCompressor(result=make_result("image", ["80%"], ["200px"]))
    compressor.queue = queue
    object_store = FakeObjectStore()
    orchestrator = JobOrchestrator(queue, compressor, object_store)
    job_id = (await queue.enqueue("image", make_payload("image"))).job_id

    assert await orchestrator.process(job_id) is False

    job = await queue.get_job_status(job_id)
    assert job.status == "failed"
    assert job.error == "Job timed out"
    assert object_store.objects == {}
    assert store.history[job_id][-1] == ("failed", 30)


@pytest.mark.asyncio
async def test_job_reaped_during_upload_discards_uploads():
    object_store = ReapingObjectStore()
    result = make_result("image", ["80%", "60%"], ["200px"])
    job_id, queue, _, _, _, orchestrator = await _setup("image", result=result, object_store=object_store)
    object_store.queue = queue

    assert await orchestrator.process(job_id) is False

    job = await queue.get_job_status(job_id)
    assert job.status == "failed"
    assert job.error == "Job timed out"
    assert job.result is None
    assert object_store.objects == {}
    assert sorted(object_store.deleted) == sorted(object_store.completion_order)
    assert len(object_store.deleted) == 4
