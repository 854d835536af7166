import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from media_pipeline.core.errors import (
    CompressionFailure,
    JobAbandoned,
    JobNotFound,
    MediaPipelineError,
    UploadFailure,
)
from media_pipeline.services.compressor import CompressionResult, MediaCompressor
from media_pipeline.services.job_queue import JobQueue, decode_buffer
from media_pipeline.services.media_utils import calculate_compression_ratio, get_content_type
from media_pipeline.services.object_store import ObjectStore, UploadResult

PROGRESS_CLAIMED = 10
PROGRESS_UPLOADED = 90


@dataclass
class UploadItem:
    group: str  # "original" | "compressed" | "thumbnails"
    data: bytes
    path: str
    content_type: str


@dataclass
class UploadedUrls:
    original: str
    compressed: List[str]
    thumbnails: List[str]


# ----------------------------
# Per-kind strategies
# ----------------------------

class KindStrategy:
    kind = ""
    compress_progress = 30
    upload_progress = 60

    async def compress(
        self, compressor: MediaCompressor, buffer: bytes, options: Dict[str, Any]
    ) -> CompressionResult:
        return await compressor.compress(buffer, self.kind, options)

    def upload_plan(
        self,
        store: ObjectStore,
        job_id: str,
        original: bytes,
        extension: str,
        result: CompressionResult,
    ) -> List[UploadItem]:
        """Original first, then variants and thumbnails in generation order."""

        def item(group: str, data: bytes, label: str, ext: str) -> UploadItem:
            filename = store.generate_filename(label, ext)
            return UploadItem(
                group=group,
                data=data,
                path=store.generate_path(self.kind, job_id, filename),
                content_type=get_content_type(ext),
            )

        plan = [item("original", original, "original", extension)]
        for variant in result.compressed:
            plan.append(item("compressed", variant.buffer, f"compressed-{variant.label}", variant.format))
        for thumb in result.thumbnails:
            plan.append(item("thumbnails", thumb.buffer, f"thumbnail-{thumb.label}", thumb.format))
        return plan

    def shape_result(
        self,
        original_size: int,
        result: CompressionResult,
        urls: UploadedUrls,
        compression_ratio: str,
    ) -> Dict[str, Any]:
        raise NotImplementedError


class ImageStrategy(KindStrategy):
    kind = "image"

    def shape_result(self, original_size, result, urls, compression_ratio):
        return {
            "original": {
                "url": urls.original,
                "size": original_size,
                "width": result.original.get("width", 0),
                "height": result.original.get("height", 0),
                "format": result.original.get("format", "unknown"),
            },
            "compressed": [
                {
                    "quality": c.label,
                    "url": url,
                    "size": c.size,
                    "format": c.format,
                    "dimensions": {
                        "width": c.metadata.get("width", 0),
                        "height": c.metadata.get("height", 0),
                    },
                }
                for c, url in zip(result.compressed, urls.compressed)
            ],
            "thumbnails": [
                {
                    "size": t.label,
                    "url": url,
                    "sizeBytes": t.size,
                    "dimensions": t.dimensions,
                }
                for t, url in zip(result.thumbnails, urls.thumbnails)
            ],
            "compressionRatio": compression_ratio,
        }


class VideoStrategy(KindStrategy):
    kind = "video"
    # transcoding dominates, so report less up front
    compress_progress = 20

    def shape_result(self, original_size, result, urls, compression_ratio):
        return {
            "original": {
                "url": urls.original,
                "size": original_size,
                "duration": result.original.get("duration", 0.0),
                "width": result.original.get("width", 0),
                "height": result.original.get("height", 0),
            },
            "compressed": [
                {
                    "quality": c.label,
                    "url": url,
                    "size": c.size,
                    "format": c.format,
                    "dimensions": c.metadata.get("dimensions"),
                }
                for c, url in zip(result.compressed, urls.compressed)
            ],
            "thumbnails": [
                {
                    "timestamp": t.label,
                    "url": url,
                    "sizeBytes": t.size,
                    "dimensions": t.dimensions,
                }
                for t, url in zip(result.thumbnails, urls.thumbnails)
            ],
            "compressionRatio": compression_ratio,
        }


class AudioStrategy(KindStrategy):
    kind = "audio"
    upload_progress = 70

    def shape_result(self, original_size, result, urls, compression_ratio):
        return {
            "original": {
                "url": urls.original,
                "size": original_size,
                "duration": result.original.get("duration", 0.0),
                "sampleRate": result.original.get("sampleRate"),
            },
            "compressed": [
                {
                    "bitrate": c.label,
                    "url": url,
                    "size": c.size,
                    "format": c.format,
                    "sampleRate": c.metadata.get("sampleRate"),
                }
                for c, url in zip(result.compressed, urls.compressed)
            ],
            "compressionRatio": compression_ratio,
        }


DEFAULT_STRATEGIES = {
    "image": ImageStrategy(),
    "video": VideoStrategy(),
    "audio": AudioStrategy(),
}


def public_message(exc: BaseException) -> str:
    if isinstance(exc, MediaPipelineError):
        return exc.message
    return str(exc) or type(exc).__name__


# ----------------------------
# Orchestrator
# ----------------------------

class JobOrchestrator:
    """
    Drives one job: claim -> compress -> upload -> save result.

    Every failure after the claim ends in `fail_job`; nothing propagates to
    the delivery transport.
    """

    def __init__(
        self,
        queue: JobQueue,
        compressor: MediaCompressor,
        object_store: ObjectStore,
        strategies: Optional[Dict[str, KindStrategy]] = None,
    ):
        self.queue = queue
        self.compressor = compressor
        self.object_store = object_store
        self.strategies = strategies or DEFAULT_STRATEGIES

    def supports(self, kind: str) -> bool:
        return kind in self.strategies

    async def process(self, job_id: str) -> bool:
        if not await self.queue.claim(job_id, PROGRESS_CLAIMED):
            logging.info("Job %s is not queued; skipping", job_id)
            return False

        try:
            await self._run(job_id)
            return True
        except JobAbandoned:
            logging.warning("Job %s stopped being processing mid-run; abandoned", job_id)
            return False
        except Exception as exc:
            logging.exception("Job %s failed during processing", job_id)
            await self.queue.fail_job(job_id, public_message(exc))
            return False

    async def _run(self, job_id: str) -> None:
        job = await self.queue.get_job_status(job_id)
        if job is None:
            raise JobNotFound()
        strategy = self.strategies[job.type]

        original = decode_buffer(job.payload.file.buffer)
        options = job.payload.options
        extension = job.payload.extension

        await self._checkpoint(job_id, strategy.compress_progress)
        result = await self._compress(strategy, original, options)

        await self._checkpoint(job_id, strategy.upload_progress)
        plan = strategy.upload_plan(self.object_store, job_id, original, extension, result)
        uploads = await self._upload_all(plan)

        if not await self.queue.update_job_status(job_id, "processing", PROGRESS_UPLOADED):
            await self._discard(uploads)
            raise JobAbandoned()

        urls = UploadedUrls(original="", compressed=[], thumbnails=[])
        for item, upload in zip(plan, uploads):
            if item.group == "original":
                urls.original = upload.url
            else:
                getattr(urls, item.group).append(upload.url)

        first = result.compressed[0] if result.compressed else None
        ratio = calculate_compression_ratio(len(original), first.size if first else None)
        shaped = strategy.shape_result(len(original), result, urls, ratio)

        if not await self.queue.save_job_result(job_id, shaped):
            await self._discard(uploads)
            raise JobAbandoned()

    async def _checkpoint(self, job_id: str, progress: int) -> None:
        """Advance progress, or stop if the job was failed or removed meanwhile."""
        if not await self.queue.update_job_status(job_id, "processing", progress):
            raise JobAbandoned()

    async def _compress(
        self, strategy: KindStrategy, original: bytes, options: Dict[str, Any]
    ) -> CompressionResult:
        try:
            result = await strategy.compress(self.compressor, original, options)
        except Exception as exc:
            raise CompressionFailure() from exc
        if not result.success:
            logging.warning("Compressor rejected %s input: %s", strategy.kind, result.error)
            raise CompressionFailure()
        return result

    async def _upload_all(self, plan: List[UploadItem]) -> List[UploadResult]:
        """
        Upload everything concurrently. Results come back in plan order. On
        any failure the uploads that did succeed are deleted best-effort.
        """
        results = await asyncio.gather(
            *(self.object_store.upload(item.data, item.path, item.content_type) for item in plan),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if not failures:
            return list(results)

        await self._discard([r for r in results if isinstance(r, UploadResult)])
        raise UploadFailure(f"Upload failed: {public_message(failures[0])}") from failures[0]

    async def _discard(self, uploads: List[UploadResult]) -> None:
        for upload in uploads:
            try:
                await self.object_store.delete(upload.path)
            except Exception:
                logging.warning("Could not delete orphaned upload %s", upload.path, exc_info=True)
