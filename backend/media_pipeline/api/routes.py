from datetime import datetime, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Depends, File, Form, Header, Request, UploadFile
from fastapi.responses import JSONResponse

from media_pipeline.core.config import APP_VERSION
from media_pipeline.core.errors import InvalidInput, JobNotFound
from media_pipeline.core.schemas import (
    EnqueueResponse,
    FilePayload,
    JobPayload,
    JobStatusResponse,
    ProcessRequest,
)
from media_pipeline.services.container import Services
from media_pipeline.services.job_queue import encode_buffer
from media_pipeline.services.media_utils import (
    get_file_extension,
    get_media_type,
    resolve_options,
)

router = APIRouter()

EXPECTED_TYPE = {
    "image": "an image",
    "video": "a video",
    "audio": "an audio file",
}


def get_services(request: Request) -> Services:
    return request.app.state.services


async def _enqueue(
    kind: str,
    file: Optional[UploadFile],
    fields: Dict[str, Optional[str]],
    api_key: Optional[str],
    services: Services,
) -> EnqueueResponse:
    settings = services.settings

    if file is None or not file.filename:
        raise InvalidInput("No file provided")

    mime_type = file.content_type or ""
    if get_media_type(mime_type) != kind:
        raise InvalidInput(f"Invalid file type. Expected {EXPECTED_TYPE[kind]}.")

    data = await file.read()
    if not data:
        raise InvalidInput("Uploaded file is empty")
    if len(data) > settings.max_file_size:
        raise InvalidInput(
            f"File size exceeds maximum allowed size of {settings.max_file_size_mb}MB"
        )

    options = resolve_options(kind, fields, settings)
    payload = JobPayload(
        file=FilePayload(
            buffer=encode_buffer(data),
            name=file.filename,
            type=mime_type,
            size=len(data),
        ),
        options=options,
        extension=get_file_extension(mime_type),
        api_key=api_key or "",
    )

    queued = await services.queue.enqueue(kind, payload)
    return EnqueueResponse(
        job_id=queued.job_id,
        estimated_time=queued.estimated_time,
        message=f"{kind.capitalize()} compression job queued successfully",
    )


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    try:
        queue_ok = await services.store.ping()
    except Exception:
        queue_ok = False
    return {
        "status": "healthy" if queue_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": APP_VERSION,
        "services": {
            "queue": queue_ok,
            "storage": "r2" if services.settings.r2_enabled else "local",
        },
    }


@router.post("/compress/image", response_model=EnqueueResponse)
async def compress_image(
    file: Optional[UploadFile] = File(None),
    qualities: Optional[str] = Form(None),
    thumbnails: Optional[str] = Form(None),
    format: Optional[str] = Form(None),
    stripMetadata: Optional[str] = Form(None),
    x_api_key: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    fields = {
        "qualities": qualities,
        "thumbnails": thumbnails,
        "format": format,
        "stripMetadata": stripMetadata,
    }
    return await _enqueue("image", file, fields, x_api_key, services)


@router.post("/compress/video", response_model=EnqueueResponse)
async def compress_video(
    file: Optional[UploadFile] = File(None),
    qualities: Optional[str] = Form(None),
    thumbnails: Optional[str] = Form(None),
    format: Optional[str] = Form(None),
    x_api_key: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    fields = {
        "qualities": qualities,
        "thumbnails": thumbnails,
        "format": format,
    }
    return await _enqueue("video", file, fields, x_api_key, services)


@router.post("/compress/audio", response_model=EnqueueResponse)
async def compress_audio(
    file: Optional[UploadFile] = File(None),
    bitrates: Optional[str] = Form(None),
    format: Optional[str] = Form(None),
    sampleRates: Optional[str] = Form(None),
    x_api_key: Optional[str] = Header(None),
    services: Services = Depends(get_services),
):
    fields = {
        "bitrates": bitrates,
        "format": format,
        "sampleRates": sampleRates,
    }
    return await _enqueue("audio", file, fields, x_api_key, services)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    job = await services.queue.get_job_status(job_id)
    if job is None:
        raise JobNotFound()
    return JobStatusResponse(
        job_id=job.id,
        status=job.status,
        type=job.type,
        created_at=job.created_at,
        completed_at=job.completed_at,
        progress=job.progress,
        error=job.error,
        results=job.result if job.status == "completed" else None,
    )


@router.post("/jobs/process")
async def process_job(body: ProcessRequest, services: Services = Depends(get_services)):
    if not body.job_id:
        raise InvalidInput("Job ID is required")
    outcome = await services.dispatcher.dispatch(body.job_id)
    return JSONResponse(outcome.to_body(), status_code=outcome.status_code)
