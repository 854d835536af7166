from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

MediaKind = Literal["image", "video", "audio"]
JobStatus = Literal["queued", "processing", "completed", "failed"]

MEDIA_KINDS = ("image", "video", "audio")
TERMINAL_STATUSES = ("completed", "failed")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------------
# Compression options (fully resolved, defaults applied)
# ----------------------------

class ImageOptions(CamelModel):
    qualities: List[int] = Field(min_length=1)
    thumbnails: List[int] = []
    format: str
    strip_metadata: bool = True


class VideoOptions(CamelModel):
    qualities: List[int] = Field(min_length=1)  # target heights
    thumbnails: int = Field(default=0, ge=0)
    format: str


class AudioOptions(CamelModel):
    bitrates: List[int] = Field(min_length=1)  # kbps
    format: str
    sample_rates: List[int] = []


OPTIONS_MODELS = {
    "image": ImageOptions,
    "video": VideoOptions,
    "audio": AudioOptions,
}


# ----------------------------
# Job record
# ----------------------------

class FilePayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    buffer: str  # base64
    name: str
    type: str
    size: int


class JobPayload(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    file: FilePayload
    options: Dict[str, Any]
    extension: str
    api_key: str = ""


class Job(CamelModel):
    id: str
    type: MediaKind
    status: JobStatus = "queued"
    progress: int = Field(default=0, ge=0, le=100)
    payload: JobPayload
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ----------------------------
# API responses
# ----------------------------

class EnqueueResponse(CamelModel):
    success: bool = True
    job_id: str
    status: JobStatus = "queued"
    estimated_time: int
    message: str


class JobStatusResponse(CamelModel):
    success: bool = True
    job_id: str
    status: JobStatus
    type: MediaKind
    created_at: str
    completed_at: Optional[str] = None
    progress: int
    error: Optional[str] = None
    results: Optional[Dict[str, Any]] = None


class ProcessRequest(CamelModel):
    job_id: Optional[str] = None
