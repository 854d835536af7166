import json
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from media_pipeline.core.config import ALLOWED_FORMATS, Settings
from media_pipeline.core.errors import InvalidInput
from media_pipeline.core.schemas import OPTIONS_MODELS

MIME_TO_EXTENSION = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/avif": "avif",
    "image/gif": "gif",
    "video/mp4": "mp4",
    "video/webm": "webm",
    "video/quicktime": "mov",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/aac": "aac",
    "audio/opus": "opus",
    "audio/ogg": "ogg",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
}

EXTENSION_TO_CONTENT_TYPE = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "avif": "image/avif",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
    "mp3": "audio/mpeg",
    "aac": "audio/aac",
    "opus": "audio/opus",
    "ogg": "audio/ogg",
    "wav": "audio/wav",
}


def get_media_type(mime_type: str) -> str:
    if mime_type.startswith("image/"):
        return "image"
    if mime_type.startswith("video/"):
        return "video"
    if mime_type.startswith("audio/"):
        return "audio"
    return "unknown"


def get_file_extension(mime_type: str) -> str:
    return MIME_TO_EXTENSION.get(mime_type, "bin")


def get_content_type(extension: str) -> str:
    return EXTENSION_TO_CONTENT_TYPE.get(extension.lower(), "application/octet-stream")


def calculate_compression_ratio(original_size: int, compressed_size: Optional[int]) -> str:
    """
    Percentage saved by a compressed variant, e.g. "60.00%".
    "0%" when there is no variant or the original is empty.
    """
    if compressed_size is None or original_size <= 0:
        return "0%"
    ratio = (original_size - compressed_size) / original_size * 100
    return f"{ratio:.2f}%"


# ----------------------------
# Form field parsing
# ----------------------------

def _parse_int_list(name: str, raw: Optional[str]) -> Optional[List[int]]:
    if raw is None or raw == "":
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        raise InvalidInput(f"Invalid {name}: expected a JSON array of integers")
    if not isinstance(value, list) or not all(
        isinstance(v, int) and not isinstance(v, bool) and v > 0 for v in value
    ):
        raise InvalidInput(f"Invalid {name}: expected a JSON array of positive integers")
    return value


def _parse_count(name: str, raw: Optional[str]) -> Optional[int]:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise InvalidInput(f"Invalid {name}: expected an integer")
    if value < 0:
        raise InvalidInput(f"Invalid {name}: must not be negative")
    return value


def _parse_flag(raw: Optional[str]) -> Optional[bool]:
    if raw is None or raw == "":
        return None
    return raw.strip().lower() != "false"


def resolve_options(kind: str, fields: Dict[str, Optional[str]], settings: Settings) -> Dict[str, Any]:
    """
    Turn raw multipart option fields into a complete options dict for `kind`.

    Omitted fields take the configured defaults; present-but-malformed fields
    raise InvalidInput.
    """
    options = settings.defaults_for(kind)

    if kind == "image":
        parsed = {
            "qualities": _parse_int_list("qualities", fields.get("qualities")),
            "thumbnails": _parse_int_list("thumbnails", fields.get("thumbnails")),
            "strip_metadata": _parse_flag(fields.get("stripMetadata")),
        }
    elif kind == "video":
        parsed = {
            "qualities": _parse_int_list("qualities", fields.get("qualities")),
            "thumbnails": _parse_count("thumbnails", fields.get("thumbnails")),
        }
    elif kind == "audio":
        parsed = {
            "bitrates": _parse_int_list("bitrates", fields.get("bitrates")),
            "sample_rates": _parse_int_list("sampleRates", fields.get("sampleRates")),
        }
    else:
        raise InvalidInput(f"Unknown media kind: {kind}")

    fmt = fields.get("format")
    if fmt:
        parsed["format"] = fmt.strip().lower()

    options.update({k: v for k, v in parsed.items() if v is not None})

    if options["format"] not in ALLOWED_FORMATS[kind]:
        allowed = ", ".join(ALLOWED_FORMATS[kind])
        raise InvalidInput(f"Invalid format: expected one of {allowed}")

    if kind == "image" and not all(1 <= q <= 100 for q in options["qualities"]):
        raise InvalidInput("Invalid qualities: values must be between 1 and 100")

    try:
        model = OPTIONS_MODELS[kind].model_validate(options)
    except ValidationError as exc:
        raise InvalidInput(f"Invalid options: {exc.errors()[0]['msg']}")
    return model.model_dump(by_alias=True)
