import asyncio
import logging
import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from media_pipeline.core.schemas import OPTIONS_MODELS, AudioOptions, ImageOptions, VideoOptions
from media_pipeline.services.ffmpeg_utils import (
    extract_thumbnail,
    read_media_info,
    thumbnail_timestamps,
    transcode_audio,
    transcode_video,
)
from media_pipeline.services.image_codec import (
    decode_image,
    encode_image,
    read_image_info,
    resize_inside,
)

THUMBNAIL_QUALITY = 80
VIDEO_THUMBNAIL_WIDTH = 320
VIDEO_THUMBNAIL_FORMAT = "jpg"

CODEC_ERRORS = (ValueError, OSError, cv2.error, subprocess.SubprocessError)


@dataclass
class CompressedVariant:
    label: str
    buffer: bytes
    size: int
    format: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Thumbnail:
    label: str
    buffer: bytes
    size: int
    format: str
    dimensions: Dict[str, int] = field(default_factory=dict)


@dataclass
class CompressionResult:
    success: bool
    kind: str
    original: Dict[str, Any] = field(default_factory=dict)
    compressed: List[CompressedVariant] = field(default_factory=list)
    thumbnails: List[Thumbnail] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def failed(cls, kind: str, error: str) -> "CompressionResult":
        return cls(success=False, kind=kind, error=error)


def _image_dimensions(data: bytes) -> Dict[str, int]:
    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
    if image is None:
        return {"width": 0, "height": 0}
    height, width = image.shape[:2]
    return {"width": int(width), "height": int(height)}


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class MediaCompressor:
    """
    Produces one compressed variant per requested quality/bitrate, in the
    order requested, plus thumbnails for images and videos.

    Options must already be complete; defaults are applied at enqueue time.
    Invalid input yields `success=False` rather than an exception.
    """

    async def compress(self, buffer: bytes, kind: str, options: Dict[str, Any]) -> CompressionResult:
        model = OPTIONS_MODELS.get(kind)
        if model is None:
            return CompressionResult.failed(kind, f"Unknown media kind: {kind}")
        parsed = model.model_validate(options)

        handler = {
            "image": self.compress_image,
            "video": self.compress_video,
            "audio": self.compress_audio,
        }[kind]
        return await asyncio.to_thread(handler, buffer, parsed)

    # ----------------------------
    # Image
    # ----------------------------

    def compress_image(self, buffer: bytes, options: ImageOptions) -> CompressionResult:
        image = decode_image(buffer, apply_orientation=options.strip_metadata)
        if image is None:
            return CompressionResult.failed("image", "Input is not a decodable image")

        height, width = image.shape[:2]
        fmt = options.format
        info = read_image_info(buffer)
        exif = None if options.strip_metadata else info.exif

        try:
            compressed: List[CompressedVariant] = []
            for quality in options.qualities:
                data = encode_image(image, fmt, quality, exif=exif)
                compressed.append(CompressedVariant(
                    label=f"{quality}%",
                    buffer=data,
                    size=len(data),
                    format=fmt,
                    metadata={
                        "width": int(width),
                        "height": int(height),
                        "originalSize": len(buffer),
                    },
                ))

            thumbnails: List[Thumbnail] = []
            for bound in options.thumbnails:
                thumb = resize_inside(image, bound)
                data = encode_image(thumb, fmt, THUMBNAIL_QUALITY)
                thumb_height, thumb_width = thumb.shape[:2]
                thumbnails.append(Thumbnail(
                    label=f"{bound}px",
                    buffer=data,
                    size=len(data),
                    format=fmt,
                    dimensions={"width": int(thumb_width), "height": int(thumb_height)},
                ))
        except CODEC_ERRORS as exc:
            logging.warning("Image encode failed: %s", exc)
            return CompressionResult.failed("image", str(exc))

        return CompressionResult(
            success=True,
            kind="image",
            original={
                "width": int(width),
                "height": int(height),
                "format": info.format,
                "size": len(buffer),
            },
            compressed=compressed,
            thumbnails=thumbnails,
        )

    # ----------------------------
    # Video
    # ----------------------------

    def compress_video(self, buffer: bytes, options: VideoOptions) -> CompressionResult:
        with tempfile.TemporaryDirectory() as tmp_dir:
            input_path = os.path.join(tmp_dir, "input")
            with open(input_path, "wb") as f:
                f.write(buffer)

            info = read_media_info(input_path)
            if info is None or not info["has_video"]:
                return CompressionResult.failed("video", "Input is not a readable video")

            fmt = options.format
            try:
                compressed: List[CompressedVariant] = []
                for height in options.qualities:
                    # never scale above the source height
                    target = min(height, info["height"]) if info["height"] else height
                    output_path = os.path.join(tmp_dir, f"{height}p.{fmt}")
                    transcode_video(input_path, output_path, target, fmt)
                    data = _read_bytes(output_path)
                    measured = read_media_info(output_path) or {}
                    compressed.append(CompressedVariant(
                        label=f"{height}p",
                        buffer=data,
                        size=len(data),
                        format=fmt,
                        metadata={
                            "dimensions": {
                                "width": measured.get("width", 0),
                                "height": measured.get("height", target),
                            },
                            "duration": measured.get("duration", info["duration"]),
                        },
                    ))

                thumbnails: List[Thumbnail] = []
                for i, timestamp in enumerate(thumbnail_timestamps(info["duration"], options.thumbnails)):
                    output_path = os.path.join(tmp_dir, f"thumb_{i}.{VIDEO_THUMBNAIL_FORMAT}")
                    extract_thumbnail(input_path, output_path, timestamp, VIDEO_THUMBNAIL_WIDTH)
                    data = _read_bytes(output_path)
                    thumbnails.append(Thumbnail(
                        label=f"{timestamp:g}s",
                        buffer=data,
                        size=len(data),
                        format=VIDEO_THUMBNAIL_FORMAT,
                        dimensions=_image_dimensions(data),
                    ))
            except CODEC_ERRORS as exc:
                logging.warning("Video transcode failed: %s", exc)
                return CompressionResult.failed("video", str(exc))

        return CompressionResult(
            success=True,
            kind="video",
            original={
                "width": info["width"],
                "height": info["height"],
                "duration": info["duration"],
                "format": info["format"],
                "size": len(buffer),
            },
            compressed=compressed,
            thumbnails=thumbnails,
        )

    # ----------------------------
    # Audio
    # ----------------------------

    def compress_audio(self, buffer: bytes, options: AudioOptions) -> CompressionResult:
        with tempfile.TemporaryDirectory() as tmp_dir:
            input_path = os.path.join(tmp_dir, "input")
            with open(input_path, "wb") as f:
                f.write(buffer)

            info = read_media_info(input_path)
            if info is None or not info["has_audio"]:
                return CompressionResult.failed("audio", "Input is not readable audio")

            fmt = options.format
            try:
                compressed: List[CompressedVariant] = []
                for i, bitrate in enumerate(options.bitrates):
                    sample_rate = None
                    if options.sample_rates:
                        sample_rate = options.sample_rates[min(i, len(options.sample_rates) - 1)]
                    output_path = os.path.join(tmp_dir, f"{bitrate}k.{fmt}")
                    transcode_audio(input_path, output_path, bitrate, fmt, sample_rate)
                    data = _read_bytes(output_path)
                    compressed.append(CompressedVariant(
                        label=f"{bitrate}k",
                        buffer=data,
                        size=len(data),
                        format=fmt,
                        metadata={
                            "sampleRate": sample_rate or info["sample_rate"],
                            "bitrate": bitrate,
                        },
                    ))
            except CODEC_ERRORS as exc:
                logging.warning("Audio transcode failed: %s", exc)
                return CompressionResult.failed("audio", str(exc))

        return CompressionResult(
            success=True,
            kind="audio",
            original={
                "duration": info["duration"],
                "sampleRate": info["sample_rate"],
                "format": info["format"],
                "size": len(buffer),
            },
            compressed=compressed,
        )
