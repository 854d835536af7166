import io
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

JPEG_FORMATS = ("jpeg", "jpg")

# Pillow format names for the output formats we write
PIL_FORMATS = {
    "webp": "WEBP",
    "jpeg": "JPEG",
    "jpg": "JPEG",
    "png": "PNG",
}


@dataclass
class ImageInfo:
    format: str
    exif: Optional[Image.Exif] = None


def read_image_info(data: bytes) -> ImageInfo:
    """
    Container format and EXIF block of encoded image bytes, read by Pillow
    without decoding pixels. Unreadable input gives format "unknown".
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "unknown").lower()
            exif = img.getexif()
    except (UnidentifiedImageError, OSError, ValueError):
        return ImageInfo(format="unknown")
    return ImageInfo(format=fmt, exif=exif if len(exif) else None)


def decode_image(data: bytes, apply_orientation: bool = True) -> Optional[np.ndarray]:
    """
    Decode encoded image bytes. Returns None when the bytes are not an image.

    Images with an alpha channel are kept as BGRA; everything else is decoded
    as 8-bit BGR with EXIF orientation applied unless `apply_orientation` is
    False.
    """
    if not data:
        return None
    array = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(array, cv2.IMREAD_UNCHANGED)
    if image is None:
        return None

    if image.ndim == 3 and image.shape[2] == 4:
        if image.dtype != np.uint8:
            image = (image / 257).astype(np.uint8)
        return image

    flags = cv2.IMREAD_COLOR
    if not apply_orientation:
        flags |= cv2.IMREAD_IGNORE_ORIENTATION
    return cv2.imdecode(array, flags)


def _png_level(quality: int) -> int:
    # quality 100 -> no compression, quality 1 -> maximum
    return min(9, max(0, round((100 - int(quality)) * 9 / 100)))


def _to_pil(image: np.ndarray, fmt: str) -> Image.Image:
    if image.ndim == 2:
        return Image.fromarray(image, "L")
    if image.shape[2] == 4:
        if fmt in JPEG_FORMATS:
            return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGRA2RGB), "RGB")
        return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA), "RGBA")
    return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB), "RGB")


def _encode_with_exif(image: np.ndarray, fmt: str, quality: int, exif: Image.Exif) -> bytes:
    options = {"exif": exif}
    if fmt == "png":
        options["compress_level"] = _png_level(quality)
    else:
        options["quality"] = int(quality)

    buffer = io.BytesIO()
    _to_pil(image, fmt).save(buffer, format=PIL_FORMATS[fmt], **options)
    return buffer.getvalue()


def encode_image(image: np.ndarray, fmt: str, quality: int, exif: Optional[Image.Exif] = None) -> bytes:
    """
    Encode pixels as `fmt`. OpenCV writes no metadata, so output carries
    EXIF only when `exif` is given, in which case Pillow does the encode.
    """
    fmt = fmt.lower()
    if fmt not in PIL_FORMATS:
        raise ValueError(f"Unsupported image format: {fmt}")
    if exif is not None:
        return _encode_with_exif(image, fmt, quality, exif)

    if fmt == "webp":
        ext, params = ".webp", [cv2.IMWRITE_WEBP_QUALITY, int(quality)]
    elif fmt in JPEG_FORMATS:
        ext, params = ".jpg", [cv2.IMWRITE_JPEG_QUALITY, int(quality)]
        if image.ndim == 3 and image.shape[2] == 4:
            image = cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
    else:
        ext, params = ".png", [cv2.IMWRITE_PNG_COMPRESSION, _png_level(quality)]

    ok, encoded = cv2.imencode(ext, image, params)
    if not ok:
        raise ValueError(f"Could not encode image as {fmt}")
    return encoded.tobytes()


def fit_inside(width: int, height: int, bound: int) -> Tuple[int, int]:
    """Largest size within a `bound` x `bound` box, never larger than the source."""
    if width <= 0 or height <= 0:
        return 0, 0
    scale = min(bound / width, bound / height, 1.0)
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def resize_inside(image: np.ndarray, bound: int) -> np.ndarray:
    height, width = image.shape[:2]
    new_width, new_height = fit_inside(width, height, bound)
    if (new_width, new_height) == (width, height):
        return image
    return cv2.resize(image, (new_width, new_height), interpolation=cv2.INTER_AREA)
