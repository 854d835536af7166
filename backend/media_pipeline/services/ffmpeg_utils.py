import json
import subprocess
from typing import Any, Dict, List, Optional

VIDEO_CODECS = {
    "mp4": ["-c:v", "libx264", "-preset", "veryfast", "-crf", "28", "-c:a", "aac", "-b:a", "128k",
            "-movflags", "+faststart"],
    "webm": ["-c:v", "libvpx-vp9", "-crf", "34", "-b:v", "0", "-c:a", "libopus", "-b:a", "96k"],
}

AUDIO_CODECS = {
    "mp3": "libmp3lame",
    "aac": "aac",
    "opus": "libopus",
    "ogg": "libvorbis",
}


def _run(cmd: List[str]) -> None:
    subprocess.run(
        cmd,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        check=True,
    )


def read_media_info(path: str) -> Optional[Dict[str, Any]]:
    """
    Read stream info of a media file with ffprobe.

    Returns:
        {"duration", "width", "height", "sample_rate", "format", "has_video", "has_audio"}
        or None when ffprobe cannot read the file.
    """
    cmd = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration,format_name:stream=codec_type,width,height,sample_rate",
        "-of", "json",
        path,
    ]
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=True,
        )
        info = json.loads(result.stdout or "{}")
    except (subprocess.SubprocessError, FileNotFoundError, ValueError):
        return None

    streams = info.get("streams") or []
    fmt = info.get("format") or {}
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if video is None and audio is None:
        return None

    try:
        duration = float(fmt.get("duration", 0.0))
    except (TypeError, ValueError):
        duration = 0.0

    return {
        "duration": round(duration, 3) if duration > 0 else 0.0,
        "width": int(video.get("width", 0)) if video else 0,
        "height": int(video.get("height", 0)) if video else 0,
        "sample_rate": int(audio.get("sample_rate", 0)) if audio else 0,
        "format": (fmt.get("format_name") or "unknown").split(",")[0],
        "has_video": video is not None,
        "has_audio": audio is not None,
    }


def transcode_video(input_path: str, output_path: str, height: int, fmt: str) -> None:
    # -2 keeps the width even, which libx264 requires
    cmd = [
        "ffmpeg",
        "-y",
        "-i", input_path,
        "-vf", f"scale=-2:{int(height)}",
        *VIDEO_CODECS[fmt],
        output_path,
    ]
    _run(cmd)


def transcode_audio(
    input_path: str,
    output_path: str,
    bitrate_kbps: int,
    fmt: str,
    sample_rate: Optional[int] = None,
) -> None:
    cmd = [
        "ffmpeg",
        "-y",
        "-i", input_path,
        "-vn",
        "-c:a", AUDIO_CODECS[fmt],
        "-b:a", f"{int(bitrate_kbps)}k",
    ]
    if sample_rate:
        cmd += ["-ar", str(int(sample_rate))]
    cmd.append(output_path)
    _run(cmd)


def extract_thumbnail(input_path: str, output_path: str, timestamp: float, max_width: int) -> None:
    cmd = [
        "ffmpeg",
        "-y",
        "-ss", f"{timestamp:.3f}",
        "-i", input_path,
        "-frames:v", "1",
        "-vf", f"scale='min({int(max_width)},iw)':-2",
        output_path,
    ]
    _run(cmd)


def thumbnail_timestamps(duration: float, count: int) -> List[float]:
    """`count` instants evenly spaced inside the clip, excluding both ends."""
    if count <= 0:
        return []
    if duration <= 0:
        # Unknown length: only the first frame is safe
        return [0.0]
    step = duration / (count + 1)
    # very short clips can round to the same instant
    return list(dict.fromkeys(round(step * (i + 1), 2) for i in range(count)))
