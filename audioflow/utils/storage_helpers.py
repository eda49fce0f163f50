import re
import time
from typing import Any, Optional
from urllib.parse import quote

from audioflow.const import AUDIO_EXTENSION, GCS_PUBLIC_URL

_VIDEO_EXTENSIONS = ("mp4", "mov", "m4v", "mkv", "webm", "avi")


def encode_object_path(object_name: str) -> str:
    """Percent-encode each segment of an object name, keeping the ``/`` separators."""
    return "/".join(quote(segment, safe="") for segment in object_name.split("/"))


def sanitize_object_name(name: Optional[str]) -> str:
    """
    Turn a source file name into a safe ``.mp3`` object name.

    Runs of anything other than letters, digits, dots and underscores become a
    single underscore; a video extension is replaced by ``.mp3``.
    """
    if not name:
        return f"audio_{int(time.time() * 1000)}{AUDIO_EXTENSION}"

    cleaned = re.sub(r"[^a-zA-Z0-9._]+", "_", name.strip())
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    stem, dot, extension = cleaned.rpartition(".")
    if dot and extension.lower() in _VIDEO_EXTENSIONS:
        cleaned = stem.strip("_")
    cleaned = cleaned or f"audio_{int(time.time() * 1000)}"

    if not cleaned.lower().endswith(AUDIO_EXTENSION):
        return f"{cleaned}{AUDIO_EXTENSION}"
    return cleaned


def build_object_name(source_name: Optional[str], prefix: str = "") -> str:
    object_name = sanitize_object_name(source_name)
    prefix = prefix.strip("/")
    return f"{prefix}/{object_name}" if prefix else object_name


def build_gcs_audio_response(bucket: str, object_name: str, metadata: Optional[dict[str, Any]] = None) -> dict:
    metadata = metadata or {}
    size = metadata.get("size")
    return {
        "bucket": bucket,
        "object": object_name,
        "path": object_name,
        "gcsUri": f"gs://{bucket}/{object_name}",
        "publicUrl": f"{GCS_PUBLIC_URL}/{bucket}/{encode_object_path(object_name)}",
        "size": int(size) if size is not None else None,
        "contentType": metadata.get("contentType"),
        "mediaLink": metadata.get("mediaLink"),
        "selfLink": metadata.get("selfLink"),
        "updated": metadata.get("updated"),
        "metadata": metadata.get("metadata"),
    }
