"""
Cloudinary uploads for avatars, song audio and artwork, event and merch images.

``MediaError`` reaches the app exception handler, which answers 503 when
Cloudinary is not configured and 502 when an upload fails.
"""

from typing import Optional

import cloudinary
import cloudinary.uploader
import structlog
from cloudinary.exceptions import Error as CloudinaryError
from fastapi import HTTPException, UploadFile

from settings import Settings, get_settings

logger = structlog.get_logger()

UPLOAD_TIMEOUT = 120
MB = 1024 * 1024


class MediaError(Exception):
    def __init__(self, message: str, configured: bool = True):
        super().__init__(message)
        self.configured = configured


def is_configured(settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    return bool(settings.cloudinary_cloud_name and settings.cloudinary_api_key and settings.cloudinary_api_secret)


def _configure() -> Settings:
    settings = get_settings()
    if not is_configured(settings):
        raise MediaError("File upload service not configured. Please contact administrator.", configured=False)
    cloudinary.config(
        cloud_name=settings.cloudinary_cloud_name,
        api_key=settings.cloudinary_api_key,
        api_secret=settings.cloudinary_api_secret,
        secure=True,
    )
    return settings


def read_upload(upload: UploadFile, kind: str, max_mb: int) -> bytes:
    """Return the file bytes after checking the content type family and size."""
    if not (upload.content_type or "").startswith(f"{kind}/"):
        raise HTTPException(status_code=400, detail=f"Only {kind} files are allowed")
    data = upload.file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > max_mb * MB:
        raise HTTPException(status_code=400, detail=f"File size must be less than {max_mb}MB")
    return data


def _upload(data: bytes, public_id: str, folder: str, resource_type: str) -> dict:
    settings = _configure()
    try:
        result = cloudinary.uploader.upload(
            data,
            public_id=public_id,
            folder=f"{settings.cloudinary_folder}/{folder}",
            resource_type=resource_type,
            overwrite=True,
            timeout=UPLOAD_TIMEOUT,
        )
    except CloudinaryError as exc:
        logger.error("Cloudinary upload failed", public_id=public_id, resource_type=resource_type, error=str(exc))
        raise MediaError(f"Upload failed: {exc}")
    logger.info("Media uploaded", public_id=result.get("public_id"), bytes=result.get("bytes"))
    return result


def upload_image(data: bytes, public_id: str, folder: str) -> str:
    return _upload(data, public_id, folder, "image")["secure_url"]


def upload_audio(data: bytes, public_id: str, folder: str = "songs") -> dict:
    """Upload audio and return ``{"url", "duration"}``; duration is rounded seconds."""
    # Cloudinary files audio under the "video" resource type.
    result = _upload(data, public_id, folder, "video")
    return {"url": result["secure_url"], "duration": int(round(result.get("duration") or 0))}
