"""Venue image storage on the local filesystem."""

import logging
import uuid
from pathlib import Path

from werkzeug.utils import secure_filename

from errors import ValidationError

logger = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 5 * 1024 * 1024
URL_PREFIX = "/uploads"


def save_venue_image(upload, upload_folder: str) -> str:
    """Persist an uploaded image under a random name and return that name."""
    if upload is None or not upload.filename:
        raise ValidationError("No image file provided")

    if not (upload.mimetype or "").startswith("image/"):
        raise ValidationError("Only image files are allowed")

    suffix = Path(secure_filename(upload.filename)).suffix.lower()
    filename = f"{uuid.uuid4()}{suffix}"

    directory = Path(upload_folder)
    directory.mkdir(parents=True, exist_ok=True)
    file_path = directory / filename
    upload.save(file_path)

    size = file_path.stat().st_size
    if size == 0:
        file_path.unlink()
        raise ValidationError("Uploaded file is empty")
    if size > MAX_IMAGE_BYTES:
        file_path.unlink()
        raise ValidationError("File too large. Maximum size is 5MB.")

    logger.info(f"Stored venue image {filename} ({size} bytes)")
    return filename


def delete_venue_image(filename: str, upload_folder: str):
    path = Path(upload_folder) / filename
    if path.exists():
        path.unlink()


def image_url(filename: str) -> str:
    return f"{URL_PREFIX}/{filename}"
