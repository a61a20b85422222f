"""
Image upload boundary

Accepts jpeg/jpg/png/webp files only. The extension and the declared MIME type
must both be on the allow-list, and each file must fit under the configured
ceiling (5 MB by default). Accepted files are written to the upload directory
under a generated name and addressed as /uploads/<name>.
"""

import os
import random
import time
from pathlib import Path
from typing import List, Optional

from fastapi import UploadFile
from loguru import logger

from config import Settings, get_settings

ALLOWED_EXTENSIONS = (".jpeg", ".jpg", ".png", ".webp")
ALLOWED_MIME_TYPES = ("image/jpeg", "image/jpg", "image/png", "image/webp")
MAX_IMAGES_PER_PRODUCT = 3
URL_PREFIX = "/uploads/"


class UploadRejected(ValueError):
    """Raised when an upload is not an allowed image or is too large."""


def is_allowed_image(filename: str, content_type: Optional[str]) -> bool:
    ext = os.path.splitext(filename or "")[1].lower()
    return ext in ALLOWED_EXTENSIONS and (content_type or "").lower() in ALLOWED_MIME_TYPES


def unique_filename(original: str) -> str:
    ext = os.path.splitext(original or "")[1].lower()
    safe_ext = ext if ext in ALLOWED_EXTENSIONS else ""
    return f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}{safe_ext}"


def validate_image(file: UploadFile, data: bytes, settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    if not is_allowed_image(file.filename, file.content_type):
        raise UploadRejected("Only image files are allowed (jpeg, jpg, png, webp)")
    if len(data) > settings.max_upload_bytes:
        raise UploadRejected(f"File too large, the limit is {settings.max_upload_mb}MB")


def save_images(files: List[UploadFile], settings: Optional[Settings] = None) -> List[str]:
    """Validate every file first, then store them and return their URLs."""
    settings = settings or get_settings()
    if len(files) > MAX_IMAGES_PER_PRODUCT:
        raise UploadRejected(f"Maximum {MAX_IMAGES_PER_PRODUCT} images allowed")

    payloads = []
    for f in files:
        data = f.file.read(settings.max_upload_bytes + 1)
        validate_image(f, data, settings)
        payloads.append((f.filename, data))

    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    urls = []
    for filename, data in payloads:
        name = unique_filename(filename)
        (upload_dir / name).write_bytes(data)
        urls.append(URL_PREFIX + name)
    logger.info("Stored {} image(s) in {}", len(urls), upload_dir)
    return urls


def delete_images(urls: List[str], settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    upload_dir = Path(settings.upload_dir)
    for url in urls:
        if not url.startswith(URL_PREFIX):
            continue
        path = upload_dir / Path(url[len(URL_PREFIX):]).name
        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning("Image {} already removed", path)
