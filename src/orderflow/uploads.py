"""Return-evidence image storage.

The media pipeline lives outside this service; the workflow only needs
something that accepts image bytes and hands back a URL.
"""

import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_IMAGES = 5

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


@dataclass
class ImageUpload:
    filename: str
    content_type: str
    content: bytes


class ImageUploader(Protocol):
    def upload(self, image: ImageUpload) -> str: ...


def validate_images(images: list[ImageUpload]) -> None:
    """
    Check count, type and size of return evidence.

    Raises:
        InvalidInputError: If there are no images or one breaks a limit.
    """
    if not images:
        raise InvalidInputError("At least one image is required.", field="returnImages")
    if len(images) > MAX_IMAGES:
        raise InvalidInputError(f"At most {MAX_IMAGES} images are allowed.", field="returnImages")
    for image in images:
        if image.content_type not in ALLOWED_IMAGE_TYPES:
            raise InvalidInputError(
                "Only image files are allowed (jpg, jpeg, png, webp).", field="returnImages"
            )
        if len(image.content) > MAX_IMAGE_BYTES:
            raise InvalidInputError(f"Image {image.filename} is larger than 5MB.", field="returnImages")


class LocalImageUploader:
    """Stores images on local disk and returns a relative URL."""

    def __init__(self, upload_dir: Path, base_url: str = "/uploads/returns"):
        self.upload_dir = upload_dir
        self.base_url = base_url.rstrip("/")

    def upload(self, image: ImageUpload) -> str:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        name = uuid.uuid4().hex + _EXTENSIONS.get(image.content_type, "")
        (self.upload_dir / name).write_bytes(image.content)
        logger.debug("Stored return image %s as %s", image.filename, name)
        return f"{self.base_url}/{name}"
