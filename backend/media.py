import logging
import os
import time
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import urlparse

import cloudinary
import cloudinary.uploader

DEFAULT_ALLOWED_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


def extract_public_id(locator) -> Optional[str]:
    """Best-effort public ID for a hosted image URL.

    The ID is the last two path segments with the file extension removed,
    e.g. ``https://host/a/b.png`` -> ``a/b``. Anything that does not have that
    shape yields ``None``.
    """
    if not isinstance(locator, str) or not locator.strip():
        return None
    try:
        path = urlparse(locator.strip()).path
    except ValueError:
        return None

    segments = [segment for segment in path.split("/") if segment]
    if len(segments) < 2:
        return None

    folder, filename = segments[-2], segments[-1]
    stem = filename.rsplit(".", 1)[0]
    if not stem:
        return None
    return f"{folder}/{stem}"


def allowed_image_extension(filename: str, allowed: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS) -> bool:
    extension = os.path.splitext(filename)[1].lower().lstrip(".")
    if not extension:
        return False
    return extension in set(allowed)


class CloudinaryMediaHost:
    def __init__(
        self,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        folder: str = "",
        timeout: float = 10,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS,
        logger: Optional[logging.Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        cloudinary.config(
            cloud_name=cloud_name,
            api_key=api_key,
            api_secret=api_secret,
            secure=True,
        )
        self.folder = folder
        self.timeout = timeout
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = backoff_seconds
        self.allowed_extensions = set(allowed_extensions)
        self.logger = logger or logging.getLogger(__name__)
        self.sleep = sleep

    def destroy(self, public_id: str) -> str:
        # Only transport failures are retried; "not found" is a final answer.
        delay = self.backoff_seconds
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = cloudinary.uploader.destroy(
                    public_id, invalidate=True, timeout=self.timeout
                )
            except Exception as exc:
                if attempt >= self.max_attempts:
                    raise
                self.logger.warning(
                    "Media deletion attempt %s/%s for %s failed: %s",
                    attempt,
                    self.max_attempts,
                    public_id,
                    exc,
                )
                self.sleep(delay)
                delay *= 2
                continue

            self.logger.info("Media delete result for %s: %s", public_id, response)
            return str((response or {}).get("result", ""))
        return ""

    def upload(self, image_file) -> Dict[str, str]:
        filename = getattr(image_file, "filename", "") or ""
        if not filename or not allowed_image_extension(filename, self.allowed_extensions):
            raise ValueError(
                "Unsupported image format. Upload PNG, JPG, JPEG, GIF, or WEBP files."
            )

        options = {"resource_type": "image", "timeout": self.timeout}
        if self.folder:
            options["folder"] = self.folder
        stream = getattr(image_file, "stream", image_file)
        result = cloudinary.uploader.upload(stream, **options)
        return {
            "url": result.get("secure_url") or result.get("url", ""),
            "publicId": result.get("public_id", ""),
        }
