"""
images.py — storage and loading of uploaded product photos.

Image references travel between the browser, the store and the AI providers
as web paths like "/uploads/3f2a….jpg".  Every helper here maps such a
reference back to a file inside the uploads directory; references that point
anywhere else are treated as unresolvable.
"""
from __future__ import annotations

import base64
import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)

UPLOADS_URL_PREFIX = "/uploads/"

_MEDIA_TYPES = {
    ".jpg":  "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png":  "image/png",
    ".gif":  "image/gif",
    ".webp": "image/webp",
}


@dataclass
class ImagePayload:
    """One photo ready to embed in a provider request."""
    media_type: str
    b64: str

    @property
    def data_uri(self) -> str:
        return f"data:{self.media_type};base64,{self.b64}"


def media_type_for(path: Path) -> str:
    """Guess the MIME type from the file extension; unknown → JPEG."""
    return _MEDIA_TYPES.get(path.suffix.lower(), "image/jpeg")


def resolve_image_path(ref: str, uploads_dir: Path) -> Optional[Path]:
    """
    Map an image reference to a path inside *uploads_dir*.

    Accepted forms: "/uploads/x.jpg", "uploads/x.jpg", "x.jpg", or an
    absolute path that already lies inside uploads_dir.  Returns None for
    anything that would escape the uploads directory.
    """
    if not ref or not isinstance(ref, str):
        return None

    root = uploads_dir.resolve()
    if ref.startswith(UPLOADS_URL_PREFIX):
        candidate = root / ref[len(UPLOADS_URL_PREFIX):]
    elif ref.startswith("uploads/"):
        candidate = root / ref[len("uploads/"):]
    elif Path(ref).is_absolute():
        candidate = Path(ref)
    else:
        candidate = root / ref

    candidate = candidate.resolve()
    if root not in candidate.parents:
        logger.warning("Image reference outside uploads dir ignored: %s", ref)
        return None
    return candidate


def load_image(ref: str, uploads_dir: Path) -> Optional[ImagePayload]:
    """Read one referenced photo as base64.  Missing / unreadable → None."""
    path = resolve_image_path(ref, uploads_dir)
    if path is None:
        return None
    try:
        data = path.read_bytes()
    except OSError as exc:
        logger.error("Image file not readable %s: %s", path, exc)
        return None

    payload = ImagePayload(
        media_type=media_type_for(path),
        b64=base64.b64encode(data).decode(),
    )
    logger.debug("Loaded %s (%s, %d base64 chars)", path.name, payload.media_type, len(payload.b64))
    return payload


def load_images(refs: Iterable[str], uploads_dir: Path) -> list[ImagePayload]:
    """Load every resolvable reference, silently skipping the rest."""
    payloads = []
    for ref in refs:
        payload = load_image(ref, uploads_dir)
        if payload is not None:
            payloads.append(payload)
    return payloads


def store_upload(data: bytes, original_filename: Optional[str], uploads_dir: Path) -> str:
    """
    Save an uploaded photo under a fresh uuid4 filename, keeping the original
    extension.  Returns the web path ("/uploads/<uuid><ext>").
    """
    uploads_dir.mkdir(parents=True, exist_ok=True)
    extension = Path(original_filename or "").suffix
    filename = f"{uuid.uuid4()}{extension}"
    (uploads_dir / filename).write_bytes(data)
    logger.info("Stored upload %s (%d bytes)", filename, len(data))
    return UPLOADS_URL_PREFIX + filename


def delete_images(refs: Iterable[str], uploads_dir: Path) -> int:
    """Remove referenced photos from disk.  Returns how many files were deleted."""
    removed = 0
    for ref in refs:
        path = resolve_image_path(ref, uploads_dir)
        if path is None or not path.is_file():
            continue
        try:
            path.unlink()
        except OSError as exc:
            logger.error("Could not delete image %s: %s", path, exc)
            continue
        removed += 1
    return removed
