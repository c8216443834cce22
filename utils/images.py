"""
Image file helpers — reference download, WebP conversion and naming.
"""

from __future__ import annotations

import io
import logging
import re
import uuid
from pathlib import Path

import requests
from PIL import Image

log = logging.getLogger(__name__)

WEBP_QUALITY = 85


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "recipe"


def image_filename(keyword: str, entry_id: str, slot: int, attempt: int) -> str:
    """Unique per (entry, slot, attempt); the random tail guards same-attempt reruns."""
    return f"{slugify(keyword)[:60]}-{entry_id[:8]}-s{slot}-a{attempt}-{uuid.uuid4().hex[:6]}.webp"


def fetch_reference(url: str | None, timeout: float) -> bytes | None:
    """Download the optional reference image.

    A missing URL or any download problem yields None; generation then
    proceeds without a reference.
    """
    if not url or not url.strip():
        log.info("No reference image URL — generating without reference")
        return None
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as exc:
        log.warning("Could not fetch reference image %s: %s — continuing without it", url, exc)
        return None
    if not response.content:
        log.warning("Reference image %s is empty — continuing without it", url)
        return None
    return response.content


def save_image(data: bytes, filename: str, upload_dir: Path, url_prefix: str) -> str:
    """Convert image bytes to WebP, write them and return the public URL."""
    upload_dir = Path(upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / filename

    with Image.open(io.BytesIO(data)) as img:
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        img.save(path, "WEBP", quality=WEBP_QUALITY)

    size = path.stat().st_size
    if size == 0:
        raise OSError(f"WebP file was written but is empty: {path}")
    log.info("Image written: %s (%d bytes)", path, size)
    return f"{url_prefix.rstrip('/')}/{filename}"
