"""Image loading, sniffing and cache normalisation utilities."""

from __future__ import annotations

import io
from pathlib import Path

from PIL import Image, UnidentifiedImageError

_SUPPORTED_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}
_MAX_IMAGE_SIZE_BYTES = 20 * 1024 * 1024  # 20 MB

_FORMAT_TO_EXT = {"PNG": "png", "JPEG": "jpg", "WEBP": "webp"}
_EXT_TO_MIME = {"png": "image/png", "jpg": "image/jpeg", "webp": "image/webp"}


def load_image(path: str | Path) -> bytes:
    """Load an image file and return raw bytes."""
    path = Path(path)
    _validate_path(path)
    return path.read_bytes()


def sniff_mime_type(image_bytes: bytes) -> str:
    """Guess the MIME type from magic bytes, defaulting to PNG."""
    if image_bytes.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def normalize_for_cache(
    image_bytes: bytes,
    max_side: int = 1400,
    quality: int = 88,
    optimize: bool = True,
) -> tuple[bytes, str, str]:
    """Prepare a render for blob storage.

    Downscales so the longest side is at most ``max_side`` and re-encodes as
    WebP. Returns ``(data, extension, content_type)``. With ``optimize=False``
    the bytes are kept as-is and only the format is detected.

    Raises ValueError when the bytes are not a decodable image, or when
    ``optimize=False`` and the format is not PNG, JPEG or WebP.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            if not optimize:
                ext = _FORMAT_TO_EXT.get(img.format or "")
                if ext is None:
                    raise ValueError(f"Unsupported render format for storage: {img.format}")
                return image_bytes, ext, _EXT_TO_MIME[ext]
            img.load()
            if max(img.size) > max_side:
                img.thumbnail((max_side, max_side))
            if img.mode not in ("RGB", "RGBA"):
                img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
            buf = io.BytesIO()
            img.save(buf, format="WEBP", quality=quality)
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Render is not a decodable image: {exc}") from exc
    return buf.getvalue(), "webp", _EXT_TO_MIME["webp"]


def _validate_path(path: Path) -> None:
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if path.is_symlink():
        raise ValueError(f"Symlinks not allowed: {path}")
    if path.suffix.lower() not in _SUPPORTED_EXTENSIONS:
        raise ValueError(f"Unsupported file type: {path.suffix}")
    size = path.stat().st_size
    if size > _MAX_IMAGE_SIZE_BYTES:
        raise ValueError(f"File too large ({size} bytes, max {_MAX_IMAGE_SIZE_BYTES})")
