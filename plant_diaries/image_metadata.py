"""
Helpers for reading capture dates from uploaded photos and for turning HEIC
files into PNGs browsers can display.

HEIC/HEIF decoding comes from pillow-heif, which registers itself as a
Pillow opener on import, so everything below works on plain ``Image.open``.
"""

from __future__ import annotations

import io
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Union

from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

logger = logging.getLogger(__name__)

register_heif_opener()

HEIC_EXTENSIONS = {".heic", ".heif"}

# Tag ids from the EXIF standard.
_EXIF_IFD = 0x8769
_TAG_DATETIME = 0x0132
_TAG_DATETIME_ORIGINAL = 0x9003
_TAG_DATETIME_DIGITIZED = 0x9004

_EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"

ImageSource = Union[bytes, str, Path]


class ImageConversionError(RuntimeError):
  """Raised when an image cannot be decoded or re-encoded."""


def _open(source: ImageSource) -> Image.Image:
  if isinstance(source, (bytes, bytearray)):
    return Image.open(io.BytesIO(source))
  return Image.open(source)


def _parse_exif_datetime(value: Any) -> Optional[datetime]:
  if isinstance(value, bytes):
    value = value.decode("ascii", errors="ignore")
  if not isinstance(value, str):
    return None
  cleaned = value.strip().rstrip("\x00")
  if not cleaned:
    return None
  try:
    return datetime.strptime(cleaned[:19], _EXIF_DATE_FORMAT)
  except ValueError:
    return None


def extract_taken_at(source: ImageSource) -> Optional[str]:
  """
  Return the photo's capture time as an ISO-8601 UTC string.

  ``DateTimeOriginal`` (and ``DateTimeDigitized``) live in the Exif sub-IFD;
  the top-level ``DateTime`` is used when neither is present. EXIF carries no
  zone, so the wall-clock value is stored as UTC. Unreadable files or files
  without EXIF return ``None``.
  """
  try:
    with _open(source) as image:
      exif = image.getexif()
      if not exif:
        return None
      sub_ifd = exif.get_ifd(_EXIF_IFD)
      candidates = (
        sub_ifd.get(_TAG_DATETIME_ORIGINAL),
        sub_ifd.get(_TAG_DATETIME_DIGITIZED),
        exif.get(_TAG_DATETIME_ORIGINAL),
        exif.get(_TAG_DATETIME),
      )
  except (UnidentifiedImageError, OSError, ValueError) as exc:
    logger.debug("Failed to read image metadata: %s", exc)
    return None

  for candidate in candidates:
    parsed = _parse_exif_datetime(candidate)
    if parsed is not None:
      return parsed.replace(tzinfo=timezone.utc).isoformat()
  return None


def is_heic(filename: str) -> bool:
  return Path(filename).suffix.lower() in HEIC_EXTENSIONS


def convert_heic_to_png(source: Path, destination: Path) -> Path:
  """
  Decode ``source`` and write it to ``destination`` as PNG.

  The EXIF orientation is applied to the pixels since PNG viewers ignore it.
  The source file is left in place.
  """
  try:
    with Image.open(source) as image:
      upright = ImageOps.exif_transpose(image)
      if upright.mode not in ("RGB", "RGBA"):
        upright = upright.convert("RGBA" if "A" in upright.getbands() else "RGB")
      destination.parent.mkdir(parents=True, exist_ok=True)
      upright.save(destination, format="PNG")
  except (UnidentifiedImageError, OSError, ValueError) as exc:
    raise ImageConversionError(f"Could not convert {source.name} to PNG: {exc}") from exc

  logger.info("Converted %s to %s", source.name, destination.name)
  return destination


__all__ = [
  "HEIC_EXTENSIONS",
  "ImageConversionError",
  "convert_heic_to_png",
  "extract_taken_at",
  "is_heic",
]
