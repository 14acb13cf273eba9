"""
On-disk layout for uploaded photos.

Every photo lives under ``<upload root>/<user id>/<plant slug>/``. Fresh
uploads that are not yet attached to a plant wait in ``<user id>/temp/``
until a photo record or profile photo claims them. The database stores web
paths (``/uploads/1/monstera/123.jpg``); the helpers here translate between
those and real files and refuse anything that would escape the upload root.
"""

from __future__ import annotations

import logging
import random
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, Optional

from werkzeug.datastructures import FileStorage

from plant_diaries.image_metadata import ImageConversionError, convert_heic_to_png, extract_taken_at, is_heic

logger = logging.getLogger(__name__)

WEB_PREFIX = "/uploads"
STAGING_FOLDER = "temp"
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic", ".heif"}
IMAGE_EXTENSIONS = ALLOWED_EXTENSIONS
DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024

_SPECIAL_CHARS = re.compile(r"[^\w\s-]", re.ASCII)
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")


class UploadError(ValueError):
  """Raised when an upload or a stored path cannot be handled."""

  def __init__(self, message: str, status_code: int = 400) -> None:
    super().__init__(message)
    self.status_code = status_code


@dataclass
class StoredUpload:
  filename: str
  path: str
  size: int
  taken_at: Optional[str] = None

  def to_dict(self) -> dict:
    payload = {"filename": self.filename, "path": self.path, "size": self.size}
    if self.taken_at:
      payload["takenAt"] = self.taken_at
    return payload


def sanitize_plant_name(plant_name: str) -> str:
  """
  Turn a plant name into a folder name.

  Special characters other than spaces and hyphens are removed, whitespace
  runs become underscores and hyphen runs collapse to one hyphen.
  """
  slug = _SPECIAL_CHARS.sub("", (plant_name or "").strip())
  slug = _WHITESPACE.sub("_", slug)
  slug = _HYPHENS.sub("-", slug)
  return slug.lower() or "plant"


def plant_folder(upload_root: Path, user_id: int, plant_name: str) -> Path:
  return Path(upload_root) / str(user_id) / sanitize_plant_name(plant_name)


def get_plant_upload_folder(upload_root: Path, user_id: int, plant_name: str) -> Path:
  """Return ``<root>/<user>/<slug>/``, creating it when missing."""
  folder = plant_folder(upload_root, user_id, plant_name)
  folder.mkdir(parents=True, exist_ok=True)
  return folder


def staging_folder(upload_root: Path, user_id: int) -> Path:
  folder = Path(upload_root) / str(user_id) / STAGING_FOLDER
  folder.mkdir(parents=True, exist_ok=True)
  return folder


def delete_plant_upload_folder(upload_root: Path, user_id: int, plant_name: str) -> bool:
  """Delete a plant's photo folder and everything in it. Failures are logged."""
  folder = plant_folder(upload_root, user_id, plant_name)
  if not folder.exists():
    return False
  try:
    shutil.rmtree(folder)
  except OSError as exc:
    logger.error("Failed to delete plant folder %s: %s", folder, exc)
    return False
  logger.info("Deleted plant folder: %s", folder)
  return True


def file_to_web_path(upload_root: Path, file_path: Path) -> str:
  relative = Path(file_path).resolve().relative_to(Path(upload_root).resolve())
  return f"{WEB_PREFIX}/{relative.as_posix()}"


def web_path_to_file(upload_root: Path, web_path: str) -> Path:
  """
  Map a stored ``/uploads/...`` path to a file under ``upload_root``.

  Raises ``UploadError`` for paths outside the upload tree.
  """
  if not web_path:
    raise UploadError("Photo path is empty.")
  posix = PurePosixPath(web_path)
  parts = posix.parts
  if parts and parts[0] == "/":
    parts = parts[1:]
  if parts and parts[0] == WEB_PREFIX.strip("/"):
    parts = parts[1:]
  if not parts or any(part in ("..", "") for part in parts):
    raise UploadError(f"Invalid photo path: {web_path}")

  root = Path(upload_root).resolve()
  candidate = root.joinpath(*parts).resolve()
  if root != candidate and root not in candidate.parents:
    raise UploadError(f"Invalid photo path: {web_path}")
  return candidate


def owned_web_path_to_file(upload_root: Path, user_id: int, web_path: str) -> Path:
  """``web_path_to_file`` for paths that must sit inside ``<root>/<user id>/``."""
  file_path = web_path_to_file(upload_root, web_path)
  user_root = (Path(upload_root) / str(user_id)).resolve()
  if user_root not in file_path.parents:
    raise UploadError(f"Invalid photo path: {web_path}")
  return file_path


def is_staged(upload_root: Path, user_id: int, web_path: Optional[str]) -> bool:
  """True when ``web_path`` points at a file waiting in the user's staging folder."""
  if not web_path:
    return False
  try:
    file_path = web_path_to_file(upload_root, web_path)
  except UploadError:
    return False
  return file_path.parent == (Path(upload_root) / str(user_id) / STAGING_FOLDER).resolve()


def unique_filename(extension: str) -> str:
  """``<epoch ms>-<9 random digits><ext>``."""
  suffix = random.randint(0, 999_999_999)
  return f"{int(time.time() * 1000)}-{suffix}{extension.lower()}"


def is_allowed_image(filename: Optional[str]) -> bool:
  return bool(filename) and Path(filename).suffix.lower() in ALLOWED_EXTENSIONS


def move_to_plant_folder(
  upload_root: Path,
  user_id: int,
  current_path: Path,
  plant_name: str,
  filename: Optional[str] = None,
) -> str:
  """Move a file into the plant's folder and return its new web path."""
  folder = get_plant_upload_folder(upload_root, user_id, plant_name)
  target = folder / (filename or Path(current_path).name)
  shutil.move(str(current_path), str(target))
  logger.info("Moved %s -> %s", current_path, target)
  return file_to_web_path(upload_root, target)


def claim_staged_upload(upload_root: Path, user_id: int, web_path: str, plant_name: str) -> str:
  """
  Move a staged upload into the plant folder.

  Paths that are not staged are returned unchanged.
  """
  if not is_staged(upload_root, user_id, web_path):
    return web_path
  source = web_path_to_file(upload_root, web_path)
  if not source.exists():
    raise UploadError(f"Uploaded file not found: {web_path}", 404)
  if plant_folder(upload_root, user_id, plant_name).resolve() == source.parent:
    return web_path
  return move_to_plant_folder(upload_root, user_id, source, plant_name)


def copy_into_plant_folder(
  upload_root: Path,
  user_id: int,
  source: Path,
  plant_name: str,
  filename: str,
) -> str:
  folder = get_plant_upload_folder(upload_root, user_id, plant_name)
  target = folder / filename
  shutil.copy2(source, target)
  logger.info("Copied %s -> %s", source.name, target)
  return file_to_web_path(upload_root, target)


def rename_plant_folder(
  upload_root: Path,
  user_id: int,
  old_name: str,
  new_name: str,
  web_paths: Iterable[str],
) -> Dict[str, str]:
  """
  Move a renamed plant's photos into the folder for its new name.

  Two plants with the same name share a folder, so only the files behind
  ``web_paths`` are moved. Returns ``{old web path: new web path}`` for every
  moved file. The old folder is removed once it is empty.
  """
  old_folder = plant_folder(upload_root, user_id, old_name)
  new_folder = plant_folder(upload_root, user_id, new_name)
  if old_folder == new_folder or not old_folder.exists():
    return {}

  moved: Dict[str, str] = {}
  resolved_old = old_folder.resolve()
  for web_path in dict.fromkeys(path for path in web_paths if path):
    try:
      source = web_path_to_file(upload_root, web_path)
    except UploadError:
      continue
    if source.parent != resolved_old or not source.is_file():
      continue
    moved[web_path] = move_to_plant_folder(upload_root, user_id, source, new_name)

  if not any(old_folder.iterdir()):
    old_folder.rmdir()
  logger.info("Renamed plant folder %s -> %s (%d files)", old_folder, new_folder, len(moved))
  return moved


def restore_moved_files(upload_root: Path, moved: Dict[str, str]) -> None:
  """Move files back to where they were before ``{old web path: new web path}`` moves."""
  for old_path, new_path in moved.items():
    source = web_path_to_file(upload_root, new_path)
    if not source.is_file():
      continue
    target = web_path_to_file(upload_root, old_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(target))
    logger.info("Moved %s back to %s", new_path, old_path)


def remove_stored_file(upload_root: Path, web_path: Optional[str], user_id: Optional[int] = None) -> bool:
  """
  Delete the file behind a stored path. Missing or foreign paths are ignored.

  With ``user_id`` only files inside that user's folder are deleted.
  """
  if not web_path:
    return False
  try:
    if user_id is None:
      file_path = web_path_to_file(upload_root, web_path)
    else:
      file_path = owned_web_path_to_file(upload_root, user_id, web_path)
  except UploadError:
    logger.warning("Refusing to delete file outside the allowed folder: %s", web_path)
    return False
  if not file_path.is_file():
    return False
  file_path.unlink()
  logger.info("Deleted photo file: %s", file_path)
  return True


def store_upload(
  upload_root: Path,
  destination: Path,
  uploaded_file: FileStorage,
  *,
  max_bytes: int = DEFAULT_MAX_FILE_BYTES,
) -> StoredUpload:
  """
  Validate and persist one uploaded image into ``destination``.

  HEIC/HEIF images are read for their capture date and then replaced with a
  PNG rendition.
  """
  original_name = uploaded_file.filename or ""
  if not is_allowed_image(original_name):
    raise UploadError("Only image files are allowed!")

  binary_content = uploaded_file.read()
  if not binary_content:
    raise UploadError("Empty file received")
  if len(binary_content) > max_bytes:
    raise UploadError(f"File too large: {original_name}", 413)

  destination.mkdir(parents=True, exist_ok=True)
  extension = Path(original_name).suffix.lower()
  filename = unique_filename(extension)
  local_path = destination / filename
  with open(local_path, "wb") as handle:
    handle.write(binary_content)

  taken_at = extract_taken_at(binary_content)

  if is_heic(filename):
    png_path = local_path.with_suffix(".png")
    try:
      convert_heic_to_png(local_path, png_path)
    except ImageConversionError as exc:
      raise UploadError(str(exc)) from exc
    finally:
      local_path.unlink(missing_ok=True)
    local_path = png_path
    filename = png_path.name

  return StoredUpload(
    filename=filename,
    path=file_to_web_path(upload_root, local_path),
    size=local_path.stat().st_size,
    taken_at=taken_at,
  )


__all__ = [
  "ALLOWED_EXTENSIONS",
  "StoredUpload",
  "UploadError",
  "claim_staged_upload",
  "copy_into_plant_folder",
  "delete_plant_upload_folder",
  "file_to_web_path",
  "get_plant_upload_folder",
  "is_allowed_image",
  "is_staged",
  "move_to_plant_folder",
  "owned_web_path_to_file",
  "plant_folder",
  "remove_stored_file",
  "rename_plant_folder",
  "restore_moved_files",
  "sanitize_plant_name",
  "staging_folder",
  "store_upload",
  "web_path_to_file",
]
