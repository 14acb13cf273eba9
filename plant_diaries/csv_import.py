"""
Import plant collections exported as CSV (for example from a Notion table).

Two shapes are understood:

* the main table, one row per plant, imported by :func:`import_plants`;
* per-plant update logs, one folder per plant holding a ``*_all.csv`` with
  ``Name, Date, Photo, Update type`` columns, imported by
  :func:`import_plant_updates`.

Rows are handled one at a time and a bad row is reported, never fatal.
"""

from __future__ import annotations

import csv
import io
import logging
import re
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, TextIO
from urllib.parse import unquote

from plant_diaries import database
from plant_diaries.image_metadata import ImageConversionError, convert_heic_to_png, is_heic
from plant_diaries.uploads import (
  IMAGE_EXTENSIONS,
  copy_into_plant_folder,
  file_to_web_path,
  get_plant_upload_folder,
  remove_stored_file,
)

logger = logging.getLogger(__name__)

_MONTHS = {
  "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
  "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
_DAY_MONTH_SHORT_YEAR = re.compile(r"^(\d{1,2})-([A-Za-z]{3})-(\d{2})$")
_MONTH_DAY = re.compile(r"^([A-Za-z]{3})-(\d{1,2})$")
_TRAILING_TIME = re.compile(r"^(.*?\d{4})\s+\d{1,2}:\d{2}.*$")
_FOUR_DIGITS = re.compile(r"\d{4}")

_DATED_FORMATS = (
  "%B %d %Y",
  "%b %d %Y",
  "%d %B %Y",
  "%d %b %Y",
  "%Y-%m-%d",
  "%Y/%m/%d",
  "%d/%m/%Y",
)
_YEARLESS_FORMATS = ("%B %d %Y", "%b %d %Y", "%d %B %Y", "%d %b %Y")

UPDATE_TYPE_TO_EVENT = {
  "water": "Water",
  "watering": "Water",
  "new leaf": "New Leaf",
  "new leaf unfolded": "New Leaf",
  "trim": "Trim",
  "trimmed": "Trim",
  "repot": "Repot",
  "repotted": "Repot",
  "propagate": "Propagate",
  "propagated": "Propagate",
  "pest control": "Pest control",
  "root rot": "Root Rot",
  "general update": "Other",
  "other": "Other",
}


class CsvImportError(ValueError):
  """Raised when a CSV file cannot be read at all."""


@dataclass
class ImportResult:
  total: int = 0
  success: int = 0
  errors: List[str] = field(default_factory=list)

  def to_dict(self) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
      "success": True,
      "message": "CSV import completed",
      "stats": {"total": self.total, "success": self.success, "errors": len(self.errors)},
    }
    if self.errors:
      payload["errors"] = self.errors
    return payload


def parse_date(value: Optional[str], today: Optional[date] = None) -> Optional[str]:
  """
  Parse the date spellings found in exports and return ``YYYY-MM-DD``.

  Dates without a year (``Oct 10``, ``Oct-10``) are placed in the current
  year; ``27-Oct-25`` style two-digit years are read as 20YY.
  """
  if not value or not value.strip():
    return None
  today = today or date.today()
  cleaned = re.sub(r"\s+", " ", value.strip())

  match = _DAY_MONTH_SHORT_YEAR.match(cleaned)
  if match:
    day, month, year = match.groups()
    return _safe_date(2000 + int(year), _MONTHS.get(month.lower()), int(day))

  match = _MONTH_DAY.match(cleaned)
  if match:
    month, day = match.groups()
    return _safe_date(today.year, _MONTHS.get(month.lower()), int(day))

  try:
    return datetime.fromisoformat(cleaned).date().isoformat()
  except ValueError:
    pass

  time_match = _TRAILING_TIME.match(cleaned)
  if time_match:
    cleaned = time_match.group(1)
  cleaned = cleaned.replace(",", " ")
  cleaned = re.sub(r"\s+", " ", cleaned).strip()

  if _FOUR_DIGITS.search(cleaned):
    formats: Iterable[str] = _DATED_FORMATS
  else:
    cleaned = f"{cleaned} {today.year}"
    formats = _YEARLESS_FORMATS

  for fmt in formats:
    try:
      return datetime.strptime(cleaned, fmt).date().isoformat()
    except ValueError:
      continue
  logger.debug("Unparseable date: %s", value)
  return None


def _safe_date(year: int, month: Optional[int], day: int) -> Optional[str]:
  if month is None:
    return None
  try:
    return date(year, month, day).isoformat()
  except ValueError:
    return None


def parse_price(value: Optional[str]) -> Optional[float]:
  """Strip currency symbols and thousands separators; ``None`` when not a number."""
  if not value or not value.strip():
    return None
  cleaned = re.sub(r"[£$€,]", "", value).strip()
  try:
    return float(cleaned)
  except ValueError:
    return None


def extract_first_image(files_media: Optional[str]) -> Optional[str]:
  """Return the URL-decoded relative path of the first image in a ``Files & media`` cell."""
  if not files_media or not files_media.strip():
    return None
  for entry in files_media.split(","):
    decoded = unquote(entry.strip())
    if Path(decoded).suffix.lower() in IMAGE_EXTENSIONS:
      return decoded
  return None


def normalise_status(value: Optional[str]) -> str:
  if value:
    wanted = re.sub(r"\s+", "", value).lower()
    for status in database.PLANT_STATUSES:
      if status.lower() == wanted:
        return status
  return "Alive"


def read_csv_rows(source: TextIO | str) -> List[Dict[str, str]]:
  """Read a CSV into dicts with trimmed header names and trimmed values."""
  stream = io.StringIO(source) if isinstance(source, str) else source
  try:
    reader = csv.DictReader(stream)
    if reader.fieldnames is None:
      return []
    reader.fieldnames = [(name or "").lstrip("\ufeff").strip() for name in reader.fieldnames]
    rows = []
    for raw in reader:
      rows.append({
        key: (value or "").strip() if isinstance(value, str) else ""
        for key, value in raw.items()
        if key
      })
    return rows
  except csv.Error as exc:
    raise CsvImportError(f"Could not parse CSV: {exc}") from exc


def _first(row: Dict[str, str], *keys: str) -> Optional[str]:
  for key in keys:
    value = row.get(key)
    if value:
      return value
  return None


def plant_from_row(row: Dict[str, str]) -> Dict[str, Any]:
  """Map one exported row onto plant columns."""
  return {
    "name": (_first(row, "Plant", "plant", "Name") or "").strip(),
    "alias": _first(row, "Alias", "alias"),
    "price": parse_price(_first(row, "Price", "price")),
    "delivery_fee": parse_price(_first(row, "Delivery fee", "delivery_fee")),
    "purchased_from": _first(row, "Purchased from", "purchased_from"),
    "purchased_when": parse_date(_first(row, "Purchased when", "purchased_when")),
    "received_when": parse_date(_first(row, "Received when", "Recieved when", "received_when")),
    "purchase_notes": _first(row, "Purchase notes", "Notes", "notes", "purchase_notes"),
    "status": normalise_status(_first(row, "Status", "status")),
    "profile_photo": None,
  }


def _find_media(media_dir: Optional[Path], relative: str) -> Optional[Path]:
  if media_dir is None:
    return None
  root = Path(media_dir)
  candidates = [root / Path(relative).name]
  if ".." not in Path(relative).parts and not Path(relative).is_absolute():
    candidates.insert(0, root / relative)
  for candidate in candidates:
    if candidate.is_file():
      return candidate
  return None


def copy_media_into_plant_folder(
  upload_root: Path,
  user_id: int,
  source: Path,
  plant_name: str,
  filename: str,
) -> str:
  """Copy an exported image into the plant folder; HEIC files become PNG."""
  if not is_heic(filename):
    return copy_into_plant_folder(upload_root, user_id, source, plant_name, filename)
  folder = get_plant_upload_folder(upload_root, user_id, plant_name)
  target = convert_heic_to_png(source, folder / Path(filename).with_suffix(".png").name)
  return file_to_web_path(upload_root, target)


def _import_profile_photo(
  upload_root: Path,
  media_dir: Optional[Path],
  user_id: int,
  plant_name: str,
  relative: str,
) -> Optional[str]:
  source = _find_media(media_dir, relative)
  if source is None:
    logger.warning("Image not found: %s", relative)
    return None
  filename = f"csv_import_{int(time.time() * 1000)}_{source.stem}{source.suffix.lower()}"
  try:
    return copy_media_into_plant_folder(upload_root, user_id, source, plant_name, filename)
  except (OSError, ImageConversionError) as exc:
    logger.warning("Failed to copy image %s: %s", source, exc)
    return None


def import_plants(
  conn: sqlite3.Connection,
  user_id: int,
  rows: List[Dict[str, str]],
  *,
  upload_root: Path,
  media_dir: Optional[Path] = None,
) -> ImportResult:
  """Insert one plant per row, with its profile photo, vendor tag and last watering."""
  result = ImportResult(total=len(rows))

  for index, row in enumerate(rows, start=1):
    plant = plant_from_row(row)
    if not plant["name"]:
      result.errors.append(f"Row {index}: Skipped row with empty plant name")
      continue

    image = extract_first_image(_first(row, "Files & media", "files & media"))
    if image:
      plant["profile_photo"] = _import_profile_photo(upload_root, media_dir, user_id, plant["name"], image)

    plant_id = None
    try:
      plant_id = database.insert_plant(conn, user_id, plant)
      if plant["purchased_from"]:
        database.ensure_tag(conn, user_id, plant["purchased_from"], "purchased_from")
      last_water = parse_date(_first(row, "Last water date", "last_water_date"))
      if last_water:
        database.add_water_event(conn, plant_id, last_water)
    except sqlite3.Error as exc:
      logger.warning("Failed to import %s: %s", plant["name"], exc)
      result.errors.append(f'Failed to import "{plant["name"]}": {exc}')
      if plant_id is None:
        # No row points at the copied photo.
        remove_stored_file(upload_root, plant.get("profile_photo"), user_id)
      continue
    result.success += 1

  logger.info("Imported %d of %d plants for user %s", result.success, result.total, user_id)
  return result


def extract_plant_name(folder_name: str) -> str:
  """
  ``"Ficus elastica Tineke (rubber plant) - 9cm"`` -> ``"Ficus elastica Tineke"``.

  Parenthesised text is removed, then everything from the first ``" -"``.
  """
  name = re.sub(r"\s*\([^)]*\)", "", folder_name)
  dash = name.find(" -")
  if dash != -1:
    name = name[:dash]
  return name.strip()


def map_update_type(update_type: Optional[str]) -> str:
  if not update_type:
    return "Other"
  return UPDATE_TYPE_TO_EVENT.get(update_type.strip().lower(), "Other")


def _event_exists(conn: sqlite3.Connection, plant_id: int, event_type: str, event_date: str) -> bool:
  row = conn.execute(
    "SELECT 1 FROM plant_events WHERE plant_id = ? AND event_type = ? AND event_date = ?",
    (plant_id, event_type, event_date),
  ).fetchone()
  return row is not None


def _photo_exists(conn: sqlite3.Connection, plant_id: int, filename: str) -> bool:
  row = conn.execute(
    "SELECT 1 FROM plant_photos WHERE plant_id = ? AND (photo_path = ? OR photo_path LIKE ?)",
    (plant_id, filename, f"%/{filename}"),
  ).fetchone()
  return row is not None


def import_plant_updates(
  conn: sqlite3.Connection,
  user_id: int,
  folder: Path,
  *,
  upload_root: Path,
  today: Optional[date] = None,
) -> Dict[str, Any]:
  """
  Import per-plant update logs from ``folder``.

  Each subfolder names a plant and holds a ``*_all.csv``. Events already
  recorded for the same plant, type and date, and photos whose file name is
  already attached, are skipped so the import can be re-run safely.
  """
  folder = Path(folder)
  if not folder.is_dir():
    raise CsvImportError(f"Updates folder does not exist: {folder}")

  report: Dict[str, Any] = {
    "folders": 0,
    "plants_missing": [],
    "events_added": 0,
    "events_skipped": 0,
    "photos_added": 0,
    "photos_skipped": 0,
    "photos_missing": 0,
  }

  for plant_dir in sorted(path for path in folder.iterdir() if path.is_dir() and not path.name.startswith(".")):
    csv_files = sorted(plant_dir.glob("*_all.csv"))
    if not csv_files:
      continue
    report["folders"] += 1
    plant_name = extract_plant_name(plant_dir.name)
    row = conn.execute(
      "SELECT id, name FROM plants WHERE user_id = ? AND lower(name) = lower(?)",
      (user_id, plant_name),
    ).fetchone()
    if row is None:
      logger.warning("Plant not found in database: %s", plant_name)
      report["plants_missing"].append(plant_name)
      continue
    plant_id = row["id"]

    with open(csv_files[0], encoding="utf-8-sig", newline="") as handle:
      records = read_csv_rows(handle)
    logger.info("Processing %s (%d update records)", plant_dir.name, len(records))

    for record in records:
      event_date = parse_date(record.get("Date"), today=today) or (today or date.today()).isoformat()
      event_type = map_update_type(record.get("Update type"))

      if _event_exists(conn, plant_id, event_type, event_date):
        report["events_skipped"] += 1
      else:
        conn.execute(
          "INSERT INTO plant_events (plant_id, event_type, event_date, notes) VALUES (?, ?, ?, ?)",
          (plant_id, event_type, event_date, record.get("Name") or ""),
        )
        report["events_added"] += 1

      photo = record.get("Photo")
      if not photo:
        continue
      source = plant_dir / Path(unquote(photo)).name
      if not source.is_file():
        logger.warning("Photo not found: %s", source)
        report["photos_missing"] += 1
        continue
      stored_name = Path(source.name).with_suffix(".png").name if is_heic(source.name) else source.name
      if _photo_exists(conn, plant_id, stored_name):
        report["photos_skipped"] += 1
        continue
      try:
        web_path = copy_media_into_plant_folder(upload_root, user_id, source, row["name"], source.name)
      except (OSError, ImageConversionError) as exc:
        logger.warning("Failed to copy photo %s: %s", source, exc)
        report["photos_missing"] += 1
        continue
      taken_at = datetime.fromisoformat(event_date).replace(tzinfo=timezone.utc).isoformat()
      conn.execute(
        "INSERT INTO plant_photos (plant_id, photo_path, taken_at) VALUES (?, ?, ?)",
        (plant_id, web_path, taken_at),
      )
      report["photos_added"] += 1

  return report


__all__ = [
  "CsvImportError",
  "ImportResult",
  "extract_first_image",
  "extract_plant_name",
  "import_plant_updates",
  "import_plants",
  "map_update_type",
  "normalise_status",
  "parse_date",
  "parse_price",
  "plant_from_row",
  "read_csv_rows",
]
