"""
One-off maintenance jobs for the database and the photo tree.

Each job is a plain function that returns a small report dict so it can be
called from ``manage.py`` or from tests. They are safe to re-run: files that
were already moved and rows that were already rewritten are skipped.
"""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from plant_diaries import database
from plant_diaries.auth import hash_password
from plant_diaries.csv_import import import_plant_updates, import_plants, read_csv_rows
from plant_diaries.uploads import (
  UploadError,
  WEB_PREFIX,
  delete_plant_upload_folder,
  get_plant_upload_folder,
  sanitize_plant_name,
  web_path_to_file,
)

logger = logging.getLogger(__name__)

ADMIN_USER_ID = 1


def seed_admin(
  db_path: Path,
  *,
  email: str = "admin@plantdiaries.local",
  password: str = "admin123",
  display_name: str = "Admin",
) -> Dict[str, Any]:
  """Create the admin account as user 1 unless that id is already taken."""
  database.initialise_database(db_path)
  with database.connect(db_path) as conn:
    if database.fetch_user_by_id(conn, ADMIN_USER_ID):
      logger.info("Admin user already exists with ID = %d", ADMIN_USER_ID)
      return {"created": False, "user_id": ADMIN_USER_ID}
    database.create_user(
      conn,
      email,
      hash_password(password),
      display_name,
      is_admin=True,
      user_id=ADMIN_USER_ID,
    )
  logger.warning("Admin user %s created; change the password after first login.", email)
  return {"created": True, "user_id": ADMIN_USER_ID, "email": email.lower()}


def _resolve(upload_root: Path, web_path: str) -> Optional[Path]:
  try:
    return web_path_to_file(upload_root, web_path)
  except UploadError:
    return None


def cleanup_orphaned_photos(db_path: Path, upload_root: Path, *, dry_run: bool = False) -> Dict[str, Any]:
  """Delete photo records whose file no longer exists on disk."""
  with database.connect(db_path) as conn:
    rows = conn.execute("SELECT id, photo_path FROM plant_photos ORDER BY id").fetchall()
    orphaned: List[sqlite3.Row] = []
    for row in rows:
      file_path = _resolve(upload_root, row["photo_path"])
      if file_path is None or not file_path.is_file():
        logger.info("Orphaned: %s", row["photo_path"])
        orphaned.append(row)

    deleted = 0
    if not dry_run:
      for row in orphaned:
        deleted += conn.execute("DELETE FROM plant_photos WHERE id = ?", (row["id"],)).rowcount

  report = {
    "checked": len(rows),
    "valid": len(rows) - len(orphaned),
    "orphaned": len(orphaned),
    "deleted": deleted,
    "orphaned_paths": [row["photo_path"] for row in orphaned],
  }
  logger.info("Orphan cleanup: %s valid, %s orphaned, %s deleted", report["valid"], report["orphaned"], deleted)
  return report


def migrate_root_photos(db_path: Path, upload_root: Path, *, default_user_id: int = ADMIN_USER_ID) -> Dict[str, int]:
  """
  Move photos stored directly in the upload root into ``<user>/<slug>/``.

  Both ``plant_photos.photo_path`` and ``plants.profile_photo`` are rewritten.
  """
  upload_root = Path(upload_root)
  report = {"moved": 0, "skipped": 0, "failed": 0}

  with database.connect(db_path) as conn:
    plants = conn.execute("SELECT id, name, user_id, profile_photo FROM plants").fetchall()
    for plant in plants:
      user_id = plant["user_id"] or default_user_id
      photo_paths = [
        row["photo_path"]
        for row in conn.execute("SELECT photo_path FROM plant_photos WHERE plant_id = ?", (plant["id"],))
      ]
      if plant["profile_photo"] and plant["profile_photo"] not in photo_paths:
        photo_paths.append(plant["profile_photo"])

      for photo_path in photo_paths:
        filename = Path(photo_path).name
        old_file = upload_root / filename
        if not old_file.is_file():
          report["skipped"] += 1
          continue
        folder = get_plant_upload_folder(upload_root, user_id, plant["name"])
        new_path = f"{WEB_PREFIX}/{user_id}/{sanitize_plant_name(plant['name'])}/{filename}"
        try:
          shutil.move(str(old_file), str(folder / filename))
        except OSError as exc:
          logger.error("Failed to migrate %s: %s", filename, exc)
          report["failed"] += 1
          continue
        conn.execute(
          "UPDATE plant_photos SET photo_path = ? WHERE plant_id = ? AND photo_path = ?",
          (new_path, plant["id"], photo_path),
        )
        if plant["profile_photo"] == photo_path:
          conn.execute("UPDATE plants SET profile_photo = ? WHERE id = ?", (new_path, plant["id"]))
        logger.info("Moved %s -> %s", filename, new_path)
        report["moved"] += 1

  return report


def _with_user_segment(web_path: str, user_id: int) -> Optional[str]:
  parts = web_path.split("/")
  # ['', 'uploads', '<slug>', '<file>']
  if len(parts) != 4 or parts[1] != WEB_PREFIX.strip("/"):
    return None
  return f"{WEB_PREFIX}/{user_id}/{parts[2]}/{parts[3]}"


def migrate_photo_paths(db_path: Path, upload_root: Path, *, default_user_id: int = ADMIN_USER_ID) -> Dict[str, Any]:
  """Rewrite ``/uploads/<slug>/<file>`` paths to ``/uploads/<user>/<slug>/<file>``."""
  report: Dict[str, Any] = {"updated": 0, "skipped": 0, "missing_files": []}

  with database.connect(db_path) as conn:
    photos = conn.execute(
      """
      SELECT pp.id, pp.photo_path, p.user_id, p.name AS plant_name
      FROM plant_photos pp
      JOIN plants p ON pp.plant_id = p.id
      WHERE pp.photo_path NOT LIKE '/uploads/%/%/%'
      """
    ).fetchall()
    profiles = conn.execute(
      """
      SELECT id, profile_photo, user_id, name AS plant_name
      FROM plants
      WHERE profile_photo IS NOT NULL AND profile_photo NOT LIKE '/uploads/%/%/%'
      """
    ).fetchall()

    targets = [("plant_photos", "photo_path", row, row["photo_path"]) for row in photos]
    targets += [("plants", "profile_photo", row, row["profile_photo"]) for row in profiles]

    for table, column, row, old_path in targets:
      user_id = row["user_id"] or default_user_id
      new_path = _with_user_segment(old_path, user_id)
      if new_path is None:
        logger.warning("Unexpected path format: %s", old_path)
        report["skipped"] += 1
        continue
      file_path = _resolve(upload_root, new_path)
      if file_path is None or not file_path.exists():
        logger.warning("Physical file not found for %s (%s); updating path anyway", new_path, row["plant_name"])
        report["missing_files"].append(new_path)
      conn.execute(f"UPDATE {table} SET {column} = ? WHERE id = ?", (new_path, row["id"]))
      logger.info("Updated %s %s: %s -> %s", table, row["id"], old_path, new_path)
      report["updated"] += 1

  return report


def migrate_photo_files(db_path: Path, upload_root: Path) -> Dict[str, int]:
  """
  Move files from ``uploads/<slug>/<file>`` to ``uploads/<user>/<slug>/<file>``.

  Runs after :func:`migrate_photo_paths`: the stored paths already name the
  user folder, only the files are still in the old place. Emptied old
  folders are removed.
  """
  upload_root = Path(upload_root)
  report = {"moved": 0, "already_migrated": 0, "missing": 0, "skipped": 0, "failed": 0}

  with database.connect(db_path) as conn:
    stored = [row["photo_path"] for row in conn.execute("SELECT photo_path FROM plant_photos")]
    stored += [
      row["profile_photo"]
      for row in conn.execute("SELECT profile_photo FROM plants WHERE profile_photo IS NOT NULL")
    ]

  for web_path in dict.fromkeys(stored):
    parts = web_path.split("/")
    # ['', 'uploads', '<user>', '<slug>', '<file>', ...]
    if len(parts) < 5 or parts[1] != WEB_PREFIX.strip("/"):
      logger.warning("Unexpected path format: %s", web_path)
      report["skipped"] += 1
      continue
    user_id, slug, filename = parts[2], parts[3], "/".join(parts[4:])
    new_file = _resolve(upload_root, web_path)
    old_file = _resolve(upload_root, f"{WEB_PREFIX}/{slug}/{filename}")
    if new_file is None or old_file is None:
      report["skipped"] += 1
      continue
    if new_file.exists():
      report["already_migrated"] += 1
      continue
    if not old_file.exists():
      logger.warning("Source file not found: %s", old_file)
      report["missing"] += 1
      continue
    try:
      new_file.parent.mkdir(parents=True, exist_ok=True)
      shutil.move(str(old_file), str(new_file))
    except OSError as exc:
      logger.error("Failed to move %s: %s", old_file, exc)
      report["failed"] += 1
      continue
    logger.info("Moved %s/%s -> %s/%s/%s", slug, filename, user_id, slug, filename)
    report["moved"] += 1

    old_folder = old_file.parent
    if old_folder.exists() and old_folder != upload_root.resolve() and not any(old_folder.iterdir()):
      old_folder.rmdir()
      logger.info("Removed empty folder: %s", old_folder)

  return report


def restore_database(
  db_path: Path,
  upload_root: Path,
  *,
  user_id: int,
  csv_path: Path,
  media_dir: Optional[Path] = None,
) -> Dict[str, Any]:
  """Wipe the user's collection and rebuild it from an exported CSV."""
  csv_path = Path(csv_path)
  if not csv_path.is_file():
    raise FileNotFoundError(f"CSV file not found: {csv_path}")
  with open(csv_path, encoding="utf-8-sig", newline="") as handle:
    rows = read_csv_rows(handle)

  database.initialise_database(db_path)
  with database.connect(db_path) as conn:
    removed = database.clear_user_data(conn, user_id)
    for plant in removed:
      delete_plant_upload_folder(upload_root, user_id, plant["name"])
    logger.info("Cleared %d plants for user %s", len(removed), user_id)
    result = import_plants(
      conn,
      user_id,
      rows,
      upload_root=Path(upload_root),
      media_dir=Path(media_dir) if media_dir else csv_path.parent,
    )

  report = result.to_dict()
  report["cleared"] = len(removed)
  return report


def import_updates(db_path: Path, upload_root: Path, *, user_id: int, folder: Path) -> Dict[str, Any]:
  with database.connect(db_path) as conn:
    return import_plant_updates(conn, user_id, Path(folder), upload_root=Path(upload_root))


__all__ = [
  "cleanup_orphaned_photos",
  "import_updates",
  "migrate_photo_files",
  "migrate_photo_paths",
  "migrate_root_photos",
  "restore_database",
  "seed_admin",
]
