"""
Maintenance commands for the plant diary backend.

Usage::

  python manage.py init-db
  python manage.py seed-admin --email admin@example.com --password secret123
  python manage.py cleanup-orphans --dry-run
  python manage.py restore --csv export.csv --user 1 --media-dir ./csv
  python manage.py import-updates --folder ./updates --user 1

Paths default to ``DB_PATH`` and ``UPLOAD_DIR`` from the environment (or
``.env``), matching what the API server uses.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from plant_diaries import database, maintenance
from plant_diaries.csv_import import CsvImportError

BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger("manage")


def _build_parser() -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(description="Plant diary maintenance commands.")
  parser.add_argument("--db", type=Path, help="SQLite database file (default: $DB_PATH).")
  parser.add_argument("--uploads", type=Path, help="Upload root (default: $UPLOAD_DIR).")
  parser.add_argument(
    "--log-level",
    default="INFO",
    choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    help="Logging verbosity.",
  )
  commands = parser.add_subparsers(dest="command", required=True)

  commands.add_parser("init-db", help="Create or upgrade the schema.")

  seed = commands.add_parser("seed-admin", help="Create the admin account (user 1).")
  seed.add_argument("--email", default="admin@plantdiaries.local")
  seed.add_argument("--password", default="admin123")
  seed.add_argument("--display-name", default="Admin")

  cleanup = commands.add_parser("cleanup-orphans", help="Delete photo rows whose file is gone.")
  cleanup.add_argument("--dry-run", action="store_true", help="Report without deleting.")

  root_photos = commands.add_parser("migrate-root-photos", help="Move root-level photos into plant folders.")
  root_photos.add_argument("--default-user", type=int, default=maintenance.ADMIN_USER_ID)

  paths = commands.add_parser("migrate-photo-paths", help="Add the user segment to stored photo paths.")
  paths.add_argument("--default-user", type=int, default=maintenance.ADMIN_USER_ID)

  commands.add_parser("migrate-photo-files", help="Move photo files into per-user folders.")

  restore = commands.add_parser("restore", help="Rebuild a user's collection from a CSV export.")
  restore.add_argument("--csv", type=Path, required=True)
  restore.add_argument("--user", type=int, required=True)
  restore.add_argument("--media-dir", type=Path)

  updates = commands.add_parser("import-updates", help="Import per-plant update logs.")
  updates.add_argument("--folder", type=Path, required=True)
  updates.add_argument("--user", type=int, required=True)

  return parser


def run(args: argparse.Namespace) -> Dict[str, Any]:
  db_path = args.db or Path(os.environ.get("DB_PATH", str(BASE_DIR / "database.sqlite")))
  upload_root = args.uploads or Path(os.environ.get("UPLOAD_DIR", str(BASE_DIR / "uploads")))
  upload_root.mkdir(parents=True, exist_ok=True)

  if args.command == "init-db":
    database.initialise_database(db_path)
    return {"initialised": str(db_path)}
  if args.command == "seed-admin":
    return maintenance.seed_admin(
      db_path,
      email=args.email,
      password=args.password,
      display_name=args.display_name,
    )

  database.initialise_database(db_path)
  if args.command == "cleanup-orphans":
    return maintenance.cleanup_orphaned_photos(db_path, upload_root, dry_run=args.dry_run)
  if args.command == "migrate-root-photos":
    return maintenance.migrate_root_photos(db_path, upload_root, default_user_id=args.default_user)
  if args.command == "migrate-photo-paths":
    return maintenance.migrate_photo_paths(db_path, upload_root, default_user_id=args.default_user)
  if args.command == "migrate-photo-files":
    return maintenance.migrate_photo_files(db_path, upload_root)
  if args.command == "restore":
    media_dir = args.media_dir or os.environ.get("CSV_MEDIA_DIR")
    return maintenance.restore_database(
      db_path,
      upload_root,
      user_id=args.user,
      csv_path=args.csv,
      media_dir=Path(media_dir) if media_dir else None,
    )
  if args.command == "import-updates":
    return maintenance.import_updates(db_path, upload_root, user_id=args.user, folder=args.folder)
  raise ValueError(f"Unknown command: {args.command}")


def main(argv: Optional[List[str]] = None) -> int:
  load_dotenv(BASE_DIR / ".env")
  args = _build_parser().parse_args(argv)
  logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

  try:
    report = run(args)
  except (FileNotFoundError, CsvImportError) as exc:
    logger.error("%s", exc)
    return 1

  print(json.dumps(report, indent=2, default=str))
  return 0


if __name__ == "__main__":
  sys.exit(main())
