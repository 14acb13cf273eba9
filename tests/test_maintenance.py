from pathlib import Path

import pytest

import manage
from plant_diaries import database, maintenance
from plant_diaries.auth import verify_password


@pytest.fixture
def db(tmp_path: Path) -> Path:
  db_path = tmp_path / "maint.sqlite"
  database.initialise_database(db_path)
  return db_path


@pytest.fixture
def uploads(tmp_path: Path) -> Path:
  root = tmp_path / "uploads"
  root.mkdir()
  return root


def _add_user(db_path: Path, email: str = "owner@example.com") -> int:
  with database.connect(db_path) as conn:
    return database.create_user(conn, email, "hash")


def _add_plant(db_path: Path, user_id, name: str, profile_photo=None) -> int:
  with database.connect(db_path) as conn:
    return database.insert_plant(conn, user_id, {"name": name, "status": "Alive", "profile_photo": profile_photo})


def _add_photo(db_path: Path, plant_id: int, photo_path: str) -> None:
  with database.connect(db_path) as conn:
    conn.execute("INSERT INTO plant_photos (plant_id, photo_path) VALUES (?, ?)", (plant_id, photo_path))


def _photo_paths(db_path: Path):
  with database.connect(db_path) as conn:
    return [row["photo_path"] for row in conn.execute("SELECT photo_path FROM plant_photos ORDER BY id")]


def test_seed_admin_is_idempotent(tmp_path):
  db_path = tmp_path / "fresh.sqlite"
  first = maintenance.seed_admin(db_path, email="Admin@Example.com", password="letmein1")
  assert first["created"] is True
  assert maintenance.seed_admin(db_path)["created"] is False

  with database.connect(db_path) as conn:
    admin = database.fetch_user_by_id(conn, 1)
  assert admin["email"] == "admin@example.com"
  assert admin["is_admin"] == 1
  assert verify_password("letmein1", admin["password_hash"])


def test_cleanup_orphaned_photos(db, uploads):
  user_id = _add_user(db)
  plant_id = _add_plant(db, user_id, "Fern")
  present = uploads / str(user_id) / "fern" / "here.jpg"
  present.parent.mkdir(parents=True)
  present.write_bytes(b"x")
  _add_photo(db, plant_id, f"/uploads/{user_id}/fern/here.jpg")
  _add_photo(db, plant_id, f"/uploads/{user_id}/fern/gone.jpg")

  dry = maintenance.cleanup_orphaned_photos(db, uploads, dry_run=True)
  assert (dry["checked"], dry["valid"], dry["orphaned"], dry["deleted"]) == (2, 1, 1, 0)
  assert len(_photo_paths(db)) == 2

  real = maintenance.cleanup_orphaned_photos(db, uploads)
  assert real["deleted"] == 1
  assert _photo_paths(db) == [f"/uploads/{user_id}/fern/here.jpg"]


def test_migrate_root_photos(db, uploads):
  user_id = _add_user(db)
  plant_id = _add_plant(db, user_id, "Golden Pothos", profile_photo="/uploads/cover.jpg")
  _add_photo(db, plant_id, "/uploads/cover.jpg")
  _add_photo(db, plant_id, "/uploads/missing.jpg")
  (uploads / "cover.jpg").write_bytes(b"x")

  report = maintenance.migrate_root_photos(db, uploads)

  assert report == {"moved": 1, "skipped": 1, "failed": 0}
  expected = f"/uploads/{user_id}/golden_pothos/cover.jpg"
  assert _photo_paths(db)[0] == expected
  assert (uploads / str(user_id) / "golden_pothos" / "cover.jpg").is_file()
  with database.connect(db) as conn:
    assert database.fetch_plant(conn, user_id, plant_id)["profile_photo"] == expected


def test_migrate_paths_then_files(db, uploads):
  user_id = _add_user(db)
  owned = _add_plant(db, user_id, "Aloe")
  orphan = _add_plant(db, None, "Jade")
  _add_photo(db, owned, "/uploads/aloe/1.jpg")
  _add_photo(db, orphan, "/uploads/jade/2.jpg")
  _add_photo(db, orphan, f"/uploads/{user_id}/jade/already.jpg")
  for relative in ("aloe/1.jpg", "jade/2.jpg"):
    (uploads / relative).parent.mkdir(parents=True, exist_ok=True)
    (uploads / relative).write_bytes(b"x")

  paths_report = maintenance.migrate_photo_paths(db, uploads, default_user_id=99)
  assert paths_report["updated"] == 2
  assert _photo_paths(db)[:2] == [f"/uploads/{user_id}/aloe/1.jpg", "/uploads/99/jade/2.jpg"]

  files_report = maintenance.migrate_photo_files(db, uploads)
  assert files_report["moved"] == 2
  assert files_report["missing"] == 1
  assert (uploads / str(user_id) / "aloe" / "1.jpg").is_file()
  assert (uploads / "99" / "jade" / "2.jpg").is_file()
  assert not (uploads / "aloe").exists()

  again = maintenance.migrate_photo_files(db, uploads)
  assert again["moved"] == 0
  assert again["already_migrated"] == 2


def test_restore_database(db, uploads, tmp_path, image_bytes):
  user_id = _add_user(db)
  _add_plant(db, user_id, "Stale")
  stale_folder = uploads / str(user_id) / "stale"
  stale_folder.mkdir(parents=True)

  export = tmp_path / "export"
  export.mkdir()
  (export / "rose.jpg").write_bytes(image_bytes())
  csv_path = export / "plants.csv"
  csv_path.write_text("Plant,Files & media,Last water date\nRose,rose.jpg,2024-02-02\n", encoding="utf-8")

  report = maintenance.restore_database(db, uploads, user_id=user_id, csv_path=csv_path)

  assert report["cleared"] == 1
  assert report["stats"]["success"] == 1
  assert not stale_folder.exists()
  with database.connect(db) as conn:
    plants = database.list_plants(conn, user_id)
  assert [plant["name"] for plant in plants] == ["Rose"]
  assert plants[0]["last_watered"] == "2024-02-02"
  assert plants[0]["profile_photo"].startswith(f"/uploads/{user_id}/rose/csv_import_")


def test_restore_requires_existing_csv(db, uploads, tmp_path):
  with pytest.raises(FileNotFoundError):
    maintenance.restore_database(db, uploads, user_id=1, csv_path=tmp_path / "nope.csv")


def test_import_updates(db, uploads, tmp_path, image_bytes):
  user_id = _add_user(db)
  plant_id = _add_plant(db, user_id, "Alocasia amazonica")
  folder = tmp_path / "updates" / "Alocasia amazonica (elephant ear) - 12cm"
  folder.mkdir(parents=True)
  (folder / "leaf.jpg").write_bytes(image_bytes())
  (folder / "Alocasia_all.csv").write_text(
    "Name,Date,Photo,Update type\n"
    "Big drink,\"June 3, 2024\",,Watering\n"
    "Unfurled,\"June 10, 2024\",leaf.jpg,New leaf unfolded\n",
    encoding="utf-8",
  )
  (tmp_path / "updates" / "Unknown plant").mkdir()
  (tmp_path / "updates" / "Unknown plant" / "x_all.csv").write_text("Name,Date,Photo,Update type\n", encoding="utf-8")

  report = maintenance.import_updates(db, uploads, user_id=user_id, folder=tmp_path / "updates")
  assert report["events_added"] == 2
  assert report["photos_added"] == 1
  assert report["plants_missing"] == ["Unknown plant"]

  with database.connect(db) as conn:
    events = conn.execute(
      "SELECT event_type, event_date FROM plant_events WHERE plant_id = ? ORDER BY event_date",
      (plant_id,),
    ).fetchall()
    photo = conn.execute("SELECT photo_path, taken_at FROM plant_photos").fetchone()
  assert [(row["event_type"], row["event_date"]) for row in events] == [("Water", "2024-06-03"), ("New Leaf", "2024-06-10")]
  assert photo["photo_path"] == f"/uploads/{user_id}/alocasia_amazonica/leaf.jpg"
  assert photo["taken_at"].startswith("2024-06-10")

  rerun = maintenance.import_updates(db, uploads, user_id=user_id, folder=tmp_path / "updates")
  assert rerun["events_added"] == 0
  assert rerun["events_skipped"] == 2
  assert rerun["photos_skipped"] == 1


def test_manage_cli_runs_commands(tmp_path, capsys):
  db_path = tmp_path / "cli.sqlite"
  uploads = tmp_path / "cli-uploads"
  assert manage.main(["--db", str(db_path), "--uploads", str(uploads), "init-db"]) == 0
  assert manage.main(["--db", str(db_path), "--uploads", str(uploads), "seed-admin"]) == 0
  assert manage.main(["--db", str(db_path), "--uploads", str(uploads), "cleanup-orphans", "--dry-run"]) == 0
  assert '"orphaned": 0' in capsys.readouterr().out
  assert manage.main(["--db", str(db_path), "--uploads", str(uploads), "restore", "--csv", str(tmp_path / "missing.csv"), "--user", "1"]) == 1
