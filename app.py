"""
Flask backend for My Plant Diaries.

The React client talks to this service to manage a personal houseplant
collection: plants, dated care events (watering, repotting, ...), photos
organised in per-user, per-plant folders, vendor tags and custom event types.
Accounts authenticate with a short-lived access token and a refresh token.
Everything is stored in SQLite and on the local filesystem.
"""

from __future__ import annotations

import os
import re
import sqlite3
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from flask import Flask, abort, g, jsonify, request, send_from_directory
from flask_cors import CORS
from jwt import ExpiredSignatureError, InvalidTokenError
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge

from plant_diaries import database
from plant_diaries.auth import (
  TokenSettings,
  decode_access_token,
  decode_refresh_token,
  generate_access_token,
  generate_refresh_token,
  hash_password,
  is_valid_email,
  is_valid_password,
  public_user,
  verify_password,
)
from plant_diaries.csv_import import CsvImportError, import_plants, read_csv_rows
from plant_diaries.uploads import (
  UploadError,
  claim_staged_upload,
  delete_plant_upload_folder,
  get_plant_upload_folder,
  owned_web_path_to_file,
  remove_stored_file,
  rename_plant_folder,
  restore_moved_files,
  sanitize_plant_name,
  staging_folder,
  store_upload,
)

BASE_DIR = Path(__file__).resolve().parent

load_dotenv(BASE_DIR / ".env")

MAX_FILES_PER_REQUEST = 10
DUPLICATE_EVENT_MESSAGE = "An event of this type already exists for this plant on this date"

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _safe_float(value: Optional[str], default: float) -> float:
  try:
    return float(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def _safe_int(value: Optional[str], default: int) -> int:
  try:
    return int(value) if value is not None else default
  except (TypeError, ValueError):
    return default


def _load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
  """Read settings from the environment; ``overrides`` win over it."""
  settings: Dict[str, Any] = {
    "DB_PATH": os.environ.get("DB_PATH", str(BASE_DIR / "database.sqlite")),
    "UPLOAD_DIR": os.environ.get("UPLOAD_DIR", str(BASE_DIR / "uploads")),
    "CSV_MEDIA_DIR": os.environ.get("CSV_MEDIA_DIR", str(BASE_DIR / "csv")),
    "JWT_SECRET": os.environ.get("JWT_SECRET", "change-me"),
    "JWT_REFRESH_SECRET": os.environ.get("JWT_REFRESH_SECRET", "change-me-too"),
    "ACCESS_TOKEN_MINUTES": _safe_int(os.environ.get("ACCESS_TOKEN_MINUTES"), 15),
    "REFRESH_TOKEN_DAYS": _safe_int(os.environ.get("REFRESH_TOKEN_DAYS"), 7),
    "MAX_UPLOAD_MB": _safe_float(os.environ.get("MAX_UPLOAD_MB"), 10.0),
    "CORS_ORIGINS": os.environ.get("CORS_ORIGINS", "*"),
  }
  settings.update(overrides or {})

  settings["DB_PATH"] = Path(settings["DB_PATH"]).resolve()
  settings["UPLOAD_DIR"] = Path(settings["UPLOAD_DIR"]).resolve()
  settings["CSV_MEDIA_DIR"] = Path(settings["CSV_MEDIA_DIR"]).resolve()
  settings["MAX_FILE_BYTES"] = int(float(settings["MAX_UPLOAD_MB"]) * 1024 * 1024)
  # Room for a full multi-file request plus form fields.
  settings["MAX_CONTENT_LENGTH"] = settings["MAX_FILE_BYTES"] * MAX_FILES_PER_REQUEST + 1024 * 1024
  return settings


def _is_iso_date(value: Any) -> bool:
  if not isinstance(value, str) or not _ISO_DATE.match(value):
    return False
  try:
    datetime.strptime(value, "%Y-%m-%d")
  except ValueError:
    return False
  return True


def _normalise_timestamp(value: Any) -> Optional[str]:
  """Return an ISO-8601 UTC timestamp for ``value`` or ``None`` when unparseable."""
  if not isinstance(value, str) or not value.strip():
    return None
  cleaned = value.strip()
  if cleaned.endswith("Z"):
    cleaned = cleaned[:-1] + "+00:00"
  try:
    parsed = datetime.fromisoformat(cleaned)
  except ValueError:
    return None
  if parsed.tzinfo is None:
    parsed = parsed.replace(tzinfo=timezone.utc)
  else:
    parsed = parsed.astimezone(timezone.utc)
  return parsed.isoformat()


def _optional_text(value: Any) -> Optional[str]:
  if value is None:
    return None
  text = str(value).strip()
  return text or None


def _optional_number(value: Any) -> Tuple[Optional[float], bool]:
  """Return ``(number, ok)``; blanks become ``None``."""
  if value is None or (isinstance(value, str) and not value.strip()):
    return None, True
  if isinstance(value, bool):
    return None, False
  try:
    return float(value), True
  except (TypeError, ValueError):
    return None, False


def _plant_from_payload(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], Optional[str]]:
  """Validate a plant body. Returns the cleaned columns and an error message, if any."""
  plant: Dict[str, Any] = {
    "name": _optional_text(payload.get("name")),
    "alias": _optional_text(payload.get("alias")),
    "purchased_from": _optional_text(payload.get("purchased_from")),
    "purchased_when": _optional_text(payload.get("purchased_when")),
    "received_when": _optional_text(payload.get("received_when")),
    "purchase_notes": _optional_text(payload.get("purchase_notes")),
    "status": _optional_text(payload.get("status")) or "Alive",
    "profile_photo": _optional_text(payload.get("profile_photo")),
  }

  if not plant["name"]:
    return plant, "Plant name is required"
  if plant["status"] not in database.PLANT_STATUSES:
    return plant, f"Status must be one of: {', '.join(database.PLANT_STATUSES)}"
  for field in ("price", "delivery_fee"):
    plant[field], ok = _optional_number(payload.get(field))
    if not ok:
      return plant, f"{field} must be a number"
  for field in ("purchased_when", "received_when"):
    if plant[field] and not _is_iso_date(plant[field]):
      return plant, f"{field} must be a date in YYYY-MM-DD format"
  return plant, None


def create_app(overrides: Optional[Dict[str, Any]] = None) -> Flask:
  """Instantiate the Flask application and register routes."""
  app = Flask(__name__)
  app.config.update(_load_config(overrides))

  origins = app.config["CORS_ORIGINS"]
  if isinstance(origins, str) and origins != "*":
    origins = [origin.strip() for origin in origins.split(",") if origin.strip()]
  CORS(app, resources={r"/*": {"origins": origins}})

  db_path: Path = app.config["DB_PATH"]
  upload_root: Path = app.config["UPLOAD_DIR"]
  upload_root.mkdir(parents=True, exist_ok=True)
  database.initialise_database(db_path)

  token_settings = TokenSettings(
    secret=app.config["JWT_SECRET"],
    refresh_secret=app.config["JWT_REFRESH_SECRET"],
    access_minutes=int(app.config["ACCESS_TOKEN_MINUTES"]),
    refresh_days=int(app.config["REFRESH_TOKEN_DAYS"]),
  )

  def _db():
    return database.connect(db_path)

  def _abort_json(message: str, status: int) -> None:
    response = jsonify({"error": message})
    response.status_code = status
    abort(response)

  def login_required(view: Callable) -> Callable:
    """Reject requests without a valid access token; expose its claims on ``g.user``."""

    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any):
      auth_header = request.headers.get("Authorization", "")
      token = auth_header.split(" ", 1)[1].strip() if auth_header.startswith("Bearer ") else ""
      if not token:
        _abort_json("Access token required", 401)
      try:
        g.user = decode_access_token(token, token_settings)
      except ExpiredSignatureError:
        _abort_json("Token has expired.", 403)
      except InvalidTokenError:
        _abort_json("Invalid or expired token", 403)
      return view(*args, **kwargs)

    return wrapper

  def _current_user_id() -> int:
    return g.user["user_id"]

  def _issue_tokens(conn: sqlite3.Connection, user: Dict[str, Any]) -> Dict[str, str]:
    refresh_token = generate_refresh_token(user, token_settings)
    database.store_refresh_token(conn, user["id"], refresh_token)
    return {
      "accessToken": generate_access_token(user, token_settings),
      "refreshToken": refresh_token,
    }

  @app.errorhandler(UploadError)
  def handle_upload_error(exc: UploadError) -> Tuple[Dict[str, str], int]:
    return {"error": str(exc)}, exc.status_code

  @app.errorhandler(RequestEntityTooLarge)
  def handle_too_large(exc: RequestEntityTooLarge) -> Tuple[Dict[str, str], int]:
    return {"error": "File too large"}, 413

  @app.errorhandler(HTTPException)
  def handle_http_error(exc: HTTPException) -> Tuple[Dict[str, str], int]:
    return {"error": exc.description or exc.name}, exc.code or 500

  @app.errorhandler(Exception)
  def handle_unexpected(exc: Exception) -> Tuple[Dict[str, str], int]:
    app.logger.exception("Unhandled error: %s", exc)
    return {"error": "Something went wrong!", "message": str(exc)}, 500

  # Auth ---------------------------------------------------------------------

  @app.route("/api/auth/register", methods=["POST"])
  def register() -> Tuple[Dict[str, Any], int]:
    """Register a new account and issue a token pair."""
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    display_name = _optional_text(payload.get("displayName"))

    if not email or not password:
      return {"error": "Email and password are required"}, 400
    if not is_valid_email(email):
      return {"error": "Invalid email format"}, 400
    if not is_valid_password(password):
      return {"error": "Password must be at least 6 characters"}, 400

    with _db() as conn:
      if database.fetch_user_by_email(conn, email):
        return {"error": "Email already registered"}, 409
      try:
        user_id = database.create_user(conn, email, hash_password(password), display_name)
      except sqlite3.IntegrityError:
        return {"error": "Email already registered"}, 409
      user = database.fetch_user_by_id(conn, user_id)
      tokens = _issue_tokens(conn, user)

    app.logger.info("Registered user %s", user_id)
    return {"message": "User registered successfully", "user": public_user(user), **tokens}, 201

  @app.route("/api/auth/login", methods=["POST"])
  def login() -> Tuple[Dict[str, Any], int]:
    """Authenticate an existing user and return a token pair."""
    payload = request.get_json(silent=True) or {}
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
      return {"error": "Email and password are required"}, 400

    with _db() as conn:
      user = database.fetch_user_by_email(conn, email)
      if not user or not verify_password(password, user["password_hash"]):
        return {"error": "Invalid email or password"}, 401
      tokens = _issue_tokens(conn, user)

    return {"message": "Login successful", "user": public_user(user), **tokens}, 200

  @app.route("/api/auth/refresh", methods=["POST"])
  def refresh() -> Tuple[Dict[str, Any], int]:
    """Exchange the stored refresh token for a new access token."""
    payload = request.get_json(silent=True) or {}
    refresh_token = payload.get("refreshToken")
    if not refresh_token:
      return {"error": "Refresh token required"}, 400

    try:
      claims = decode_refresh_token(refresh_token, token_settings)
    except InvalidTokenError:
      return {"error": "Invalid or expired refresh token"}, 403

    with _db() as conn:
      user = database.fetch_user_by_id(conn, claims["user_id"])
    if not user or user.get("refresh_token") != refresh_token:
      return {"error": "Invalid refresh token"}, 403

    return {"accessToken": generate_access_token(user, token_settings), "user": public_user(user)}, 200

  @app.route("/api/auth/logout", methods=["POST"])
  @login_required
  def logout() -> Tuple[Dict[str, str], int]:
    with _db() as conn:
      database.store_refresh_token(conn, _current_user_id(), None)
    return {"message": "Logout successful"}, 200

  @app.route("/api/auth/me", methods=["GET"])
  @login_required
  def session() -> Tuple[Dict[str, Any], int]:
    """Return the account behind the access token."""
    with _db() as conn:
      user = database.fetch_user_by_id(conn, _current_user_id())
    if not user:
      return {"error": "User not found"}, 404
    return {"user": public_user(user)}, 200

  @app.route("/api/auth/me", methods=["PUT"])
  @login_required
  def update_profile() -> Tuple[Dict[str, Any], int]:
    payload = request.get_json(silent=True) or {}
    user_id = _current_user_id()

    with _db() as conn:
      user = database.fetch_user_by_id(conn, user_id)
      if not user:
        return {"error": "User not found"}, 404

      email = user["email"]
      if "email" in payload:
        email = (payload.get("email") or "").strip().lower()
        if not is_valid_email(email):
          return {"error": "Invalid email format"}, 400
        other = database.fetch_user_by_email(conn, email)
        if other and other["id"] != user_id:
          return {"error": "Email already registered"}, 409

      display_name = user["display_name"]
      if "displayName" in payload:
        display_name = _optional_text(payload.get("displayName"))

      conn.execute(
        "UPDATE users SET email = ?, display_name = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
        (email, display_name, user_id),
      )
      user = database.fetch_user_by_id(conn, user_id)

    return {"message": "Profile updated successfully", "user": public_user(user)}, 200

  @app.route("/api/auth/change-password", methods=["POST"])
  @login_required
  def change_password() -> Tuple[Dict[str, str], int]:
    """Replace the password and revoke the stored refresh token."""
    payload = request.get_json(silent=True) or {}
    current_password = payload.get("currentPassword") or ""
    new_password = payload.get("newPassword") or ""
    if not current_password or not new_password:
      return {"error": "Current and new password are required"}, 400

    with _db() as conn:
      user = database.fetch_user_by_id(conn, _current_user_id())
      if not user:
        return {"error": "User not found"}, 404
      if not verify_password(current_password, user["password_hash"]):
        return {"error": "Current password is incorrect"}, 401
      if not is_valid_password(new_password):
        return {"error": "Password must be at least 6 characters"}, 400
      conn.execute(
        """
        UPDATE users
        SET password_hash = ?, refresh_token = NULL, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
        """,
        (hash_password(new_password), user["id"]),
      )

    return {"message": "Password changed successfully"}, 200

  # Plants -------------------------------------------------------------------

  @app.route("/api/plants", methods=["GET"])
  @login_required
  def list_plants():
    """Return the user's plants with their last watering date."""
    args = request.args
    with _db() as conn:
      plants = database.list_plants(
        conn,
        _current_user_id(),
        status=args.get("status") or None,
        purchased_from=args.get("purchased_from") or None,
        search=(args.get("q") or "").strip() or None,
        sort=args.get("sort", "name"),
        order=args.get("order", "asc"),
      )
    return jsonify(plants), 200

  @app.route("/api/plants/<int:plant_id>", methods=["GET"])
  @login_required
  def get_plant(plant_id: int) -> Tuple[Dict[str, Any], int]:
    with _db() as conn:
      plant = database.fetch_plant(conn, _current_user_id(), plant_id)
    if not plant:
      return {"error": "Plant not found"}, 404
    return plant, 200

  @app.route("/api/plants", methods=["POST"])
  @login_required
  def create_plant() -> Tuple[Dict[str, Any], int]:
    """Create a plant, moving a freshly uploaded profile photo into its folder."""
    plant, error = _plant_from_payload(request.get_json(silent=True) or {})
    if error:
      return {"error": error}, 400

    user_id = _current_user_id()
    if plant["profile_photo"]:
      owned_web_path_to_file(upload_root, user_id, plant["profile_photo"])
      plant["profile_photo"] = claim_staged_upload(upload_root, user_id, plant["profile_photo"], plant["name"])

    with _db() as conn:
      plant_id = database.insert_plant(conn, user_id, plant)
      if plant["purchased_from"]:
        database.ensure_tag(conn, user_id, plant["purchased_from"], "purchased_from")
      created = database.fetch_plant(conn, user_id, plant_id)

    app.logger.info("Created plant %s for user %s", plant_id, user_id)
    return created, 201

  @app.route("/api/plants/<int:plant_id>", methods=["PUT"])
  @login_required
  def update_plant(plant_id: int) -> Tuple[Dict[str, Any], int]:
    """Replace a plant's fields; a rename moves its photos to the new folder."""
    plant, error = _plant_from_payload(request.get_json(silent=True) or {})
    if error:
      return {"error": error}, 400

    user_id = _current_user_id()
    # {old web path: new web path} for every file moved on disk, undone if the update fails.
    moved: Dict[str, str] = {}
    try:
      with _db() as conn:
        existing = database.fetch_plant(conn, user_id, plant_id)
        if not existing:
          return {"error": "Plant not found"}, 404

        profile_photo = plant["profile_photo"]
        if profile_photo and profile_photo != existing["profile_photo"]:
          owned_web_path_to_file(upload_root, user_id, profile_photo)
          # A missing staged file fails here, before any photo has moved.
          plant["profile_photo"] = claim_staged_upload(upload_root, user_id, profile_photo, plant["name"])
          if plant["profile_photo"] != profile_photo:
            moved[profile_photo] = plant["profile_photo"]

        photo_rows = conn.execute(
          "SELECT id, photo_path FROM plant_photos WHERE plant_id = ?",
          (plant_id,),
        ).fetchall()
        renamed = rename_plant_folder(
          upload_root,
          user_id,
          existing["name"],
          plant["name"],
          [row["photo_path"] for row in photo_rows] + [existing["profile_photo"], plant["profile_photo"]],
        )
        moved.update(renamed)
        for row in photo_rows:
          if row["photo_path"] in renamed:
            conn.execute(
              "UPDATE plant_photos SET photo_path = ? WHERE id = ?",
              (renamed[row["photo_path"]], row["id"]),
            )
        if plant["profile_photo"]:
          plant["profile_photo"] = renamed.get(plant["profile_photo"], plant["profile_photo"])

        database.update_plant(conn, user_id, plant_id, plant)
        if plant["purchased_from"]:
          database.ensure_tag(conn, user_id, plant["purchased_from"], "purchased_from")
        updated = database.fetch_plant(conn, user_id, plant_id)
    except Exception:
      restore_moved_files(upload_root, moved)
      raise

    return updated, 200

  @app.route("/api/plants/<int:plant_id>", methods=["DELETE"])
  @login_required
  def delete_plant(plant_id: int) -> Tuple[Dict[str, str], int]:
    """Delete a plant with its events, photos and photo folder."""
    user_id = _current_user_id()
    with _db() as conn:
      plant = database.fetch_plant(conn, user_id, plant_id)
      if not plant:
        return {"error": "Plant not found"}, 404
      photo_paths = [
        row["photo_path"]
        for row in conn.execute("SELECT photo_path FROM plant_photos WHERE plant_id = ?", (plant_id,))
      ]
      conn.execute("DELETE FROM plants WHERE id = ? AND user_id = ?", (plant_id, user_id))
      slug = sanitize_plant_name(plant["name"])
      shares_folder = any(
        sanitize_plant_name(row["name"]) == slug
        for row in conn.execute("SELECT name FROM plants WHERE user_id = ?", (user_id,))
      )

    if shares_folder:
      for web_path in [*photo_paths, plant["profile_photo"]]:
        remove_stored_file(upload_root, web_path, user_id)
    else:
      delete_plant_upload_folder(upload_root, user_id, plant["name"])
    app.logger.info("Deleted plant %s for user %s", plant_id, user_id)
    return {"message": "Plant deleted successfully"}, 200

  # Events -------------------------------------------------------------------

  def _fetch_event(conn: sqlite3.Connection, user_id: int, event_id: int) -> Dict[str, Any] | None:
    row = conn.execute(
      """
      SELECT e.*, p.name AS plant_name
      FROM plant_events e
      JOIN plants p ON e.plant_id = p.id
      WHERE e.id = ? AND p.user_id = ?
      """,
      (event_id, user_id),
    ).fetchone()
    return database.row_to_dict(row)

  def _validate_event(conn: sqlite3.Connection, user_id: int, event: Dict[str, Any]) -> Tuple[Optional[str], int]:
    if not event.get("plant_id") or not event.get("event_type") or not event.get("event_date"):
      return "plant_id, event_type and event_date are required", 400
    if not _is_iso_date(event["event_date"]):
      return "event_date must be a date in YYYY-MM-DD format", 400
    try:
      plant_id = int(event["plant_id"])
    except (TypeError, ValueError):
      return "plant_id must be an integer", 400
    if not database.fetch_plant(conn, user_id, plant_id):
      return "Plant not found", 404
    if not database.event_type_exists(conn, user_id, event["event_type"]):
      return f"Unknown event type: {event['event_type']}", 400
    return None, 200

  @app.route("/api/events/plant/<int:plant_id>", methods=["GET"])
  @login_required
  def list_plant_events(plant_id: int):
    """Return a plant's events, newest first."""
    user_id = _current_user_id()
    event_type = request.args.get("eventType")
    with _db() as conn:
      if not database.fetch_plant(conn, user_id, plant_id):
        return {"error": "Plant not found"}, 404
      sql = "SELECT * FROM plant_events WHERE plant_id = ?"
      params: List[Any] = [plant_id]
      if event_type:
        sql += " AND event_type = ?"
        params.append(event_type)
      sql += " ORDER BY event_date DESC, created_at DESC, id DESC"
      events = database.rows_to_dicts(conn.execute(sql, params).fetchall())
    return jsonify(events), 200

  @app.route("/api/events", methods=["GET"])
  @login_required
  def list_events():
    """Return events across all of the user's plants, optionally within a date range."""
    start = request.args.get("start")
    end = request.args.get("end")
    event_type = request.args.get("eventType")
    for label, value in (("start", start), ("end", end)):
      if value and not _is_iso_date(value):
        return {"error": f"{label} must be a date in YYYY-MM-DD format"}, 400

    sql = """
      SELECT e.*, p.name AS plant_name
      FROM plant_events e
      JOIN plants p ON e.plant_id = p.id
      WHERE p.user_id = ?
    """
    params: List[Any] = [_current_user_id()]
    if start:
      sql += " AND e.event_date >= ?"
      params.append(start)
    if end:
      sql += " AND e.event_date <= ?"
      params.append(end)
    if event_type:
      sql += " AND e.event_type = ?"
      params.append(event_type)
    sql += " ORDER BY e.event_date DESC, lower(p.name) ASC, e.id DESC"

    with _db() as conn:
      events = database.rows_to_dicts(conn.execute(sql, params).fetchall())
    return jsonify(events), 200

  @app.route("/api/events/<int:event_id>", methods=["GET"])
  @login_required
  def get_event(event_id: int) -> Tuple[Dict[str, Any], int]:
    with _db() as conn:
      event = _fetch_event(conn, _current_user_id(), event_id)
    if not event:
      return {"error": "Event not found"}, 404
    return event, 200

  @app.route("/api/events", methods=["POST"])
  @login_required
  def create_event() -> Tuple[Dict[str, Any], int]:
    payload = request.get_json(silent=True) or {}
    user_id = _current_user_id()
    with _db() as conn:
      error, status = _validate_event(conn, user_id, payload)
      if error:
        return {"error": error}, status
      try:
        cursor = conn.execute(
          "INSERT INTO plant_events (plant_id, event_type, event_date, notes) VALUES (?, ?, ?, ?)",
          (int(payload["plant_id"]), payload["event_type"], payload["event_date"], _optional_text(payload.get("notes"))),
        )
      except sqlite3.IntegrityError:
        return {"error": DUPLICATE_EVENT_MESSAGE}, 409
      event = _fetch_event(conn, user_id, cursor.lastrowid)
    return event, 201

  @app.route("/api/events/<int:event_id>", methods=["PUT"])
  @login_required
  def update_event(event_id: int) -> Tuple[Dict[str, Any], int]:
    """Update an event; fields left out of the body keep their stored value."""
    payload = request.get_json(silent=True) or {}
    user_id = _current_user_id()
    with _db() as conn:
      existing = _fetch_event(conn, user_id, event_id)
      if not existing:
        return {"error": "Event not found"}, 404
      event = {
        key: payload.get(key, existing[key])
        for key in ("plant_id", "event_type", "event_date", "notes")
      }
      error, status = _validate_event(conn, user_id, event)
      if error:
        return {"error": error}, status
      try:
        conn.execute(
          "UPDATE plant_events SET plant_id = ?, event_type = ?, event_date = ?, notes = ? WHERE id = ?",
          (int(event["plant_id"]), event["event_type"], event["event_date"], _optional_text(event["notes"]), event_id),
        )
      except sqlite3.IntegrityError:
        return {"error": DUPLICATE_EVENT_MESSAGE}, 409
      updated = _fetch_event(conn, user_id, event_id)
    return updated, 200

  @app.route("/api/events/<int:event_id>", methods=["DELETE"])
  @login_required
  def delete_event(event_id: int) -> Tuple[Dict[str, str], int]:
    with _db() as conn:
      if not _fetch_event(conn, _current_user_id(), event_id):
        return {"error": "Event not found"}, 404
      conn.execute("DELETE FROM plant_events WHERE id = ?", (event_id,))
    return {"message": "Event deleted successfully"}, 200

  # Photos -------------------------------------------------------------------

  def _fetch_photo(conn: sqlite3.Connection, user_id: int, photo_id: int) -> Dict[str, Any] | None:
    row = conn.execute(
      """
      SELECT pp.*, p.name AS plant_name, p.profile_photo AS plant_profile_photo
      FROM plant_photos pp
      JOIN plants p ON pp.plant_id = p.id
      WHERE pp.id = ? AND p.user_id = ?
      """,
      (photo_id, user_id),
    ).fetchone()
    return database.row_to_dict(row)

  def _photo_response(photo: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in photo.items() if key not in ("plant_name", "plant_profile_photo")}

  @app.route("/api/photos/plant/<int:plant_id>", methods=["GET"])
  @login_required
  def list_plant_photos(plant_id: int):
    with _db() as conn:
      if not database.fetch_plant(conn, _current_user_id(), plant_id):
        return {"error": "Plant not found"}, 404
      photos = conn.execute(
        """
        SELECT * FROM plant_photos
        WHERE plant_id = ?
        ORDER BY COALESCE(taken_at, created_at) DESC, created_at DESC, id DESC
        """,
        (plant_id,),
      ).fetchall()
    return jsonify(database.rows_to_dicts(photos)), 200

  @app.route("/api/photos", methods=["POST"])
  @login_required
  def create_photo() -> Tuple[Dict[str, Any], int]:
    """Attach an uploaded file to a plant."""
    payload = request.get_json(silent=True) or {}
    photo_path = _optional_text(payload.get("photo_path"))
    if not payload.get("plant_id") or not photo_path:
      return {"error": "plant_id and photo_path are required"}, 400
    try:
      plant_id = int(payload["plant_id"])
    except (TypeError, ValueError):
      return {"error": "plant_id must be an integer"}, 400

    taken_at = datetime.now(timezone.utc).isoformat()
    if payload.get("taken_at"):
      taken_at = _normalise_timestamp(payload["taken_at"])
      if taken_at is None:
        return {"error": "taken_at must be an ISO-8601 timestamp"}, 400

    user_id = _current_user_id()
    # Raises UploadError (400) for paths outside the user's own folder.
    owned_web_path_to_file(upload_root, user_id, photo_path)
    with _db() as conn:
      plant = database.fetch_plant(conn, user_id, plant_id)
      if not plant:
        return {"error": "Plant not found"}, 404
      photo_path = claim_staged_upload(upload_root, user_id, photo_path, plant["name"])
      cursor = conn.execute(
        "INSERT INTO plant_photos (plant_id, photo_path, caption, taken_at) VALUES (?, ?, ?, ?)",
        (plant_id, photo_path, _optional_text(payload.get("caption")), taken_at),
      )
      photo = _fetch_photo(conn, user_id, cursor.lastrowid)
    return _photo_response(photo), 201

  @app.route("/api/photos/<int:photo_id>", methods=["PUT"])
  @login_required
  def update_photo(photo_id: int) -> Tuple[Dict[str, Any], int]:
    payload = request.get_json(silent=True) or {}
    user_id = _current_user_id()
    with _db() as conn:
      photo = _fetch_photo(conn, user_id, photo_id)
      if not photo:
        return {"error": "Photo not found"}, 404

      caption = _optional_text(payload["caption"]) if "caption" in payload else photo["caption"]
      taken_at = photo["taken_at"]
      if payload.get("taken_at"):
        taken_at = _normalise_timestamp(payload["taken_at"])
        if taken_at is None:
          return {"error": "taken_at must be an ISO-8601 timestamp"}, 400

      conn.execute(
        "UPDATE plant_photos SET caption = ?, taken_at = ? WHERE id = ?",
        (caption, taken_at, photo_id),
      )
      photo = _fetch_photo(conn, user_id, photo_id)
    return _photo_response(photo), 200

  @app.route("/api/photos/<int:photo_id>", methods=["DELETE"])
  @login_required
  def delete_photo(photo_id: int) -> Tuple[Dict[str, str], int]:
    """Delete a photo record and its file; clears the profile photo if it was this one."""
    user_id = _current_user_id()
    with _db() as conn:
      photo = _fetch_photo(conn, user_id, photo_id)
      if not photo:
        return {"error": "Photo not found"}, 404
      conn.execute("DELETE FROM plant_photos WHERE id = ?", (photo_id,))
      if photo["plant_profile_photo"] == photo["photo_path"]:
        conn.execute("UPDATE plants SET profile_photo = NULL WHERE id = ?", (photo["plant_id"],))
      still_used = conn.execute(
        "SELECT 1 FROM plant_photos WHERE photo_path = ? LIMIT 1",
        (photo["photo_path"],),
      ).fetchone()

    if not still_used:
      remove_stored_file(upload_root, photo["photo_path"], user_id)
    return {"message": "Photo deleted successfully"}, 200

  # Uploads ------------------------------------------------------------------

  def _upload_destination(user_id: int) -> Path:
    """The plant folder when ``plantId`` names an owned plant, else the staging folder."""
    raw_plant_id = request.form.get("plantId")
    if not raw_plant_id:
      return staging_folder(upload_root, user_id)
    try:
      plant_id = int(raw_plant_id)
    except ValueError:
      _abort_json("plantId must be an integer", 400)
    with _db() as conn:
      plant = database.fetch_plant(conn, user_id, plant_id)
    if not plant:
      _abort_json("Plant not found", 404)
    return get_plant_upload_folder(upload_root, user_id, plant["name"])

  @app.route("/api/upload/single", methods=["POST"])
  @login_required
  def upload_single() -> Tuple[Dict[str, Any], int]:
    """Store one image from the ``photo`` field."""
    uploaded_file = request.files.get("photo")
    if uploaded_file is None or uploaded_file.filename == "":
      return {"error": "No file uploaded"}, 400

    destination = _upload_destination(_current_user_id())
    stored = store_upload(upload_root, destination, uploaded_file, max_bytes=app.config["MAX_FILE_BYTES"])
    app.logger.info("Stored upload %s", stored.path)
    return stored.to_dict(), 200

  @app.route("/api/upload/multiple", methods=["POST"])
  @login_required
  def upload_multiple():
    """Store up to ten images from the ``photos`` field."""
    uploaded_files = [item for item in request.files.getlist("photos") if item.filename]
    if not uploaded_files:
      return {"error": "No files uploaded"}, 400
    if len(uploaded_files) > MAX_FILES_PER_REQUEST:
      return {"error": f"Too many files (max {MAX_FILES_PER_REQUEST})"}, 400

    user_id = _current_user_id()
    destination = _upload_destination(user_id)
    stored = []
    try:
      for uploaded_file in uploaded_files:
        stored.append(store_upload(upload_root, destination, uploaded_file, max_bytes=app.config["MAX_FILE_BYTES"]))
    except Exception:
      # One bad file rejects the whole request.
      for item in stored:
        remove_stored_file(upload_root, item.path, user_id)
      raise
    return jsonify([item.to_dict() for item in stored]), 200

  @app.route("/uploads/<path:filename>", methods=["GET"])
  def serve_upload(filename: str):
    """Serve stored photos."""
    return send_from_directory(upload_root, filename)

  # Tags ---------------------------------------------------------------------

  @app.route("/api/tags", methods=["GET"])
  @login_required
  def list_tags():
    sql = "SELECT * FROM tags WHERE user_id = ?"
    params: List[Any] = [_current_user_id()]
    tag_type = request.args.get("type")
    if tag_type:
      sql += " AND tag_type = ?"
      params.append(tag_type)
    sql += " ORDER BY tag_name COLLATE NOCASE ASC"
    with _db() as conn:
      tags = database.rows_to_dicts(conn.execute(sql, params).fetchall())
    return jsonify(tags), 200

  @app.route("/api/tags", methods=["POST"])
  @login_required
  def create_tag() -> Tuple[Dict[str, Any], int]:
    payload = request.get_json(silent=True) or {}
    tag_name = _optional_text(payload.get("tag_name"))
    tag_type = _optional_text(payload.get("tag_type")) or "other"
    if not tag_name:
      return {"error": "tag_name is required"}, 400
    if tag_type not in database.TAG_TYPES:
      return {"error": f"tag_type must be one of: {', '.join(database.TAG_TYPES)}"}, 400

    user_id = _current_user_id()
    with _db() as conn:
      duplicate = conn.execute(
        "SELECT 1 FROM tags WHERE user_id = ? AND lower(tag_name) = lower(?)",
        (user_id, tag_name),
      ).fetchone()
      if duplicate:
        return {"error": "Tag already exists"}, 409
      cursor = conn.execute(
        "INSERT INTO tags (user_id, tag_name, tag_type) VALUES (?, ?, ?)",
        (user_id, tag_name, tag_type),
      )
      tag = database.row_to_dict(conn.execute("SELECT * FROM tags WHERE id = ?", (cursor.lastrowid,)).fetchone())
    return tag, 201

  @app.route("/api/tags/<int:tag_id>", methods=["DELETE"])
  @login_required
  def delete_tag(tag_id: int) -> Tuple[Dict[str, str], int]:
    with _db() as conn:
      deleted = conn.execute(
        "DELETE FROM tags WHERE id = ? AND user_id = ?",
        (tag_id, _current_user_id()),
      ).rowcount
    if not deleted:
      return {"error": "Tag not found"}, 404
    return {"message": "Tag deleted successfully"}, 200

  # Event types --------------------------------------------------------------

  @app.route("/api/event-types", methods=["GET"])
  @login_required
  def list_event_types():
    with _db() as conn:
      event_types = database.list_event_types(conn, _current_user_id())
    return jsonify(event_types), 200

  @app.route("/api/event-types", methods=["POST"])
  @login_required
  def create_event_type() -> Tuple[Dict[str, Any], int]:
    """Create a custom event type for the user."""
    payload = request.get_json(silent=True) or {}
    name = _optional_text(payload.get("name"))
    emoji = _optional_text(payload.get("emoji"))
    if not name or not emoji:
      return {"error": "name and emoji are required"}, 400

    user_id = _current_user_id()
    with _db() as conn:
      if database.event_type_exists(conn, user_id, name):
        return {"error": "Event type already exists"}, 409
      cursor = conn.execute(
        "INSERT INTO event_types (user_id, name, emoji, is_custom) VALUES (?, ?, ?, 1)",
        (user_id, name, emoji),
      )
      event_type = database.row_to_dict(
        conn.execute("SELECT * FROM event_types WHERE id = ?", (cursor.lastrowid,)).fetchone()
      )
    event_type["is_custom"] = True
    return event_type, 201

  @app.route("/api/event-types/<int:event_type_id>", methods=["DELETE"])
  @login_required
  def delete_event_type(event_type_id: int) -> Tuple[Dict[str, str], int]:
    with _db() as conn:
      deleted = conn.execute(
        "DELETE FROM event_types WHERE id = ? AND is_custom = 1 AND user_id = ?",
        (event_type_id, _current_user_id()),
      ).rowcount
    if not deleted:
      return {"error": "Event type not found or cannot be deleted"}, 404
    return {"message": "Event type deleted successfully"}, 200

  # CSV import ---------------------------------------------------------------

  @app.route("/api/csv/import", methods=["POST"])
  @login_required
  def csv_import() -> Tuple[Dict[str, Any], int]:
    """Import plants from an uploaded CSV export."""
    uploaded_file = request.files.get("csv")
    if uploaded_file is None or uploaded_file.filename == "":
      return {"error": "No CSV file uploaded"}, 400

    try:
      rows = read_csv_rows(uploaded_file.read().decode("utf-8-sig"))
    except UnicodeDecodeError:
      return {"error": "CSV file must be UTF-8 encoded"}, 400
    except CsvImportError as exc:
      return {"error": str(exc)}, 400

    user_id = _current_user_id()
    clear_existing = (request.form.get("clearExisting") or "").lower() == "true"
    with _db() as conn:
      if clear_existing:
        for plant in database.clear_user_data(conn, user_id):
          delete_plant_upload_folder(upload_root, user_id, plant["name"])
      result = import_plants(
        conn,
        user_id,
        rows,
        upload_root=upload_root,
        media_dir=app.config["CSV_MEDIA_DIR"],
      )
    return result.to_dict(), 200

  @app.route("/api/health", methods=["GET"])
  def health() -> Tuple[Dict[str, str], int]:
    """Simple health-check endpoint."""
    return {
      "status": "ok",
      "message": "My Plant Diaries API is running",
      "timestamp": datetime.now(timezone.utc).isoformat(),
    }, 200

  return app


if __name__ == "__main__":
  flask_app = create_app()
  flask_app.run(host="0.0.0.0", port=_safe_int(os.environ.get("PORT"), 3001), debug=True)
