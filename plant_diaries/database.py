"""
SQLite persistence for the plant diary.

Connections are short-lived: callers open one with :func:`connect`, which
commits on success, rolls back on error and always closes. The schema is
created and upgraded in place by :func:`initialise_database`, so an older
database file picks up new columns on the next start.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

PLANT_STATUSES = ("Alive", "Dead", "Binned", "GaveAway")
TAG_TYPES = ("purchased_from", "status", "other")

DEFAULT_EVENT_TYPES: Tuple[Tuple[str, str], ...] = (
  ("Water", "💧"),
  ("Trim", "✂️"),
  ("Repot", "🪴"),
  ("Propagate", "🌱"),
  ("New Leaf", "🍃"),
  ("Pest control", "🐛"),
  ("Root Rot", "🦠"),
  ("Other", "📝"),
)
RETIRED_EVENT_TYPES = ("General Update",)

WATER_EVENT = "Water"

PLANT_COLUMNS = (
  "name",
  "alias",
  "price",
  "delivery_fee",
  "purchased_from",
  "purchased_when",
  "received_when",
  "purchase_notes",
  "status",
  "profile_photo",
)

_SCHEMA = (
  """
  CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT UNIQUE NOT NULL,
    password_hash TEXT NOT NULL,
    display_name TEXT,
    is_admin INTEGER DEFAULT 0,
    refresh_token TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS plants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    alias TEXT,
    price REAL,
    delivery_fee REAL,
    purchased_from TEXT,
    purchased_when TEXT,
    received_when TEXT,
    purchase_notes TEXT,
    status TEXT DEFAULT 'Alive',
    profile_photo TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS plant_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plant_id INTEGER NOT NULL,
    event_type TEXT NOT NULL,
    event_date TEXT NOT NULL,
    notes TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS plant_photos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    plant_id INTEGER NOT NULL,
    photo_path TEXT NOT NULL,
    caption TEXT,
    taken_at TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (plant_id) REFERENCES plants(id) ON DELETE CASCADE
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
    tag_name TEXT NOT NULL,
    tag_type TEXT NOT NULL,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (user_id, tag_name)
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS event_types (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER REFERENCES users(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    emoji TEXT NOT NULL,
    is_custom INTEGER DEFAULT 0,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
  )
  """,
)

# Columns introduced after the first release; added to older files on start.
_ADDED_COLUMNS = (
  ("users", "display_name", "TEXT"),
  ("users", "is_admin", "INTEGER DEFAULT 0"),
  ("users", "refresh_token", "TEXT"),
  ("plants", "alias", "TEXT"),
  ("plants", "purchase_notes", "TEXT"),
  ("plants", "user_id", "INTEGER REFERENCES users(id) ON DELETE CASCADE"),
  ("tags", "user_id", "INTEGER REFERENCES users(id) ON DELETE CASCADE"),
  ("event_types", "user_id", "INTEGER REFERENCES users(id) ON DELETE CASCADE"),
)

_INDEXES = (
  "CREATE INDEX IF NOT EXISTS idx_plants_user ON plants(user_id)",
  "CREATE INDEX IF NOT EXISTS idx_plant_events_plant ON plant_events(plant_id, event_type, event_date)",
  "CREATE INDEX IF NOT EXISTS idx_plant_photos_plant ON plant_photos(plant_id)",
)
_UNIQUE_EVENT_INDEX = (
  "CREATE UNIQUE INDEX IF NOT EXISTS idx_plant_events_unique "
  "ON plant_events(plant_id, event_type, event_date)"
)

PLANT_SELECT = """
  SELECT
    p.*,
    (SELECT event_date
     FROM plant_events
     WHERE plant_id = p.id AND event_type = 'Water'
     ORDER BY event_date DESC
     LIMIT 1) AS last_watered
  FROM plants p
"""


def get_db_connection(db_path: Path | str) -> sqlite3.Connection:
  """Return a SQLite connection with row access by name and foreign keys on."""
  path = Path(db_path)
  path.parent.mkdir(parents=True, exist_ok=True)
  conn = sqlite3.connect(path)
  conn.row_factory = sqlite3.Row
  conn.execute("PRAGMA foreign_keys = ON")
  return conn


@contextmanager
def connect(db_path: Path | str) -> Iterator[sqlite3.Connection]:
  """Yield a connection inside a transaction and close it afterwards."""
  conn = get_db_connection(db_path)
  try:
    with conn:
      yield conn
  finally:
    conn.close()


def initialise_database(db_path: Path | str) -> None:
  """Ensure every table exists with the expected schema."""
  with connect(db_path) as conn:
    for statement in _SCHEMA:
      conn.execute(statement)

    for table, column, ddl in _ADDED_COLUMNS:
      try:
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}")
      except sqlite3.OperationalError as exc:
        if "duplicate column" not in str(exc):
          raise

    for statement in _INDEXES:
      conn.execute(statement)
    try:
      conn.execute(_UNIQUE_EVENT_INDEX)
    except sqlite3.IntegrityError:
      logger.warning("Duplicate plant events present; unique event index not created.")

    for name, emoji in DEFAULT_EVENT_TYPES:
      conn.execute(
        """
        INSERT INTO event_types (user_id, name, emoji, is_custom)
        SELECT NULL, ?, ?, 0
        WHERE NOT EXISTS (
          SELECT 1 FROM event_types WHERE is_custom = 0 AND name = ?
        )
        """,
        (name, emoji, name),
      )

    for retired in RETIRED_EVENT_TYPES:
      removed = conn.execute("DELETE FROM plant_events WHERE event_type = ?", (retired,)).rowcount
      conn.execute("DELETE FROM event_types WHERE name = ?", (retired,))
      if removed:
        logger.info("Removed %d '%s' events", removed, retired)


def row_to_dict(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
  if row is None:
    return None
  return {key: row[key] for key in row.keys()}


def rows_to_dicts(rows: Sequence[sqlite3.Row]) -> List[Dict[str, Any]]:
  return [{key: row[key] for key in row.keys()} for row in rows]


# Users -----------------------------------------------------------------------


def fetch_user_by_email(conn: sqlite3.Connection, email: str) -> Dict[str, Any] | None:
  """Return a user record by email (case-insensitive)."""
  row = conn.execute(
    "SELECT * FROM users WHERE lower(email) = lower(?)",
    (email,),
  ).fetchone()
  return row_to_dict(row)


def fetch_user_by_id(conn: sqlite3.Connection, user_id: int) -> Dict[str, Any] | None:
  row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
  return row_to_dict(row)


def create_user(
  conn: sqlite3.Connection,
  email: str,
  password_hash: str,
  display_name: Optional[str] = None,
  *,
  is_admin: bool = False,
  user_id: Optional[int] = None,
) -> int:
  """Insert a user and return its id. Raises ``sqlite3.IntegrityError`` on a taken email."""
  if user_id is None:
    cursor = conn.execute(
      "INSERT INTO users (email, password_hash, display_name, is_admin) VALUES (?, ?, ?, ?)",
      (email.lower(), password_hash, display_name, int(is_admin)),
    )
    return int(cursor.lastrowid)

  conn.execute(
    "INSERT INTO users (id, email, password_hash, display_name, is_admin) VALUES (?, ?, ?, ?, ?)",
    (user_id, email.lower(), password_hash, display_name, int(is_admin)),
  )
  return user_id


def store_refresh_token(conn: sqlite3.Connection, user_id: int, token: Optional[str]) -> None:
  conn.execute(
    "UPDATE users SET refresh_token = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
    (token, user_id),
  )


# Plants ----------------------------------------------------------------------


def fetch_plant(conn: sqlite3.Connection, user_id: int, plant_id: int) -> Dict[str, Any] | None:
  """Return one of the user's plants with its ``last_watered`` date."""
  row = conn.execute(
    PLANT_SELECT + " WHERE p.id = ? AND p.user_id = ?",
    (plant_id, user_id),
  ).fetchone()
  return row_to_dict(row)


_SORTABLE = {
  "name": "lower(p.name)",
  "purchased_when": "p.purchased_when",
  "received_when": "p.received_when",
  "last_watered": "last_watered",
}


def list_plants(
  conn: sqlite3.Connection,
  user_id: int,
  *,
  status: Optional[str] = None,
  purchased_from: Optional[str] = None,
  search: Optional[str] = None,
  sort: str = "name",
  order: str = "asc",
) -> List[Dict[str, Any]]:
  """Return the user's plants, filtered and sorted. NULL sort keys go last."""
  sql = PLANT_SELECT + " WHERE p.user_id = ?"
  params: List[Any] = [user_id]
  if status:
    sql += " AND p.status = ?"
    params.append(status)
  if purchased_from:
    sql += " AND p.purchased_from = ?"
    params.append(purchased_from)
  if search:
    sql += " AND (lower(p.name) LIKE ? OR lower(coalesce(p.alias, '')) LIKE ?)"
    pattern = f"%{search.lower()}%"
    params.extend([pattern, pattern])

  sort_expr = _SORTABLE.get(sort, _SORTABLE["name"])
  direction = "DESC" if order.lower() == "desc" else "ASC"
  sql += f" ORDER BY {sort_expr} IS NULL, {sort_expr} {direction}, lower(p.name) ASC, p.id ASC"
  return rows_to_dicts(conn.execute(sql, params).fetchall())


def insert_plant(conn: sqlite3.Connection, user_id: int, plant: Dict[str, Any]) -> int:
  placeholders = ", ".join("?" for _ in PLANT_COLUMNS)
  cursor = conn.execute(
    f"INSERT INTO plants (user_id, {', '.join(PLANT_COLUMNS)}) VALUES (?, {placeholders})",
    [user_id, *(plant.get(column) for column in PLANT_COLUMNS)],
  )
  return int(cursor.lastrowid)


def update_plant(conn: sqlite3.Connection, user_id: int, plant_id: int, plant: Dict[str, Any]) -> int:
  assignments = ", ".join(f"{column} = ?" for column in PLANT_COLUMNS)
  cursor = conn.execute(
    f"UPDATE plants SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ? AND user_id = ?",
    [*(plant.get(column) for column in PLANT_COLUMNS), plant_id, user_id],
  )
  return cursor.rowcount


def add_water_event(conn: sqlite3.Connection, plant_id: int, event_date: str) -> bool:
  """Insert a Water event unless one already exists on that date."""
  cursor = conn.execute(
    """
    INSERT INTO plant_events (plant_id, event_type, event_date)
    SELECT ?, ?, ?
    WHERE NOT EXISTS (
      SELECT 1 FROM plant_events WHERE plant_id = ? AND event_type = ? AND event_date = ?
    )
    """,
    (plant_id, WATER_EVENT, event_date, plant_id, WATER_EVENT, event_date),
  )
  return cursor.rowcount > 0


# Tags and event types --------------------------------------------------------


def ensure_tag(conn: sqlite3.Connection, user_id: int, tag_name: str, tag_type: str = "purchased_from") -> None:
  """Create the tag for the user if it does not exist yet."""
  conn.execute(
    """
    INSERT INTO tags (user_id, tag_name, tag_type)
    SELECT ?, ?, ?
    WHERE NOT EXISTS (SELECT 1 FROM tags WHERE user_id = ? AND tag_name = ?)
    """,
    (user_id, tag_name, tag_type, user_id, tag_name),
  )


def list_event_types(conn: sqlite3.Connection, user_id: int) -> List[Dict[str, Any]]:
  """Built-in event types first, then the user's custom ones, each by name."""
  rows = conn.execute(
    """
    SELECT * FROM event_types
    WHERE is_custom = 0 OR user_id = ?
    ORDER BY is_custom ASC, name ASC
    """,
    (user_id,),
  ).fetchall()
  result = rows_to_dicts(rows)
  for entry in result:
    entry["is_custom"] = bool(entry["is_custom"])
  return result


def event_type_exists(conn: sqlite3.Connection, user_id: int, name: str) -> bool:
  row = conn.execute(
    """
    SELECT 1 FROM event_types
    WHERE lower(name) = lower(?) AND (is_custom = 0 OR user_id = ?)
    LIMIT 1
    """,
    (name, user_id),
  ).fetchone()
  return row is not None


def clear_user_data(conn: sqlite3.Connection, user_id: int) -> List[Dict[str, Any]]:
  """Delete the user's plants (events and photos cascade) and tags.

  Returns the removed plants so the caller can drop their upload folders.
  """
  plants = rows_to_dicts(
    conn.execute("SELECT id, name FROM plants WHERE user_id = ?", (user_id,)).fetchall()
  )
  plant_ids = [plant["id"] for plant in plants]
  if plant_ids:
    marks = ", ".join("?" for _ in plant_ids)
    conn.execute(f"DELETE FROM plant_events WHERE plant_id IN ({marks})", plant_ids)
    conn.execute(f"DELETE FROM plant_photos WHERE plant_id IN ({marks})", plant_ids)
  conn.execute("DELETE FROM plants WHERE user_id = ?", (user_id,))
  conn.execute("DELETE FROM tags WHERE user_id = ?", (user_id,))
  return plants


__all__ = [
  "DEFAULT_EVENT_TYPES",
  "PLANT_COLUMNS",
  "PLANT_STATUSES",
  "TAG_TYPES",
  "WATER_EVENT",
  "add_water_event",
  "clear_user_data",
  "connect",
  "create_user",
  "ensure_tag",
  "event_type_exists",
  "fetch_plant",
  "fetch_user_by_email",
  "fetch_user_by_id",
  "get_db_connection",
  "initialise_database",
  "insert_plant",
  "list_event_types",
  "list_plants",
  "row_to_dict",
  "rows_to_dicts",
  "store_refresh_token",
  "update_plant",
]
