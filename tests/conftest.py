from __future__ import annotations

import io
import itertools
from pathlib import Path
from typing import Callable, Dict

import pytest
from PIL import Image

from app import create_app
from plant_diaries import database

_emails = itertools.count(1)


@pytest.fixture
def upload_root(tmp_path: Path) -> Path:
  return tmp_path / "uploads"


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
  return tmp_path / "plants.sqlite"


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
  folder = tmp_path / "csv"
  folder.mkdir()
  return folder


@pytest.fixture
def app(db_path: Path, upload_root: Path, media_dir: Path):
  flask_app = create_app({
    "DB_PATH": db_path,
    "UPLOAD_DIR": upload_root,
    "CSV_MEDIA_DIR": media_dir,
    "JWT_SECRET": "test-secret",
    "JWT_REFRESH_SECRET": "test-refresh-secret",
    "MAX_UPLOAD_MB": 1,
  })
  flask_app.config["TESTING"] = True
  return flask_app


@pytest.fixture
def client(app):
  return app.test_client()


@pytest.fixture
def register(client) -> Callable[..., Dict]:
  """Register a fresh account; returns the response body plus ready-made auth headers."""

  def _register(email: str | None = None, password: str = "secret123", display_name: str = "Tester") -> Dict:
    email = email or f"user{next(_emails)}@example.com"
    response = client.post(
      "/api/auth/register",
      json={"email": email, "password": password, "displayName": display_name},
    )
    assert response.status_code == 201, response.get_json()
    body = response.get_json()
    body["headers"] = {"Authorization": f"Bearer {body['accessToken']}"}
    return body

  return _register


@pytest.fixture
def auth_headers(register) -> Dict[str, str]:
  return register()["headers"]


@pytest.fixture
def create_plant(client):
  def _create(headers: Dict[str, str], **fields) -> Dict:
    payload = {"name": "Monstera deliciosa", **fields}
    response = client.post("/api/plants", json=payload, headers=headers)
    assert response.status_code == 201, response.get_json()
    return response.get_json()

  return _create


def make_image_bytes(fmt: str = "JPEG", size=(8, 8), color=(30, 140, 60), exif_datetime: str | None = None) -> bytes:
  """Render a tiny image in memory, optionally with an EXIF DateTime."""
  image = Image.new("RGB", size, color)
  buffer = io.BytesIO()
  if exif_datetime:
    exif = Image.Exif()
    exif[0x0132] = exif_datetime
    image.save(buffer, format=fmt, exif=exif.tobytes())
  else:
    image.save(buffer, format=fmt)
  return buffer.getvalue()


@pytest.fixture
def image_bytes() -> Callable[..., bytes]:
  return make_image_bytes


@pytest.fixture
def conn(app, db_path: Path):
  with database.connect(db_path) as connection:
    yield connection
