import io
import sqlite3

from plant_diaries import database


def test_create_and_fetch_plant(client, auth_headers):
  response = client.post(
    "/api/plants",
    json={
      "name": "Calathea orbifolia",
      "alias": "Orbi",
      "price": "24.50",
      "delivery_fee": 3,
      "purchased_from": "Leafy Co",
      "purchased_when": "2024-03-01",
      "status": "Alive",
    },
    headers=auth_headers,
  )
  assert response.status_code == 201
  plant = response.get_json()
  assert plant["price"] == 24.5
  assert plant["last_watered"] is None

  fetched = client.get(f"/api/plants/{plant['id']}", headers=auth_headers)
  assert fetched.status_code == 200
  assert fetched.get_json()["alias"] == "Orbi"


def test_purchased_from_creates_tag(client, auth_headers, create_plant):
  create_plant(auth_headers, purchased_from="Leafy Co")
  create_plant(auth_headers, name="Pothos", purchased_from="Leafy Co")
  tags = client.get("/api/tags?type=purchased_from", headers=auth_headers).get_json()
  assert [tag["tag_name"] for tag in tags] == ["Leafy Co"]


def test_plant_validation(client, auth_headers):
  assert client.post("/api/plants", json={"name": "  "}, headers=auth_headers).status_code == 400
  assert client.post("/api/plants", json={"name": "X", "status": "Sleeping"}, headers=auth_headers).status_code == 400
  assert client.post("/api/plants", json={"name": "X", "price": "cheap"}, headers=auth_headers).status_code == 400
  assert client.post("/api/plants", json={"name": "X", "purchased_when": "03/01/2024"}, headers=auth_headers).status_code == 400


def test_plants_are_scoped_to_their_owner(client, register, create_plant):
  alice = register()
  bob = register()
  plant = create_plant(alice["headers"])

  assert client.get(f"/api/plants/{plant['id']}", headers=bob["headers"]).status_code == 404
  assert client.put(f"/api/plants/{plant['id']}", json={"name": "Mine"}, headers=bob["headers"]).status_code == 404
  assert client.delete(f"/api/plants/{plant['id']}", headers=bob["headers"]).status_code == 404
  assert client.get("/api/plants", headers=bob["headers"]).get_json() == []


def test_last_watered_is_latest_water_event(client, auth_headers, create_plant):
  plant = create_plant(auth_headers)
  for event_type, event_date in (("Water", "2024-05-01"), ("Water", "2024-05-09"), ("Repot", "2024-06-01")):
    response = client.post(
      "/api/events",
      json={"plant_id": plant["id"], "event_type": event_type, "event_date": event_date},
      headers=auth_headers,
    )
    assert response.status_code == 201

  fetched = client.get(f"/api/plants/{plant['id']}", headers=auth_headers).get_json()
  assert fetched["last_watered"] == "2024-05-09"


def test_list_filters_and_sorting(client, auth_headers, create_plant):
  create_plant(auth_headers, name="beta", status="Dead", purchased_from="Shop A")
  create_plant(auth_headers, name="Alpha", alias="Zebra plant")
  watered = create_plant(auth_headers, name="Gamma")
  client.post(
    "/api/events",
    json={"plant_id": watered["id"], "event_type": "Water", "event_date": "2024-01-01"},
    headers=auth_headers,
  )

  names = [plant["name"] for plant in client.get("/api/plants", headers=auth_headers).get_json()]
  assert names == ["Alpha", "beta", "Gamma"]

  dead = client.get("/api/plants?status=Dead", headers=auth_headers).get_json()
  assert [plant["name"] for plant in dead] == ["beta"]

  by_shop = client.get("/api/plants?purchased_from=Shop%20A", headers=auth_headers).get_json()
  assert [plant["name"] for plant in by_shop] == ["beta"]

  search = client.get("/api/plants?q=zebra", headers=auth_headers).get_json()
  assert [plant["name"] for plant in search] == ["Alpha"]

  desc = client.get("/api/plants?sort=last_watered&order=desc", headers=auth_headers).get_json()
  assert desc[0]["name"] == "Gamma"
  assert desc[-1]["last_watered"] is None


def test_profile_photo_is_moved_out_of_staging(client, auth_headers, image_bytes, upload_root):
  upload = client.post(
    "/api/upload/single",
    data={"photo": (io.BytesIO(image_bytes()), "leaf.jpg")},
    headers=auth_headers,
    content_type="multipart/form-data",
  ).get_json()
  assert "/temp/" in upload["path"]

  plant = client.post(
    "/api/plants",
    json={"name": "String of Pearls", "profile_photo": upload["path"]},
    headers=auth_headers,
  ).get_json()
  assert "/string_of_pearls/" in plant["profile_photo"]
  assert (upload_root / plant["profile_photo"].removeprefix("/uploads/")).is_file()


def test_rename_moves_photos_and_rewrites_paths(client, auth_headers, create_plant, image_bytes, upload_root):
  plant = create_plant(auth_headers, name="Old Name")
  upload = client.post(
    "/api/upload/single",
    data={"photo": (io.BytesIO(image_bytes()), "a.png"), "plantId": str(plant["id"])},
    headers=auth_headers,
    content_type="multipart/form-data",
  ).get_json()
  assert "/old_name/" in upload["path"]
  photo = client.post(
    "/api/photos",
    json={"plant_id": plant["id"], "photo_path": upload["path"]},
    headers=auth_headers,
  ).get_json()

  response = client.put(
    f"/api/plants/{plant['id']}",
    json={"name": "New Name", "profile_photo": upload["path"]},
    headers=auth_headers,
  )
  assert response.status_code == 200
  updated = response.get_json()
  assert "/new_name/" in updated["profile_photo"]

  photos = client.get(f"/api/photos/plant/{plant['id']}", headers=auth_headers).get_json()
  assert photos[0]["id"] == photo["id"]
  assert photos[0]["photo_path"] == updated["profile_photo"]
  user_dir = upload_root / str(plant["user_id"])
  assert not (user_dir / "old_name").exists()
  assert (user_dir / "new_name").is_dir()


def test_delete_plant_removes_folder_and_children(client, auth_headers, create_plant, image_bytes, upload_root):
  plant = create_plant(auth_headers, name="Doomed")
  client.post(
    "/api/upload/single",
    data={"photo": (io.BytesIO(image_bytes()), "a.jpg"), "plantId": str(plant["id"])},
    headers=auth_headers,
    content_type="multipart/form-data",
  )
  client.post(
    "/api/events",
    json={"plant_id": plant["id"], "event_type": "Water", "event_date": "2024-01-01"},
    headers=auth_headers,
  )
  folder = upload_root / str(plant["user_id"]) / "doomed"
  assert folder.is_dir()

  response = client.delete(f"/api/plants/{plant['id']}", headers=auth_headers)
  assert response.status_code == 200
  assert not folder.exists()
  assert client.get(f"/api/plants/{plant['id']}", headers=auth_headers).status_code == 404
  assert client.get("/api/events", headers=auth_headers).get_json() == []


def _plant_with_photo(client, headers, create_plant, image_bytes, name):
  plant = create_plant(headers, name=name)
  upload = client.post(
    "/api/upload/single",
    data={"photo": (io.BytesIO(image_bytes()), "a.jpg"), "plantId": str(plant["id"])},
    headers=headers,
    content_type="multipart/form-data",
  ).get_json()
  client.post("/api/photos", json={"plant_id": plant["id"], "photo_path": upload["path"]}, headers=headers)
  return plant, upload["path"]


def test_rename_with_missing_staged_photo_moves_nothing(client, auth_headers, create_plant, image_bytes, upload_root):
  plant, photo_path = _plant_with_photo(client, auth_headers, create_plant, image_bytes, "Old")

  response = client.put(
    f"/api/plants/{plant['id']}",
    json={"name": "New", "profile_photo": f"/uploads/{plant['user_id']}/temp/missing.jpg"},
    headers=auth_headers,
  )
  assert response.status_code == 404
  assert (upload_root / photo_path.removeprefix("/uploads/")).is_file()
  photos = client.get(f"/api/photos/plant/{plant['id']}", headers=auth_headers).get_json()
  assert photos[0]["photo_path"] == photo_path
  assert client.get(f"/api/plants/{plant['id']}", headers=auth_headers).get_json()["name"] == "Old"


def test_rename_puts_files_back_when_the_update_fails(
  client, auth_headers, create_plant, image_bytes, upload_root, monkeypatch
):
  plant, photo_path = _plant_with_photo(client, auth_headers, create_plant, image_bytes, "Old")

  def locked(*args, **kwargs):
    raise sqlite3.OperationalError("database is locked")

  monkeypatch.setattr(database, "update_plant", locked)
  response = client.put(f"/api/plants/{plant['id']}", json={"name": "New"}, headers=auth_headers)

  assert response.status_code == 500
  assert (upload_root / photo_path.removeprefix("/uploads/")).is_file()
  assert not list((upload_root / str(plant["user_id"])).glob("new/*"))
