import io

import pytest
from PIL import Image

from plant_diaries.image_metadata import ImageConversionError, convert_heic_to_png, extract_taken_at, is_heic


def test_extract_taken_at_from_bytes(image_bytes):
  assert extract_taken_at(image_bytes(exif_datetime="2022:11:05 18:04:59")) == "2022-11-05T18:04:59+00:00"


def test_extract_taken_at_from_path(tmp_path, image_bytes):
  path = tmp_path / "photo.jpg"
  path.write_bytes(image_bytes(exif_datetime="2021:01:02 03:04:05"))
  assert extract_taken_at(path) == "2021-01-02T03:04:05+00:00"


def test_extract_taken_at_without_exif(image_bytes):
  assert extract_taken_at(image_bytes(fmt="PNG")) is None


def test_extract_taken_at_ignores_garbage():
  assert extract_taken_at(b"definitely not an image") is None


def test_extract_taken_at_ignores_malformed_dates(image_bytes):
  assert extract_taken_at(image_bytes(exif_datetime="0000:00:00 00:00:00")) is None


@pytest.mark.parametrize("filename,expected", [
  ("IMG_1.HEIC", True),
  ("img.heif", True),
  ("img.jpg", False),
])
def test_is_heic(filename, expected):
  assert is_heic(filename) is expected


def test_convert_heic_to_png(tmp_path):
  pillow_heif = pytest.importorskip("pillow_heif")
  source = tmp_path / "in.heic"
  pillow_heif.from_pillow(Image.new("RGB", (12, 10), (0, 120, 200))).save(str(source), quality=90)

  destination = convert_heic_to_png(source, tmp_path / "out" / "in.png")
  assert destination.exists()
  assert source.exists()
  with Image.open(destination) as image:
    assert image.format == "PNG"
    assert image.size == (12, 10)


def test_convert_rejects_non_images(tmp_path):
  source = tmp_path / "broken.heic"
  source.write_bytes(b"nope")
  with pytest.raises(ImageConversionError):
    convert_heic_to_png(source, tmp_path / "broken.png")


def test_convert_keeps_alpha_channel(tmp_path):
  buffer = io.BytesIO()
  Image.new("RGBA", (4, 4), (1, 2, 3, 128)).save(buffer, format="PNG")
  source = tmp_path / "alpha.heif"
  source.write_bytes(buffer.getvalue())
  # Pillow sniffs the content, so a mislabelled PNG still converts.
  destination = convert_heic_to_png(source, tmp_path / "alpha.png")
  with Image.open(destination) as image:
    assert image.mode == "RGBA"
