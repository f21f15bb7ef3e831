import json
from pathlib import Path

import pytest

from imgresizer.profile import (
    CONTENT_TYPES,
    PROFILES,
    GatewayConfig,
    ImageFormat,
    InvalidConfig,
    ProfileSpec
)


def test_profiles() -> None:
  assert PROFILES['original'] == ProfileSpec('original')
  assert PROFILES['profile'] == ProfileSpec('profile', 200, 200)
  assert PROFILES['thumbnail'] == ProfileSpec('thumbnail', 300, 300)
  assert PROFILES['miniThumbnail'] == ProfileSpec('miniThumbnail', 150, 150)
  assert PROFILES['resized'] == ProfileSpec('resized', 1440, 1440)
  assert 'unknownprofile' not in PROFILES


def test_tables_are_read_only() -> None:
  with pytest.raises(TypeError):
    PROFILES['huge'] = ProfileSpec('huge', 5000, 5000)  # type: ignore

  with pytest.raises(TypeError):
    CONTENT_TYPES['bmp'] = 'image/bmp'  # type: ignore


@pytest.mark.parametrize(
    'width,height,expected', [
        (100, 100, True),
        (300, 100, True),
        (100, 300, True),
        (300, 300, False),
        (4000, 3000, False),
    ])
def test_upscales(width: int, height: int, expected: bool) -> None:
  assert PROFILES['thumbnail'].upscales(width, height) == expected


def test_upscales_without_target() -> None:
  assert not PROFILES['original'].upscales(1, 1)


@pytest.mark.parametrize(
    'ext,expected', [
        ('png', ImageFormat.RASTER),
        ('jpg', ImageFormat.RASTER),
        ('jpeg', ImageFormat.RASTER),
        ('gif', ImageFormat.RASTER),
        ('webp', ImageFormat.RASTER),
        ('svg', ImageFormat.SVG),
        ('svg+xml', ImageFormat.SVG),
        ('bmp', None),
        ('', None),
    ])
def test_image_format(ext: str, expected: ImageFormat | None) -> None:
  assert ImageFormat.maybe_from_extension(ext) == expected


def test_bucket_for() -> None:
  config = GatewayConfig(image_bucket='images', profile_bucket='faces')

  assert config.bucket_for('profile') == 'faces'
  assert config.bucket_for('original') == 'images'
  assert config.bucket_for('thumbnail') == 'images'
  assert config.bucket_for('unknown') == 'images'


def test_fallback_location() -> None:
  config = GatewayConfig(fallback_host='https://fallback.example.com')

  assert config.fallback_location(
      'thumbnail', 'my photo.jpg') == 'https://fallback.example.com/prod/image/thumbnail/my photo.jpg'


def test_config_defaults(tmp_path: Path) -> None:
  config = GatewayConfig.from_file(tmp_path / 'config.json')

  assert config == GatewayConfig()
  assert config.size_limit == 1048576
  assert config.deadline == 5.0
  assert config.perm_resp_max_age == 31536000


def test_config_from_file(tmp_path: Path) -> None:
  path = tmp_path / 'config.json'
  path.write_text(json.dumps({
      'image_bucket': 'images',
      'profile_bucket': 'faces',
      'deadline': 2.5,
  }))

  config = GatewayConfig.from_file(path)

  assert config.image_bucket == 'images'
  assert config.profile_bucket == 'faces'
  assert config.deadline == 2.5
  assert config.region == 'us-east-1'


@pytest.mark.parametrize(
    'content', [
        '{"bucket": "images"}',
        '["images"]',
        '{not json',
    ], ids=['unknown_key', 'not_object', 'broken'])
def test_invalid_config(tmp_path: Path, content: str) -> None:
  path = tmp_path / 'config.json'
  path.write_text(content)

  with pytest.raises(InvalidConfig):
    GatewayConfig.from_file(path)
