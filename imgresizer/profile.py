import dataclasses
import json
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

PROFILE_IMAGE_PROFILE = 'profile'

SVG_MIME = 'image/svg+xml'
WEBP_MIME = 'image/webp'

# Lambda@Edge response bodies are limited to 1MB.
SIZE_LIMIT = 1024 * 1024

DEADLINE = 5.0

PERM_RESP_MAX_AGE = 365 * 24 * 60 * 60

DEFAULT_CONFIG_PATH = Path(__file__).with_name('config.json')


@dataclasses.dataclass(eq=True, frozen=True)
class ProfileSpec:
  name: str
  width: Optional[int] = None
  height: Optional[int] = None

  def upscales(self, width: int, height: int) -> bool:
    if self.width is not None and self.width > width:
      return True
    if self.height is not None and self.height > height:
      return True
    return False


def _profiles(*specs: ProfileSpec) -> Mapping[str, ProfileSpec]:
  return MappingProxyType({s.name: s for s in specs})


PROFILES = _profiles(
    ProfileSpec('original'),
    ProfileSpec(PROFILE_IMAGE_PROFILE, 200, 200),
    ProfileSpec('thumbnail', 300, 300),
    ProfileSpec('miniThumbnail', 150, 150),
    ProfileSpec('resized', 1440, 1440),
)

CONTENT_TYPES: Mapping[str, str] = MappingProxyType({
    'png': 'image/png',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'gif': 'image/gif',
    'webp': WEBP_MIME,
    'svg': SVG_MIME,
    'svg+xml': SVG_MIME,
})

ANIMATED_EXTENSIONS = frozenset(['gif', 'webp'])


class ImageFormat(Enum):
  SVG = 0
  RASTER = 1

  @classmethod
  def maybe_from_extension(cls, ext: str) -> Optional['ImageFormat']:
    mime = CONTENT_TYPES.get(ext)
    if mime is None:
      return None
    if mime == SVG_MIME:
      return cls.SVG
    return cls.RASTER


class InvalidConfig(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class GatewayConfig:
  region: str = 'us-east-1'
  image_bucket: str = 'ogxyz-image'
  profile_bucket: str = 'ogxyz-image-profile'
  fallback_host: str = 'https://d4gknzklml.execute-api.us-east-1.amazonaws.com'
  size_limit: int = SIZE_LIMIT
  deadline: float = DEADLINE
  perm_resp_max_age: int = PERM_RESP_MAX_AGE
  use_accelerate_endpoint: bool = True

  @classmethod
  def from_dict(cls, d: dict[str, Any]) -> 'GatewayConfig':
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(d) - names)
    if unknown:
      raise InvalidConfig(f'unknown config keys: {", ".join(unknown)}')

    try:
      return cls(**d)
    except TypeError as e:
      raise InvalidConfig(str(e)) from e

  @classmethod
  def from_file(cls, path: Path = DEFAULT_CONFIG_PATH) -> 'GatewayConfig':
    """Returns the compiled-in defaults when ``path`` does not exist."""
    if not path.exists():
      return cls()

    try:
      d = json.loads(path.read_text())
    except json.JSONDecodeError as e:
      raise InvalidConfig(f'invalid JSON in {path}: {e}') from e

    if not isinstance(d, dict):
      raise InvalidConfig(f'{path} must contain a JSON object')

    return cls.from_dict(d)

  def bucket_for(self, profile: str) -> str:
    if profile == PROFILE_IMAGE_PROFILE:
      return self.profile_bucket
    return self.image_bucket

  def fallback_location(self, profile: str, filename: str) -> str:
    return f'{self.fallback_host}/prod/image/{profile}/{filename}'
