import dataclasses
from typing import Any, Optional

import pyvips  # type: ignore
from pyvips import Image  # type: ignore

WIRE_FORMAT = 'webp'
WEBP_EXTENSION = '.webp'


class CodecError(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class ImageDimensions:
  width: int
  height: int
  format: str

  @classmethod
  def from_image(cls, image: Image) -> 'ImageDimensions':
    return cls(image.get('width'), image.get('height'), loader_format(image.get('vips-loader')))


def loader_format(loader: str) -> str:
  """Maps a libvips loader name such as ``webpload_buffer`` to ``webp``."""
  name = loader.removesuffix('_buffer').removesuffix('load')
  if name == 'heif':
    return 'avif'
  return name


def probe(data: bytes) -> Optional[ImageDimensions]:
  # Only the header is read; pixels are decoded lazily.
  try:
    image: Image = Image.new_from_buffer(data, '', access='sequential')
    return ImageDimensions.from_image(image)
  except pyvips.Error:
    return None


def load_options(animated: bool) -> dict[str, Any]:
  options: dict[str, Any] = {'fail_on': 'none'}
  if animated:
    options['n'] = -1
  return options


def resize(data: bytes, width: Optional[int], height: Optional[int], animated: bool) -> bytes:
  """Shrinks ``data`` to fit inside ``width`` x ``height`` and encodes it as WebP.

  The aspect ratio is kept and the image is never enlarged. When neither
  dimension is given the image is only transcoded. Metadata is kept.
  """
  try:
    if width is None and height is None:
      image: Image = Image.new_from_buffer(data, '', **load_options(animated))
    else:
      image = Image.thumbnail_buffer(
          data,
          width if width is not None else height,
          height=height if height is not None else width,
          size='down',
          option_string='n=-1' if animated else '',
          fail_on='none')

    return image.write_to_buffer(WEBP_EXTENSION)
  except pyvips.Error as e:
    raise CodecError(str(e)) from e
