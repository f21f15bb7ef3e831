import pytest
from pyvips import Image  # type: ignore

from imgresizer.codec import (
    CodecError,
    ImageDimensions,
    load_options,
    loader_format,
    probe,
    resize
)


def make_image(width: int, height: int, suffix: str) -> bytes:
  image = (Image.black(width, height, bands=3) + [200, 30, 30]).cast('uchar')
  return image.write_to_buffer(suffix)


def size_of(data: bytes) -> tuple[int, int]:
  image = Image.new_from_buffer(data, '')
  return (image.get('width'), image.get('height'))


@pytest.mark.parametrize(
    'loader,expected', [
        ('jpegload_buffer', 'jpeg'),
        ('pngload_buffer', 'png'),
        ('webpload_buffer', 'webp'),
        ('gifload_buffer', 'gif'),
        ('heifload_buffer', 'avif'),
        ('svgload_buffer', 'svg'),
    ])
def test_loader_format(loader: str, expected: str) -> None:
  assert loader_format(loader) == expected


@pytest.mark.parametrize(
    'suffix,expected', [
        ('.jpg', 'jpeg'),
        ('.png', 'png'),
        ('.webp', 'webp'),
    ])
def test_probe(suffix: str, expected: str) -> None:
  assert probe(make_image(640, 480, suffix)) == ImageDimensions(640, 480, expected)


def test_probe_unknown() -> None:
  assert probe(b'this is not an image') is None


def test_resize_fits_inside() -> None:
  resized = resize(make_image(4000, 3000, '.jpg'), 300, 300, False)

  assert size_of(resized) == (300, 225)
  assert probe(resized).format == 'webp'  # type: ignore


def test_resize_portrait() -> None:
  resized = resize(make_image(600, 1200, '.png'), 200, 200, False)

  assert size_of(resized) == (100, 200)


def test_resize_never_upscales() -> None:
  resized = resize(make_image(120, 60, '.png'), 300, 300, False)

  assert size_of(resized) == (120, 60)


def test_transcode_only() -> None:
  resized = resize(make_image(320, 240, '.png'), None, None, False)

  assert size_of(resized) == (320, 240)
  assert probe(resized).format == 'webp'  # type: ignore


def test_resize_broken() -> None:
  with pytest.raises(CodecError):
    resize(b'this is not an image', 300, 300, False)


def test_load_options() -> None:
  assert load_options(False) == {'fail_on': 'none'}
  assert load_options(True) == {'fail_on': 'none', 'n': -1}
