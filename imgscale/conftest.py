from typing import Callable, Sequence

import pytest
from pyvips import Image  # type: ignore

LOADER_MAP = {
    'jpegload': 'image/jpeg',
    'jpegload_buffer': 'image/jpeg',
    'pngload': 'image/png',
    'pngload_buffer': 'image/png',
    'gifload': 'image/gif',
    'gifload_buffer': 'image/gif',
}

RED = (255, 0, 0)


@pytest.fixture
def make_image() -> Callable[..., bytes]:

  def fn(width: int, height: int, ext: str = '.png', color: Sequence[int] = RED) -> bytes:
    image = (Image.black(width, height, bands=len(color)) + list(color)).cast('uchar')
    return image.write_to_buffer(ext)

  return fn


@pytest.fixture
def read_image() -> Callable[[bytes], tuple[tuple[int, int], str]]:

  def fn(data: bytes) -> tuple[tuple[int, int], str]:
    image = Image.new_from_buffer(data, '')
    return (image.get('width'), image.get('height')), LOADER_MAP[image.get('vips-loader')]

  return fn


@pytest.fixture
def pixel() -> Callable[[bytes, int, int], list[float]]:

  def fn(data: bytes, x: int, y: int) -> list[float]:
    return Image.new_from_buffer(data, '')(x, y)

  return fn
