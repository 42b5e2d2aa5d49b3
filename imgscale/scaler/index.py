import dataclasses
import importlib.util
import io
import time
from logging import Logger
from typing import Any, Optional, Protocol

import pyvips
from pyvips import Image  # type: ignore

from imgscale.log import RequestLog, logger
from imgscale.matcher.index import ScaleRequest

DEFAULT_MEMORY_LIMIT = 10_000_000

JPEG_QUALITY_RANGE = range(1, 101)

JPEG_MIME = 'image/jpeg'
PNG_MIME = 'image/png'

ENCODERS = {
    JPEG_MIME: '.jpg',
    PNG_MIME: '.png',
}

PIL_FORMATS = {
    JPEG_MIME: 'JPEG',
    PNG_MIME: 'PNG',
}


class ScaleError(Exception):
  pass


class DecodeFailure(ScaleError):
  pass


class ResizeFailure(ScaleError):
  pass


class UnsupportedEncoding(Exception):
  pass


class CropFailure(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


@dataclasses.dataclass(frozen=True)
class Area:
  x: int
  y: int
  width: int
  height: int

  @property
  def right(self) -> int:
    return self.x + self.width

  @property
  def bottom(self) -> int:
    return self.y + self.height


@dataclasses.dataclass(eq=True, frozen=True)
class ScalePlan:
  # Requested size before zooming. The final crop is cut to this size.
  target_width: Optional[int]
  target_height: Optional[int]
  resized: Size
  canvas: Size
  crop: bool
  background: Optional[int]

  def needs_crop(self, actual: Size) -> bool:
    if not self.crop:
      return False
    if self.target_width is not None and self.target_width < actual.width:
      return True
    if self.target_height is not None and self.target_height < actual.height:
      return True
    return False


@dataclasses.dataclass(frozen=True)
class TransformResult:
  data: bytes
  content_type: str
  size: Size


def parse_color(value: Any) -> int:
  try:
    return int(str(value), 16)
  except ValueError:
    raise ResizeFailure(f'invalid fill color: {value}')


def rgb(color: int) -> list[float]:
  return [float((color >> 16) & 0xff), float((color >> 8) & 0xff), float(color & 0xff)]


def calc_plan(original: Size, req: ScaleRequest) -> ScalePlan:
  if original.width <= 0 or original.height <= 0:
    raise DecodeFailure(f'empty image: {original.width}x{original.height}')

  flags = req.flags
  ratio = original.width / original.height
  width: Optional[float] = req.width
  height: Optional[float] = req.height

  zoom = flags.number('z')
  if zoom is not None and 0 < zoom:
    if width:
      width *= 1 + zoom / 100
    if height:
      height *= 1 + zoom / 100

  if 'crop' in flags and width is not None and height is not None:
    # Cover the box so that cropping never needs padding.
    width = max(width, height * ratio)
    height = max(height, width / ratio)

  if width is None and height is None:
    width, height = original.width, original.height
  elif width is None:
    assert height is not None
    width = height * ratio
  elif height is None:
    height = width / ratio

  canvas = Size(round(width), round(height))
  if canvas.width < 1 or canvas.height < 1:
    raise ResizeFailure(f'invalid size: {canvas.width}x{canvas.height}')

  keep_aspect = 'fill' in flags and req.width is not None and req.height is not None
  if keep_aspect:
    scale = min(canvas.width / original.width, canvas.height / original.height)
    resized = Size(
        max(1, round(original.width * scale)), max(1, round(original.height * scale)))
  else:
    resized = canvas

  fill = flags.get('fill')
  background = None if fill is None else parse_color(fill)

  return ScalePlan(
      target_width=req.width,
      target_height=req.height,
      resized=resized,
      canvas=canvas,
      crop='crop' in flags,
      background=background)


def calc_center_crop(size: Size, width: Optional[int], height: Optional[int]) -> Area:
  crop_width = size.width if width is None else min(width, size.width)
  crop_height = size.height if height is None else min(height, size.height)

  return Area(
      x=(size.width - crop_width) // 2,
      y=(size.height - crop_height) // 2,
      width=crop_width,
      height=crop_height)


class CropCapability(Protocol):

  def crop(self, result: TransformResult, width: Optional[int], height: Optional[int]) -> bytes:
    ...


class NoCrop:
  """Used when no crop library is installed. Results are returned uncropped."""

  def crop(self, result: TransformResult, width: Optional[int], height: Optional[int]) -> bytes:
    return result.data


class PillowCrop:

  def __init__(self, jpeg_quality: Optional[int] = None):
    self.jpeg_quality = jpeg_quality

  def crop(self, result: TransformResult, width: Optional[int], height: Optional[int]) -> bytes:
    from PIL import Image as PILImage

    try:
      with PILImage.open(io.BytesIO(result.data)) as img:
        area = calc_center_crop(Size(img.width, img.height), width, height)
        cropped = img.crop((area.x, area.y, area.right, area.bottom))

        params: dict[str, Any] = {}
        if result.content_type == JPEG_MIME and self.jpeg_quality is not None:
          params['quality'] = self.jpeg_quality

        out = io.BytesIO()
        cropped.save(out, format=PIL_FORMATS[result.content_type], **params)
        return out.getvalue()
    except (OSError, ValueError, KeyError) as e:
      raise CropFailure(str(e)) from e


def probe_crop_capability(log: Logger, jpeg_quality: Optional[int] = None) -> CropCapability:
  if importlib.util.find_spec('PIL') is None:
    log.warning({
        'message': 'crop capability unavailable',
        'reason': 'Pillow is not installed',
    })
    return NoCrop()
  return PillowCrop(jpeg_quality)


def fill_canvas(image: Image, plan: ScalePlan, content_type: str) -> Image:
  if image.bands < 3:
    image = image.colourspace('srgb')

  if plan.background is None and content_type == PNG_MIME:
    # Transparent padding
    if not image.hasalpha():
      image = image.bandjoin(255)
    background = [0.0] * image.bands
  else:
    background = rgb(plan.background or 0)
    if image.hasalpha():
      background.append(255.0)

  return image.embed(
      (plan.canvas.width - image.width) // 2,
      (plan.canvas.height - image.height) // 2,
      plan.canvas.width,
      plan.canvas.height,
      extend='background',
      background=background)


def estimate_memory(original: Image, plan: ScalePlan) -> int:
  """Bytes needed to hold the decoded source and the destination canvas at once."""
  source = original.width * original.height * original.bands
  dest = plan.canvas.width * plan.canvas.height * max(original.bands, 3)
  return source + dest


class ScalingEngine:

  def __init__(
      self,
      memory_limit: int = DEFAULT_MEMORY_LIMIT,
      jpeg_quality: Optional[int] = None,
      cropper: Optional[CropCapability] = None,
  ):
    if jpeg_quality is not None and jpeg_quality not in JPEG_QUALITY_RANGE:
      raise ValueError(f'jpeg_quality must be between 1 and 100: {jpeg_quality}')

    self.memory_limit = memory_limit
    self.jpeg_quality = jpeg_quality
    self.cropper = probe_crop_capability(logger, jpeg_quality) if cropper is None else cropper

  def supports(self, content_type: Optional[str]) -> bool:
    return content_type in ENCODERS

  def resize_image(
      self,
      buffer: bytes,
      original: Image,
      plan: ScalePlan,
      content_type: str,
  ) -> Image:
    needed = estimate_memory(original, plan)
    if self.memory_limit < needed:
      raise ResizeFailure(f'memory limit exceeded: {needed} > {self.memory_limit}')

    # Loads through thumbnail so that jpeg sources shrink on load.
    image = Image.thumbnail_buffer(
        buffer, plan.resized.width, height=plan.resized.height, size='force')

    if plan.canvas != plan.resized:
      image = fill_canvas(image, plan, content_type)

    return image

  def encode(self, image: Image, content_type: str) -> bytes:
    if content_type == JPEG_MIME:
      if image.hasalpha():
        image = image.flatten(background=rgb(0))
      if self.jpeg_quality is None:
        return image.write_to_buffer(ENCODERS[content_type])
      return image.write_to_buffer(ENCODERS[content_type], Q=self.jpeg_quality)

    if content_type == PNG_MIME:
      return image.write_to_buffer(ENCODERS[content_type])

    raise UnsupportedEncoding(f'conversion to {content_type} is not implemented')

  def transform(
      self,
      buffer: bytes,
      content_type: str,
      req: ScaleRequest,
  ) -> tuple[TransformResult, ScalePlan]:
    try:
      # Only the header is read here.
      original: Image = Image.new_from_buffer(buffer, '')
    except pyvips.Error as e:
      raise DecodeFailure(str(e)) from e

    plan = calc_plan(Size.from_image(original), req)

    try:
      image = self.resize_image(buffer, original, plan, content_type)
      data = self.encode(image, content_type)
    except pyvips.Error as e:
      raise ResizeFailure(str(e)) from e

    return TransformResult(data=data, content_type=content_type, size=Size.from_image(image)), plan

  def scale(
      self,
      buffer: bytes,
      content_type: str,
      req: ScaleRequest,
      log: Optional[RequestLog] = None,
  ) -> bytes:
    """Resize and re-encode ``buffer`` as ``content_type``.

    Raises ``ScaleError`` when the image cannot be decoded or resized, and
    ``UnsupportedEncoding`` when ``content_type`` has no encoder.
    """
    log = RequestLog(logger) if log is None else log

    if not self.supports(content_type):
      raise UnsupportedEncoding(f'conversion to {content_type} is not implemented')

    start_ns = time.time_ns()
    result, plan = self.transform(buffer, content_type, req)
    vips_us = (time.time_ns() - start_ns) // 1000

    log.log_debug('resize param', {
        'plan': plan,
        'result': result.size,
        'vips_us': vips_us,
        'img_size': len(result.data),
    })

    if not plan.needs_crop(result.size):
      return result.data

    try:
      return self.cropper.crop(result, plan.target_width, plan.target_height)
    except CropFailure as e:
      log.log_warning('failed to crop', {'reason': str(e)})
      return result.data
