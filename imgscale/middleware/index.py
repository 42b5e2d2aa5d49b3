import dataclasses
import mimetypes
import re
from enum import Enum
from http import HTTPStatus
from logging import Logger
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional

from imgscale.log import RequestLog, logger
from imgscale.matcher.index import FlagSet, PathMatcher, ScaleRequest, as_matcher
from imgscale.scaler.index import (
    DEFAULT_MEMORY_LIMIT,
    JPEG_QUALITY_RANGE,
    CropCapability,
    ScaleError,
    ScalingEngine,
    UnsupportedEncoding
)
from imgscale.typing import (
    Environ,
    ExcInfo,
    Headers,
    HttpPath,
    StartResponse,
    WsgiApp
)

DEFAULT_ORIG_EXT = ('jpg', 'png', 'gif')

INT_OPTIONS = ('memory_limit', 'jpeg_quality', 'width', 'height')

list_re = re.compile(r'[\s,]+')


class InvalidConfig(Exception):
  pass


def split_list(s: str) -> list[str]:
  return [item for item in list_re.split(s) if item != '']


def parse_flag_options(s: str) -> FlagSet:
  """Parses ``fill=ff00ff, crop`` style flags used in configuration files."""
  flags: dict[str, Optional[str]] = {}
  for item in split_list(s):
    name, sep, value = item.partition('=')
    flags[name] = value if sep else None
  return FlagSet(flags)


def mime_type(extension: str) -> Optional[str]:
  return mimetypes.types_map.get(f'.{extension.lower()}')


@dataclasses.dataclass(eq=True, frozen=True)
class OverridePolicy:
  width: Optional[int] = None
  height: Optional[int] = None
  flags: Optional[FlagSet] = None

  def apply(self, req: ScaleRequest) -> ScaleRequest:
    return dataclasses.replace(
        req,
        width=req.width if self.width is None else self.width,
        height=req.height if self.height is None else self.height,
        flags=req.flags if self.flags is None else self.flags)


@dataclasses.dataclass(frozen=True)
class InstanceConfig:
  match: Any = None
  orig_ext: tuple[str, ...] = DEFAULT_ORIG_EXT
  memory_limit: int = DEFAULT_MEMORY_LIMIT
  jpeg_quality: Optional[int] = None
  width: Optional[int] = None
  height: Optional[int] = None
  flags: Optional[FlagSet] = None

  def __post_init__(self) -> None:
    object.__setattr__(self, 'match', as_matcher(self.match))
    object.__setattr__(self, 'orig_ext', tuple(self.orig_ext))
    if self.jpeg_quality is not None and self.jpeg_quality not in JPEG_QUALITY_RANGE:
      raise InvalidConfig(f'jpeg_quality must be between 1 and 100: {self.jpeg_quality}')
    if self.flags is not None:
      object.__setattr__(self, 'flags', FlagSet.parse(self.flags))

  @property
  def matcher(self) -> PathMatcher:
    return self.match

  @property
  def overrides(self) -> OverridePolicy:
    return OverridePolicy(width=self.width, height=self.height, flags=self.flags)

  @classmethod
  def from_options(cls, options: Mapping[str, str]) -> 'InstanceConfig':
    kwargs: dict[str, Any] = {}

    for name, value in options.items():
      try:
        if name == 'match':
          kwargs[name] = re.compile(value)
        elif name == 'orig_ext':
          kwargs[name] = tuple(split_list(value))
        elif name == 'flags':
          kwargs[name] = parse_flag_options(value)
        elif name in INT_OPTIONS:
          kwargs[name] = int(value)
        else:
          raise InvalidConfig(f'unknown option: {name}')
      except (re.error, ValueError) as e:
        raise InvalidConfig(f'invalid "{name}": {value}') from e

    return cls(**kwargs)


class ChainedBody:
  """Response body whose first chunks were already consumed from ``body``."""

  def __init__(self, head: list[bytes], iterator: Iterator[bytes], body: Iterable[bytes]):
    self.head = head
    self.iterator = iterator
    self.body = body

  def __iter__(self) -> Iterator[bytes]:
    yield from self.head
    yield from self.iterator

  def close(self) -> None:
    close = getattr(self.body, 'close', None)
    if close is not None:
      close()


@dataclasses.dataclass(frozen=True)
class SubResponse:
  status: str
  headers: Headers
  body: ChainedBody
  exc_info: Optional[ExcInfo] = None

  @property
  def status_code(self) -> int:
    return int(self.status.split(' ', 1)[0])

  def close(self) -> None:
    self.body.close()


def call_app(app: WsgiApp, environ: Environ) -> SubResponse:
  started: list[tuple[str, Headers, Optional[ExcInfo]]] = []
  written: list[bytes] = []

  def start_response(status: str, headers: Headers, exc_info: Optional[ExcInfo] = None):
    started.append((status, headers, exc_info))
    return written.append

  body = app(environ, start_response)
  iterator = iter(body)
  head: list[bytes] = []

  # Generator applications call start_response on the first iteration.
  if not started:
    for chunk in iterator:
      head.append(chunk)
      if started:
        break

  if not started:
    ChainedBody([], iterator, body).close()
    raise RuntimeError('application did not call start_response')

  status, headers, exc_info = started[-1]
  return SubResponse(status, list(headers), ChainedBody(written + head, iterator, body), exc_info)


class OriginalFetcher:
  """Finds the original image by trying each extension against the downstream application."""

  def __init__(self, app: WsgiApp, orig_ext: Iterable[str]):
    self.app = app
    self.orig_ext = tuple(orig_ext)

  def fetch(self, environ: Environ, basename: HttpPath, log: RequestLog) -> Optional[SubResponse]:
    for ext in self.orig_ext:
      original = f'{basename}.{ext}'
      res = call_app(self.app, {**environ, 'PATH_INFO': original})
      if res.status_code != HTTPStatus.NOT_FOUND:
        log.log_debug('original found', {'original': original, 'status': res.status})
        return res
      res.close()

    return None


class FilterState(Enum):
  ACCUMULATING = 0
  FLUSHING = 1
  DONE = 2


class ResponseBodyFilter:
  """Buffers the whole response body and replaces it with ``transform(buffer)``.

  Resizing needs the complete encoded image, so nothing is emitted until the
  end of the stream. Iterating the filter yields an empty chunk for every
  chunk received and the transformed image last.
  """

  def __init__(
      self,
      transform: Callable[[bytes], bytes],
      body: Iterable[bytes] = (),
      log: Optional[RequestLog] = None,
  ):
    self.transform = transform
    self.body = body
    self.log = RequestLog(logger) if log is None else log
    self.state = FilterState.ACCUMULATING
    self.buffer: Optional[bytearray] = bytearray()

  def feed(self, chunk: bytes) -> bytes:
    if self.state != FilterState.ACCUMULATING or self.buffer is None:
      raise RuntimeError(f'cannot feed in state {self.state.name}')
    self.buffer += chunk
    return b''

  def finish(self) -> bytes:
    if self.state != FilterState.ACCUMULATING or self.buffer is None:
      return b''

    self.state = FilterState.FLUSHING
    buffer = bytes(self.buffer)
    self.buffer = None

    try:
      if len(buffer) == 0:
        self.log.log_debug('empty body', {})
        return b''
      return self.transform(buffer)
    except ScaleError as e:
      self.log.log_warning('failed to scale', {'reason': str(e), 'error': type(e).__name__})
      return b''
    finally:
      self.state = FilterState.DONE

  def __iter__(self) -> Iterator[bytes]:
    for chunk in self.body:
      yield self.feed(chunk)
    yield self.finish()

  def close(self) -> None:
    close = getattr(self.body, 'close', None)
    if close is not None:
      close()


def rewrite_headers(headers: Headers, content_type: str) -> Headers:
  rewritten: Headers = []
  for name, value in headers:
    lname = name.lower()
    if lname == 'content-length':
      continue
    if lname == 'content-type':
      continue
    rewritten.append((name, value))
  rewritten.append(('Content-Type', content_type))
  return rewritten


class ImageScale:
  """WSGI middleware that resizes and converts images on the fly.

  A request to ``/images/foo_40x40.png`` fetches ``/images/foo.jpg``,
  ``/images/foo.png`` or ``/images/foo.gif`` (the first one the downstream
  application does not answer with 404), scales it to 40x40 and converts it
  to PNG. Response headers other than ``Content-Type`` and ``Content-Length``
  come from the original, so conditional requests can be validated against
  the original without scaling. Converted images are not cached.
  """

  def __init__(
      self,
      app: WsgiApp,
      config: Optional[InstanceConfig] = None,
      cropper: Optional[CropCapability] = None,
      log: Logger = logger,
      **options: Any,
  ):
    if config is not None and options:
      raise TypeError(f'options cannot be combined with config: {", ".join(sorted(options))}')

    self.app = app
    self.config = InstanceConfig(**options) if config is None else config
    self.log = log
    self.engine = ScalingEngine(
        memory_limit=self.config.memory_limit,
        jpeg_quality=self.config.jpeg_quality,
        cropper=cropper)
    self.fetcher = OriginalFetcher(app, self.config.orig_ext)

  def __call__(self, environ: Environ, start_response: StartResponse) -> Iterable[bytes]:
    path = environ.get('PATH_INFO', '')
    log = RequestLog(self.log, path=path)

    matched = self.config.matcher.match(path)
    if matched is None:
      return self.app(environ, start_response)

    basename, req = ScaleRequest.from_matched(matched)
    req = self.config.overrides.apply(req)
    content_type = mime_type(req.extension)
    log.context['ext'] = req.extension

    if content_type is None or not self.engine.supports(content_type):
      raise UnsupportedEncoding(f'conversion to .{req.extension} is not implemented')

    res = self.fetcher.fetch(environ, basename, log)
    if res is None:
      log.log_debug('no orig', {'basename': basename})
      return self.app(environ, start_response)

    start_response(res.status, rewrite_headers(res.headers, content_type), res.exc_info)

    def transform(buffer: bytes) -> bytes:
      return self.engine.scale(buffer, content_type, req, log)

    return ResponseBodyFilter(transform, res.body, log)


def filter_factory(
    global_conf: Mapping[str, str],
    **local_conf: str,
) -> Callable[[WsgiApp], ImageScale]:
  """PasteDeploy filter factory.

  Example::

    [filter:imgscale]
    paste.filter_factory = imgscale.middleware.index:filter_factory
    orig_ext = jpg png
    jpeg_quality = 85
    width = 200
    height = 100
    flags = fill=ff00ff
  """
  config = InstanceConfig.from_options(local_conf)

  def make_filter(app: WsgiApp) -> ImageScale:
    return ImageScale(app, config)

  return make_filter
