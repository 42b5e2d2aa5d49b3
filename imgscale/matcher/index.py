import dataclasses
import re
from typing import (
    Any,
    Callable,
    Iterator,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable
)

from imgscale.typing import HttpPath

FlagValue = int | str | None

CAPTURE_NAMES = ('width', 'height', 'flags')

# basename_WxH-flags.ext, each of W, H and -flags optional.
DEFAULT_PATTERN = re.compile(
    r'\A(?P<basename>.+)'
    r'_(?P<width>\d+)?'
    r'x(?P<height>\d+)?'
    r'(?:-(?P<flags>.+))?'
    r'(?=\.(?:png|jpg|jpeg)\Z)')

flag_split_re = re.compile(r'(?<=\w)(?=\d)')
ext_re = re.compile(r'\.(\w+)\Z')


def normalize_flag_value(value: Any) -> FlagValue:
  if value is None or isinstance(value, int):
    return value
  s = str(value)
  if s.isdigit():
    return int(s)
  return s


def to_dimension(value: Any) -> Optional[int]:
  if value is None or value == '':
    return None
  return int(value)


class FlagSet(Mapping[str, FlagValue]):
  """Immutable set of processing flags, e.g. ``fill-z20`` -> ``{'fill': None, 'z': 20}``."""

  def __init__(self, flags: Optional[Mapping[str, Any]] = None):
    self._flags: dict[str, FlagValue] = {
        str(k): normalize_flag_value(v) for k, v in (flags or {}).items()
    }

  @classmethod
  def from_string(cls, s: str) -> 'FlagSet':
    flags: dict[str, FlagValue] = {}
    for token in s.split('-'):
      if token == '':
        continue
      parts = flag_split_re.split(token, maxsplit=1)
      flags[parts[0]] = parts[1] if len(parts) == 2 else None
    return cls(flags)

  @classmethod
  def parse(cls, flags: Any) -> 'FlagSet':
    if flags is None:
      return cls()
    if isinstance(flags, FlagSet):
      return flags
    if isinstance(flags, Mapping):
      return cls(flags)
    if isinstance(flags, str):
      return cls.from_string(flags)
    raise TypeError(f'unsupported flags: {flags!r}')

  def number(self, name: str) -> Optional[int]:
    value = self._flags.get(name)
    if isinstance(value, int):
      return value
    return None

  def __getitem__(self, name: str) -> FlagValue:
    return self._flags[name]

  def __iter__(self) -> Iterator[str]:
    return iter(self._flags)

  def __len__(self) -> int:
    return len(self._flags)

  def __hash__(self) -> int:
    return hash(frozenset(self._flags.items()))

  def __repr__(self) -> str:
    return f'FlagSet({self._flags!r})'


@dataclasses.dataclass(eq=True, frozen=True)
class Matched:
  width: Optional[int]
  height: Optional[int]
  flags: FlagSet
  path: HttpPath

  @classmethod
  def from_values(cls, path: str, values: Sequence[Any]) -> 'Matched':
    padded = list(values[:3]) + [None] * (3 - len(values[:3]))
    return cls(
        width=to_dimension(padded[0]),
        height=to_dimension(padded[1]),
        flags=FlagSet.parse(padded[2]),
        path=HttpPath(path))


@runtime_checkable
class PathMatcher(Protocol):

  def match(self, path: str) -> Optional[Matched]:
    ...


class PatternMatcher:
  """Matches paths with a regular expression.

  Captures are taken from the named groups ``width``, ``height`` and ``flags``
  when the pattern defines any of them, otherwise from the first three
  positional groups. A ``basename`` group replaces the matched span, which
  strips the size and flags from the path used to fetch the original.
  """

  def __init__(self, pattern: str | re.Pattern[str]):
    self.pattern = re.compile(pattern)

  def match(self, path: str) -> Optional[Matched]:
    m = self.pattern.search(path)
    if m is None:
      return None

    names = self.pattern.groupindex
    if 'basename' in names:
      path = path[:m.start()] + m['basename'] + path[m.end():]

    if any(name in names for name in CAPTURE_NAMES):
      values = [m[name] if name in names else None for name in CAPTURE_NAMES]
    else:
      values = list(m.groups()[:3])

    return Matched.from_values(path, values)


class CallbackMatcher:
  """Matches paths with a callable.

  The callable returns a falsy value for no match, a ``Matched`` to take full
  control (including a rewritten path), or up to three positional values
  interpreted as width, height and flags.
  """

  def __init__(self, callback: Callable[[str], Any]):
    self.callback = callback

  def match(self, path: str) -> Optional[Matched]:
    result = self.callback(path)
    if isinstance(result, Matched):
      return result
    if not result:
      return None
    return Matched.from_values(path, result)


def as_matcher(rule: Any) -> PathMatcher:
  if rule is None:
    return PatternMatcher(DEFAULT_PATTERN)
  if isinstance(rule, (str, re.Pattern)):
    return PatternMatcher(rule)
  if isinstance(rule, PathMatcher):
    return rule
  if callable(rule):
    return CallbackMatcher(rule)
  raise TypeError(f'unsupported match rule: {rule!r}')


@dataclasses.dataclass(eq=True, frozen=True)
class ScaleRequest:
  width: Optional[int]
  height: Optional[int]
  flags: FlagSet
  extension: str

  @classmethod
  def from_matched(cls, matched: Matched) -> tuple[HttpPath, 'ScaleRequest']:
    m = ext_re.search(matched.path)
    if m is None:
      basename, extension = matched.path, ''
    else:
      basename, extension = matched.path[:m.start()], m[1]

    return HttpPath(basename), cls(
        width=matched.width, height=matched.height, flags=matched.flags, extension=extension)
