import re
from typing import Any, Optional

import pytest

from imgscale.matcher.index import (
    CallbackMatcher,
    FlagSet,
    Matched,
    PatternMatcher,
    ScaleRequest,
    as_matcher
)
from imgscale.typing import HttpPath


@pytest.mark.parametrize(
    'path,expected', [
        ('/images/foo_40x40.png', Matched(40, 40, FlagSet(), HttpPath('/images/foo.png'))),
        ('/images/foo_40x.jpg', Matched(40, None, FlagSet(), HttpPath('/images/foo.jpg'))),
        ('/images/foo_x40.jpeg', Matched(None, 40, FlagSet(), HttpPath('/images/foo.jpeg'))),
        ('/images/foo_x.png', Matched(None, None, FlagSet(), HttpPath('/images/foo.png'))),
        (
            '/images/foo_400x200-fill.png',
            Matched(400, 200, FlagSet({'fill': None}), HttpPath('/images/foo.png')),
        ),
        (
            '/images/foo_40x-crop-z20.png',
            Matched(40, None, FlagSet({
                'crop': None,
                'z': 20
            }), HttpPath('/images/foo.png')),
        ),
        (
            '/images/my_photo_10x20.jpg',
            Matched(10, 20, FlagSet(), HttpPath('/images/my_photo.jpg')),
        ),
        ('/images/foo.png', None),
        ('/images/foo_40x40.gif', None),
        ('/images/foo_40x40.png.txt', None),
        ('/images/foo_40y40.png', None),
    ],
    ids=[
        'both',
        'width-only',
        'height-only',
        'no-size',
        'fill',
        'crop-zoom',
        'underscore-in-basename',
        'no-size-segment',
        'gif',
        'trailing-extension',
        'no-x',
    ])
def test_default_pattern(path: str, expected: Optional[Matched]) -> None:
  assert as_matcher(None).match(path) == expected


@pytest.mark.parametrize(
    'flags,expected', [
        ('fill-z20', {
            'fill': None,
            'z': 20
        }),
        ('crop', {
            'crop': None
        }),
        ('fill--crop-', {
            'fill': None,
            'crop': None
        }),
        ('fill00ff00', {
            'fill': '00ff00'
        }),
        ('unknown7-z5', {
            'unknown': 7,
            'z': 5
        }),
        ('', {}),
    ],
    ids=['valued', 'boolean', 'empty-tokens', 'string-value', 'unknown-flag', 'empty'])
def test_flag_string(flags: str, expected: dict[str, Any]) -> None:
  assert dict(FlagSet.parse(flags)) == expected


def test_flagset_from_mapping() -> None:
  flags = FlagSet.parse({'fill': 'ff00ff', 'z': '20', 'crop': None})

  assert flags['fill'] == 'ff00ff'
  assert flags.number('z') == 20
  assert flags.number('fill') is None
  assert flags.number('missing') is None
  assert 'crop' in flags
  assert FlagSet.parse(flags) is flags


def test_flagset_is_hashable() -> None:
  assert hash(FlagSet({'a': 1})) == hash(FlagSet.parse('a1'))
  assert FlagSet({'a': 1}) == FlagSet.parse('a1')


def test_flagset_rejects_unknown_type() -> None:
  with pytest.raises(TypeError):
    FlagSet.parse(42)


def test_pattern_with_positional_groups() -> None:
  matcher = PatternMatcher(r'/thumbs/(\d+)/(\d+)/')

  assert matcher.match('/thumbs/10/20/foo.png') == Matched(
      10, 20, FlagSet(), HttpPath('/thumbs/10/20/foo.png'))
  assert matcher.match('/images/foo.png') is None


def test_pattern_with_named_groups() -> None:
  matcher = PatternMatcher(re.compile(r'\A(?P<basename>.+)@(?P<width>\d+)w(?=\.png\Z)'))

  assert matcher.match('/foo@300w.png') == Matched(300, None, FlagSet(), HttpPath('/foo.png'))


def test_callback_matcher_values() -> None:
  sizes = {
      'small': (10, 10),
      'big': (100, 100, 'crop'),
  }

  def callback(path: str) -> Any:
    m = re.match(r'\A.+_(\w+)\.(?:jpg|png)\Z', path)
    if m is None:
      return None
    return sizes.get(m[1], ())

  matcher = CallbackMatcher(callback)

  assert matcher.match('/foo_small.png') == Matched(10, 10, FlagSet(), HttpPath('/foo_small.png'))
  assert matcher.match('/foo_big.png') == Matched(
      100, 100, FlagSet({'crop': None}), HttpPath('/foo_big.png'))
  assert matcher.match('/foo_huge.png') is None
  assert matcher.match('/foo.gif') is None


def test_callback_matcher_rewrites_path() -> None:
  config = {'medium': {'width': 200, 'height': 100, 'crop': None}}

  def callback(path: str) -> Optional[Matched]:
    m = re.match(r'\A(.+)_(.+)\.(jpg|png)\Z', path)
    if m is None or m[2] not in config:
      return None
    entry = dict(config[m[2]])
    width = entry.pop('width')
    height = entry.pop('height')
    return Matched(width, height, FlagSet(entry), HttpPath(f'{m[1]}.{m[3]}'))

  matcher = as_matcher(callback)

  assert isinstance(matcher, CallbackMatcher)
  assert matcher.match('/images/foo_medium.png') == Matched(
      200, 100, FlagSet({'crop': None}), HttpPath('/images/foo.png'))


def test_as_matcher() -> None:
  assert isinstance(as_matcher(r'_(\d+)'), PatternMatcher)
  assert isinstance(as_matcher(re.compile(r'_(\d+)')), PatternMatcher)

  matcher = PatternMatcher(r'_(\d+)')
  assert as_matcher(matcher) is matcher

  with pytest.raises(TypeError):
    as_matcher(42)


@pytest.mark.parametrize(
    'path,basename,extension', [
        ('/images/foo.png', '/images/foo', 'png'),
        ('/images/foo.bar.jpeg', '/images/foo.bar', 'jpeg'),
        ('/images/foo', '/images/foo', ''),
    ],
    ids=['png', 'dotted', 'no-extension'])
def test_scale_request_from_matched(path: str, basename: str, extension: str) -> None:
  flags = FlagSet({'crop': None})
  actual_basename, req = ScaleRequest.from_matched(Matched(1, 2, flags, HttpPath(path)))

  assert actual_basename == basename
  assert req == ScaleRequest(1, 2, flags, extension)
