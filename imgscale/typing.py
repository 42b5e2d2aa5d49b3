from types import TracebackType
from typing import Any, Callable, Iterable, NewType, Optional, Protocol

HttpPath = NewType('HttpPath', str)

Environ = dict[str, Any]
Headers = list[tuple[str, str]]
ExcInfo = tuple[type[BaseException], BaseException, Optional[TracebackType]]
Write = Callable[[bytes], object]


class StartResponse(Protocol):

  def __call__(
      self,
      status: str,
      headers: Headers,
      exc_info: Optional[ExcInfo] = ...,
  ) -> Write:
    ...


WsgiApp = Callable[[Environ, StartResponse], Iterable[bytes]]
