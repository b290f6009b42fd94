"""
Defines the types passed between the API client, the offline cache worker and
the cache storage.

These types are as simple as possible in order to most conveniently consume and
produce instances of them.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Generic, Mapping, Optional, TypeVar, Union
from urllib.parse import urlsplit


T = TypeVar('T')


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


@dataclass(frozen=True)
class Request:
    """
    Represents an outbound request, excluding parts not used for caching.

    The body and the HTTP version do not affect caching, and so we exclude
    them.
    """

    method: str
    """
    The HTTP method of the request. E.g., "GET".
    """

    uri: str
    """
    The absolute URL of the resource being requested. Cache entries are keyed
    by it.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    """
    All the headers being sent with the request.
    """

    @property
    def path(self) -> str:
        return urlsplit(self.uri).path or '/'

    def with_headers(self, headers: Mapping[str, str]) -> 'Request':
        """
        Return a copy of this request with `headers` merged over its own.
        """
        merged = dict(self.headers)
        merged.update(headers)
        return replace(self, headers=merged)


@dataclass(frozen=True)
class Response:
    """
    Represents a response snapshot, without any bells and whistles.

    The body is held in memory so that a snapshot can be stored in a cache and
    served again with identical bytes.
    """

    status: int
    """
    The status code of the response. E.g., 200 or 400.
    """

    reason: str
    """
    The reason string, which relates to the status code.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    """
    All the headers sent with the response.
    """

    body: bytes = field(default=b'', compare=False)
    """
    The response payload.
    """

    @property
    def is_ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        return _header(self.headers, name)

    def copy(self) -> 'Response':
        return Response(status=self.status,
                        reason=self.reason,
                        headers=dict(self.headers),
                        body=bytes(self.body))


@dataclass(frozen=True)
class CacheEntry:
    """
    A stored response snapshot together with the request it answers and the
    name of the cache generation it belongs to.
    """
    request: Request
    response: Response
    generation: Optional[str] = None


class FetchError(Exception):
    """
    Raised by a fetch function when the network could not be reached.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class FetchCancelled(Exception):
    """
    Raised by a fetch function when the caller abandoned the request, e.g. on a
    client-side timeout. Nobody is left to receive a fallback response.
    """

    def __init__(self, cause: BaseException) -> None:
        super().__init__(str(cause))
        self.cause = cause


METHODS = frozenset({'GET', 'POST', 'PUT', 'DELETE', 'PATCH'})


@dataclass(frozen=True)
class RequestOptions:
    """
    Describes a single API call. Built fresh for every call.
    """

    method: str = 'GET'
    body: Any = None
    headers: Mapping[str, str] = field(default_factory=dict)
    timeout: Optional[int] = None
    """
    Per-attempt time budget in milliseconds. `None` means the client default.
    """
    retries: Optional[int] = None
    """
    Number of extra attempts after a transport failure. `None` means the client
    default.
    """

    def __post_init__(self):
        if self.method not in METHODS:
            raise ValueError('Unsupported method: {}'.format(self.method))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError('Timeout must be positive, got {}'.format(self.timeout))
        if self.retries is not None and self.retries < 0:
            raise ValueError('Retries must not be negative, got {}'.format(self.retries))


class ErrorKind(Enum):
    TIMEOUT = 'timeout'
    HTTP_STATUS = 'http-status'
    TRANSPORT = 'transport'
    PARSE = 'parse'


@dataclass(frozen=True)
class ApiError:
    kind: ErrorKind
    message: str
    status: Optional[int] = None
    details: Any = None
    cause: Optional[BaseException] = field(default=None, compare=False)


@dataclass(frozen=True)
class Success(Generic[T]):
    data: T

    ok = True


@dataclass(frozen=True)
class Failure:
    error: ApiError

    ok = False


Result = Union[Success, Failure]
