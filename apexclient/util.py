import dataclasses
import json
import logging
import time
from typing import Any, Optional

import requests
from urllib3 import HTTPResponse
from urllib3.exceptions import DecodeError, HTTPError, ProtocolError, ReadTimeoutError


logger = logging.getLogger(__name__)


def clamp(value, min, max):
    return sorted((min, value, max))[1]


def backoff_delay(attempt: int) -> float:
    """
    Seconds to wait after the failed attempt with 0-based index `attempt`.
    """
    return float(2 ** attempt)


class DataclassJSONEncoder(json.JSONEncoder):
    def default(self, o):
        if dataclasses.is_dataclass(o):
            return dataclasses.asdict(o)
        return super().default(o)


def safe_json_parse(text: Optional[str], fallback: Any = None) -> Any:
    """
    Parse a JSON string, returning `fallback` for anything that is missing,
    blank, the literal strings "undefined"/"null", or not valid JSON.
    """
    if text is None or not text.strip() or text in ('undefined', 'null'):
        return fallback

    try:
        parsed = json.loads(text)
    except ValueError:
        logger.warning('Failed to parse JSON string: {!r}'.format(text[:80]))
        return fallback

    return fallback if parsed is None else parsed


def _read_chunk(raw, chunk_size: int) -> bytes:
    if isinstance(raw, HTTPResponse):
        # read1 returns as soon as some data is available.
        return raw.read1(chunk_size, decode_content=True)
    return raw.read(chunk_size)


def _set_read_timeout(raw, seconds: float) -> None:
    sock = getattr(getattr(raw, 'connection', None), 'sock', None)
    if sock is not None:
        sock.settimeout(seconds)


def read_body(response: requests.Response, deadline: Optional[float], chunk_size: int = 8192) -> bytes:
    """
    Read the whole body of a response that was sent with `stream=True`.

    @param deadline
      A `time.monotonic()` value by which the body must be complete, or `None`
      to wait as long as the connection allows.
    @throws requests.ReadTimeout
      If the deadline passes first. The response is closed.
    @throws requests.RequestException
      If the connection fails while reading. The response is closed.
    """
    raw = response.raw
    chunks = []
    try:
        while True:
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise requests.ReadTimeout('Response from {} was not complete in time'.format(response.url))
                _set_read_timeout(raw, remaining)

            try:
                chunk = _read_chunk(raw, chunk_size)
            except ReadTimeoutError as e:
                raise requests.ReadTimeout(e)
            except ProtocolError as e:
                raise requests.exceptions.ChunkedEncodingError(e)
            except DecodeError as e:
                raise requests.exceptions.ContentDecodingError(e)
            except (HTTPError, OSError) as e:
                raise requests.ConnectionError(e)

            if not chunk:
                return b''.join(chunks)
            chunks.append(chunk)
    except requests.RequestException:
        response.close()
        raise
