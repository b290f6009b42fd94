"""Configuration for the request layer, read from the environment."""

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Mapping, Optional

from .auth import SIGN_IN_PATH
from .cache import DEFAULT_VERSION


DEFAULT_BASE_URL = 'http://localhost:8080'
DEFAULT_TIMEOUT = 10000
DEFAULT_RETRIES = 3


def _int(environ: Mapping[str, str], key: str, default: int) -> int:
    value = environ.get(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError('{} must be an integer, got {!r}'.format(key, value))


@dataclass(frozen=True)
class Settings:
    base_url: str = DEFAULT_BASE_URL
    timeout: int = DEFAULT_TIMEOUT
    """
    Per-attempt time budget in milliseconds.
    """
    retries: int = DEFAULT_RETRIES
    cache_version: str = DEFAULT_VERSION
    cache_directory: Optional[Path] = None
    """
    Where cache generations are stored. `None` keeps them in memory.
    """
    sign_in_path: str = SIGN_IN_PATH

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        environ = os.environ if environ is None else environ
        cache_directory = environ.get('APEX_CACHE_DIR')
        return cls(
            base_url=environ.get('APEX_API_URL') or DEFAULT_BASE_URL,
            timeout=_int(environ, 'APEX_TIMEOUT_MS', DEFAULT_TIMEOUT),
            retries=_int(environ, 'APEX_RETRIES', DEFAULT_RETRIES),
            cache_version=environ.get('APEX_CACHE_VERSION') or DEFAULT_VERSION,
            cache_directory=Path(cache_directory) if cache_directory else None,
        )
