from abc import ABC, abstractmethod
from enum import Enum
import hashlib
import json
import logging
import os
from pathlib import Path
import re
import shutil
import tempfile
import threading
from typing import Dict, List, Optional

from .model import CacheEntry, Request, Response
from .util import clamp, DataclassJSONEncoder


logger = logging.getLogger(__name__)


GENERATION_PREFIX = 'apprenticeapex'
DEFAULT_VERSION = '1.0.0'

_GENERATION_NAME = re.compile(r'^[A-Za-z0-9._-]+$')


class CacheBucket(Enum):
    """
    The kinds of cache generation the worker keeps. Exactly one generation of
    each kind is current for a given version.
    """
    MAIN = 'main'
    STATIC = 'static'
    DYNAMIC = 'dynamic'


def generation_name(bucket: CacheBucket, version: str = DEFAULT_VERSION) -> str:
    if bucket is CacheBucket.MAIN:
        return '{}-v{}'.format(GENERATION_PREFIX, version)
    return '{}-{}-v{}'.format(GENERATION_PREFIX, bucket.value, version)


def _vary_keys(response: Response) -> List[str]:
    vary = response.header('Vary') or ''
    return [key.strip() for key in vary.split(',') if key.strip()]


def _request_header(request: Request, name: str) -> Optional[str]:
    for key, value in request.headers.items():
        if key.lower() == name.lower():
            return value
    return None


class Cache(ABC):
    """
    An abstraction of a single cache generation.

    A cache has a relatively narrow scope: to remember a response such that it
    can be recalled later for a request to the same URL. Deciding which
    responses are worth remembering, and when to throw a generation away, is
    left to the worker.
    """

    @abstractmethod
    def get(self, request: Request) -> Optional[CacheEntry]:
        """
        Retrieve a cached response matching `request`.

        @param request
          The request to look up in the cache. Only its URI is used as the key.
        @return
          A cached entry for `request`, or `None` if there is no valid one.
        """

    @abstractmethod
    def put(self, request: Request, response: Response) -> Optional[CacheEntry]:
        """
        Store a snapshot of `response` as the answer to `request`.

        Any existing entry for the same URI is replaced.

        @return
          The stored entry, or `None` if the cache refused to store it.
        """

    @abstractmethod
    def delete(self, request: Request) -> bool:
        """
        Delete the entry for `request`, if any.

        @return
          Whether an entry was deleted.
        """

    @abstractmethod
    def keys(self) -> List[Request]:
        """
        The requests of all entries currently held.
        """

    def close(self):
        """
        Close any resources associated with the cache.
        """


class HttpAwareCache(Cache):
    """
    Augments a cache with HTTP-specific knowledge.

    - Only GET requests are cached.
    - Only 200 responses are cached.
    - A stored entry only matches a request that agrees on its Vary headers.
    """

    def __init__(self, implementation: Cache) -> None:
        self.__impl = implementation

    def get(self, request: Request) -> Optional[CacheEntry]:
        entry = self.__impl.get(request)
        if entry is None:
            logger.info('No cache entry for {}'.format(request.uri))
            return None

        # region Only match entries whose Vary headers agree with the request.
        for key in _vary_keys(entry.response):
            if key == '*':
                logger.info('Cache entry is rejected because it varies on everything')
                return None
            expected_value = _request_header(entry.request, key)
            value = _request_header(request, key)
            if expected_value != value:
                logger.info('Cache entry is rejected because the value for a Vary header is not equal to the value in the original request. Header: {}. Expected value: {}. Actual value: {}'.format(key, expected_value, value))
                return None
        # endregion

        return entry

    def put(self, request: Request, response: Response) -> Optional[CacheEntry]:
        if request.method != 'GET':
            logger.info('Refusing to create cache entry. Method {} is not cachable.'.format(request.method))
            return None
        if response.status != 200:
            logger.info('Refusing to create cache entry. Status code {} is not cachable.'.format(response.status))
            return None
        return self.__impl.put(request, response)

    def delete(self, request: Request) -> bool:
        return self.__impl.delete(request)

    def keys(self) -> List[Request]:
        return self.__impl.keys()

    def close(self):
        self.__impl.close()


class MemoryCache(Cache):
    def __init__(self, name: Optional[str] = None) -> None:
        self.__name = name
        self.__entries: Dict[str, CacheEntry] = {}
        self.__lock = threading.Lock()

    def get(self, request: Request) -> Optional[CacheEntry]:
        with self.__lock:
            return self.__entries.get(request.uri)

    def put(self, request: Request, response: Response) -> Optional[CacheEntry]:
        entry = CacheEntry(request=request, response=response.copy(), generation=self.__name)
        with self.__lock:
            self.__entries[request.uri] = entry
        return entry

    def delete(self, request: Request) -> bool:
        with self.__lock:
            return self.__entries.pop(request.uri, None) is not None

    def keys(self) -> List[Request]:
        with self.__lock:
            return [entry.request for entry in self.__entries.values()]


class CorruptEntry(Exception):
    def __init__(self, entry_path: Path):
        super().__init__(str(entry_path))
        self.__entry_path = entry_path

    @property
    def entry_path(self) -> Path:
        return self.__entry_path


class FileCache(Cache):
    """
    A cache generation stored in a directory.

    Entries are JSON files under `entries/`, at a path derived from a hash of
    the request URI. Bodies are stored separately under `bodies/` at a random
    path that the entry points to. The body is always written before the entry
    so a reader never sees an entry without its body.
    """

    def __init__(self, directory: Path, cache_directory_levels: int = 5, name: Optional[str] = None) -> None:
        """
        Initialize the file cache.

        @param directory
          The path to the root directory of the generation.
        @param cache_directory_levels
          The number of subdirectory levels to use in the cache directory. This
          will be clamped to be between 0 and 20, respectively.
        """
        self.__directory = directory
        self.__entry_directory = directory / 'entries'
        self.__body_directory = directory / 'bodies'
        self.__cache_directory_levels = clamp(cache_directory_levels, 0, 20)
        self.__name = name or directory.name

    def _get_path(self, uri: str) -> Path:
        hashed = hashlib.sha256(uri.encode('utf-8')).hexdigest()
        return self._split_path(hashed)

    def _split_path(self, path: str) -> Path:
        subdirectories = (list(path[:self.__cache_directory_levels])
                          + [path[self.__cache_directory_levels:]])
        return Path(*subdirectories)

    def _read_entry(self, entry_path: Path) -> CacheEntry:
        """
        Read a cache entry, including its body, from an entry file.

        @throws FileNotFoundError
            If there is no entry file.
        @throws CorruptEntry
            If the entry file could not be parsed or its body is missing.
        """
        with open(entry_path, 'r') as f:
            try:
                serialized = json.load(f)
            except json.JSONDecodeError:
                raise CorruptEntry(entry_path)

        try:
            request = Request(method=serialized['request']['method'],
                              uri=serialized['request']['uri'],
                              headers=serialized['request']['headers'])
            body_path = self.__body_directory / Path(serialized['response']['body'])
            with open(body_path, 'rb') as f:
                body = f.read()
            response = Response(status=serialized['response']['status'],
                                reason=serialized['response']['reason'],
                                headers=serialized['response']['headers'],
                                body=body)
        except (KeyError, TypeError, FileNotFoundError):
            raise CorruptEntry(entry_path)

        return CacheEntry(request=request, response=response, generation=self.__name)

    def _body_path(self, entry_path: Path) -> Optional[Path]:
        try:
            with open(entry_path, 'r') as f:
                return self.__body_directory / Path(json.load(f)['response']['body'])
        except (OSError, KeyError, TypeError, json.JSONDecodeError):
            return None

    def get(self, request: Request) -> Optional[CacheEntry]:
        entry_path = self.__entry_directory / self._get_path(request.uri)
        try:
            return self._read_entry(entry_path)
        except FileNotFoundError:
            return None
        except CorruptEntry as e:
            corrupt_path = e.entry_path

        logger.warning('Found a corrupt cache entry. Deleting {}'.format(corrupt_path))
        body_path = self._body_path(corrupt_path)
        for path in (corrupt_path, body_path):
            if path is not None:
                # Another thread may have removed it already.
                path.unlink(missing_ok=True)
        return None

    def put(self, request: Request, response: Response) -> Optional[CacheEntry]:
        entry_path = self.__entry_directory / self._get_path(request.uri)
        previous_body_path = self._body_path(entry_path) if entry_path.exists() else None

        # We use a randomized body path as the entry can point to it anyways.
        body_path = self.__body_directory / self._split_path(os.urandom(32).hex())

        serialized = {
            'request': request,
            'response': {
                'status': response.status,
                'reason': response.reason,
                'headers': dict(response.headers),
                'body': str(body_path.relative_to(self.__body_directory))
            }
        }

        self.__directory.mkdir(parents=True, exist_ok=True)

        with tempfile.NamedTemporaryFile(mode='wb', dir=self.__directory, delete=False) as f:
            f.write(response.body)
        body_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(f.name, str(body_path))

        with tempfile.NamedTemporaryFile(mode='w', dir=self.__directory, delete=False) as f:
            json.dump(serialized, f, cls=DataclassJSONEncoder)
        entry_path.parent.mkdir(parents=True, exist_ok=True)
        os.replace(f.name, str(entry_path))

        if previous_body_path is not None and previous_body_path != body_path:
            logger.info('Replaced cache entry for {}. Deleting the previous body.'.format(request.uri))
            try:
                previous_body_path.unlink()
            except FileNotFoundError:
                pass

        return CacheEntry(request=request, response=response.copy(), generation=self.__name)

    def delete(self, request: Request) -> bool:
        entry_path = self.__entry_directory / self._get_path(request.uri)
        if not entry_path.exists():
            return False

        paths_to_delete = [entry_path]
        body_path = self._body_path(entry_path)
        if body_path is not None:
            paths_to_delete.append(body_path)
        else:
            logger.warning('Found a corrupt cache entry. Deleting only the entry file.')

        for path in paths_to_delete:
            try:
                logger.info('Deleting {}'.format(path))
                path.unlink()
            except FileNotFoundError:
                pass
        return True

    def keys(self) -> List[Request]:
        if not self.__entry_directory.exists():
            return []

        requests = []
        for entry_path in sorted(self.__entry_directory.rglob('*')):
            if not entry_path.is_file():
                continue
            try:
                requests.append(self._read_entry(entry_path).request)
            except CorruptEntry:
                logger.warning('Skipping corrupt cache entry {}'.format(entry_path))
            except FileNotFoundError:
                # Deleted while listing.
                continue
        return requests


class CacheStorage(ABC):
    """
    A set of named cache generations.

    Every generation handed out by `open()` is HTTP-aware, so callers cannot
    store responses that must not be cached.
    """

    def open(self, name: str) -> Cache:
        """
        Open the generation called `name`, creating it if it does not exist.
        """
        if not _GENERATION_NAME.match(name):
            raise ValueError('Invalid cache generation name: {!r}'.format(name))
        return HttpAwareCache(self._open(name))

    @abstractmethod
    def _open(self, name: str) -> Cache:
        pass

    @abstractmethod
    def has(self, name: str) -> bool:
        pass

    @abstractmethod
    def keys(self) -> List[str]:
        """
        The names of all existing generations.
        """

    @abstractmethod
    def delete(self, name: str) -> bool:
        """
        Delete a whole generation with all of its entries.

        @return
          Whether the generation existed.
        """

    def clear(self) -> None:
        for name in self.keys():
            self.delete(name)

    def close(self):
        """
        Close any resources associated with the storage.
        """


class MemoryCacheStorage(CacheStorage):
    def __init__(self) -> None:
        self.__generations: Dict[str, MemoryCache] = {}
        self.__lock = threading.Lock()

    def _open(self, name: str) -> Cache:
        with self.__lock:
            if name not in self.__generations:
                logger.info('Creating cache generation {}'.format(name))
                self.__generations[name] = MemoryCache(name)
            return self.__generations[name]

    def has(self, name: str) -> bool:
        with self.__lock:
            return name in self.__generations

    def keys(self) -> List[str]:
        with self.__lock:
            return list(self.__generations)

    def delete(self, name: str) -> bool:
        with self.__lock:
            return self.__generations.pop(name, None) is not None


class FileCacheStorage(CacheStorage):
    """
    Cache generations stored as subdirectories of `directory`.
    """

    def __init__(self, directory: Path, cache_directory_levels: int = 5) -> None:
        self.__directory = Path(directory)
        self.__cache_directory_levels = cache_directory_levels
        self.__lock = threading.Lock()

    def _open(self, name: str) -> Cache:
        path = self.__directory / name
        with self.__lock:
            if not path.exists():
                logger.info('Creating cache generation {} at {}'.format(name, path))
                path.mkdir(parents=True)
        return FileCache(path, self.__cache_directory_levels, name=name)

    def has(self, name: str) -> bool:
        return _GENERATION_NAME.match(name) is not None and (self.__directory / name).is_dir()

    def keys(self) -> List[str]:
        if not self.__directory.exists():
            return []
        return sorted(path.name for path in self.__directory.iterdir() if path.is_dir())

    def delete(self, name: str) -> bool:
        if not _GENERATION_NAME.match(name):
            return False
        path = self.__directory / name
        with self.__lock:
            if not path.is_dir():
                return False
            logger.info('Deleting cache generation {}'.format(name))
            shutil.rmtree(path)
        return True
