"""
The offline cache worker.

The worker sits at the network boundary of the application. Every GET request
it sees is served according to a strategy chosen from the shape of its URL,
using a set of versioned cache generations. The worker is transport-agnostic:
it is handed a fetch function for each request and never talks to the network
on its own.

A request handler never raises for a network or storage failure. It answers
with a cached copy when it has one and with a 503 response otherwise, so a
single failing request cannot take down the serving of the whole origin. The
only exception that crosses the worker is `FetchCancelled`, raised when the
caller itself gave up on the request.
"""

from enum import Enum
import json
import logging
import threading
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional, Sequence
from urllib.parse import urljoin

from .cache import Cache, CacheBucket, CacheStorage, DEFAULT_VERSION, generation_name
from .model import FetchCancelled, FetchError, Request, Response
from .strategy import ApiCachePolicy, classify, NO_STORE_HEADERS, Strategy


logger = logging.getLogger(__name__)


Fetch = Callable[[Request], Response]

STATIC_ASSETS = (
    '/',
    '/index.html',
    '/global.css',
    '/accessibility.css',
)

APPRENTICESHIPS_PATH = '/api/apprenticeships'

SKIP_WAITING = 'SKIP_WAITING'
GET_VERSION = 'GET_VERSION'
CLEAR_CACHE = 'CLEAR_CACHE'
CLEAR_APPRENTICESHIPS_CACHE = 'CLEAR_APPRENTICESHIPS_CACHE'


class WorkerState(Enum):
    PARSED = 'parsed'
    INSTALLING = 'installing'
    INSTALLED = 'installed'
    ACTIVATING = 'activating'
    ACTIVATED = 'activated'
    REDUNDANT = 'redundant'


def _text_response(status: int, text: str, content_type: str = 'text/plain') -> Response:
    return Response(status=status,
                    reason='Service Unavailable' if status == 503 else '',
                    headers={'Content-Type': content_type},
                    body=text.encode('utf-8'))


def _offline_api_response() -> Response:
    body = json.dumps({'error': 'Network unavailable', 'offline': True})
    return _text_response(503, body, 'application/json')


class OfflineCacheWorker:
    def __init__(self,
                 storage: CacheStorage,
                 origin: str = 'http://localhost:8080',
                 version: str = DEFAULT_VERSION,
                 static_assets: Sequence[str] = STATIC_ASSETS,
                 api_policy: Optional[ApiCachePolicy] = None) -> None:
        """
        @param storage
          Where the cache generations live.
        @param origin
          The origin served by the worker. Manifest paths and the root document
          are resolved against it.
        @param version
          The build version. All generation names are derived from it, so a
          new version purges the generations of every older one on activation.
        """
        self.storage = storage
        self.origin = origin.rstrip('/') + '/'
        self.version = version
        self.static_assets = tuple(static_assets)
        self.api_policy = api_policy or ApiCachePolicy()

        self.main_generation = generation_name(CacheBucket.MAIN, version)
        self.static_generation = generation_name(CacheBucket.STATIC, version)
        self.dynamic_generation = generation_name(CacheBucket.DYNAMIC, version)

        self.state = WorkerState.PARSED
        self.controlling = False
        self.__waiting_skipped = False
        self.__lock = threading.RLock()

    @property
    def current_generations(self) -> FrozenSet[str]:
        return frozenset((self.main_generation, self.static_generation, self.dynamic_generation))

    def url(self, path: str) -> str:
        return urljoin(self.origin, path)

    # region Lifecycle

    def install(self, fetch: Fetch) -> bool:
        """
        Pre-populate the static generation with the asset manifest.

        Installation is all-or-nothing: if any asset cannot be fetched, nothing
        is stored and the worker becomes redundant.

        @return
          Whether the worker installed.
        """
        with self.__lock:
            logger.info('Installing worker version {}'.format(self.version))
            self.state = WorkerState.INSTALLING
            try:
                fetched = []
                for path in self.static_assets:
                    request = Request(method='GET', uri=self.url(path))
                    response = fetch(request)
                    if not response.is_ok:
                        raise FetchError('Got status {} for {}'.format(response.status, request.uri))
                    fetched.append((request, response))

                logger.info('Caching {} static assets'.format(len(fetched)))
                cache = self.storage.open(self.static_generation)
                for request, response in fetched:
                    cache.put(request, response)
            except (FetchError, FetchCancelled, OSError) as e:
                logger.warning('Install failed: {}'.format(e))
                self.state = WorkerState.REDUNDANT
                return False

            self.state = WorkerState.INSTALLED
            self.__waiting_skipped = True
            return True

    def activate(self) -> None:
        """
        Purge every generation that does not belong to the current version and
        take control of all clients.
        """
        with self.__lock:
            logger.info('Activating worker version {}'.format(self.version))
            self.state = WorkerState.ACTIVATING
            try:
                for name in self.storage.keys():
                    if name not in self.current_generations:
                        logger.info('Deleting old cache: {}'.format(name))
                        self.storage.delete(name)
                self.storage.open(self.static_generation)
                self.storage.open(self.dynamic_generation)
            except OSError:
                logger.exception('Failed to clean up old caches')

            self.state = WorkerState.ACTIVATED
            self.controlling = True

    def skip_waiting(self) -> None:
        with self.__lock:
            self.__waiting_skipped = True
            if self.state is WorkerState.INSTALLED:
                self.activate()

    def start(self, fetch: Fetch) -> bool:
        """
        Install the worker and, when it does not have to wait, activate it.
        """
        with self.__lock:
            if not self.install(fetch):
                return False
            if self.__waiting_skipped:
                self.activate()
            return True

    # endregion

    # region Request handling

    def handle(self, request: Request, fetch: Fetch) -> Response:
        """
        Serve `request`.

        Requests other than GET, and all requests seen before the worker took
        control, go straight to `fetch` untouched.
        """
        if request.method != 'GET' or not self.controlling:
            return fetch(request)

        strategy = classify(request.path)
        if strategy is Strategy.STATIC_ASSET:
            return self._cache_first(request, fetch, self.static_generation, 'Asset not available offline')
        if strategy is Strategy.API:
            return self._handle_api(request, fetch)
        if strategy is Strategy.IMAGE:
            return self._cache_first(request, fetch, self.dynamic_generation, 'Image not available')
        return self._handle_page(request, fetch)

    def _store(self, cache: Cache, request: Request, response: Response) -> None:
        try:
            cache.put(request, response.copy())
        except OSError:
            logger.exception('Failed to cache {}'.format(request.uri))

    def _cache_first(self, request: Request, fetch: Fetch, generation: str, unavailable: str) -> Response:
        try:
            cache = self.storage.open(generation)
            entry = cache.get(request)
            if entry is not None:
                logger.info('Serving from cache: {}'.format(request.uri))
                return entry.response.copy()

            response = fetch(request)
            if response.status == 200:
                self._store(cache, request, response)
            return response
        except FetchCancelled:
            raise
        except FetchError as e:
            logger.info('Fetch failed for {}: {}'.format(request.uri, e))
            return _text_response(503, unavailable)
        except Exception:
            logger.exception('Request failed: {}'.format(request.uri))
            return _text_response(503, unavailable)

    def _handle_api(self, request: Request, fetch: Fetch) -> Response:
        try:
            if self.api_policy.should_never_cache(request.path):
                logger.info('Force no cache for: {}'.format(request.uri))
                return fetch(request.with_headers(NO_STORE_HEADERS))

            cache = self.storage.open(self.dynamic_generation)
            try:
                response = fetch(request)
            except FetchError:
                logger.info('Network failed, checking cache for: {}'.format(request.uri))
                entry = cache.get(request)
                if entry is not None:
                    logger.info('Serving API from cache: {}'.format(request.uri))
                    return entry.response.copy()
                return _offline_api_response()

            if response.status == 200 and self.api_policy.should_cache(request.path):
                self._store(cache, request, response)
            return response
        except FetchCancelled:
            raise
        except Exception:
            logger.exception('API request failed: {}'.format(request.uri))
            return _text_response(503, 'Service unavailable')

    def _handle_page(self, request: Request, fetch: Fetch) -> Response:
        try:
            cache = self.storage.open(self.dynamic_generation)
            try:
                response = fetch(request)
            except FetchError:
                entry = cache.get(request) or self._root_document()
                if entry is not None:
                    return entry.response.copy()
                return _text_response(503, 'Page not available offline')

            if response.status == 200 and 'text/html' in (response.header('Content-Type') or ''):
                self._store(cache, request, response)
            return response
        except FetchCancelled:
            raise
        except Exception:
            logger.exception('Page request failed: {}'.format(request.uri))
            return _text_response(503, 'Page not available')

    def _root_document(self):
        root = Request(method='GET', uri=self.url('/'))
        for generation in (self.dynamic_generation, self.static_generation):
            if not self.storage.has(generation):
                continue
            entry = self.storage.open(generation).get(root)
            if entry is not None:
                return entry
        return None

    # endregion

    # region Control messages

    def handle_message(self, message: Any) -> Optional[Dict[str, Any]]:
        """
        Handle a control message from the application.

        @return
          The reply, or `None` for messages that do not get one.
        """
        if not isinstance(message, Mapping) or 'type' not in message:
            logger.warning('Ignoring malformed message: {!r}'.format(message))
            return None

        message_type = message['type']
        if message_type == SKIP_WAITING:
            self.skip_waiting()
            return None
        if message_type == GET_VERSION:
            return {'version': self.main_generation}
        if message_type == CLEAR_CACHE:
            return self._reply(self.storage.clear)
        if message_type == CLEAR_APPRENTICESHIPS_CACHE:
            return self._reply(self._clear_apprenticeships)

        logger.warning('Ignoring unknown message type: {!r}'.format(message_type))
        return None

    def _reply(self, action: Callable[[], None]) -> Dict[str, Any]:
        try:
            action()
        except Exception as e:
            logger.exception('Failed to handle control message')
            return {'success': False, 'error': str(e)}
        return {'success': True}

    def _clear_apprenticeships(self) -> None:
        if not self.storage.has(self.dynamic_generation):
            return
        cache = self.storage.open(self.dynamic_generation)
        for request in cache.keys():
            if APPRENTICESHIPS_PATH in request.uri:
                logger.info('Clearing apprenticeships cache for: {}'.format(request.uri))
                cache.delete(request)

    # endregion
