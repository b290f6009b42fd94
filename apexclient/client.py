import json
import logging
import time
from typing import Any, Callable, Dict, Mapping, Optional
from urllib.parse import urlencode

import requests

from .adapter import OfflineCacheAdapter
from .auth import AuthContext, MemoryTokenStore, Navigator, redirect_to_sign_in, TokenStore
from .cache import FileCacheStorage, MemoryCacheStorage
from .config import DEFAULT_RETRIES, DEFAULT_TIMEOUT, Settings
from .model import ApiError, ErrorKind, Failure, RequestOptions, Result, Success
from .util import backoff_delay, read_body
from .worker import OfflineCacheWorker


logger = logging.getLogger(__name__)


TIMEOUT_MESSAGE = 'Request timeout. Please check your connection and try again.'
NETWORK_MESSAGE = 'Network error. Please check your connection.'


class ApiClient:
    """
    The single call surface for the ApprenticeApex API.

    `request()` never raises for a failed call. Every outcome is a `Success`
    or a `Failure` whose `ApiError.kind` says what went wrong:

    - `TIMEOUT`: an attempt, body included, did not finish within `timeout`
      milliseconds. Not retried.
    - `HTTP_STATUS`: the server answered with a non-2xx status. Not retried.
      A 401 also invalidates the session.
    - `TRANSPORT`: the server could not be reached on any attempt. Retried with
      exponential back-off.
    - `PARSE`: the request body could not be encoded, or a 2xx response body
      was not JSON.
    """

    def __init__(self,
                 base_url: str,
                 auth: AuthContext,
                 session: Optional[requests.Session] = None,
                 timeout: int = DEFAULT_TIMEOUT,
                 retries: int = DEFAULT_RETRIES,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        self.base_url = base_url.rstrip('/')
        self.auth = auth
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retries = retries
        self.sleep = sleep

    def request(self, endpoint: str, options: Optional[RequestOptions] = None) -> Result:
        options = options or RequestOptions()
        timeout = self.timeout if options.timeout is None else options.timeout
        retries = self.retries if options.retries is None else options.retries
        url = self.base_url + endpoint

        token, epoch = self._credentials()
        headers = {'Content-Type': 'application/json'}
        headers.update(options.headers)
        if token:
            headers['Authorization'] = 'Bearer {}'.format(token)

        data = None
        if options.body is not None:
            try:
                data = json.dumps(options.body).encode('utf-8')
            except (TypeError, ValueError) as e:
                return Failure(ApiError(ErrorKind.PARSE, 'Request body is not JSON serializable: {}'.format(e), cause=e))

        last_error = None
        for attempt in range(retries + 1):
            # Each attempt gets the whole budget, from connecting to the last byte of the body.
            deadline = time.monotonic() + timeout / 1000
            try:
                response = self.session.request(options.method, url,
                                                headers=headers,
                                                data=data,
                                                timeout=timeout / 1000,
                                                stream=True)
                try:
                    body = read_body(response, deadline)
                finally:
                    response.close()
            except requests.Timeout as e:
                logger.warning('{} {} timed out after {}ms'.format(options.method, url, timeout))
                return Failure(ApiError(ErrorKind.TIMEOUT, TIMEOUT_MESSAGE, cause=e))
            except requests.RequestException as e:
                last_error = e
                logger.warning('Attempt {} of {} for {} {} failed: {}'.format(attempt + 1, retries + 1, options.method, url, e))
                if attempt < retries:
                    self.sleep(backoff_delay(attempt))
                continue

            return self._handle_response(response, body, epoch)

        return Failure(ApiError(ErrorKind.TRANSPORT,
                                str(last_error) or NETWORK_MESSAGE,
                                cause=last_error))

    def _credentials(self):
        try:
            return self.auth.credentials()
        except (OSError, ValueError):
            logger.exception('Could not read the session. Sending the request without a token.')
            return None, None

    def _invalidate(self, epoch: Optional[int]) -> None:
        try:
            self.auth.invalidate(epoch)
        except (OSError, ValueError):
            logger.exception('Could not clear the session')

    def _handle_response(self, response: requests.Response, body: bytes, epoch: Optional[int]) -> Result:
        status = response.status_code
        if not 200 <= status < 300:
            try:
                payload = json.loads(body)
            except ValueError:
                payload = None
            if not isinstance(payload, dict):
                payload = {'error': 'HTTP {}: {}'.format(status, response.reason)}

            if status == 401:
                logger.warning('Got 401 for {}. Invalidating the session.'.format(response.url))
                self._invalidate(epoch)

            message = payload.get('error')
            if not isinstance(message, str) or not message:
                message = 'Request failed with status {}'.format(status)
            return Failure(ApiError(ErrorKind.HTTP_STATUS, message, status=status, details=payload.get('details')))

        if not body:
            return Success(None)

        try:
            return Success(json.loads(body))
        except ValueError as e:
            logger.warning('Response from {} is not valid JSON'.format(response.url))
            return Failure(ApiError(ErrorKind.PARSE, 'Invalid JSON in response', status=status, cause=e))

    def _send(self, method: str, endpoint: str, body: Any = None) -> Result:
        return self.request(endpoint, RequestOptions(method=method, body=body))

    def _sign_in_from(self, result: Result) -> Result:
        if result.ok and isinstance(result.data, dict) and result.data.get('token'):
            self.auth.sign_in(result.data['token'], result.data.get('user'))
        return result

    # region Auth

    def login(self, email: str, password: str) -> Result:
        return self._sign_in_from(self._send('POST', '/api/auth/login', {'email': email, 'password': password}))

    def register(self, user_data: Mapping[str, Any]) -> Result:
        return self._sign_in_from(self._send('POST', '/api/auth/register', dict(user_data)))

    def logout(self) -> None:
        self.auth.invalidate()

    # endregion

    # region Users and matching

    def get_profile(self) -> Result:
        return self.request('/api/users/profile')

    def update_profile(self, profile_data: Mapping[str, Any]) -> Result:
        return self._send('PUT', '/api/users/profile', dict(profile_data))

    def get_job_matches(self) -> Result:
        return self.request('/api/matching/jobs')

    def get_profile_status(self) -> Result:
        return self.request('/api/matching/profile-status')

    # endregion

    # region Apprenticeships

    def discover_apprenticeships(self, params: Optional[Mapping[str, Any]] = None) -> Result:
        query = '?' + urlencode(params) if params else ''
        return self.request('/api/apprenticeships/discover{}'.format(query))

    def swipe_apprenticeship(self, apprenticeship_id: str, direction: str,
                             student_location: Optional[Dict[str, Any]] = None) -> Result:
        if direction not in ('left', 'right'):
            raise ValueError('Swipe direction must be "left" or "right", got {!r}'.format(direction))
        return self._send('POST', '/api/apprenticeships/{}/swipe'.format(apprenticeship_id),
                          {'direction': direction, 'studentLocation': student_location})

    def get_my_listings(self) -> Result:
        return self.request('/api/apprenticeships/my-listings')

    def create_listing(self, listing_data: Mapping[str, Any]) -> Result:
        return self._send('POST', '/api/apprenticeships', dict(listing_data))

    def update_listing(self, listing_id: str, listing_data: Mapping[str, Any]) -> Result:
        return self._send('PUT', '/api/apprenticeships/{}'.format(listing_id), dict(listing_data))

    def delete_listing(self, listing_id: str) -> Result:
        return self._send('DELETE', '/api/apprenticeships/{}'.format(listing_id))

    # endregion

    # region Applications and analytics

    def get_my_applications(self) -> Result:
        return self.request('/api/applications/my-applications')

    def get_received_applications(self) -> Result:
        return self.request('/api/applications/received')

    def get_dashboard_analytics(self) -> Result:
        return self.request('/api/analytics/dashboard')

    # endregion


def create_session(base_url: str, worker: Optional[OfflineCacheWorker] = None) -> requests.Session:
    """
    Build a session for `base_url`, routed through `worker` when one is given.
    """
    session = requests.Session()
    if worker is not None:
        session.mount(base_url.rstrip('/') + '/', OfflineCacheAdapter(worker))
    return session


def create_client(settings: Optional[Settings] = None,
                  store: Optional[TokenStore] = None,
                  navigator: Optional[Navigator] = None,
                  offline: bool = True) -> ApiClient:
    """
    Wire up a client from `settings`: session state, the offline cache worker
    and the session carrying it. The worker still has to be started with
    `OfflineCacheAdapter.start()` before it intercepts anything.
    """
    settings = settings or Settings.from_env()
    navigator = navigator or Navigator()
    auth = AuthContext(store or MemoryTokenStore(),
                       on_invalidate=redirect_to_sign_in(navigator, settings.sign_in_path))

    worker = None
    if offline:
        if settings.cache_directory is not None:
            storage = FileCacheStorage(settings.cache_directory)
        else:
            storage = MemoryCacheStorage()
        worker = OfflineCacheWorker(storage, origin=settings.base_url, version=settings.cache_version)

    return ApiClient(settings.base_url, auth,
                     session=create_session(settings.base_url, worker),
                     timeout=settings.timeout,
                     retries=settings.retries)
