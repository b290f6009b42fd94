from io import BytesIO
import logging
import time
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from requests.utils import get_encoding_from_headers

from .config import DEFAULT_TIMEOUT
from .model import FetchCancelled, FetchError, Request, Response
from .util import read_body
from .worker import OfflineCacheWorker


logger = logging.getLogger(__name__)


def _deadline(timeout) -> Optional[float]:
    # A (connect, read) tuple only limits single socket operations.
    if isinstance(timeout, (int, float)):
        return time.monotonic() + timeout
    return None


class OfflineCacheAdapter(HTTPAdapter):
    """
    A transport adapter that puts an `OfflineCacheWorker` between a session
    and the network.

    Mount it on the origin the worker serves:

        session.mount('https://apprenticeapex.example/', OfflineCacheAdapter(worker))
    """

    def __init__(self, worker: OfflineCacheWorker, *args, **kw) -> None:
        super().__init__(*args, **kw)
        self.worker = worker

    def send(self, requests_request: requests.PreparedRequest, **kw) -> requests.Response:
        """
        Send a request, letting the worker decide whether it is answered from
        the network or from a cache.
        """
        if requests_request.method != 'GET':
            return self._send_to_network(requests_request, **kw)

        request = Request(method=requests_request.method,
                          uri=requests_request.url,
                          headers=dict(requests_request.headers))

        deadline = _deadline(kw.get('timeout'))

        def fetch(fetched: Request) -> Response:
            prepared = requests_request.copy()
            prepared.headers.update(fetched.headers)
            return self._fetch(prepared, deadline, **kw)

        try:
            response = self.worker.handle(request, fetch)
        except FetchCancelled as e:
            raise e.cause
        except FetchError as e:
            # Only reachable while the worker is not controlling yet.
            raise e.cause if e.cause is not None else requests.ConnectionError(str(e))

        return self._build(requests_request, response)

    def _send_to_network(self, requests_request: requests.PreparedRequest, **kw) -> requests.Response:
        return super().send(requests_request, **kw)

    def _fetch(self, prepared: requests.PreparedRequest, deadline: Optional[float], **kw) -> Response:
        try:
            requests_response = self._send_to_network(prepared, **kw)
            body = read_body(requests_response, deadline)
        except requests.Timeout as e:
            raise FetchCancelled(e)
        except requests.RequestException as e:
            raise FetchError(str(e), e)

        return Response(status=requests_response.status_code,
                        reason=requests_response.reason or '',
                        headers=dict(requests_response.headers),
                        body=body)

    def _build(self, requests_request: requests.PreparedRequest, response: Response) -> requests.Response:
        result = requests.Response()
        result.status_code = response.status
        result.reason = response.reason
        result.headers = CaseInsensitiveDict(response.headers)
        result.encoding = get_encoding_from_headers(result.headers)
        result.raw = BytesIO(response.body)
        result.url = requests_request.url
        result.request = requests_request
        result.connection = self
        return result

    def start(self, timeout: float = DEFAULT_TIMEOUT / 1000) -> bool:
        """
        Install and activate the worker against the network.

        @param timeout
          Seconds each manifest asset may take, body included. An asset that
          takes longer fails the installation.
        """
        def fetch(request: Request) -> Response:
            prepared = requests.Request(method=request.method,
                                        url=request.uri,
                                        headers=dict(request.headers)).prepare()
            return self._fetch(prepared, _deadline(timeout), timeout=timeout)

        return self.worker.start(fetch)

    def post_message(self, message: Any) -> Optional[Dict[str, Any]]:
        return self.worker.handle_message(message)

    def close(self):
        self.worker.storage.close()
        super().close()
