from ddt import ddt, data, unpack
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import json
from mockito import mock, unstub, when
from pathlib import Path
from tempfile import TemporaryDirectory
import threading
import time
from unittest import TestCase

import requests

from apexclient.adapter import OfflineCacheAdapter
from apexclient.auth import (AuthContext, FileTokenStore, MemoryTokenStore, Navigator, redirect_to_sign_in, TOKEN_KEY,
                             TokenStore)
from apexclient.cache import MemoryCacheStorage
from apexclient.client import ApiClient, create_client, create_session, TIMEOUT_MESSAGE
from apexclient.config import Settings
from apexclient.model import ErrorKind, Failure, RequestOptions, Response, Success
from apexclient.worker import OfflineCacheWorker

from fakes import FakeNetwork, json_response


BASE_URL = 'http://api.test'


class ClientTestCase(TestCase):
    routes = {}

    def setUp(self):
        self.network = FakeNetwork(self.routes)
        self.session = session = requests.Session()
        session.mount(BASE_URL + '/', self.network)
        self.navigator = Navigator('/browse')
        self.auth = AuthContext(MemoryTokenStore(), on_invalidate=redirect_to_sign_in(self.navigator))
        self.sleeps = []
        self.client = ApiClient(BASE_URL, self.auth, session=session, sleep=self.sleeps.append)


class TestRequest(ClientTestCase):
    routes = {
        '/api/users/profile': json_response({'id': 'u1'}),
        '/api/matching/jobs': json_response([{'id': 'j1'}]),
    }

    def test_success(self):
        result = self.client.request('/api/users/profile')

        self.assertEqual(Success({'id': 'u1'}), result)
        self.assertTrue(result.ok)

    def test_default_headers(self):
        self.client.request('/api/users/profile')

        sent = self.network.sent[-1]
        self.assertEqual('GET', sent.method)
        self.assertEqual(BASE_URL + '/api/users/profile', sent.url)
        self.assertEqual('application/json', sent.headers['Content-Type'])
        self.assertNotIn('Authorization', sent.headers)

    def test_bearer_token_attached(self):
        self.auth.sign_in('t0k3n')

        self.client.request('/api/users/profile')

        self.assertEqual('Bearer t0k3n', self.network.sent[-1].headers['Authorization'])

    def test_caller_headers_override_defaults(self):
        self.client.request('/api/users/profile', RequestOptions(headers={'Content-Type': 'text/plain', 'X-Trace': '1'}))

        sent = self.network.sent[-1]
        self.assertEqual('text/plain', sent.headers['Content-Type'])
        self.assertEqual('1', sent.headers['X-Trace'])

    def test_body_is_json_encoded(self):
        self.client.request('/api/users/profile', RequestOptions(method='PUT', body={'firstName': 'Ada'}))

        sent = self.network.sent[-1]
        self.assertEqual('PUT', sent.method)
        self.assertEqual({'firstName': 'Ada'}, json.loads(sent.body))

    def test_timeout_is_passed_in_seconds(self):
        self.client.request('/api/users/profile', RequestOptions(timeout=50))
        self.client.request('/api/users/profile')

        self.assertEqual(0.05, self.network.kwargs[0]['timeout'])
        self.assertEqual(10.0, self.network.kwargs[1]['timeout'])
        self.assertTrue(self.network.kwargs[0]['stream'])

    def test_unserializable_body(self):
        result = self.client.request('/api/users/profile', RequestOptions(method='POST', body={'when': object()}))

        self.assertIsInstance(result, Failure)
        self.assertEqual(ErrorKind.PARSE, result.error.kind)
        self.assertEqual([], self.network.sent)

    def test_list_payload(self):
        self.assertEqual(Success([{'id': 'j1'}]), self.client.request('/api/matching/jobs'))


@ddt
class TestRequestOptions(TestCase):
    @data(
        {'method': 'HEAD'},
        {'method': 'get'},
        {'timeout': 0},
        {'retries': -1},
    )
    def test_invalid_options(self, kw):
        with self.assertRaises(ValueError):
            RequestOptions(**kw)

    def test_defaults(self):
        options = RequestOptions()

        self.assertEqual('GET', options.method)
        self.assertIsNone(options.body)
        self.assertIsNone(options.timeout)
        self.assertIsNone(options.retries)


@ddt
class TestRetries(ClientTestCase):
    @data(0, 1, 2, 3)
    def test_persistent_transport_failure(self, retries):
        self.network.routes['/api/users/profile'] = requests.ConnectionError('Connection reset by peer')

        result = self.client.request('/api/users/profile', RequestOptions(retries=retries))

        self.assertIsInstance(result, Failure)
        self.assertEqual(ErrorKind.TRANSPORT, result.error.kind)
        self.assertEqual('Connection reset by peer', result.error.message)
        self.assertIsInstance(result.error.cause, requests.ConnectionError)
        self.assertEqual(retries + 1, len(self.network.sent))
        self.assertEqual([2.0 ** attempt for attempt in range(retries)], self.sleeps)

    def test_default_retry_budget(self):
        self.network.online = False

        self.client.request('/api/users/profile')

        self.assertEqual(4, len(self.network.sent))
        self.assertEqual([1.0, 2.0, 4.0], self.sleeps)

    def test_recovers_after_transport_failure(self):
        self.network.routes['/api/users/profile'] = [
            requests.ConnectionError('Connection reset by peer'),
            json_response({'id': 'u1'}),
        ]

        result = self.client.request('/api/users/profile')

        self.assertEqual(Success({'id': 'u1'}), result)
        self.assertEqual(2, len(self.network.sent))
        self.assertEqual([1.0], self.sleeps)

    @data(requests.ReadTimeout('read timed out'), requests.ConnectTimeout('connect timed out'))
    def test_timeout_is_not_retried(self, error):
        self.network.routes['/api/users/profile'] = error

        result = self.client.request('/api/users/profile', RequestOptions(timeout=50, retries=3))

        self.assertEqual(ErrorKind.TIMEOUT, result.error.kind)
        self.assertEqual(TIMEOUT_MESSAGE, result.error.message)
        self.assertEqual(1, len(self.network.sent))
        self.assertEqual([], self.sleeps)

    def test_http_errors_are_not_retried(self):
        self.network.routes['/api/users/profile'] = json_response({'error': 'Service busy'}, status=503, reason='Service Unavailable')

        result = self.client.request('/api/users/profile')

        self.assertEqual(ErrorKind.HTTP_STATUS, result.error.kind)
        self.assertEqual(503, result.error.status)
        self.assertEqual(1, len(self.network.sent))


@ddt
class TestHttpErrors(ClientTestCase):
    @data(
        (json_response({'error': 'Listing not found', 'details': {'id': '42'}}, status=404, reason='Not Found'),
         404, 'Listing not found', {'id': '42'}),
        (json_response({'message': 'nope'}, status=400, reason='Bad Request'),
         400, 'Request failed with status 400', None),
        (Response(status=500, reason='Internal Server Error', headers={'Content-Type': 'text/html'}, body=b'<h1>oops</h1>'),
         500, 'HTTP 500: Internal Server Error', None),
        (Response(status=502, reason='Bad Gateway', body=b''),
         502, 'HTTP 502: Bad Gateway', None),
    )
    @unpack
    def test_error_payloads(self, response, status, message, details):
        self.network.routes['/api/apprenticeships/42'] = response

        result = self.client.request('/api/apprenticeships/42')

        self.assertFalse(result.ok)
        self.assertEqual(ErrorKind.HTTP_STATUS, result.error.kind)
        self.assertEqual(status, result.error.status)
        self.assertEqual(message, result.error.message)
        self.assertEqual(details, result.error.details)

    def test_unauthorized_signs_out_and_redirects(self):
        self.auth.sign_in('expired', {'id': 'u1'})
        self.network.routes['/api/users/profile'] = json_response({'error': 'Invalid token'}, status=401, reason='Unauthorized')

        result = self.client.request('/api/users/profile')

        self.assertEqual(401, result.error.status)
        self.assertIsNone(self.auth.token)
        self.assertIsNone(self.auth.user)
        self.assertEqual('/student/signin', self.navigator.path)

        self.network.routes['/api/users/profile'] = json_response({'id': 'u1'})
        self.client.request('/api/users/profile')
        self.assertNotIn('Authorization', self.network.sent[-1].headers)

    def test_unauthorized_on_sign_in_page_does_not_redirect(self):
        self.navigator.navigate('/company/signin')
        self.network.routes['/api/auth/login'] = json_response({'error': 'Invalid credentials'}, status=401, reason='Unauthorized')

        result = self.client.login('a@b.c', 'wrong')

        self.assertEqual('Invalid credentials', result.error.message)
        self.assertEqual('/company/signin', self.navigator.path)

    def test_late_unauthorized_does_not_undo_new_login(self):
        self.auth.sign_in('old')
        self.network.routes['/api/users/profile'] = json_response({'error': 'Invalid token'}, status=401, reason='Unauthorized')
        send = self.network.send

        # The user signs in again while the request with the old token is in flight.
        def send_with_relogin(request, **kw):
            response = send(request, **kw)
            self.auth.sign_in('new')
            return response
        self.network.send = send_with_relogin

        self.client.request('/api/users/profile')

        self.assertEqual('new', self.auth.token)
        self.assertEqual('/browse', self.navigator.path)


class TestResponseBodies(ClientTestCase):
    def test_invalid_json_is_a_parse_failure(self):
        self.network.routes['/api/analytics/dashboard'] = Response(status=200, reason='OK', headers={'Content-Type': 'text/html'}, body=b'<html>')

        result = self.client.get_dashboard_analytics()

        self.assertEqual(ErrorKind.PARSE, result.error.kind)
        self.assertEqual(200, result.error.status)
        self.assertEqual(1, len(self.network.sent))

    def test_empty_body_is_success_without_data(self):
        self.network.routes['/api/apprenticeships/42'] = Response(status=204, reason='No Content')

        self.assertEqual(Success(None), self.client.delete_listing('42'))
        self.assertEqual('DELETE', self.network.sent[-1].method)


class TestEndpoints(ClientTestCase):
    routes = {
        '/api/auth/login': json_response({'token': 't0k3n', 'user': {'id': 'u1', 'role': 'student'}}),
        '/api/auth/register': json_response({'token': 'fresh', 'user': {'id': 'u2', 'role': 'company'}}),
        '/api/apprenticeships/discover': json_response({'apprenticeships': []}),
        '/api/apprenticeships/a1/swipe': json_response({'match': True}),
        '/api/apprenticeships': json_response({'id': 'a2'}, status=201, reason='Created'),
    }

    def test_login_persists_session(self):
        result = self.client.login('ada@example.com', 'secret')

        self.assertTrue(result.ok)
        self.assertEqual({'email': 'ada@example.com', 'password': 'secret'}, json.loads(self.network.sent[-1].body))
        self.assertEqual('t0k3n', self.auth.token)
        self.assertEqual({'id': 'u1', 'role': 'student'}, self.auth.user)

    def test_register_persists_session(self):
        self.client.register({'email': 'hr@example.com', 'password': 'secret', 'role': 'company'})

        self.assertEqual('fresh', self.auth.token)

    def test_failed_login_keeps_session(self):
        self.auth.sign_in('existing')
        self.network.routes['/api/auth/login'] = json_response({'error': 'Invalid credentials'}, status=400, reason='Bad Request')

        self.client.login('ada@example.com', 'wrong')

        self.assertEqual('existing', self.auth.token)

    def test_logout(self):
        self.auth.sign_in('t0k3n')

        self.client.logout()

        self.assertIsNone(self.auth.token)
        self.assertEqual('/student/signin', self.navigator.path)

    def test_discover_with_params(self):
        self.client.discover_apprenticeships({'industry': 'Technology', 'maxDistance': 25})

        self.assertEqual(BASE_URL + '/api/apprenticeships/discover?industry=Technology&maxDistance=25', self.network.sent[-1].url)

    def test_swipe(self):
        result = self.client.swipe_apprenticeship('a1', 'right', {'lat': 51.5, 'lng': -0.12})

        self.assertEqual(Success({'match': True}), result)
        self.assertEqual({'direction': 'right', 'studentLocation': {'lat': 51.5, 'lng': -0.12}},
                         json.loads(self.network.sent[-1].body))

    def test_swipe_direction(self):
        with self.assertRaises(ValueError):
            self.client.swipe_apprenticeship('a1', 'up')

    def test_create_listing(self):
        self.assertEqual(Success({'id': 'a2'}), self.client.create_listing({'jobTitle': 'Software Apprentice'}))
        self.assertEqual('POST', self.network.sent[-1].method)


class TestCreateClient(TestCase):
    def test_offline_worker_is_mounted(self):
        client = create_client(Settings(base_url='http://api.test', timeout=5000, retries=1))

        adapter = client.session.get_adapter('http://api.test/api/health')
        self.assertIsInstance(adapter, OfflineCacheAdapter)
        self.assertEqual('http://api.test/', adapter.worker.origin)
        self.assertEqual(5000, client.timeout)
        self.assertEqual(1, client.retries)

    def test_without_offline_worker(self):
        client = create_client(Settings(base_url='http://api.test'), offline=False)

        self.assertNotIsInstance(client.session.get_adapter('http://api.test/'), OfflineCacheAdapter)

    def test_invalidation_redirects(self):
        navigator = Navigator('/dashboard')
        client = create_client(Settings(base_url='http://api.test', sign_in_path='/company/signin'), navigator=navigator)
        client.auth.sign_in('t0k3n')

        client.logout()

        self.assertEqual('/company/signin', navigator.path)


class TestSessionStorage(ClientTestCase):
    routes = {
        '/api/users/profile': json_response({'id': 'u1'}),
    }

    def tearDown(self):
        unstub()

    def client_for(self, store):
        return ApiClient(BASE_URL, AuthContext(store), session=self.session, sleep=self.sleeps.append)

    def test_undecodable_session_file(self):
        with TemporaryDirectory() as directory:
            path = Path(directory) / 'session.json'
            path.write_bytes(b'\xff\xfe{"authToken": 1}')

            result = self.client_for(FileTokenStore(path)).request('/api/users/profile')

            self.assertFalse(path.exists())
        self.assertEqual(Success({'id': 'u1'}), result)
        self.assertNotIn('Authorization', self.network.sent[-1].headers)

    def test_unreadable_store_sends_without_token(self):
        # region set up
        store = mock(TokenStore)
        when(store).get(TOKEN_KEY).thenRaise(PermissionError('Permission denied'))
        # endregion

        result = self.client_for(store).request('/api/users/profile')

        self.assertEqual(Success({'id': 'u1'}), result)
        self.assertNotIn('Authorization', self.network.sent[-1].headers)

    def test_unwritable_store_still_reports_unauthorized(self):
        # region set up
        store = mock(TokenStore)
        when(store).get(TOKEN_KEY).thenReturn('expired')
        when(store).remove(TOKEN_KEY).thenRaise(OSError('Read-only file system'))
        self.network.routes['/api/users/profile'] = json_response({'error': 'Invalid token'}, status=401, reason='Unauthorized')
        # endregion

        result = self.client_for(store).request('/api/users/profile')

        self.assertEqual(ErrorKind.HTTP_STATUS, result.error.kind)
        self.assertEqual(401, result.error.status)


class TricklingHandler(BaseHTTPRequestHandler):
    """
    Serves a JSON body, one byte at a time for paths under /slow/ and
    /api/slow/.
    """

    body = json.dumps({'a': 'x' * 40}).encode('utf-8')

    def do_GET(self):
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(self.body)))
        self.end_headers()
        delay = 0.03 if '/slow/' in self.path else 0
        try:
            for i in range(len(self.body)):
                self.wfile.write(self.body[i:i + 1])
                self.wfile.flush()
                time.sleep(delay)
        except (BrokenPipeError, ConnectionResetError):
            # The client gave up.
            pass

    def log_message(self, format, *args):
        pass


class TestAttemptDeadline(TestCase):
    def setUp(self):
        self.server = ThreadingHTTPServer(('127.0.0.1', 0), TricklingHandler)
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()
        self.base_url = 'http://127.0.0.1:{}'.format(self.server.server_address[1])
        self.auth = AuthContext(MemoryTokenStore())

    def tearDown(self):
        self.server.shutdown()
        self.server.server_close()

    def test_fast_response(self):
        client = ApiClient(self.base_url, self.auth)

        result = client.request('/fast', RequestOptions(timeout=2000, retries=0))

        self.assertEqual(Success({'a': 'x' * 40}), result)

    def test_slow_body_times_out(self):
        client = ApiClient(self.base_url, self.auth)

        started = time.monotonic()
        result = client.request('/slow/x', RequestOptions(timeout=100, retries=0))
        elapsed = time.monotonic() - started

        self.assertEqual(ErrorKind.TIMEOUT, result.error.kind)
        self.assertLess(elapsed, 0.6)

    def test_slow_body_times_out_behind_the_worker(self):
        worker = OfflineCacheWorker(MemoryCacheStorage(), origin=self.base_url)
        session = create_session(self.base_url, worker)
        self.assertTrue(session.get_adapter(self.base_url + '/').start(timeout=2))
        client = ApiClient(self.base_url, self.auth, session=session)

        started = time.monotonic()
        result = client.request('/api/slow/x', RequestOptions(timeout=100, retries=0))
        elapsed = time.monotonic() - started

        self.assertEqual(ErrorKind.TIMEOUT, result.error.kind)
        self.assertLess(elapsed, 0.6)
