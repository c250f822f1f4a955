"""Tests for the signed JSON transport."""

import json
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import ReadTimeout
from urllib3.exceptions import ConnectTimeoutError, MaxRetryError, ReadTimeoutError

from tritoncloud.exceptions import AuthError, Canceled, NotFound, ServerError, TransportError, WaitTimeout
from tritoncloud.transport import (MAX_RETRIES, MIN_ATTEMPT_TIMEOUT, RETRY_STRATEGY, BudgetTimeout, RequestBudget, Transport,
                                   TransportRetry, error_from_response)
from tritoncloud.utility import Cancellation

from .conftest import URL


@pytest.fixture
def signer():
    signer = MagicMock()
    signer.authorization.return_value = 'Signature keyId="/alice/keys/x"'
    return signer


@pytest.fixture
def transport(server, signer):
    return Transport(URL, signer=signer, session=server.session(), api_version='~9')


class TestRequest:
    def test_signed_json_request(self, server, signer, transport):
        server.route('POST', '/alice/machines', (201, {'id': 'abc'}))
        res = transport.request('POST', '/alice/machines', query={'dry': None}, body={'name': 'web0'})
        assert res.status == 201
        assert res.body == {'id': 'abc'}
        sent = server.requests[0]
        assert sent['body'] == {'name': 'web0'}
        assert sent['query'] == {}
        assert sent['headers']['Api-Version'] == '~9'
        assert sent['headers']['Content-Type'] == 'application/json'
        assert sent['headers']['Authorization'].startswith('Signature ')
        assert sent['headers']['User-Agent'].startswith('triton/')
        signer.authorization.assert_called_once_with('POST', '/alice/machines', sent['headers']['Date'])

    def test_unsigned_request(self, server, signer, transport):
        server.route('GET', '/--ping', {'ping': 'pong'})
        transport.request('GET', '/--ping', sign=False)
        assert 'Authorization' not in server.requests[0]['headers']
        signer.authorization.assert_not_called()

    def test_empty_body(self, server, transport):
        server.route('DELETE', '/alice/machines/abc', (204, None))
        assert transport.request('DELETE', '/alice/machines/abc').body is None

    def test_invalid_json(self, server, transport):
        server.route('GET', '/alice/machines', (200, 'not json'))
        with pytest.raises(TransportError, match='invalid JSON'):
            transport.request('GET', '/alice/machines')

    def test_canceled_before_send(self, server, signer):
        cancel = Cancellation()
        cancel.cancel()
        transport = Transport(URL, signer=signer, session=server.session(), cancel=cancel)
        with pytest.raises(Canceled):
            transport.request('GET', '/alice/machines')
        assert server.requests == []


class TestErrors:
    def test_not_found(self, transport):
        with pytest.raises(NotFound) as info:
            transport.request('GET', '/alice/machines/nope')
        assert info.value.status == 404

    def test_gone(self, server, transport):
        server.route('GET', '/alice/machines/abc', (410, {'code': 'ResourceNotFound', 'message': 'deleted'}))
        with pytest.raises(NotFound) as info:
            transport.request('GET', '/alice/machines/abc')
        assert info.value.status == 410

    def test_server_error_keeps_code_and_body(self, server, transport):
        body = {'code': 'InvalidArgument', 'message': 'name is too long'}
        server.route('POST', '/alice/machines', (409, body))
        with pytest.raises(ServerError) as info:
            transport.request('POST', '/alice/machines', body={})
        assert info.value.code == 'InvalidArgument'
        assert info.value.body == body
        assert str(info.value) == 'name is too long'

    def test_non_json_error_body(self, server, transport):
        server.route('GET', '/alice/machines', (502, '<html>bad gateway</html>'))
        with pytest.raises(ServerError) as info:
            transport.request('GET', '/alice/machines')
        assert info.value.status == 502

    def test_classification(self):
        assert isinstance(error_from_response(401, None), AuthError)
        assert isinstance(error_from_response(403, {'code': 'InvalidSignature'}), AuthError)
        assert not isinstance(error_from_response(403, {'code': 'NotPermitted'}), AuthError)
        assert isinstance(error_from_response(410, None), NotFound)
        assert error_from_response(500, None, method='GET', path='/x').message == 'GET /x failed with HTTP 500'

    def test_connection_failure(self, signer):
        session = MagicMock()
        session.send.side_effect = RequestsConnectionError('refused')
        transport = Transport(URL, signer=signer, session=session)
        with pytest.raises(TransportError, match='failed to connect'):
            transport.request('GET', '/alice/machines')

    def test_timeout(self, signer):
        session = MagicMock()
        session.send.side_effect = ReadTimeout('slow')
        transport = Transport(URL, signer=signer, session=session)
        with pytest.raises(WaitTimeout) as info:
            transport.request('GET', '/alice/machines')
        assert info.value.code == 'RequestTimeout'


class TestRetry:
    def test_post_is_never_retried(self):
        with pytest.raises(MaxRetryError):
            RETRY_STRATEGY.increment(method='POST', url='/alice/machines', error=ConnectTimeoutError('slow'))

    def test_get_is_retried(self):
        retry = RETRY_STRATEGY.increment(method='GET', url='/alice/machines', error=ConnectTimeoutError('slow'))
        assert retry.total == RETRY_STRATEGY.total - 1

    def test_read_timeout_is_not_retried(self):
        with pytest.raises(ReadTimeoutError):
            RETRY_STRATEGY.increment(method='GET', url='/alice/machines', error=ReadTimeoutError(None, '/alice/machines', 'slow'))

    def test_bound_copies_keep_cancellation(self):
        cancel, budget = Cancellation(), RequestBudget()
        retry = RETRY_STRATEGY.bind(cancel, budget).increment(method='GET', url='/x', error=ConnectTimeoutError('slow'))
        assert retry.cancel is cancel
        assert retry.budget is budget
        cancel.cancel()
        with pytest.raises(Canceled):
            retry.increment(method='GET', url='/x', error=ConnectTimeoutError('slow'))

    def test_attempt_timeout_shrinks_to_what_is_left(self):
        budget = RequestBudget()
        assert BudgetTimeout(10, budget).clone().read_timeout == 10
        budget.start(0.5)
        assert 0 < BudgetTimeout(10, budget).clone().read_timeout <= 0.5
        budget.start(-1)
        assert BudgetTimeout(10, budget).clone().read_timeout == MIN_ATTEMPT_TIMEOUT


class ScriptedHandler(BaseHTTPRequestHandler):
    """Answer every request from the server's script of (status, body, headers)."""

    def log_message(self, format, *args):
        pass

    def answer(self):
        length = int(self.headers.get('Content-Length') or 0)
        if length:
            self.rfile.read(length)
        server = self.server
        server.hits.append(self.command)
        if server.on_hit is not None:
            server.on_hit(len(server.hits))
        if server.delay:
            time.sleep(server.delay)
        status, body, headers = server.script.pop(0) if len(server.script) > 1 else server.script[0]
        data = json.dumps(body).encode('utf-8') if body is not None else b''
        self.send_response(status)
        self.send_header('Content-Type', 'application/json')
        self.send_header('Content-Length', str(len(data)))
        for k, v in (headers or dict()).items():
            self.send_header(k, v)
        self.end_headers()
        self.wfile.write(data)

    do_GET = do_POST = do_PUT = do_DELETE = answer


class ScriptedServer(ThreadingHTTPServer):
    daemon_threads = True

    def handle_error(self, request, client_address):
        # a client that gave up closes the socket under a slow handler
        pass


@pytest.fixture
def live(monkeypatch):
    for var in ('HTTP_PROXY', 'http_proxy', 'HTTPS_PROXY', 'https_proxy', 'ALL_PROXY', 'all_proxy'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(TransportRetry, 'get_backoff_time', lambda self: 0)
    server = ScriptedServer(('127.0.0.1', 0), ScriptedHandler)
    server.hits, server.script, server.on_hit, server.delay = [], [(200, [], None)], None, 0
    server.url = f"http://127.0.0.1:{server.server_address[1]}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


UNAVAILABLE = (503, {'code': 'ServiceUnavailable', 'message': 'try again'}, None)


class TestRetryOverHttp:
    def test_server_errors_are_retried(self, live):
        live.script = [UNAVAILABLE, UNAVAILABLE, (200, [{'id': 'a'}], None)]
        with Transport(live.url) as transport:
            assert transport.request('GET', '/alice/machines').body == [{'id': 'a'}]
        assert live.hits == ['GET', 'GET', 'GET']

    def test_retries_end_with_the_last_status(self, live):
        live.script = [UNAVAILABLE]
        with Transport(live.url) as transport:
            with pytest.raises(ServerError) as info:
                transport.request('GET', '/alice/machines')
        assert info.value.status == 503
        assert info.value.code == 'ServiceUnavailable'
        assert len(live.hits) == 1 + MAX_RETRIES

    def test_post_is_not_retried(self, live):
        live.script = [UNAVAILABLE]
        with Transport(live.url) as transport:
            with pytest.raises(ServerError):
                transport.request('POST', '/alice/machines', body={})
        assert live.hits == ['POST']

    def test_retry_after_past_the_timeout(self, live):
        live.script = [(503, None, {'Retry-After': '30'}), (200, [], None)]
        start = time.monotonic()
        with Transport(live.url, timeout=1.0) as transport:
            with pytest.raises(WaitTimeout) as info:
                transport.request('GET', '/alice/machines')
        assert info.value.code == 'RequestTimeout'
        assert live.hits == ['GET']
        assert time.monotonic() - start < 5

    def test_timeout_covers_every_attempt(self, live):
        live.script = [UNAVAILABLE]
        live.delay = 0.6
        start = time.monotonic()
        with Transport(live.url, timeout=1.0) as transport:
            with pytest.raises(WaitTimeout):
                transport.request('GET', '/alice/machines')
        assert time.monotonic() - start < 2.0
        assert len(live.hits) == 2

    def test_cancel_stops_retries(self, live):
        cancel = Cancellation()
        live.script = [UNAVAILABLE]
        live.on_hit = lambda n: cancel.cancel()
        transport = Transport(live.url, cancel=cancel)
        with pytest.raises(Canceled):
            transport.request('GET', '/alice/machines')
        assert live.hits == ['GET']

    def test_cancel_closes_the_session(self):
        cancel = Cancellation()
        session = MagicMock()
        transport = Transport(URL, session=session, cancel=cancel)
        cancel.cancel()
        session.close.assert_called_once_with()
        transport.close()


class TestStream:
    def test_pages_until_short_page(self, server, transport):
        server.route('GET', '/alice/machines', [{'id': 1}, {'id': 2}], [{'id': 3}])
        items = list(transport.stream('GET', '/alice/machines', paginate=True, page_size=2))
        assert [i['id'] for i in items] == [1, 2, 3]
        offsets = [r['query']['offset'] for r in server.requests]
        assert offsets == [['0'], ['2']]

    def test_unpaginated(self, server, transport):
        server.route('GET', '/alice/networks', [{'id': 'n1'}])
        assert list(transport.stream('GET', '/alice/networks')) == [{'id': 'n1'}]
        assert 'limit' not in server.requests[0]['query']
