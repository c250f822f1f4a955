"""Shared fixtures: a fake clock, an in-memory CloudAPI server, and a connected TritonApi."""

import json
import signal
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests

from tritoncloud.client import TritonApi
from tritoncloud.config import Config, Profile

@pytest.fixture(autouse=True)
def _restore_sigpipe():
    """Importing tritoncloud.ctl sets SIGPIPE to SIG_DFL process-wide; keep Python's default for the test run."""
    if hasattr(signal, 'SIGPIPE'):
        signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    yield
    if hasattr(signal, 'SIGPIPE'):
        signal.signal(signal.SIGPIPE, signal.SIG_IGN)


ACCOUNT = 'alice'
URL = 'https://us-east-1.api.example.com'
KEY_ID = 'SHA256:' + 'A' * 43


class FakeClock:
    """Time that only moves when something sleeps."""

    def __init__(self):
        self.t = 0.0
        self.sleeps = []

    def now(self):
        return self.t

    def sleep(self, seconds, cancel=None):
        if cancel is not None:
            cancel.check("sleep")
        self.sleeps.append(seconds)
        self.t += seconds


def make_response(status, body=None, headers=None):
    res = requests.Response()
    res.status_code = status
    res.encoding = 'utf-8'
    if isinstance(body, (bytes, str)):
        res._content = body.encode('utf-8') if isinstance(body, str) else body
    else:
        res._content = json.dumps(body).encode('utf-8') if body is not None else b''
    res.headers.update(headers or dict())
    return res


class FakeServer:
    """Answer requests from canned routes keyed by method and path.

    A route given several responses plays them in order and then repeats the
    last one. Unknown routes answer 404.
    """

    def __init__(self):
        self.routes = dict()
        self.requests = []

    def route(self, method, path, *responses):
        """Add responses as (status, body) or (status, body, headers) tuples, or a bare body for 200."""
        normal = []
        for r in responses or [(200, None)]:
            if isinstance(r, tuple):
                normal.append(r if len(r) == 3 else (r[0], r[1], None))
            else:
                normal.append((200, r, None))
        self.routes[(method, path)] = normal

    def send(self, prepared, **kwargs):
        url = urlparse(prepared.url)
        body = json.loads(prepared.body) if prepared.body else None
        self.requests.append(dict(method=prepared.method, path=url.path, query=parse_qs(url.query),
                                  body=body, headers=dict(prepared.headers)))
        responses = self.routes.get((prepared.method, url.path))
        if not responses:
            return make_response(404, {'code': 'ResourceNotFound', 'message': f"{url.path} does not exist"})
        status, body, headers = responses.pop(0) if len(responses) > 1 else responses[0]
        return make_response(status, body, headers)

    def session(self):
        session = requests.Session()
        session.send = self.send
        return session

    def calls(self, method=None, path=None):
        return [r for r in self.requests if (method is None or r['method'] == method) and (path is None or r['path'] == path)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def profile():
    return Profile(name='test', url=URL, account=ACCOUNT, key_id=KEY_ID)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def api(tmp_path, profile, server, clock):
    signer = MagicMock()
    signer.authorization.return_value = 'Signature keyId="/alice/keys/test",algorithm="rsa-sha256",signature="c2ln"'
    config = Config(profile=profile, config_dir=tmp_path)
    with TritonApi(config, signer=signer, session=server.session(), clock=clock) as triton:
        yield triton
