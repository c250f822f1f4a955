"""Signed JSON requests to CloudAPI over HTTPS."""

import json
import logging
import platform
import ssl
import threading
import time
from dataclasses import dataclass, field
from email.utils import formatdate
from json import JSONDecodeError

from requests import Request, Session, status_codes
from requests.adapters import HTTPAdapter
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, SSLError, Timeout
from urllib3 import disable_warnings
from urllib3.exceptions import InsecureRequestWarning, MaxRetryError, ReadTimeoutError
from urllib3.exceptions import SSLError as Urllib3SSLError
from urllib3.util.retry import Retry
from urllib3.util.timeout import Timeout as Urllib3Timeout

from . import __version__
from .exceptions import AuthError, Canceled, NotFound, SelfSignedCertError, ServerError, TransportError, WaitTimeout
from .logger_base import get_logger
from .utility import DEFAULT_API_VERSION, DEFAULT_PAGE_SIZE, DEFAULT_TIMEOUT, Cancellation

IDEMPOTENT_METHODS = frozenset(["GET", "HEAD", "PUT", "DELETE", "OPTIONS"])
RETRY_STATUSES = (500, 502, 503, 504)
MAX_RETRIES = 3
BACKOFF_BASE = 0.25   # seconds, doubled each retry
BACKOFF_JITTER = 0.1  # seconds of random jitter added to each backoff
MIN_ATTEMPT_TIMEOUT = 0.01  # urllib3 refuses a zero timeout
AUTH_ERROR_CODES = ('InvalidCredentials', 'InvalidSignature', 'NotAuthorized', 'InvalidHeader', 'KeyNotFound')
STATUS_CODES = status_codes


def user_agent():
    """Identify this client, its version, and the platform."""
    return f"triton/{__version__} ({platform.machine()}-{platform.system().lower()}; python/{platform.python_version()})"


def is_cert_error(error):
    """Test if a TLS error is a failure to verify the server certificate."""
    seen = set()
    while error is not None and id(error) not in seen:
        seen.add(id(error))
        if isinstance(error, ssl.SSLCertVerificationError) or 'CERTIFICATE_VERIFY_FAILED' in str(error):
            return True
        error = getattr(error, 'reason', None) or error.__context__
    return False


class RequestBudget(threading.local):
    """The deadline of the request this thread has in flight."""

    deadline = None

    def start(self, timeout: float):
        self.deadline = time.monotonic() + timeout

    def clear(self):
        self.deadline = None

    def remaining(self):
        """Seconds left before the deadline, or None outside of a request."""
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()


class BudgetTimeout(Urllib3Timeout):
    """Give each attempt the smaller of the request timeout and what is left of the budget."""

    def __init__(self, timeout: float, budget: RequestBudget):
        super().__init__(connect=timeout, read=timeout)
        self.budget = budget

    def clone(self):
        timeout = self._connect
        remaining = self.budget.remaining()
        if remaining is not None:
            timeout = max(min(timeout, remaining), MIN_ATTEMPT_TIMEOUT)
        return Urllib3Timeout(connect=timeout, read=timeout)


class TransportRetry(Retry):
    """Retry only idempotent methods and never a certificate verification failure.

    urllib3 retries connect errors for any method because the request was not
    sent, but POST is never retried here. A copy bound to a Cancellation and a
    RequestBudget stops retrying on cancel and never sleeps past the deadline.
    """

    def __init__(self, *args, cancel: Cancellation = None, budget: RequestBudget = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cancel = cancel
        self.budget = budget

    def new(self, **kw):
        retry = super().new(**kw)
        retry.cancel = self.cancel
        retry.budget = self.budget
        return retry

    def bind(self, cancel: Cancellation, budget: RequestBudget):
        """Copy this strategy for the cancellation and request budget of one Transport."""
        retry = self.new()
        retry.cancel = cancel
        retry.budget = budget
        return retry

    def increment(self, method=None, url=None, response=None, error=None, _pool=None, _stacktrace=None):
        if self.cancel is not None and self.cancel.canceled:
            if response is not None:
                response.drain_conn()
            raise Canceled(f"{method} {url} canceled")
        # read errors are never retried and reach requests as themselves, e.g. ReadTimeout
        if error is not None and not self._is_read_error(error):
            if method and method.upper() not in IDEMPOTENT_METHODS:
                raise MaxRetryError(_pool, url, reason=error)
            if isinstance(error, Urllib3SSLError) and is_cert_error(error):
                raise MaxRetryError(_pool, url, reason=error)
        return super().increment(method=method, url=url, response=response, error=error, _pool=_pool, _stacktrace=_stacktrace)

    def sleep(self, response=None):
        wait = None
        if response is not None and self.respect_retry_after_header:
            wait = self.get_retry_after(response)
        if wait is None:
            wait = self.get_backoff_time()
        remaining = self.budget.remaining() if self.budget is not None else None
        if remaining is not None and wait >= remaining:
            raise ReadTimeoutError(None, None, f"retrying in {wait:.2f}s would exceed the request timeout")
        if self.cancel is not None:
            self.cancel.sleep(wait, "retry")
        elif wait > 0:
            time.sleep(wait)


RETRY_STRATEGY = TransportRetry(
    total=MAX_RETRIES,
    connect=MAX_RETRIES,
    read=False,
    status=MAX_RETRIES,
    status_forcelist=RETRY_STATUSES,
    allowed_methods=IDEMPOTENT_METHODS,
    backoff_factor=BACKOFF_BASE,
    backoff_jitter=BACKOFF_JITTER,
    respect_retry_after_header=True,
    raise_on_status=False,
)


class TimeoutHTTPAdapter(HTTPAdapter):
    """Configure Python requests library to have retry and timeout defaults."""

    def __init__(self, *args, **kwargs):
        self.timeout = DEFAULT_TIMEOUT
        if "timeout" in kwargs:
            self.timeout = kwargs["timeout"]
            del kwargs["timeout"]
        super().__init__(*args, **kwargs)

    def send(self, request, **kwargs):
        timeout = kwargs.get("timeout")
        if timeout is None:
            kwargs["timeout"] = self.timeout
        return super().send(request, **kwargs)


@dataclass
class Response:
    """A parsed CloudAPI response."""

    status: int
    headers: dict = field(default_factory=dict)
    body: object = None

    @property
    def status_symbol(self):
        """The HTTP status symbol, e.g. NOT_FOUND."""
        return STATUS_CODES._codes[self.status][0].upper() if self.status in STATUS_CODES._codes else str(self.status)


def error_from_response(status: int, body, method: str = None, path: str = None):
    """Classify a non-2xx response as an exception of the error taxonomy."""
    code, message = None, None
    if isinstance(body, dict):
        code = body.get('code')
        message = body.get('message')
    if not message:
        message = f"{method} {path} failed with HTTP {status}" if method else f"HTTP {status}"
    if status in (401, 403) and (status == 401 or code in AUTH_ERROR_CODES):
        return AuthError(message, code=code or 'NotAuthorized', status=status)
    elif status == 404:
        return NotFound(message, code=code or 'ResourceNotFound', status=status)
    elif status == 410:
        return NotFound(message, code=code or 'Gone', status=status)
    return ServerError(message, code=code, status=status, body=body)


class Transport:
    """Execute signed JSON requests against one CloudAPI endpoint.

    :param url: base URL of CloudAPI, e.g. https://us-east-1.api.example.com
    :param signer: a Signer, or None for unauthenticated requests like ping
    :param insecure: skip verification of the server certificate
    :param timeout: per-request timeout in seconds
    :param api_version: value of the Api-Version header
    :param session: optional requests Session, e.g. a mock in tests
    :param cancel: optional Cancellation checked before each request and page
    """

    def __init__(self,
                 url: str,
                 signer: object = None,
                 insecure: bool = False,
                 timeout: float = DEFAULT_TIMEOUT,
                 api_version: str = DEFAULT_API_VERSION,
                 session: Session = None,
                 cancel: Cancellation = None,
                 logger: logging.Logger = None):
        self.url = url.rstrip('/')
        self.signer = signer
        self.insecure = insecure
        self.timeout = timeout
        self.api_version = api_version
        self.cancel = cancel or Cancellation()
        self.logger = get_logger(__name__, logger)
        self.budget = RequestBudget()
        if session is None:
            session = Session()
            adapter = TimeoutHTTPAdapter(timeout=timeout, max_retries=RETRY_STRATEGY.bind(self.cancel, self.budget))
            session.mount("https://", adapter)
            session.mount("http://", adapter)
        self.session = session
        self.session.verify = not insecure
        if insecure:
            disable_warnings(InsecureRequestWarning)
        self.user_agent = user_agent()
        # closing the pools on cancel drops idle connections and fails pending ones
        self.cancel.add_callback(self.session.close)

    def close(self):
        self.cancel.remove_callback(self.session.close)
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def _headers(self, headers: dict = None, body_present: bool = False):
        merged = {
            'Accept': 'application/json',
            'Api-Version': self.api_version,
            'User-Agent': self.user_agent,
            'Date': formatdate(usegmt=True),
        }
        if body_present:
            merged['Content-Type'] = 'application/json'
        merged.update(headers or dict())
        return merged

    def _log_request(self, prepared, status: int = None, elapsed: float = None):
        if not self.logger.isEnabledFor(logging.TRACE):
            return
        shown = dict()
        for k, v in prepared.headers.items():
            if k.lower() == 'authorization':
                v = v.split(',signature=')[0] + ',signature=<redacted>'
            shown[k] = v
        if status is None:
            self.logger.trace(f"request {prepared.method} {prepared.url} headers={shown}")
        else:
            self.logger.trace(f"response {prepared.method} {prepared.url} -> {status} in {elapsed * 1000:.0f}ms")

    def request(self, method: str, path: str, query: dict = None, headers: dict = None, body=None,
                timeout: float = None, sign: bool = True):
        """Send one request and parse the JSON response.

        :param method: HTTP method
        :param path: absolute path below the base URL, e.g. /myaccount/machines
        :param query: query parameters, None values are dropped
        :param body: JSON-serializable request body
        :param timeout: seconds for the request including every retry and its
            backoff, default is the transport's
        :param sign: add the HTTP Signature Authorization header
        :returns: a Response, raises a TritonError kind for non-2xx statuses
        """
        method = method.upper()
        self.cancel.check(f"{method} {path}")
        params = {k: v for k, v in (query or dict()).items() if v is not None}
        data = json.dumps(body) if body is not None else None
        req = Request(method, self.url + path, params=params, data=data,
                      headers=self._headers(headers, body_present=data is not None))
        prepared = self.session.prepare_request(req)
        if sign and self.signer is not None:
            prepared.headers['Authorization'] = self.signer.authorization(method, prepared.path_url, prepared.headers['Date'])
        self._log_request(prepared)
        start = time.monotonic()
        timeout = timeout or self.timeout
        self.budget.start(timeout)
        try:
            res = self.session.send(prepared, timeout=BudgetTimeout(timeout, self.budget))
        except RequestException as e:
            self.cancel.check(f"{method} {path}")
            raise self._transport_error(method, path, e) from e
        finally:
            self.budget.clear()
        self._log_request(prepared, status=res.status_code, elapsed=time.monotonic() - start)
        self.cancel.check(f"{method} {path}")

        parsed = None
        if method != 'HEAD' and res.content:
            try:
                parsed = res.json()
            except (JSONDecodeError, ValueError) as e:
                if 200 <= res.status_code < 300:
                    raise TransportError(f"invalid JSON in response to {method} {path}, caught {e}", cause=e) from e
                parsed = {'message': res.text}
        if not 200 <= res.status_code < 300:
            raise error_from_response(res.status_code, parsed, method=method, path=path)
        return Response(status=res.status_code, headers=res.headers, body=parsed)

    def _transport_error(self, method: str, path: str, e: RequestException):
        """Classify a requests failure as an exception of the error taxonomy."""
        if isinstance(e, SSLError):
            if is_cert_error(e):
                return SelfSignedCertError(url=self.url, cause=e)
            return TransportError(f"TLS error on {method} {path}, caught {e}", cause=e)
        elif isinstance(e, Timeout):
            return WaitTimeout(f"{method} {path} timed out", code='RequestTimeout', cause=e)
        elif isinstance(e, RequestsConnectionError):
            return TransportError(f"failed to connect to {self.url}, caught {e}", cause=e)
        return TransportError(f"{method} {path} failed, caught {e}", cause=e)

    def stream(self, method: str, path: str, query: dict = None, paginate: bool = False,
               page_size: int = DEFAULT_PAGE_SIZE, **kwargs):
        """Generate the resources of a list endpoint one at a time.

        :param paginate: page with limit/offset until the x-resource-count header
            or a short page says there is no more
        :param page_size: items per page when paginating
        """
        query = dict(query or dict())
        if not paginate:
            res = self.request(method, path, query=query, **kwargs)
            yield from (res.body or list())
            return
        limit = int(query.pop('limit', page_size))
        offset = int(query.pop('offset', 0))
        while True:
            self.cancel.check(f"listing {path}")
            res = self.request(method, path, query={**query, 'limit': limit, 'offset': offset}, **kwargs)
            page = res.body or list()
            yield from page
            count = res.headers.get("x-resource-count")
            if len(page) < limit or (count is not None and int(count) < limit):
                return
            offset += len(page)
