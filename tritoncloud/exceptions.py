#!/usr/bin/env python
"""Exceptions class"""


class TritonError(Exception):
    """Base-class for all exceptions raised by this module.

    :param message: human readable description
    :param code: optional symbolic code, e.g. the CloudAPI error body's ``code``
    :param status: optional HTTP status of the response that caused this error
    :param cause: optional underlying exception
    """

    exit_status = 1
    default_code = None

    def __init__(self, message: str = None, code: str = None, status: int = None, cause: Exception = None) -> None:
        """Add the code, status, and cause as attributes to this instance."""
        self.message = message or self.__doc__.splitlines()[0]
        self.code = code or self.default_code
        self.status = status
        self.cause = cause
        super().__init__(self.message)

    def __str__(self):
        """Report the message, and the cause if it adds anything."""
        if self.cause is not None and str(self.cause) not in self.message:
            return f"{self.message}: {self.cause}"
        return self.message

    def cause_chain(self):
        """Yield this error and each cause in turn."""
        err = self
        while err is not None:
            yield err
            err = getattr(err, 'cause', None) or err.__cause__


class InternalError(TritonError):
    """Internal error."""

    default_code = 'Internal'


class UsageError(TritonError):
    """Usage error."""

    default_code = 'Usage'
    exit_status = 2


class ConfigError(TritonError):
    """Configuration error."""

    default_code = 'Config'


class AuthError(TritonError):
    """Unable to sign or the server rejected the signature."""

    default_code = 'Auth'


SigningError = AuthError


class TransportError(TritonError):
    """Failed to exchange a request with the server."""

    default_code = 'Transport'


class SelfSignedCertError(TransportError):
    """The server certificate could not be verified."""

    default_code = 'SelfSignedCert'

    def __init__(self, url: str = None, cause: Exception = None) -> None:
        """Describe how to proceed with an unverifiable certificate."""
        self.url = url
        super().__init__(
            message=f"could not access CloudAPI {url} because it uses a self-signed TLS certificate "
                    "and your current profile is not configured for insecure access",
            cause=cause)


class NotFound(TritonError):
    """Resource not found."""

    default_code = 'ResourceNotFound'
    exit_status = 3


ResourceNotFoundError = NotFound


class AmbiguousName(TritonError):
    """More than one resource has that name."""

    default_code = 'AmbiguousName'

    def __init__(self, kind: str, name: str, matches: list) -> None:
        """Keep the matches so the caller can list them."""
        self.kind = kind
        self.matches = matches
        super().__init__(f"{len(matches)} {kind} have the name \"{name}\": "
                         + ", ".join(m.get('id', '?') for m in matches))


class AmbiguousShortId(TritonError):
    """More than one resource id starts with that prefix."""

    default_code = 'AmbiguousShortId'

    def __init__(self, kind: str, short_id: str, matches: list) -> None:
        """Keep the matches so the caller can list them."""
        self.kind = kind
        self.matches = matches
        super().__init__(f"no {kind} with name \"{short_id}\" was found and \"{short_id}\" is an ambiguous short id "
                         f"({len(matches)} matches)")


class ServerError(TritonError):
    """The server responded with an error."""

    def __init__(self, message: str = None, code: str = None, status: int = None, body=None, cause: Exception = None) -> None:
        """Keep the parsed response body for inspection."""
        self.body = body
        super().__init__(message=message, code=code, status=status, cause=cause)


class WaitTimeout(TritonError):
    """Timed out."""

    default_code = 'Timeout'

    def __init__(self, message: str = None, last: dict = None, code: str = None, cause: Exception = None) -> None:
        """Keep the last observed resource snapshot."""
        self.last = last
        super().__init__(message=message, code=code, cause=cause)


class Canceled(TritonError):
    """Canceled."""

    default_code = 'Canceled'


class MultiError(TritonError):
    """Multiple independent errors, e.g. one per datacenter."""

    default_code = 'MultiError'

    def __init__(self, errors: list) -> None:
        """Collect the errors; there must be at least one."""
        if not errors:
            raise InternalError("MultiError needs at least one error")
        self.errors = list(errors)
        lines = [f"multiple ({len(self.errors)}) errors"]
        for err in self.errors:
            dc = getattr(err, 'dc', None)
            lines.append(f"    {dc}: {err}" if dc else f"    {err}")
        super().__init__("\n".join(lines))

    @property
    def exit_status(self):
        """Exit like the first error."""
        return getattr(self.errors[0], 'exit_status', 1)

    def first(self):
        """Return the first error, the one reported by the CLI."""
        return self.errors[0]
