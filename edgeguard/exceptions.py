#  EdgeGuard - Custom Exceptions
#
#  Typed exception hierarchy so callers can apply fail-open policies and
#  routes can map errors to HTTP status codes without pattern-matching on
#  message strings.
#
#  Depends on: (none)
#  Used by:    store/connection.py, services/*, routes/admin_ban.py, app.py

class EdgeGuardError(Exception):
    """Base exception for all EdgeGuard errors."""


class StoreUnavailableError(EdgeGuardError):
    """The backing key-value store could not be reached or failed a command."""


class InvalidCidrError(EdgeGuardError):
    """A CIDR string could not be parsed as an IPv4 or IPv6 network."""


class InvalidIdentifierError(EdgeGuardError):
    """An identifier is empty or may not be banned (e.g. loopback)."""


class ThrottledError(EdgeGuardError):
    """A remote endpoint signalled throttling (HTTP 429).

    Raised by the HTTP client layer so the request governor can back off
    without guessing from error messages.
    """

    def __init__(self, message: str = "Rate limited by remote endpoint", *,
                 url: str | None = None, status_code: int = 429,
                 retry_after: float | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.retry_after = retry_after
