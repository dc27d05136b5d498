"""Domain exceptions translated into HTTP responses by the error handling middleware.

Each class derives from the builtin exception of the same family so that code
raising plain `ValueError`, `PermissionError`, `LookupError` or `TimeoutError`
is mapped the same way.
"""


class BadRequestError(ValueError):
    """The request data is invalid (400)."""


class UnauthorizedError(PermissionError):
    """The caller is not allowed to perform the action (401)."""


class NotFoundError(LookupError):
    """The requested resource does not exist (404)."""


class RequestTimeoutError(TimeoutError):
    """A downstream operation did not finish in time (408)."""
