"""
Exception hierarchy shared by the parser, compiler and CRUD service.

``ClientInputError`` subclasses describe bad client input and map to HTTP 400;
``NotFoundError`` maps to HTTP 404. Storage errors are never wrapped.
"""


class CrudError(Exception):
    """Base class for every error raised by crudhatch itself."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ClientInputError(CrudError):
    """The request cannot be served as written by the client."""

    status_code = 400


class QueryParseError(ClientInputError):
    """Malformed query-string parameter or route parameter."""


class ColumnAuthorizationError(ClientInputError):
    """Field not allowed, relation path not resolvable or injection signature found."""


class InvalidConditionError(ClientInputError):
    """Operator or operand cannot be compiled into SQL."""


class EmptyPayloadError(ClientInputError):
    """Create/update payload carries nothing to save."""


class NotFoundError(CrudError):
    """No row matches the resolved search."""

    status_code = 404
