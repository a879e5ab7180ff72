"""Error types raised by the dsquery client."""

from __future__ import annotations


class ErrorCode:
    """Error codes attached to client-side dsquery errors."""
    UNKNOWN = "UNKNOWN"
    INVALID_ARG = "INVALID_ARG"
    UNBOUND_QUERY = "UNBOUND_QUERY"
    DECODE = "DECODE"


class DatastoreError(Exception):
    """Base exception class for errors raised by the query layer itself.

    Errors returned by the RPC client are never wrapped in this type; they
    reach the caller exactly as the client raised them.
    """

    def __init__(self, message: str, code: str = ErrorCode.UNKNOWN):
        super().__init__(message)
        self.code = code


class InvalidArgError(DatastoreError):
    """Error raised when a query or filter is built from invalid arguments."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.INVALID_ARG)


class UnboundQueryError(DatastoreError):
    """Error raised when running a query that has no scope to execute it."""

    def __init__(self, message: str = "query is not bound to a Datastore or Transaction"):
        super().__init__(message, ErrorCode.UNBOUND_QUERY)


class DecodeError(DatastoreError):
    """Error raised when a response carries pagination state we cannot interpret."""

    def __init__(self, message: str):
        super().__init__(message, ErrorCode.DECODE)
