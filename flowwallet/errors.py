"""Errors shared across the application."""

from enum import IntEnum


class RequestError(Exception):
    """An error that maps to an HTTP status code."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message

    def __str__(self) -> str:
        return self.message


class GrpcCode(IntEnum):
    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class RpcError(Exception):
    """An error returned by the chain access API."""

    def __init__(self, code: GrpcCode, message: str = ""):
        super().__init__(message or code.name)
        self.code = code


_CONNECTION_CODES = frozenset(
    {
        GrpcCode.DEADLINE_EXCEEDED,
        GrpcCode.RESOURCE_EXHAUSTED,
        GrpcCode.INTERNAL,
        GrpcCode.UNAVAILABLE,
    }
)


def is_chain_connection_error(err: BaseException) -> bool:
    """Tell whether an error means the chain could not be reached."""
    if isinstance(err, (ConnectionError, TimeoutError)):
        return True
    if isinstance(err, RpcError):
        return err.code in _CONNECTION_CODES
    return False