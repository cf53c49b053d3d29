"""Exception hierarchy for showel.

All exceptions carry an exit_code for CLI return value mapping.
Exit codes are defined in exit_codes.py.
"""

from enum import StrEnum

from showel.core.exit_codes import ExitCode


class ConnectErrorKind(StrEnum):
    """Classification of a failed connection attempt."""

    TIMEOUT = "timeout"
    AUTH_FAILED = "auth_failed"
    UNKNOWN_DATABASE = "unknown_database"
    REFUSED = "refused"
    OTHER = "other"


CONNECT_HINTS: dict[ConnectErrorKind, str] = {
    ConnectErrorKind.TIMEOUT: "Check if database server is running and accessible",
    ConnectErrorKind.AUTH_FAILED: "Verify username and password",
    ConnectErrorKind.UNKNOWN_DATABASE: "Check database name",
    ConnectErrorKind.REFUSED: "Verify host and port, check firewall settings",
}


class ShowelError(Exception):
    """Base exception for all showel errors."""

    exit_code: int = ExitCode.GENERAL_ERROR

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class DatabaseConnectionError(ShowelError):
    """Connection failures: timeout, bad credentials, unknown database, refused."""

    exit_code: int = ExitCode.NETWORK_ERROR

    def __init__(
        self, message: str, kind: ConnectErrorKind = ConnectErrorKind.OTHER
    ) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def hint(self) -> str | None:
        return CONNECT_HINTS.get(self.kind)


class NotConnectedError(ShowelError):
    """Operation attempted without an active session."""

    exit_code: int = ExitCode.NETWORK_ERROR

    def __init__(self, message: str = "Not connected to database") -> None:
        super().__init__(message)


class QueryError(ShowelError):
    """Error reported by the database engine, text passed through verbatim."""

    exit_code: int = ExitCode.QUERY_ERROR


class QueryCancelledError(QueryError):
    """Query stopped by a client-side cancellation request."""

    exit_code: int = ExitCode.CANCELLED

    def __init__(self, message: str = "Query cancelled") -> None:
        super().__init__(message)


class UpdateError(ShowelError):
    """Row identity for a cell update could not be resolved."""

    exit_code: int = ExitCode.QUERY_ERROR


class InputError(ShowelError):
    """File not found, invalid parameters."""

    exit_code: int = ExitCode.INPUT_ERROR


class ConfigError(ShowelError):
    """Malformed config, missing profile."""

    exit_code: int = ExitCode.CONFIG_ERROR


class OperationTimeoutError(ShowelError):
    """No response from the database worker within the allotted time."""

    exit_code: int = ExitCode.TIMEOUT
