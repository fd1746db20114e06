"""Error taxonomy shared by the node, cluster and profile layers.

Every failure raised by the library derives from :class:`DevbaoError` and
falls into one of five families:

* :class:`ValidationError` - malformed or contradictory local configuration,
  rejected before any I/O happens.
* :class:`StateConflictError` - the operation would overwrite or contradict
  durable state (already initialized, already clustered, already exists).
* :class:`RemoteAPIError` - the administrative API failed or answered with an
  unexpected shape.
* :class:`ProcessError` - spawn failure, readiness timeout or an unexpected
  process identity.
* :class:`ConsistencyError` - on-disk records reference each other
  inconsistently, or remote state contradicts local bookkeeping.

Each class carries the CLI exit code used when it escapes a command.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class DevbaoError(RuntimeError):
    """Base class for all devbao failures."""

    exit_code: ExitCode = ExitCode.ENVIRONMENT


class ValidationError(DevbaoError):
    """Raised when local configuration is malformed or contradictory."""

    exit_code = ExitCode.VALIDATION


class StateConflictError(DevbaoError):
    """Raised when an operation would clobber existing durable state."""

    exit_code = ExitCode.CONFLICT


class RemoteAPIError(DevbaoError):
    """Raised when the server's administrative API fails."""

    exit_code = ExitCode.PROVIDER

    def __init__(self, message: str, *, status: int | None = None, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.errors = list(errors or [])


class ProcessError(DevbaoError):
    """Raised when a server process cannot be spawned or identified."""

    exit_code = ExitCode.ENVIRONMENT


class ConsistencyError(DevbaoError):
    """Raised when persisted or remote state is internally inconsistent."""

    exit_code = ExitCode.ENVIRONMENT


class NotFoundError(DevbaoError):
    """Raised when a named node or cluster has no persisted record."""

    exit_code = ExitCode.VALIDATION


__all__ = [
    "ConsistencyError",
    "DevbaoError",
    "NotFoundError",
    "ProcessError",
    "RemoteAPIError",
    "StateConflictError",
    "ValidationError",
]
