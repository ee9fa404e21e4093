"""Error taxonomy shared by realmctl components.

Every expected failure derives from :class:`RealmctlError` and carries the
exit code the CLI reports for it. Module-specific errors subclass one of the
three families below so callers can decide how far a failure propagates:

* :class:`UserInputError` - bad identifiers, duplicates, malformed arguments.
  Nothing has been mutated when one of these is raised.
* :class:`ConfigIntegrityError` - corrupt or missing on-disk state for a
  single realm. Fatal for that realm's operation only.
* :class:`ExternalResourceError` - database or process failures. Stages that
  already completed are not rolled back.
"""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit status for each error family."""

    OK = 0
    USER_INPUT = 2
    CONFIG_INTEGRITY = 3
    EXTERNAL_RESOURCE = 4


class RealmctlError(RuntimeError):
    """Base class for expected realmctl failures."""

    exit_code: ExitCode = ExitCode.USER_INPUT


class UserInputError(RealmctlError):
    """Raised when operator input cannot be resolved or is malformed."""

    exit_code = ExitCode.USER_INPUT


class ConfigIntegrityError(RealmctlError):
    """Raised when persisted realm state is unreadable or missing."""

    exit_code = ExitCode.CONFIG_INTEGRITY


class ExternalResourceError(RealmctlError):
    """Raised when a database or worker process operation fails."""

    exit_code = ExitCode.EXTERNAL_RESOURCE


__all__ = [
    "ConfigIntegrityError",
    "ExitCode",
    "ExternalResourceError",
    "RealmctlError",
    "UserInputError",
]
