"""
Error taxonomy for the end-to-end harness.

Fatal conditions (bad test definitions, unresolvable or unreadable target)
are raised as exceptions; resource failures are raised by the resource
manager and recorded by the runner. Per-invocation failures never escape the
transport adapters; they are reported through the closed ErrorKind enum.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure kinds an invocation outcome can carry."""

    CLIENT_ERROR = "ClientError"
    INVOCATION_ERROR = "InvocationError"
    TIMEOUT = "Timeout"

    @classmethod
    def parse(cls, value):
        if value is None or isinstance(value, cls):
            return value
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Unknown error kind: {value}")


class HarnessError(Exception):
    """Base class for errors that abort a harness run."""


class ConfigError(HarnessError):
    """Test definitions or settings could not be parsed."""


class TargetNotFoundError(HarnessError):
    """No deployed function matched the requested name or pattern."""


class AccessError(HarnessError):
    """The target was found but its metadata could not be read."""


class ProvisionError(HarnessError):
    """An ephemeral resource could not be created."""


class TeardownError(HarnessError):
    """An ephemeral resource could not be deleted."""


class LogExtractionFailed(HarnessError):
    """The log backend could not be queried."""
