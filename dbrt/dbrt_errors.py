"""DBRT error hierarchy.

ConfigurationError and DimensionMismatchError are also ValueErrors so that
callers validating input the usual way keep working.

Author: DBRT developers
License: GPL-3.0-or-later
"""


class DbrtError(Exception):
    """Base class for all tracker errors."""


class ConfigurationError(DbrtError, ValueError):
    """Invalid construction parameters. Fatal, not retried."""


class DimensionMismatchError(DbrtError, ValueError):
    """Measurement or image shape does not match the tracker."""

    def __init__(self, message: str, expected=None, received=None):
        super().__init__(message)
        self.expected = expected
        self.received = received


class NumericalError(DbrtError, ArithmeticError):
    """Non-positive density or NaN/Inf produced by a filter step."""


class DegenerateFilterError(DbrtError):
    """All particle weights collapsed to zero."""


class ObservationUnavailableError(DbrtError):
    """An external collaborator (renderer, sensor) failed for this cycle."""
