"""Exception types for DexGuard.

Public risk operations return structured results instead of raising. These
exceptions are raised internally and converted at the component boundary, except
ConfigurationError, which construction code lets propagate.
"""


class DexGuardError(Exception):
    """Base class for DexGuard errors."""


class ConfigurationError(DexGuardError):
    """Unusable configuration supplied at construction time."""


class GatewayError(DexGuardError):
    """Market state or execution gateway returned unusable data."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message)
        self.operation = operation
