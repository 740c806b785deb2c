"""
Exception taxonomy for the reconciliation engine.

Planning errors (configuration, state corruption) abort before any
mutation. Provider errors are contained to the failing change and its
dependents.
"""

from typing import Iterable, Optional


class EngineError(Exception):
    """Base class for all engine errors."""
    pass


class ConfigurationError(EngineError):
    """Invalid configuration detected before planning."""
    pass


class UnresolvedReferenceError(ConfigurationError):
    """A resource references an address that is not declared."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"{source} references undeclared resource {target}")


class CycleError(ConfigurationError):
    """The resource graph contains a reference cycle."""

    def __init__(self, members: Iterable[str]):
        self.members = sorted(members)
        super().__init__(f"Dependency cycle between: {', '.join(self.members)}")


class DuplicateAddressError(ConfigurationError):
    """Two declarations share the same address."""
    pass


class UnknownResourceTypeError(ConfigurationError):
    """No provider is registered for a resource type."""
    pass


class LockContention(EngineError):
    """The state lock is held by someone else."""

    def __init__(self, message: str, holder=None):
        self.holder = holder
        super().__init__(message)


class ProviderError(EngineError):
    """Wraps a failed provider call for a single change."""

    def __init__(self, address: str, action: str, cause: Optional[BaseException] = None):
        self.address = address
        self.action = action
        self.cause = cause
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{action} {address} failed{detail}")


class StateCorruption(EngineError):
    """Persisted state is unreadable. Requires manual intervention."""
    pass


class StateBackendError(EngineError):
    """The state backend could not be read or written."""
    pass


class StalePlanError(EngineError):
    """State changed between planning and apply."""
    pass


class ResourceNotFoundError(EngineError):
    """No state record exists for the given address."""
    pass
