"""Error taxonomy for planning and applying.

ConfigurationError and its subclasses are raised before any provider
mutation. ProviderError is localized to one instance during apply.
StateConsistencyError is surfaced to the operator, never auto-healed.
"""

from typing import Optional, Sequence


class EngineError(Exception):
    """Base class for provisioning engine errors."""


class ConfigurationError(EngineError):
    """The declaration set cannot be planned as written."""


class UnresolvedReferenceError(ConfigurationError):
    """A reference names a declaration that does not exist."""

    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"{source} references unknown resource '{target}'")


class IndexOutOfRangeError(ConfigurationError):
    """An explicit index exceeds the target declaration's count."""

    def __init__(self, source: str, target: str, index: int, count: int):
        self.source = source
        self.target = target
        self.index = index
        self.count = count
        super().__init__(
            f"{source} references {target}[{index}] but {target} has count {count}"
        )


class CyclicDependencyError(ConfigurationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class ProviderError(EngineError):
    """A provider operation failed.

    Attributes:
        transient: True if the same call may succeed when retried
        status: Optional provider/HTTP status code
    """

    def __init__(self, message: str, transient: bool = False, status: Optional[int] = None):
        self.transient = transient
        self.status = status
        super().__init__(message)


class AmbiguousOutcomeError(ProviderError):
    """The provider may or may not have performed the operation.

    Never retried automatically; requires operator intervention.
    """

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, transient=False, status=status)


class StateConsistencyError(EngineError):
    """A state record points at an object the provider no longer recognizes."""

    def __init__(self, instance_key: str, provider_id: Optional[str], detail: str = ''):
        self.instance_key = instance_key
        self.provider_id = provider_id
        message = f"{instance_key}: provider does not recognize id '{provider_id}'"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class StateStoreError(EngineError):
    """A state record could not be read or written."""
