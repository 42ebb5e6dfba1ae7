"""ResourceProvider capability consumed by the plan and apply engines."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from engine.errors import AmbiguousOutcomeError, ProviderError

if TYPE_CHECKING:
    from engine.plan import PlannedChange


@dataclass
class ProviderResult:
    """Outcome of a successful provider operation.

    Attributes:
        provider_id: Identifier assigned by the provider (None after destroy)
        attributes: Attributes the provider computed, e.g. id, arn, dns_name
    """
    provider_id: Optional[str] = None
    attributes: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceSchema:
    """What the provider allows to change in place for one resource type.

    Any attribute listed in immutable_attributes forces a replacement
    when its desired value differs from the applied one.
    """
    resource_type: str
    immutable_attributes: frozenset = frozenset()

    def is_immutable(self, attribute: str) -> bool:
        return attribute in self.immutable_attributes


@runtime_checkable
class ResourceProvider(Protocol):
    """Protocol for the cloud API adapter.

    execute() receives a PlannedChange whose desired_attributes are fully
    evaluated. create and update return the provider id and computed
    attributes; destroy returns an empty result.
    """

    def execute(self, change: 'PlannedChange') -> ProviderResult:
        """Perform a create, update or destroy."""

    def schema(self, resource_type: str) -> ResourceSchema:
        """Describe the mutability of a resource type."""

    def read_data(self, data_type: str, attributes: dict) -> dict:
        """Read a data source."""


def is_retryable(error: Exception) -> bool:
    """True for transient provider errors; ambiguous outcomes never retry."""
    if isinstance(error, AmbiguousOutcomeError):
        return False
    return isinstance(error, ProviderError) and error.transient
