"""Reference resolution for declaration sets.

Expands count-based declarations into indexed ResourceInstances, substitutes
count.index with each instance's concrete index, and binds every Reference
to the concrete instance(s) it denotes.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from declaration import (
    SPLAT,
    Computed,
    CountIndex,
    DataDeclaration,
    DeclarationSet,
    ListValue,
    Literal,
    MapValue,
    Reference,
    ResourceDeclaration,
)
from engine.errors import ConfigurationError, IndexOutOfRangeError, UnresolvedReferenceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstanceKey:
    """Identity of one resource instance: (declaration address, index).

    index is None for declarations without count.
    """
    address: str
    index: Optional[int] = None

    @property
    def type(self) -> str:
        return self.address.split('.', 1)[0]

    @property
    def name(self) -> str:
        return self.address.split('.', 1)[1]

    def sort_key(self) -> tuple[str, int]:
        return (self.address, -1 if self.index is None else self.index)

    def __str__(self) -> str:
        if self.index is None:
            return self.address
        return f'{self.address}[{self.index}]'

    @classmethod
    def parse(cls, text: str) -> 'InstanceKey':
        """Parse 'type.name' or 'type.name[3]'."""
        if text.endswith(']') and '[' in text:
            address, _, index = text[:-1].rpartition('[')
            return cls(address, int(index))
        return cls(text)


@dataclass(frozen=True)
class BoundReference:
    """A reference bound to concrete target instances.

    Attributes:
        targets: Target instance keys (one unless collection)
        path: Attribute path below each target
        collection: True if the reference evaluates to a list
        source: Original reference text (for error messages)
    """
    targets: tuple
    path: tuple = ()
    collection: bool = False
    source: str = ''


@dataclass(frozen=True)
class BoundDataReference:
    """A reference to a data source attribute."""
    address: str
    path: tuple = ()


@dataclass
class ResourceInstance:
    """One expansion of a resource declaration.

    Attributes:
        key: Instance identity
        declaration: The declaration this instance expands
        attributes: Attribute expressions with references bound
        dependencies: Instance keys this instance depends on
        ordinal: Position of the declaration in the declaration set
    """
    key: InstanceKey
    declaration: ResourceDeclaration
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: set = field(default_factory=set)
    ordinal: int = 0

    @property
    def type(self) -> str:
        return self.declaration.type

    def __repr__(self) -> str:
        return f"ResourceInstance({self.key}, deps={len(self.dependencies)})"


@dataclass
class ResolvedConfiguration:
    """Output of reference resolution, input to graph building and planning."""
    declarations: DeclarationSet
    instances: list[ResourceInstance]
    outputs: dict[str, Any]
    data_sources: dict[str, DataDeclaration]

    def get(self, key: InstanceKey) -> ResourceInstance:
        """Get an instance by key.

        Raises:
            KeyError: If no such instance exists
        """
        for instance in self.instances:
            if instance.key == key:
                return instance
        raise KeyError(str(key))


class ReferenceResolver:
    """Expands declarations into instances and binds their references."""

    def __init__(self, declarations: DeclarationSet):
        self.declarations = declarations
        self._resources: dict[str, ResourceDeclaration] = {}
        self._data: dict[str, DataDeclaration] = {}

        for decl in declarations.resources:
            if decl.address in self._resources:
                raise ConfigurationError(f"Duplicate resource address: '{decl.address}'")
            self._resources[decl.address] = decl
        for data in declarations.data_sources:
            if data.address in self._data:
                raise ConfigurationError(f"Duplicate data source address: '{data.address}'")
            self._data[data.address] = data

    def resolve(self) -> ResolvedConfiguration:
        """Resolve every declaration and output.

        Raises:
            UnresolvedReferenceError: If a reference names an unknown declaration
            IndexOutOfRangeError: If an explicit index exceeds the target's count
            ConfigurationError: For other invalid uses (count.index without count)
        """
        instances: list[ResourceInstance] = []
        for ordinal, decl in enumerate(self.declarations.resources):
            indices: list[Optional[int]] = (
                list(range(decl.count)) if decl.is_counted else [None]  # type: ignore[arg-type]
            )
            for index in indices:
                key = InstanceKey(decl.address, index)
                deps: set[InstanceKey] = set()
                attributes = {
                    name: self._bind(value, str(key), index, decl.is_counted, deps)
                    for name, value in decl.attributes.items()
                }
                for address in decl.depends_on:
                    target = self._resources.get(address)
                    if target is None:
                        raise UnresolvedReferenceError(str(key), address)
                    deps.update(self._all_instances(target))
                instances.append(ResourceInstance(
                    key=key,
                    declaration=decl,
                    attributes=attributes,
                    dependencies=deps,
                    ordinal=ordinal,
                ))

        outputs = {}
        for output in self.declarations.outputs:
            outputs[output.name] = self._bind(
                output.value, f'output.{output.name}', None, False, set())

        logger.debug(
            f"Resolved {len(self.declarations.resources)} declarations into "
            f"{len(instances)} instances"
        )
        return ResolvedConfiguration(
            declarations=self.declarations,
            instances=instances,
            outputs=outputs,
            data_sources=dict(self._data),
        )

    def _bind(self, value: Any, source: str, index: Optional[int],
              counted: bool, deps: set) -> Any:
        """Return value with count.index substituted and references bound."""
        if isinstance(value, Literal):
            return value
        if isinstance(value, CountIndex):
            if not counted or index is None:
                raise ConfigurationError(f"{source} uses count.index but does not set count")
            return Literal(index)
        if isinstance(value, Computed):
            return Computed(value.function, tuple(
                self._bind(arg, source, index, counted, deps) for arg in value.args))
        if isinstance(value, ListValue):
            return ListValue(tuple(
                self._bind(item, source, index, counted, deps) for item in value.items))
        if isinstance(value, MapValue):
            return MapValue({
                k: self._bind(v, source, index, counted, deps) for k, v in value.entries.items()})
        if isinstance(value, Reference):
            return self._bind_reference(value, source, index, counted, deps)
        raise ConfigurationError(f"{source}: unsupported attribute value {value!r}")

    def _bind_reference(self, ref: Reference, source: str, index: Optional[int],
                        counted: bool, deps: set) -> Any:
        if ref.is_data:
            if ref.target not in self._data:
                raise UnresolvedReferenceError(source, ref.target)
            return BoundDataReference(ref.target, ref.path)

        target = self._resources.get(ref.target)
        if target is None:
            raise UnresolvedReferenceError(source, ref.target)

        if ref.index is None:
            if target.is_counted and target.count != 1:
                targets = self._all_instances(target)
                deps.update(targets)
                return BoundReference(tuple(targets), ref.path, True, str(ref))
            single = InstanceKey(target.address, 0 if target.is_counted else None)
            deps.add(single)
            return BoundReference((single,), ref.path, False, str(ref))

        if ref.index == SPLAT:
            targets = self._all_instances(target)
            deps.update(targets)
            return BoundReference(tuple(targets), ref.path, True, str(ref))

        position = self._static_index(ref, source, index, counted, deps)
        if position < 0 or position >= target.instance_count:
            raise IndexOutOfRangeError(source, target.address, position, target.instance_count)
        single = InstanceKey(target.address, position if target.is_counted else None)
        deps.add(single)
        return BoundReference((single,), ref.path, False, str(ref))

    def _static_index(self, ref: Reference, source: str, index: Optional[int],
                      counted: bool, deps: set) -> int:
        """Evaluate an index expression that may only depend on count.index."""
        from engine.evaluate import evaluate_static

        if isinstance(ref.index, int):
            return ref.index
        bound = self._bind(ref.index, source, index, counted, deps)
        value = evaluate_static(bound)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{source}: index of '{ref}' must be an integer, got {value!r}")
        return value

    @staticmethod
    def _all_instances(decl: ResourceDeclaration) -> list[InstanceKey]:
        if not decl.is_counted:
            return [InstanceKey(decl.address)]
        return [InstanceKey(decl.address, i) for i in range(decl.instance_count)]


def resolve(declarations: DeclarationSet) -> ResolvedConfiguration:
    """Resolve a declaration set into instances with bound references."""
    return ReferenceResolver(declarations).resolve()
