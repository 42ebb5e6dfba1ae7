"""Declaration loading and validation for provisioning.

A declaration document describes the desired infrastructure as typed
resource declarations, read-only data sources, and named outputs:

    name: web
    resources:
      - type: subnet
        name: public
        count: 2
        attributes:
          network_id: {ref: network.main.id}
          cidr_block:
            fn: cidrsubnet
            args: [{ref: network.main.cidr_block}, 8, {ref: count.index}]
    outputs:
      lb_address: {ref: load-balancer.web.dns_name}

Attribute values are parsed into a small expression tree (AttributeValue)
that the engine evaluates once referenced instances are known.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from config import ConfigError

logger = logging.getLogger(__name__)

# Index marker for "every instance of the target" (subnet.public[*].id)
SPLAT = '*'

LIFECYCLE_NONE = 'none'
LIFECYCLE_REPLACE_BEFORE_DESTROY = 'replace-before-destroy'
LIFECYCLE_POLICIES = (LIFECYCLE_NONE, LIFECYCLE_REPLACE_BEFORE_DESTROY)

_NAME = r'[A-Za-z_][A-Za-z0-9_-]*'
_REFERENCE_RE = re.compile(
    rf'^(?P<data>data\.)?(?P<type>{_NAME})\.(?P<name>{_NAME})'
    r'(?:\[(?P<index>[^\]]+)\])?'
    rf'(?P<path>(?:\.{_NAME}|\[\d+\])*)$'
)
_PATH_SEGMENT_RE = re.compile(rf'\.({_NAME})|\[(\d+)\]')
_COUNT_INDEX_RE = re.compile(r'^count\.index(?:\s*([+-])\s*(\d+))?$')


@dataclass(frozen=True)
class Literal:
    """A plain value: scalar, list, or map without expressions."""
    value: Any


@dataclass(frozen=True)
class CountIndex:
    """The index of the instance being evaluated (count.index)."""


@dataclass(frozen=True)
class Reference:
    """A reference to another declaration's attribute.

    Attributes:
        target: Declaration address ('subnet.public' or 'data.zones.available')
        path: Attribute path below the instance (('id',), ('tags', 'Name'))
        index: None, an int, SPLAT, or an expression using count.index
    """
    target: str
    path: tuple = ()
    index: Any = None

    @property
    def is_data(self) -> bool:
        return self.target.startswith('data.')

    def __str__(self) -> str:
        text = self.target
        if self.index is not None:
            text += f'[{_index_text(self.index)}]'
        for segment in self.path:
            text += f'[{segment}]' if isinstance(segment, int) else f'.{segment}'
        return text


@dataclass(frozen=True)
class Computed:
    """A built-in function applied to argument expressions."""
    function: str
    args: tuple = ()


def _index_text(index: Any) -> str:
    if isinstance(index, CountIndex):
        return 'count.index'
    if isinstance(index, Computed) and index.function == 'add' and len(index.args) == 2:
        offset = index.args[1]
        if isinstance(offset, Literal) and isinstance(offset.value, int):
            sign = '+' if offset.value >= 0 else '-'
            return f'count.index {sign} {abs(offset.value)}'
    return str(index)


@dataclass(frozen=True)
class ListValue:
    """A list whose items include expressions."""
    items: tuple = ()


@dataclass(frozen=True)
class MapValue:
    """A map whose values include expressions."""
    entries: dict = field(default_factory=dict)


AttributeValue = Union[Literal, CountIndex, Reference, Computed, ListValue, MapValue]


def parse_reference(text: str) -> AttributeValue:
    """Parse reference syntax into a Reference (or CountIndex).

    Supported forms:
        count.index
        network.main.id
        subnet.public[0].id
        subnet.public[count.index].id
        subnet.private[count.index + 2].id
        subnet.public[*].id
        data.zones.available.names[0]

    Raises:
        ConfigError: If the text is not a valid reference
    """
    text = text.strip()
    if text == 'count.index':
        return CountIndex()

    match = _REFERENCE_RE.match(text)
    if not match:
        raise ConfigError(f"Invalid reference: '{text}'")

    target = f"{match['type']}.{match['name']}"
    if match['data']:
        target = f'data.{target}'

    index: Any = None
    if match['index'] is not None:
        if match['data']:
            raise ConfigError(f"Data source references cannot be indexed: '{text}'")
        index = _parse_index(match['index'].strip(), text)

    path: list = []
    for name, number in _PATH_SEGMENT_RE.findall(match['path'] or ''):
        path.append(int(number) if number else name)

    return Reference(target=target, path=tuple(path), index=index)


def _parse_index(raw: str, text: str) -> Any:
    """Parse the bracketed part of a resource reference."""
    if raw == SPLAT:
        return SPLAT
    if raw.isdigit():
        return int(raw)
    count_match = _COUNT_INDEX_RE.match(raw)
    if count_match:
        op, amount = count_match.groups()
        if op is None:
            return CountIndex()
        offset = int(amount) if op == '+' else -int(amount)
        return Computed('add', (CountIndex(), Literal(offset)))
    raise ConfigError(f"Invalid index '{raw}' in reference '{text}'")


def parse_value(raw: Any) -> AttributeValue:
    """Parse a raw document value into an AttributeValue.

    {ref: ...} becomes a Reference, {fn: ..., args: [...]} a Computed.
    Lists and maps collapse to a single Literal unless they contain
    expressions.
    """
    if isinstance(raw, dict):
        if set(raw) == {'ref'}:
            if not isinstance(raw['ref'], str):
                raise ConfigError(f"Reference must be a string: {raw['ref']!r}")
            return parse_reference(raw['ref'])
        if 'fn' in raw:
            extra = set(raw) - {'fn', 'args'}
            if extra:
                raise ConfigError(f"Unexpected keys in function call {raw['fn']}: {sorted(extra)}")
            args = raw.get('args') or []
            if not isinstance(args, list):
                raise ConfigError(f"Function '{raw['fn']}' args must be a list")
            return Computed(str(raw['fn']), tuple(parse_value(a) for a in args))
        entries = {str(k): parse_value(v) for k, v in raw.items()}
        if all(isinstance(v, Literal) for v in entries.values()):
            return Literal(raw)
        return MapValue(entries)

    if isinstance(raw, list):
        items = tuple(parse_value(v) for v in raw)
        if all(isinstance(v, Literal) for v in items):
            return Literal(raw)
        return ListValue(items)

    return Literal(raw)


@dataclass
class Lifecycle:
    """Lifecycle settings for a resource.

    Attributes:
        policy: 'none' (destroy old, then create new on replacement) or
            'replace-before-destroy' (create new first)
        prevent_destroy: Refuse any plan that destroys or replaces the resource
        ignore_changes: Attribute names excluded from change detection
    """
    policy: str = LIFECYCLE_NONE
    prevent_destroy: bool = False
    ignore_changes: list[str] = field(default_factory=list)

    @property
    def replace_before_destroy(self) -> bool:
        return self.policy == LIFECYCLE_REPLACE_BEFORE_DESTROY

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'Lifecycle':
        """Create Lifecycle from dictionary.

        Accepts create_before_destroy: true as an alias for the
        replace-before-destroy policy.
        """
        if not data:
            return cls()
        policy = data.get('policy', LIFECYCLE_NONE)
        if data.get('create_before_destroy'):
            policy = LIFECYCLE_REPLACE_BEFORE_DESTROY
        if policy not in LIFECYCLE_POLICIES:
            raise ConfigError(
                f"Unknown lifecycle policy: {policy}. Supported: {', '.join(LIFECYCLE_POLICIES)}"
            )
        return cls(
            policy=policy,
            prevent_destroy=bool(data.get('prevent_destroy', False)),
            ignore_changes=list(data.get('ignore_changes', [])),
        )


@dataclass
class ResourceDeclaration:
    """A typed resource declaration.

    Attributes:
        type: Resource type identifier (e.g. 'subnet', 'load-balancer')
        name: Local name, unique per type
        attributes: Attribute expressions by name
        count: Number of instances (None = singleton)
        lifecycle: Replacement and protection settings
        depends_on: Extra ordering-only dependencies (declaration addresses)
    """
    type: str
    name: str
    attributes: dict[str, AttributeValue] = field(default_factory=dict)
    count: Optional[int] = None
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    depends_on: list[str] = field(default_factory=list)

    @property
    def address(self) -> str:
        return f'{self.type}.{self.name}'

    @property
    def is_counted(self) -> bool:
        return self.count is not None

    @property
    def instance_count(self) -> int:
        return 1 if self.count is None else self.count

    @classmethod
    def from_dict(cls, data: dict) -> 'ResourceDeclaration':
        """Create ResourceDeclaration from dictionary."""
        count = data.get('count')
        if count is not None and (isinstance(count, bool) or not isinstance(count, int) or count < 0):
            raise ConfigError(
                f"Resource {data.get('type')}.{data.get('name')}: count must be an integer >= 0"
            )
        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ConfigError(f"Resource {data['type']}.{data['name']}: attributes must be a mapping")
        depends_on = data.get('depends_on', [])
        if not isinstance(depends_on, list):
            raise ConfigError(f"Resource {data['type']}.{data['name']}: depends_on must be a list")
        return cls(
            type=data['type'],
            name=data['name'],
            attributes={str(k): parse_value(v) for k, v in attributes.items()},
            count=count,
            lifecycle=Lifecycle.from_dict(data.get('lifecycle')),
            depends_on=[str(d) for d in depends_on],
        )


@dataclass
class DataDeclaration:
    """A read-only data source, read through the provider at plan time."""
    type: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return f'data.{self.type}.{self.name}'

    @classmethod
    def from_dict(cls, data: dict) -> 'DataDeclaration':
        return cls(
            type=data['type'],
            name=data['name'],
            attributes=dict(data.get('attributes') or {}),
        )


@dataclass
class Output:
    """A named value extracted from state after a successful apply."""
    name: str
    value: AttributeValue
    sensitive: bool = False
    description: str = ''

    @classmethod
    def from_raw(cls, name: str, raw: Any) -> 'Output':
        """Create Output from either a bare expression or {value, sensitive}."""
        if isinstance(raw, dict) and 'value' in raw:
            return cls(
                name=name,
                value=parse_value(raw['value']),
                sensitive=bool(raw.get('sensitive', False)),
                description=raw.get('description', ''),
            )
        return cls(name=name, value=parse_value(raw))


@dataclass
class DeclarationSet:
    """A validated set of declarations handed to the engine.

    Attributes:
        name: Human-readable configuration name
        resources: Resource declarations in declaration order
        data_sources: Data source declarations
        outputs: Named output expressions
        description: Optional description
        source_path: Path the declarations were loaded from (for debugging)
    """
    name: str
    resources: list[ResourceDeclaration] = field(default_factory=list)
    data_sources: list[DataDeclaration] = field(default_factory=list)
    outputs: list[Output] = field(default_factory=list)
    description: str = ''
    source_path: Optional[Path] = None

    def get(self, address: str) -> Optional[ResourceDeclaration]:
        for decl in self.resources:
            if decl.address == address:
                return decl
        return None

    @classmethod
    def from_dict(cls, data: dict, source_path: Optional[Path] = None) -> 'DeclarationSet':
        """Create DeclarationSet from dictionary.

        Raises:
            ConfigError: If required fields are missing or malformed
        """
        if 'name' not in data:
            raise ConfigError("Declarations missing required field: name")

        resources = []
        for i, item in enumerate(data.get('resources') or []):
            if not isinstance(item, dict):
                raise ConfigError(f"Resource {i} must be a mapping")
            for required in ('type', 'name'):
                if required not in item:
                    raise ConfigError(
                        f"Resource {i} ({item.get('name', 'unnamed')}) missing required field: {required}"
                    )
            resources.append(ResourceDeclaration.from_dict(item))

        data_sources = []
        for i, item in enumerate(data.get('data') or []):
            if not isinstance(item, dict) or 'type' not in item or 'name' not in item:
                raise ConfigError(f"Data source {i} requires 'type' and 'name'")
            data_sources.append(DataDeclaration.from_dict(item))

        outputs = [
            Output.from_raw(str(name), raw)
            for name, raw in (data.get('outputs') or {}).items()
        ]

        logger.debug(
            f"Parsed declarations '{data['name']}': {len(resources)} resources, "
            f"{len(data_sources)} data sources, {len(outputs)} outputs"
        )
        return cls(
            name=data['name'],
            resources=resources,
            data_sources=data_sources,
            outputs=outputs,
            description=data.get('description', ''),
            source_path=source_path,
        )

    @classmethod
    def from_json(cls, json_str: str) -> 'DeclarationSet':
        """Create DeclarationSet from JSON string."""
        try:
            data = json.loads(json_str)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid declarations JSON: {e}")
        if not isinstance(data, dict):
            raise ConfigError("Declarations JSON must be an object")
        return cls.from_dict(data)


class DeclarationLoader:
    """Loads declaration documents from YAML or JSON files."""

    def load_file(self, path: Path) -> DeclarationSet:
        """Load declarations from a specific file path.

        Raises:
            ConfigError: If file not found or invalid
        """
        if not path.exists():
            raise ConfigError(f"Declaration file not found: {path}")

        try:
            with open(path, encoding='utf-8') as f:
                # JSON is a subset of YAML, so one parser covers both
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in declarations {path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Declarations {path} must be a YAML object (dict)")

        return DeclarationSet.from_dict(data, source_path=path)


def load_declarations(
    file_path: Optional[str] = None,
    json_str: Optional[str] = None,
) -> DeclarationSet:
    """Load declarations from a file or an inline JSON string.

    Raises:
        ConfigError: If no source is given or the source is invalid
    """
    if json_str:
        return DeclarationSet.from_json(json_str)
    if file_path:
        return DeclarationLoader().load_file(Path(file_path))
    raise ConfigError("No declarations given: specify a file or inline JSON")
