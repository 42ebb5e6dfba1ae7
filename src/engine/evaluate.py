"""Expression evaluation for bound attribute values.

Evaluation is lazy: the planner evaluates against planned values (where
anything not yet created is UNKNOWN) and the executor re-evaluates against
committed state right before each provider call.
"""

import copy
import ipaddress
from typing import Any, Callable, Optional

from declaration import Computed, CountIndex, ListValue, Literal, MapValue, Reference
from engine.errors import ConfigurationError
from engine.resolver import BoundDataReference, BoundReference, InstanceKey


class _Unknown:
    """Placeholder for a value that is only known after apply."""

    _instance: Optional['_Unknown'] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return '(known after apply)'

    def __deepcopy__(self, memo):
        return self

    def __copy__(self):
        return self


UNKNOWN = _Unknown()


class Pending(dict):
    """Attributes of an instance that is not applied yet.

    Keys present are known ahead of apply; anything else is UNKNOWN.
    """


def contains_unknown(value: Any) -> bool:
    """True if value is UNKNOWN or holds UNKNOWN anywhere inside."""
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(contains_unknown(v) for v in value)
    return False


# Built-in functions

def _cidrsubnet(prefix: str, newbits: int, netnum: int) -> str:
    network = ipaddress.ip_network(prefix, strict=False)
    new_prefix = network.prefixlen + int(newbits)
    if new_prefix > network.max_prefixlen:
        raise ValueError(f"cannot extend prefix /{network.prefixlen} by {newbits} bits")
    if not 0 <= int(netnum) < 2 ** int(newbits):
        raise ValueError(f"netnum {netnum} does not fit in {newbits} bits")
    size = 2 ** (network.max_prefixlen - new_prefix)
    address = network.network_address + int(netnum) * size
    return str(ipaddress.ip_network((address, new_prefix)))


def _element(items: list, index: int) -> Any:
    if not items:
        raise ValueError("cannot select an element from an empty list")
    return items[int(index) % len(items)]


def _format(fmt: str, *args: Any) -> str:
    return fmt % args


def _join(separator: str, items: list) -> str:
    return separator.join(str(i) for i in items)


def _add(a: Any, b: Any) -> Any:
    return a + b


def _concat(*lists: list) -> list:
    result: list = []
    for items in lists:
        result.extend(items)
    return result


def _lookup(mapping: dict, key: str, *default: Any) -> Any:
    if key in mapping:
        return mapping[key]
    if default:
        return default[0]
    raise KeyError(key)


FUNCTIONS: dict[str, Callable[..., Any]] = {
    'cidrsubnet': _cidrsubnet,
    'element': _element,
    'format': _format,
    'join': _join,
    'add': _add,
    'length': len,
    'concat': _concat,
    'lookup': _lookup,
}


class Evaluator:
    """Evaluates bound expressions.

    Args:
        lookup: Returns the attributes of an instance: a plain dict for
            applied instances, a Pending dict for planned ones, or UNKNOWN.
        data: Data source values by address
    """

    def __init__(self, lookup: Callable[[InstanceKey], Any], data: Optional[dict] = None):
        self._lookup = lookup
        self._data = data or {}

    def evaluate(self, value: Any) -> Any:
        if isinstance(value, Literal):
            return copy.deepcopy(value.value)
        if isinstance(value, BoundReference):
            return self._reference(value)
        if isinstance(value, BoundDataReference):
            return self._data_reference(value)
        if isinstance(value, Computed):
            return self._call(value)
        if isinstance(value, ListValue):
            return [self.evaluate(item) for item in value.items]
        if isinstance(value, MapValue):
            return {k: self.evaluate(v) for k, v in value.entries.items()}
        if isinstance(value, (Reference, CountIndex)):
            raise ConfigurationError(f"Unresolved expression {value}; resolve references first")
        raise ConfigurationError(f"Cannot evaluate {value!r}")

    def evaluate_attributes(self, attributes: dict) -> dict:
        return {name: self.evaluate(value) for name, value in attributes.items()}

    def _reference(self, ref: BoundReference) -> Any:
        values = [self._select(key, ref) for key in ref.targets]
        if ref.collection:
            return values
        return values[0]

    def _select(self, key: InstanceKey, ref: BoundReference) -> Any:
        attributes = self._lookup(key)
        if attributes is UNKNOWN:
            return UNKNOWN
        value: Any = attributes
        for segment in ref.path:
            if value is UNKNOWN:
                return UNKNOWN
            try:
                value = value[segment]
            except (KeyError, IndexError, TypeError):
                if isinstance(attributes, Pending) and value is attributes:
                    return UNKNOWN
                raise ConfigurationError(
                    f"{ref.source}: {key} has no attribute "
                    f"{'.'.join(str(s) for s in ref.path)}"
                )
        return copy.deepcopy(value)

    def _data_reference(self, ref: BoundDataReference) -> Any:
        if ref.address not in self._data:
            raise ConfigurationError(f"Data source {ref.address} has not been read")
        value: Any = self._data[ref.address]
        for segment in ref.path:
            try:
                value = value[segment]
            except (KeyError, IndexError, TypeError):
                raise ConfigurationError(
                    f"Data source {ref.address} has no attribute "
                    f"{'.'.join(str(s) for s in ref.path)}"
                )
        return copy.deepcopy(value)

    def _call(self, call: Computed) -> Any:
        func = FUNCTIONS.get(call.function)
        if func is None:
            raise ConfigurationError(
                f"Unknown function '{call.function}'. Available: {', '.join(sorted(FUNCTIONS))}"
            )
        args = [self.evaluate(arg) for arg in call.args]
        if any(contains_unknown(arg) for arg in args):
            return UNKNOWN
        try:
            return func(*args)
        except (ValueError, TypeError, KeyError, IndexError) as e:
            raise ConfigurationError(f"{call.function}(): {e}")


def _no_lookup(key: InstanceKey) -> Any:
    raise ConfigurationError(f"Index expressions cannot reference other resources ({key})")


def evaluate_static(value: Any) -> Any:
    """Evaluate an expression that may not reference any instance."""
    return Evaluator(_no_lookup).evaluate(value)
