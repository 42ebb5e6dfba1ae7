"""In-memory simulated cloud.

Keeps objects in a dict, assigns sequential provider ids and computes the
attributes a real API would return (id, arn, dns_name, ...). Used by tests,
dry runs and demos. Failures can be injected per instance key.
"""

import copy
import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Iterable, Optional

from engine.errors import ProviderError, StateConsistencyError
from engine.plan import CREATE, DESTROY, UPDATE, PlannedChange
from engine.provider import ProviderResult, ResourceSchema

logger = logging.getLogger(__name__)

# Attributes that cannot change in place, per resource type
DEFAULT_IMMUTABLE: dict[str, tuple[str, ...]] = {
    'network': ('cidr_block',),
    'subnet': ('network_id', 'cidr_block', 'availability_zone'),
    'compute-instance': ('image_id', 'subnet_id'),
    'load-balancer': ('internal',),
    'launch-configuration': ('image_id', 'instance_type', 'user_data', 'security_groups'),
    'object-store-bucket': ('bucket',),
    'db-instance': ('engine', 'db_subnet_group_name'),
}

DEFAULT_DATA: dict[str, dict] = {
    'availability-zones': {'names': ['zone-a', 'zone-b', 'zone-c']},
}


def _default_computed(resource_type: str, provider_id: str, attributes: dict) -> dict:
    computed = {'id': provider_id, 'arn': f'arn:sim:{resource_type}/{provider_id}'}
    name = attributes.get('name', provider_id)
    if resource_type == 'load-balancer':
        computed['dns_name'] = f'{name}-{provider_id}.lb.sim.internal'
    elif resource_type == 'cdn-distribution':
        computed['domain_name'] = f'{provider_id}.cdn.sim.internal'
    elif resource_type == 'object-store-bucket':
        computed['bucket_domain_name'] = f"{attributes.get('bucket', name)}.store.sim.internal"
    elif resource_type == 'db-instance':
        computed['endpoint'] = f'{name}.db.sim.internal:5432'
    return computed


class InMemoryProvider:
    """Thread-safe ResourceProvider backed by a dict.

    Args:
        schemas: Immutable attribute names per resource type (overrides defaults)
        data: Data source values per data source type
        computed: Extra computed-attribute functions per resource type,
            called as fn(provider_id, attributes) -> dict
        latency: Seconds each execute() call takes
        path: JSON file the simulated objects are kept in between runs
            (None keeps them in memory only)
    """

    def __init__(
        self,
        schemas: Optional[dict[str, Iterable[str]]] = None,
        data: Optional[dict[str, dict]] = None,
        computed: Optional[dict[str, Callable[[str, dict], dict]]] = None,
        latency: float = 0.0,
        path: Optional[Path] = None,
    ):
        self._schemas = {t: tuple(a) for t, a in DEFAULT_IMMUTABLE.items()}
        for resource_type, immutable in (schemas or {}).items():
            self._schemas[resource_type] = tuple(immutable)
        self._data = {**DEFAULT_DATA, **(data or {})}
        self._computed = computed or {}
        self.latency = latency

        self._lock = threading.Lock()
        self._next_id = 1
        self._failures: dict[tuple[str, Optional[str]], list[Optional[Exception]]] = {}
        self._in_flight = 0

        self.objects: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.max_in_flight = 0

        self.path = Path(path) if path else None
        if self.path is not None and self.path.exists():
            self._load()

    def fail(self, instance_key: str, error: Optional[Exception] = None,
             times: Optional[int] = None, kind: Optional[str] = None) -> None:
        """Inject failures for an instance.

        Args:
            instance_key: Instance key text, e.g. 'subnet.public[0]'
            error: Error to raise (default: permanent ProviderError)
            times: Fail this many calls, then succeed (None = always)
            kind: Only fail this kind of change
        """
        error = error or ProviderError(f"simulated failure for {instance_key}")
        queue = [error] * times if times is not None else [error, None]
        self._failures[(instance_key, kind)] = queue

    def _take_failure(self, change: PlannedChange) -> Optional[Exception]:
        for selector in ((str(change.instance_key), change.kind), (str(change.instance_key), None)):
            queue = self._failures.get(selector)
            if not queue:
                continue
            if queue[-1] is None:
                # Sentinel: permanent failure
                return queue[0]
            error = queue.pop(0)
            if not queue:
                del self._failures[selector]
            return error
        return None

    def calls_for(self, instance_key: str) -> list[str]:
        """Kinds of execute() calls made for an instance, in order."""
        return [kind for kind, key in self.calls if key == instance_key]

    def schema(self, resource_type: str) -> ResourceSchema:
        return ResourceSchema(resource_type, frozenset(self._schemas.get(resource_type, ())))

    def read_data(self, data_type: str, attributes: dict) -> dict:
        if data_type not in self._data:
            raise ProviderError(f"Unknown data source type: {data_type}")
        return copy.deepcopy(self._data[data_type])

    def execute(self, change: PlannedChange) -> ProviderResult:
        with self._lock:
            self.calls.append((change.kind, str(change.instance_key)))
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            error = self._take_failure(change)
        try:
            if self.latency:
                time.sleep(self.latency)
            if error is not None:
                raise error
            with self._lock:
                if change.kind == CREATE:
                    result = self._create(change)
                elif change.kind == UPDATE:
                    result = self._update(change)
                elif change.kind == DESTROY:
                    result = self._destroy(change)
                else:
                    raise ProviderError(f"Unsupported change kind: {change.kind}")
                self._save()
                return result
        finally:
            with self._lock:
                self._in_flight -= 1

    def _load(self) -> None:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))  # type: ignore[union-attr]
        except (OSError, ValueError) as e:
            raise ProviderError(f"Cannot read simulated objects from {self.path}: {e}")
        self.objects = data.get('objects', {})
        self._next_id = int(data.get('next_id', len(self.objects) + 1))

    def _save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps({'next_id': self._next_id, 'objects': self.objects}, indent=2, default=str),
            encoding="utf-8",
        )

    def _computed_attributes(self, resource_type: str, provider_id: str, attributes: dict) -> dict:
        computed = _default_computed(resource_type, provider_id, attributes)
        extra = self._computed.get(resource_type)
        if extra is not None:
            computed.update(extra(provider_id, attributes))
        return computed

    def _create(self, change: PlannedChange) -> ProviderResult:
        provider_id = f'{change.resource_type}-{self._next_id:04d}'
        self._next_id += 1
        attributes = copy.deepcopy(change.desired_attributes)
        computed = self._computed_attributes(change.resource_type, provider_id, attributes)
        self.objects[provider_id] = {
            'type': change.resource_type,
            'attributes': {**attributes, **computed},
        }
        logger.debug(f"[sim] Created {change.instance_key} as {provider_id}")
        return ProviderResult(provider_id, computed)

    def _update(self, change: PlannedChange) -> ProviderResult:
        obj = self.objects.get(change.provider_id or '')
        if obj is None:
            raise StateConsistencyError(str(change.instance_key), change.provider_id, 'update')
        attributes = copy.deepcopy(change.desired_attributes)
        computed = self._computed_attributes(change.resource_type, change.provider_id, attributes)  # type: ignore[arg-type]
        obj['attributes'] = {**attributes, **computed}
        logger.debug(f"[sim] Updated {change.instance_key} ({change.provider_id})")
        return ProviderResult(change.provider_id, computed)

    def _destroy(self, change: PlannedChange) -> ProviderResult:
        if self.objects.pop(change.provider_id or '', None) is None:
            raise StateConsistencyError(str(change.instance_key), change.provider_id, 'destroy')
        logger.debug(f"[sim] Destroyed {change.instance_key} ({change.provider_id})")
        return ProviderResult()
