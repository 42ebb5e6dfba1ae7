"""Plan engine: diff desired instances against recorded state.

Produces a Plan of PlannedChanges linked into a change graph:
- create/update changes follow the instance graph (dependencies first)
- destroy changes follow it transposed (dependents first)
- a replacement is decomposed into a create and a destroy of the same
  instance, ordered by the instance's lifecycle policy

Planning never mutates anything; the only provider calls it makes are
schema lookups and data source reads.
"""

import heapq
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Optional

from declaration import DeclarationSet
from engine.errors import ConfigurationError, CyclicDependencyError
from engine.evaluate import UNKNOWN, Evaluator, Pending, contains_unknown
from engine.graph import DependencyGraph
from engine.provider import ResourceProvider, ResourceSchema
from engine.resolver import InstanceKey, ResolvedConfiguration, ResourceInstance, resolve
from engine.state import FileStateStore, StateRecord

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DESTROY = 'destroy'
NO_OP = 'no-op'

# Summary buckets; a replacement counts once, under 'replace'
SUMMARY_ACTIONS = (CREATE, UPDATE, 'replace', DESTROY, NO_OP)


@dataclass
class PlannedChange:
    """One operation the apply engine will perform.

    Attributes:
        instance_key: Instance the change applies to
        kind: create, update, destroy or no-op
        resource_type: Resource type of the instance
        desired_attributes: Planned attribute values (UNKNOWN where only
            known after apply); empty for destroys
        prior_attributes: Attributes recorded in state, if any
        provider_id: Provider id of the existing object (update/destroy)
        depends_on: Ids of changes that must be applied first
        replace: True for both halves of a replacement
        replace_before_destroy: Replacement creates the new object first
        deposed: Destroy of an object left over by an earlier replacement
        orphan: Destroy of an instance that is no longer declared
        changed_attributes: Attribute names that differ from state
        instance: Resolved instance, for re-evaluation at apply time
    """
    instance_key: InstanceKey
    kind: str
    resource_type: str
    desired_attributes: dict = field(default_factory=dict)
    prior_attributes: dict = field(default_factory=dict)
    provider_id: Optional[str] = None
    depends_on: set = field(default_factory=set)
    replace: bool = False
    replace_before_destroy: bool = False
    deposed: bool = False
    orphan: bool = False
    changed_attributes: list[str] = field(default_factory=list)
    instance: Optional[ResourceInstance] = field(default=None, repr=False, compare=False)

    @property
    def id(self) -> str:
        """Unique change id: '<kind>:<instance key>'.

        Deposed destroys append the provider id, since an instance may
        carry several deposed objects next to its current one.
        """
        change_id = f'{self.kind}:{self.instance_key}'
        if self.deposed:
            change_id += f':deposed:{self.provider_id}'
        return change_id

    @property
    def action(self) -> str:
        """Summary bucket for the change."""
        if self.replace:
            return 'replace'
        return self.kind

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'id': self.id,
            'instance_key': str(self.instance_key),
            'kind': self.kind,
            'action': self.action,
            'resource_type': self.resource_type,
            'depends_on': sorted(self.depends_on),
        }
        if self.provider_id is not None:
            d['provider_id'] = self.provider_id
        if self.desired_attributes:
            d['desired_attributes'] = render_value(self.desired_attributes)
        if self.changed_attributes:
            d['changed_attributes'] = list(self.changed_attributes)
        if self.replace:
            d['replace_before_destroy'] = self.replace_before_destroy
        if self.deposed:
            d['deposed'] = True
        return d


@dataclass
class Plan:
    """An ordered, read-only set of planned changes.

    Attributes:
        declarations: Declarations the plan was computed from
        changes: Changes in a deterministic topological order
        resolved: Resolved configuration (None for destroy plans)
        graph: Instance dependency graph (None for destroy plans)
        data_values: Data source values read at plan time
        destroy: True if the plan destroys everything in state
    """
    declarations: DeclarationSet
    changes: list[PlannedChange] = field(default_factory=list)
    resolved: Optional[ResolvedConfiguration] = None
    graph: Optional[DependencyGraph] = None
    data_values: dict = field(default_factory=dict)
    destroy: bool = False

    def get(self, change_id: str) -> PlannedChange:
        """Get a change by id.

        Raises:
            KeyError: If no change has that id
        """
        for change in self.changes:
            if change.id == change_id:
                return change
        raise KeyError(change_id)

    def summary(self) -> dict[str, int]:
        """Count changes per action; each replacement counts once."""
        counts = {action: 0 for action in SUMMARY_ACTIONS}
        for change in self.changes:
            if change.replace and change.kind == DESTROY:
                continue
            counts[change.action] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(c.kind != NO_OP for c in self.changes)

    def to_dict(self) -> dict:
        return {
            'name': self.declarations.name,
            'destroy': self.destroy,
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.changes],
        }


def render_value(value: Any) -> Any:
    """Replace UNKNOWN with its display text for output."""
    if value is UNKNOWN:
        return repr(UNKNOWN)
    if isinstance(value, dict):
        return {k: render_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render_value(v) for v in value]
    return value


def describe_summary(summary: dict[str, int]) -> str:
    """One-line summary, e.g. '4 to create, 1 to destroy (2 unchanged)'."""
    parts = [f"{count} to {action}" for action, count in summary.items()
             if count and action != NO_OP]
    text = ', '.join(parts) if parts else 'no changes'
    if summary.get(NO_OP):
        text += f" ({summary[NO_OP]} unchanged)"
    return text


def _normalize(value: Any) -> Any:
    """Bring a value into the shape it has after a JSON round trip."""
    return json.loads(json.dumps(value, sort_keys=True))


def apply_ignore_changes(desired: dict, applied: dict, ignore: list[str]) -> dict:
    """Keep applied values for attributes listed in ignore_changes."""
    result = dict(desired)
    for name in ignore:
        if name in applied:
            result[name] = applied[name]
        else:
            result.pop(name, None)
    return result


def diff_attributes(desired: dict, applied: dict, ignore: list[str]) -> list[str]:
    """Names of attributes whose desired value differs from the applied one.

    A value that is only known after apply always counts as changed.
    """
    changed = []
    for name in sorted(set(desired) | set(applied)):
        if name in ignore:
            continue
        if name not in desired or name not in applied:
            changed.append(name)
        elif contains_unknown(desired[name]):
            changed.append(name)
        elif _normalize(desired[name]) != _normalize(applied[name]):
            changed.append(name)
    return changed


def _known(attributes: dict) -> Pending:
    return Pending({k: v for k, v in attributes.items() if not contains_unknown(v)})


def _updated(record: StateRecord, desired: dict) -> Pending:
    """Planned attributes of an instance updated in place.

    Computed attributes may change with the update; only the desired
    values and the provider id are known before apply.
    """
    planned = _known(desired)
    for name, value in record.attributes.items():
        if name not in planned and value == record.provider_id:
            planned[name] = value
    return planned


class Planner:
    """Computes plans from declarations and the state store.

    Args:
        provider: Source of resource schemas and data source values
        store: State store to diff against (read only)
    """

    def __init__(self, provider: ResourceProvider, store: FileStateStore):
        self.provider = provider
        self.store = store
        self._schemas: dict[str, ResourceSchema] = {}

    def plan(self, declarations: DeclarationSet, destroy: bool = False) -> Plan:
        """Plan the changes that converge state to declarations.

        Args:
            declarations: Desired resources
            destroy: Plan destruction of every instance in state instead

        Raises:
            ConfigurationError: If the declarations cannot be planned
                (bad references, cycles, prevent_destroy violations)
        """
        records = {record.key: record for record in self.store.records()}

        if destroy:
            resolved, graph, data_values = None, None, {}
            changes = self._plan_destroy_all(declarations, records)
        else:
            resolved = resolve(declarations)
            graph = DependencyGraph(resolved.instances)
            data_values = self._read_data(resolved)
            changes = self._diff(declarations, graph, data_values, records)

        self._link(changes, graph, records)
        plan = Plan(
            declarations=declarations,
            changes=self._order(changes),
            resolved=resolved,
            graph=graph,
            data_values=data_values,
            destroy=destroy,
        )
        logger.info(f"Plan '{declarations.name}': {describe_summary(plan.summary())}")
        return plan

    def _schema(self, resource_type: str) -> ResourceSchema:
        if resource_type not in self._schemas:
            self._schemas[resource_type] = self.provider.schema(resource_type)
        return self._schemas[resource_type]

    def _read_data(self, resolved: ResolvedConfiguration) -> dict:
        values = {}
        for address, data in resolved.data_sources.items():
            logger.debug(f"[data] Reading {address}")
            values[address] = self.provider.read_data(data.type, dict(data.attributes))
        return values

    def _diff(self, declarations: DeclarationSet, graph: DependencyGraph,
              data_values: dict, records: dict[InstanceKey, StateRecord]) -> list[PlannedChange]:
        # Values each instance will have once applied; UNKNOWN where not known yet
        planned: dict[InstanceKey, Any] = {}
        evaluator = Evaluator(lambda key: planned.get(key, UNKNOWN), data_values)
        changes: list[PlannedChange] = []
        replacements: dict[InstanceKey, tuple[PlannedChange, PlannedChange]] = {}

        for node in graph.create_order():
            instance = node.instance
            key = instance.key
            lifecycle = instance.declaration.lifecycle
            record = records.get(key)
            desired = evaluator.evaluate_attributes(instance.attributes)

            if record is None or record.provider_id is None:
                changes.append(PlannedChange(
                    instance_key=key, kind=CREATE, resource_type=instance.type,
                    desired_attributes=desired, changed_attributes=sorted(desired),
                    instance=instance,
                ))
                planned[key] = _known(desired)
                continue

            desired = apply_ignore_changes(desired, record.config, lifecycle.ignore_changes)
            changed = diff_attributes(desired, record.config, lifecycle.ignore_changes)
            if not changed:
                changes.append(PlannedChange(
                    instance_key=key, kind=NO_OP, resource_type=instance.type,
                    desired_attributes=desired, prior_attributes=record.attributes,
                    provider_id=record.provider_id, instance=instance,
                ))
                planned[key] = record.attributes
                continue

            schema = self._schema(instance.type)
            forcing = [name for name in changed if schema.is_immutable(name)]
            if not forcing:
                changes.append(PlannedChange(
                    instance_key=key, kind=UPDATE, resource_type=instance.type,
                    desired_attributes=desired, prior_attributes=record.attributes,
                    provider_id=record.provider_id, changed_attributes=changed,
                    instance=instance,
                ))
                planned[key] = _updated(record, desired)
                continue

            if lifecycle.prevent_destroy:
                raise ConfigurationError(
                    f"{key} has lifecycle.prevent_destroy set but changing "
                    f"{', '.join(forcing)} requires replacing it"
                )
            create = PlannedChange(
                instance_key=key, kind=CREATE, resource_type=instance.type,
                desired_attributes=desired, prior_attributes=record.attributes,
                changed_attributes=changed, replace=True, instance=instance,
            )
            destroy = PlannedChange(
                instance_key=key, kind=DESTROY, resource_type=instance.type,
                prior_attributes=record.attributes, provider_id=record.provider_id,
                replace=True,
            )
            replacements[key] = (create, destroy)
            changes.extend([create, destroy])
            planned[key] = _known(desired)
            logger.debug(f"[plan] {key} must be replaced: {', '.join(forcing)} cannot change in place")

        self._apply_replace_policy(graph, replacements)

        for key, record in sorted(records.items(), key=lambda item: item[0].sort_key()):
            if key not in graph and record.provider_id is not None:
                self._check_prevent_destroy(declarations, key)
                changes.append(PlannedChange(
                    instance_key=key, kind=DESTROY, resource_type=record.resource_type,
                    prior_attributes=record.attributes, provider_id=record.provider_id,
                    orphan=True,
                ))
        changes.extend(self._deposed_changes(records))
        return changes

    def _apply_replace_policy(self, graph: DependencyGraph,
                              replacements: dict[InstanceKey, tuple[PlannedChange, PlannedChange]]) -> None:
        """Decide which replacements create the new object first.

        Replaced dependencies of a replace-before-destroy instance must
        also replace before destroy, otherwise the change graph has a cycle.
        """
        pending = [
            key for key, (create, _) in replacements.items()
            if create.instance and create.instance.declaration.lifecycle.replace_before_destroy
        ]
        marked = set(pending)
        while pending:
            key = pending.pop()
            for dep in graph.dependencies_of(key):
                if dep in replacements and dep not in marked:
                    logger.debug(f"[plan] {dep} replaces before destroy because {key} does")
                    marked.add(dep)
                    pending.append(dep)
        for key in marked:
            for change in replacements[key]:
                change.replace_before_destroy = True

    def _plan_destroy_all(self, declarations: DeclarationSet,
                          records: dict[InstanceKey, StateRecord]) -> list[PlannedChange]:
        changes = []
        for key, record in sorted(records.items(), key=lambda item: item[0].sort_key()):
            if record.provider_id is None:
                continue
            self._check_prevent_destroy(declarations, key)
            changes.append(PlannedChange(
                instance_key=key, kind=DESTROY, resource_type=record.resource_type,
                prior_attributes=record.attributes, provider_id=record.provider_id,
            ))
        changes.extend(self._deposed_changes(records))
        return changes

    @staticmethod
    def _deposed_changes(records: dict[InstanceKey, StateRecord]) -> list[PlannedChange]:
        changes = []
        for key, record in sorted(records.items(), key=lambda item: item[0].sort_key()):
            for provider_id in record.deposed:
                changes.append(PlannedChange(
                    instance_key=key, kind=DESTROY, resource_type=record.resource_type,
                    provider_id=provider_id, deposed=True,
                ))
        return changes

    @staticmethod
    def _check_prevent_destroy(declarations: DeclarationSet, key: InstanceKey) -> None:
        decl = declarations.get(key.address)
        if decl is not None and decl.lifecycle.prevent_destroy:
            raise ConfigurationError(
                f"{key} has lifecycle.prevent_destroy set and cannot be destroyed"
            )

    @staticmethod
    def _link(changes: list[PlannedChange], graph: Optional[DependencyGraph],
              records: dict[InstanceKey, StateRecord]) -> None:
        """Add change-graph edges."""
        forward = {c.instance_key: c for c in changes if c.kind in (CREATE, UPDATE)}
        destroys: dict[InstanceKey, list[PlannedChange]] = defaultdict(list)
        for change in changes:
            if change.kind == DESTROY:
                destroys[change.instance_key].append(change)

        # Instances that use each instance, now or when last applied
        dependents: dict[InstanceKey, set[InstanceKey]] = defaultdict(set)
        if graph is not None:
            for node in graph.create_order():
                dependents[node.key] |= graph.dependents_of(node.key)
        for record in records.values():
            for dep_key in record.dependencies:
                dependents[dep_key].add(record.key)

        for change in changes:
            key = change.instance_key
            if change.kind in (CREATE, UPDATE):
                if graph is not None:
                    for dep_key in graph.dependencies_of(key):
                        if dep_key in forward:
                            change.depends_on.add(forward[dep_key].id)
                if change.replace and not change.replace_before_destroy:
                    change.depends_on.add(f'{DESTROY}:{key}')
            elif change.kind == DESTROY:
                # Dependents stop using the old object before it goes away,
                # unless it is destroyed first to make room for its replacement
                repoint = change.orphan or change.deposed or change.replace_before_destroy
                for dependent in dependents[key]:
                    for other in destroys.get(dependent, []):
                        change.depends_on.add(other.id)
                    if repoint and dependent in forward:
                        change.depends_on.add(forward[dependent].id)
                if change.replace and change.replace_before_destroy:
                    change.depends_on.add(f'{CREATE}:{key}')

    @staticmethod
    def _order(changes: list[PlannedChange]) -> list[PlannedChange]:
        """Topologically sort changes; ties keep planning order."""
        position = {c.id: i for i, c in enumerate(changes)}
        by_id = {c.id: c for c in changes}
        waiting_on = {c.id: len(c.depends_on) for c in changes}
        unblocks: dict[str, list[str]] = defaultdict(list)
        for change in changes:
            for dep_id in change.depends_on:
                unblocks[dep_id].append(change.id)

        ready = [(position[cid], cid) for cid, n in waiting_on.items() if n == 0]
        heapq.heapify(ready)
        ordered = []
        while ready:
            _, change_id = heapq.heappop(ready)
            ordered.append(by_id[change_id])
            for next_id in unblocks[change_id]:
                waiting_on[next_id] -= 1
                if waiting_on[next_id] == 0:
                    heapq.heappush(ready, (position[next_id], next_id))

        if len(ordered) != len(changes):
            raise CyclicDependencyError(sorted(cid for cid, n in waiting_on.items() if n > 0))
        return ordered
