"""
Plan engine.

Compares the desired resource graph with recorded state and produces an
ordered list of changes. Diffing itself is pure; the optional refresh step
reads live attributes through providers but never writes state.
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from .errors import CycleError, ProviderError, StateCorruption
from .graph import DATA, ResourceGraph, ResourceNode, topological_sort
from .providers import ProviderRegistry, ResourceTypePolicy
from .state_store import StateRecord
from .values import Attributes, Value, resolve_attributes, to_json

logger = logging.getLogger(__name__)


class Action(Enum):
    """Proposed action for one resource."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DESTROY = "destroy"
    NOOP = "no-op"
    READ = "read"


@dataclass(frozen=True)
class AttributeDiff:
    """A single attribute that changes."""
    name: str
    before: Any
    after: Value
    forces_replacement: bool = False


@dataclass
class Change:
    """
    A proposed action bound to one resource.

    Attributes:
        address: Resource address
        action: What will happen
        type: Resource type
        name: Resource name
        mode: "managed" or "data"
        prior: State record before the change, if any
        config: Desired attributes as declared, references unresolved
        after: Planned attributes; values known only after apply are UNKNOWN
        diffs: Attributes that change
        depends_on: Changes that must succeed before this one runs
        dependencies: Graph dependencies to record in state
        create_before_destroy: Replacement order for REPLACE
    """
    address: str
    action: Action
    type: str
    name: str
    mode: str = "managed"
    prior: Optional[StateRecord] = None
    config: Attributes = field(default_factory=dict)
    after: Attributes = field(default_factory=dict)
    diffs: List[AttributeDiff] = field(default_factory=list)
    depends_on: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()
    create_before_destroy: bool = False

    @property
    def before(self) -> Optional[Dict[str, Any]]:
        return self.prior.attributes if self.prior is not None else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "action": self.action.value,
            "type": self.type,
            "mode": self.mode,
            "external_id": self.prior.external_id if self.prior else None,
            "before": self.before,
            "after": {key: to_json(value) for key, value in self.after.items()}
            if self.action != Action.DESTROY else None,
            "diffs": [
                {
                    "name": d.name,
                    "before": d.before,
                    "after": to_json(d.after),
                    "forces_replacement": d.forces_replacement,
                }
                for d in self.diffs
            ],
            "depends_on": list(self.depends_on),
            "create_before_destroy": self.create_before_destroy,
        }


@dataclass(frozen=True)
class Drift:
    """Divergence between recorded state and live attributes."""
    address: str
    kind: str  # "changed" or "deleted"
    fields: Tuple[str, ...] = ()


@dataclass
class Plan:
    """
    An ordered, reviewable set of changes.

    state_serial and lineage identify the state the plan was computed
    against, so a stale plan can be refused at apply time.
    """
    changes: List[Change]
    state_serial: int
    lineage: str
    destroy: bool = False
    refreshed: bool = False
    drift: List[Drift] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def has_changes(self) -> bool:
        return any(c.action not in (Action.NOOP, Action.READ) for c in self.changes)

    def get(self, address: str) -> Optional[Change]:
        for change in self.changes:
            if change.address == address:
                return change
        return None

    def summary(self) -> Dict[str, int]:
        """Count of changes per action."""
        counts = Counter(change.action.value for change in self.changes)
        return {action.value: counts.get(action.value, 0) for action in Action}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created_at": self.created_at,
            "state_serial": self.state_serial,
            "lineage": self.lineage,
            "destroy": self.destroy,
            "refreshed": self.refreshed,
            "drift": [
                {"address": d.address, "kind": d.kind, "fields": list(d.fields)}
                for d in self.drift
            ],
            "summary": self.summary(),
            "changes": [change.to_dict() for change in self.changes],
        }

    def save(self, path: str):
        """Persist the plan as a JSON audit artifact."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)
        logger.info(f"Saved plan to {path}")


def refresh_state(
    records: Mapping[str, StateRecord],
    registry: ProviderRegistry,
) -> Tuple[Dict[str, StateRecord], List[Drift]]:
    """
    Re-read live attributes for every managed record.

    Records whose resource no longer exists are dropped from the returned
    view. Nothing is written to the store.

    Returns:
        (refreshed records, detected drift)

    Raises:
        ProviderError: If a live read fails
    """
    refreshed: Dict[str, StateRecord] = {}
    drift: List[Drift] = []

    for address in sorted(records):
        record = records[address]
        if record.mode == DATA:
            refreshed[address] = record
            continue

        provider = registry.provider(record.type)
        try:
            live = provider.read(record.external_id)
        except Exception as e:
            raise ProviderError(address, "read", e) from e

        if live is None:
            logger.warning(f"{address} no longer exists ({record.external_id})")
            drift.append(Drift(address, "deleted"))
            continue

        changed = tuple(sorted(
            key for key in set(live) | set(record.attributes)
            if live.get(key) != record.attributes.get(key)
        ))
        if changed:
            logger.info(f"Drift detected on {address}: {', '.join(changed)}")
            drift.append(Drift(address, "changed", changed))
        refreshed[address] = StateRecord.from_dict({**record.to_dict(), "attributes": live})

    return refreshed, drift


class Differ:
    """Computes the change set between desired graph and recorded state."""

    def __init__(self, registry: ProviderRegistry):
        self.registry = registry

    def diff(
        self,
        graph: ResourceGraph,
        records: Mapping[str, StateRecord],
        destroy: bool = False,
    ) -> List[Change]:
        """
        Produce the ordered change sequence.

        Non-destroy changes come in graph order (dependencies first), followed
        by destroys in reverse dependency order (dependents first).

        Args:
            graph: Desired resources
            records: Current state records, keyed by address
            destroy: Plan destruction of everything in state

        Raises:
            UnknownResourceTypeError: If a resource type has no provider
            StateCorruption: If recorded dependencies form a cycle
        """
        changes: List[Change] = []

        if not destroy:
            # Attributes each resource will have after apply, where already known
            known: Dict[str, Optional[Dict[str, Any]]] = {}

            for node in graph:
                policy = self.registry.policy(node.type)
                change = self._diff_node(node, records.get(node.address), policy, known)
                changes.append(change)
                known[node.address] = self._known_after(change)

            doomed = [address for address in records if address not in graph]
        else:
            doomed = list(records)

        for record in (records[address] for address in doomed):
            self.registry.get(record.type)

        changes.extend(self._destroys(doomed, records, changes))
        return changes

    def _diff_node(
        self,
        node: ResourceNode,
        prior: Optional[StateRecord],
        policy: ResourceTypePolicy,
        known: Dict[str, Optional[Dict[str, Any]]],
    ) -> Change:
        decl = node.declaration
        planned = resolve_attributes(node.attributes, lambda address: known.get(address))
        base = dict(
            address=node.address,
            type=decl.type,
            name=decl.name,
            mode=decl.mode,
            prior=prior,
            config=node.attributes,
            after=planned,
            depends_on=tuple(sorted(node.edges)),
            dependencies=tuple(sorted(node.edges)),
        )

        if decl.mode == DATA:
            return Change(action=Action.READ, **base)

        if prior is None:
            diffs = [
                AttributeDiff(name, None, value)
                for name, value in sorted(planned.items())
            ]
            return Change(action=Action.CREATE, diffs=diffs, **base)

        diffs = []
        for name in sorted(planned):
            if name in policy.computed_fields:
                continue
            after = planned[name]
            before = prior.attributes.get(name)
            if after.is_known() and Value.of(before) == after:
                continue
            diffs.append(AttributeDiff(
                name, before, after, forces_replacement=name in policy.immutable_fields
            ))

        if not diffs:
            return Change(action=Action.NOOP, **base)
        if any(d.forces_replacement for d in diffs):
            return Change(
                action=Action.REPLACE,
                diffs=diffs,
                create_before_destroy=policy.create_before_destroy,
                **base,
            )
        return Change(action=Action.UPDATE, diffs=diffs, **base)

    @staticmethod
    def _known_after(change: Change) -> Optional[Dict[str, Any]]:
        """Attributes a dependent can rely on at plan time, or None if all are unknown."""
        if change.prior is None or change.action in (Action.CREATE, Action.REPLACE):
            return None
        if change.action == Action.UPDATE:
            attributes = dict(change.prior.attributes)
            for name, value in change.after.items():
                if value.is_known():
                    attributes[name] = value.to_python()
                else:
                    attributes.pop(name, None)
            return attributes
        return change.prior.attributes

    @staticmethod
    def _destroys(
        doomed: List[str],
        records: Mapping[str, StateRecord],
        planned: List[Change],
    ) -> List[Change]:
        doomed_set = set(doomed)
        edges = {
            address: {dep for dep in records[address].dependencies if dep in doomed_set}
            for address in doomed
        }
        try:
            order = topological_sort(edges)
        except CycleError as e:
            raise StateCorruption(f"Recorded dependencies form a cycle: {', '.join(e.members)}") from e

        # A destroy waits for every change whose prior record depended on it.
        changed = {c.address for c in planned if c.action not in (Action.NOOP, Action.READ)}
        changed |= doomed_set
        waiters: Dict[str, Set[str]] = {address: set() for address in doomed}
        for address in changed:
            record = records.get(address)
            if record is None:
                continue
            for dep in record.dependencies:
                if dep in waiters and dep != address:
                    waiters[dep].add(address)

        destroys = []
        for address in reversed(order):
            record = records[address]
            destroys.append(Change(
                address=address,
                action=Action.DESTROY,
                type=record.type,
                name=record.name,
                mode=record.mode,
                prior=record,
                depends_on=tuple(sorted(waiters[address])),
                dependencies=tuple(sorted(record.dependencies)),
            ))
        return destroys
