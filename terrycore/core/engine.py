"""
Programmatic entry points.

The Engine ties graph building, state, planning and apply together and
exposes the operations a command-line front end would offer (plan, apply,
destroy, refresh, state list/show/mv/rm, import, force-unlock) as library
calls returning structured results.
"""

import logging
import threading
from typing import Iterable, List, Optional, Tuple, Union

from .differ import Differ, Drift, Plan, refresh_state
from .errors import (
    ConfigurationError,
    DuplicateAddressError,
    ProviderError,
    ResourceNotFoundError,
    StalePlanError,
)
from .executor import DEFAULT_PARALLELISM, ApplyResult, Executor
from .graph import DATA, MANAGED, GraphBuilder, ResourceDeclaration, ResourceGraph
from .providers import ProviderRegistry
from .render import render_plan
from .state_store import LocalBackend, LockInfo, StateBackend, StateRecord, StateStore
from ..security.sanitizer import InputSanitizer

logger = logging.getLogger(__name__)

Configuration = Union[ResourceGraph, Iterable[ResourceDeclaration]]


def split_address(address: str) -> Tuple[str, str, str]:
    """
    Split a validated address into (mode, type, name).

    Raises:
        SecurityError: If the address is malformed
    """
    InputSanitizer.sanitize_address(address)
    parts = address.split(".")
    if parts[0] == "data":
        return DATA, parts[1], parts[2]
    return MANAGED, parts[0], parts[1]


class Engine:
    """
    Reconciles declared resources with the systems behind the providers.

    Args:
        store: State store (explicitly passed, never global)
        registry: Providers per resource type
        parallelism: Maximum concurrent provider calls during apply
        refresh: Default for reading live attributes before planning
    """

    def __init__(
        self,
        store: StateStore,
        registry: ProviderRegistry,
        parallelism: int = DEFAULT_PARALLELISM,
        refresh: bool = True,
    ):
        self.store = store
        self.registry = registry
        self.parallelism = parallelism
        self.refresh_by_default = refresh

    @classmethod
    def from_settings(
        cls,
        registry: ProviderRegistry,
        settings,
        backend: Optional[StateBackend] = None,
    ) -> "Engine":
        """
        Build an engine from a Settings object.

        Without an explicit backend, state lives in the local file named
        by the "state.path" setting.
        """
        if backend is None:
            path = InputSanitizer.sanitize_state_path(settings.get("state.path"))
            backend = LocalBackend(path, backup=settings.get("state.backup", True))
        store = StateStore(
            backend,
            lock_timeout=settings.get("lock.timeout", 0.0),
            retry_interval=settings.get("lock.retry_interval", 1.0),
        )
        return cls(
            store,
            registry,
            parallelism=settings.get("parallelism", DEFAULT_PARALLELISM),
            refresh=settings.get("refresh", True),
        )

    # -- planning and apply -------------------------------------------------

    @staticmethod
    def build_graph(config: Configuration) -> ResourceGraph:
        if isinstance(config, ResourceGraph):
            return config
        return GraphBuilder().build(config)

    def plan(
        self,
        config: Configuration,
        refresh: Optional[bool] = None,
        destroy: bool = False,
    ) -> Plan:
        """
        Compute the changes needed to reach the configuration.

        Planning has no side effects on state or on remote systems.

        Raises:
            ConfigurationError: For invalid configuration
            LockContention: If state is locked elsewhere
            StateCorruption: If state cannot be read
            ProviderError: If a refresh read fails
        """
        graph = self.build_graph(config)
        refresh = self.refresh_by_default if refresh is None else refresh

        with self.store.lock("plan") as token:
            snapshot = self.store.read_snapshot(token)

        records, drift = snapshot.records, []
        if refresh:
            records, drift = refresh_state(records, self.registry)

        changes = Differ(self.registry).diff(graph, records, destroy=destroy)
        plan = Plan(
            changes=changes,
            state_serial=snapshot.serial,
            lineage=snapshot.lineage,
            destroy=destroy,
            refreshed=refresh,
            drift=drift,
        )
        logger.info(render_plan(plan, self.registry).splitlines()[-1])
        return plan

    def apply(self, plan: Plan, cancel_event: Optional[threading.Event] = None) -> ApplyResult:
        """
        Execute a plan.

        Holds the state lock for the whole run and commits every successful
        change immediately.

        Raises:
            StalePlanError: If state changed since the plan was made
            LockContention: If state is locked elsewhere
        """
        with self.store.lock("destroy" if plan.destroy else "apply") as token:
            snapshot = self.store.read_snapshot(token)
            if snapshot.serial != plan.state_serial or snapshot.lineage != plan.lineage:
                raise StalePlanError(
                    f"State changed since planning (serial {plan.state_serial} -> "
                    f"{snapshot.serial}); plan again"
                )

            records = dict(snapshot.records)
            self._record_refresh(plan, token, records)
            for change in plan.changes:
                if change.prior is not None:
                    records[change.address] = change.prior

            executor = Executor(self.store, self.registry, parallelism=self.parallelism)
            return executor.execute(plan.changes, token, records, cancel_event=cancel_event)

    def _record_refresh(self, plan: Plan, token: LockInfo, records: dict):
        """Persist what a refreshing plan learned about drifted resources."""
        vanished = [d.address for d in plan.drift if d.kind == "deleted" and d.address in records]
        drifted = {d.address for d in plan.drift if d.kind == "changed"}
        changed = [
            change.prior for change in plan.changes
            if change.address in drifted and change.prior is not None
        ]
        if not vanished and not changed:
            return

        self.store.commit(token, changed=changed, removed=vanished)
        for address in vanished:
            records.pop(address, None)
        logger.info(f"Recorded refresh: {len(changed)} drifted, {len(vanished)} vanished")

    def destroy(
        self,
        config: Optional[Configuration] = None,
        refresh: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ApplyResult:
        """Plan and apply destruction of every resource in state."""
        graph = self.build_graph(config) if config is not None else ResourceGraph.empty()
        plan = self.plan(graph, refresh=refresh, destroy=True)
        return self.apply(plan, cancel_event=cancel_event)

    def refresh(self) -> List[Drift]:
        """Read live attributes and record them without changing anything remotely."""
        with self.store.lock("refresh") as token:
            records = self.store.read_all(token)
            refreshed, drift = refresh_state(records, self.registry)
            changed = [refreshed[d.address] for d in drift if d.kind == "changed"]
            removed = [d.address for d in drift if d.kind == "deleted"]
            if changed or removed:
                self.store.commit(token, changed=changed, removed=removed)
        return drift

    # -- state commands -------------------------------------------------------

    def state_list(self) -> List[StateRecord]:
        snapshot = self.store.snapshot()
        return [snapshot.records[address] for address in sorted(snapshot.records)]

    def state_show(self, address: str) -> StateRecord:
        """
        Raises:
            ResourceNotFoundError: If the address is not in state
        """
        InputSanitizer.sanitize_address(address)
        record = self.store.snapshot().records.get(address)
        if record is None:
            raise ResourceNotFoundError(f"No state for {address}")
        return record

    def state_mv(self, source: str, destination: str) -> StateRecord:
        """
        Rename a resource in state without touching the remote object.

        Raises:
            ResourceNotFoundError: If source is not in state
            DuplicateAddressError: If destination is already in state
            ConfigurationError: If source and destination differ in type or mode
        """
        src_mode, src_type, _ = split_address(source)
        dst_mode, dst_type, dst_name = split_address(destination)
        if (src_mode, src_type) != (dst_mode, dst_type):
            raise ConfigurationError(f"Cannot move {source} to a different type: {destination}")

        with self.store.lock("state mv") as token:
            records = self.store.read_all(token)
            if source not in records:
                raise ResourceNotFoundError(f"No state for {source}")
            if destination in records:
                raise DuplicateAddressError(f"State already contains {destination}")

            record = records.pop(source)
            record.address = destination
            record.name = dst_name

            # Records that depended on the old address follow the move
            rewired = []
            for other in records.values():
                if source in other.dependencies:
                    other.dependencies = sorted(
                        destination if dep == source else dep for dep in other.dependencies
                    )
                    rewired.append(other)
            self.store.commit(token, changed=[record] + rewired, removed=[source])

        if rewired:
            logger.debug(f"Rewired dependencies of {', '.join(r.address for r in rewired)}")
        logger.info(f"Moved {source} to {destination}")
        return record

    def state_rm(self, address: str) -> StateRecord:
        """
        Forget a resource without destroying it.

        Raises:
            ResourceNotFoundError: If the address is not in state
        """
        InputSanitizer.sanitize_address(address)
        with self.store.lock("state rm") as token:
            records = self.store.read_all(token)
            if address not in records:
                raise ResourceNotFoundError(f"No state for {address}")
            self.store.commit(token, removed=[address])

        logger.info(f"Removed {address} from state")
        return records[address]

    def import_resource(self, address: str, external_id: str) -> StateRecord:
        """
        Bring an existing remote object under management.

        The record starts without dependencies; the next apply of a
        configuration that declares the resource records them.

        Raises:
            DuplicateAddressError: If the address is already in state
            UnknownResourceTypeError: If no provider handles the type
            ResourceNotFoundError: If the provider cannot find the object
            ProviderError: If the provider read fails
        """
        mode, resource_type, name = split_address(address)
        if mode == DATA:
            raise ConfigurationError("Data sources cannot be imported")
        InputSanitizer.sanitize_external_id(external_id)
        registration = self.registry.get(resource_type)

        with self.store.lock("import") as token:
            records = self.store.read_all(token)
            if address in records:
                raise DuplicateAddressError(f"State already contains {address}")

            try:
                live = registration.provider.read(external_id)
            except Exception as e:
                raise ProviderError(address, "import", e) from e
            if live is None:
                raise ResourceNotFoundError(f"{resource_type} {external_id} does not exist")

            record = StateRecord(
                address=address,
                type=resource_type,
                name=name,
                attributes=live,
                external_id=external_id,
                schema_version=registration.policy.schema_version,
                provider=registration.provider_name,
            )
            self.store.commit(token, changed=[record])

        logger.info(f"Imported {external_id} as {address}")
        return record

    def lock_info(self) -> Optional[LockInfo]:
        return self.store.current_lock()

    def force_unlock(self, lock_id: str) -> Optional[LockInfo]:
        """Administratively release a stale lock. Never done automatically."""
        return self.store.force_unlock(lock_id)
