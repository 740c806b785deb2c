"""
Apply engine.

Walks a change sequence, running provider calls for independent changes
concurrently and dependent changes strictly in order. Every successful
change is committed to the state store as soon as it completes, so a
failed or cancelled run can be resumed by planning again.

The caller holds the state lock for the whole run. Provider calls happen in
worker threads; commits happen on the dispatching thread, one at a time.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .differ import Action, Change
from .errors import ConfigurationError, LockContention, ProviderError, StateBackendError
from .graph import DATA
from .providers import ProviderRegistry
from .state_store import LockInfo, StateRecord, StateStore
from .values import resolve_attributes

logger = logging.getLogger(__name__)

DEFAULT_PARALLELISM = 10


class ChangeStatus(Enum):
    """Final status of one change in an apply run."""
    APPLIED = "applied"
    NOOP = "no-op"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    UNCOMMITTED = "uncommitted"


_SUMMARY_KEYS = {
    Action.CREATE: "created",
    Action.UPDATE: "updated",
    Action.REPLACE: "replaced",
    Action.DESTROY: "destroyed",
    Action.READ: "read",
}


@dataclass
class ChangeOutcome:
    """What happened to one change."""
    address: str
    action: Action
    status: ChangeStatus
    error: Optional[str] = None
    external_id: Optional[str] = None


@dataclass
class ApplyResult:
    """
    Outcome of an apply run.

    outcomes follow the order of the applied change sequence.
    """
    outcomes: List[ChangeOutcome] = field(default_factory=list)
    cancelled: bool = False

    def _with_status(self, status: ChangeStatus) -> List[str]:
        return [o.address for o in self.outcomes if o.status == status]

    @property
    def applied(self) -> List[str]:
        return self._with_status(ChangeStatus.APPLIED)

    @property
    def failed(self) -> List[str]:
        return self._with_status(ChangeStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with_status(ChangeStatus.SKIPPED)

    @property
    def uncommitted(self) -> List[str]:
        return self._with_status(ChangeStatus.UNCOMMITTED)

    @property
    def success(self) -> bool:
        return all(o.status in (ChangeStatus.APPLIED, ChangeStatus.NOOP) for o in self.outcomes)

    @property
    def partial(self) -> bool:
        """True if the run stopped or failed before every change was applied."""
        return not self.success

    def get(self, address: str) -> Optional[ChangeOutcome]:
        for outcome in self.outcomes:
            if outcome.address == address:
                return outcome
        return None

    def summary(self) -> Dict[str, int]:
        counts = {key: 0 for key in _SUMMARY_KEYS.values()}
        for status in ChangeStatus:
            if status != ChangeStatus.APPLIED:
                counts[status.value] = 0
        for outcome in self.outcomes:
            if outcome.status == ChangeStatus.APPLIED:
                counts[_SUMMARY_KEYS[outcome.action]] += 1
            else:
                counts[outcome.status.value] += 1
        return counts


@dataclass
class _Work:
    """Result of running one change's provider calls."""
    change: Change
    record: Optional[StateRecord] = None
    remove: bool = False
    error: Optional[Exception] = None


class Executor:
    """
    Applies changes through providers and commits each result.

    Args:
        store: State store to commit to
        registry: Providers per resource type
        parallelism: Maximum number of concurrent provider calls
    """

    def __init__(
        self,
        store: StateStore,
        registry: ProviderRegistry,
        parallelism: int = DEFAULT_PARALLELISM,
    ):
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.store = store
        self.registry = registry
        self.parallelism = parallelism

    def execute(
        self,
        changes: Sequence[Change],
        token: LockInfo,
        records: Mapping[str, StateRecord],
        cancel_event: Optional[threading.Event] = None,
    ) -> ApplyResult:
        """
        Apply changes in dependency order.

        Args:
            changes: Ordered change sequence from the differ
            token: Held state lock
            records: Current state records, used to resolve references
            cancel_event: When set, no new changes are dispatched

        Returns:
            ApplyResult with one outcome per change
        """
        known = {address: record.attributes for address, record in records.items()}
        in_plan = {change.address for change in changes}
        position = {change.address: index for index, change in enumerate(changes)}
        outcomes: Dict[str, ChangeOutcome] = {}
        pending: List[Change] = list(changes)
        in_flight: Dict[Future, Change] = {}
        cancelled = False
        halted = False

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="apply") as pool:
            while True:
                if cancel_event is not None and cancel_event.is_set() and not cancelled:
                    logger.warning("Apply cancelled; waiting for in-flight changes")
                    cancelled = True

                still_pending = []
                for change in pending:
                    blocker = self._blocker(change, outcomes, in_plan)
                    if blocker is not None:
                        outcomes[change.address] = ChangeOutcome(
                            change.address, change.action, ChangeStatus.SKIPPED,
                            error=f"dependency {blocker} did not complete",
                        )
                        logger.info(f"Skipping {change.address}: dependency {blocker} did not complete")
                        continue

                    ready = all(
                        dep not in in_plan or self._succeeded(outcomes.get(dep))
                        for dep in change.depends_on
                    )
                    if not ready or cancelled or halted or len(in_flight) >= self.parallelism:
                        still_pending.append(change)
                        continue

                    if change.action == Action.NOOP:
                        outcome = self._settle_noop(change, token)
                        outcomes[change.address] = outcome
                        if outcome.status == ChangeStatus.UNCOMMITTED:
                            halted = True
                        continue

                    try:
                        attributes = self._resolve(change, known)
                    except ConfigurationError as e:
                        outcomes[change.address] = self._failed(change, e)
                        continue

                    logger.info(f"{change.action.value.capitalize()} {change.address}")
                    future = pool.submit(self._run, change, attributes)
                    in_flight[future] = change
                pending = still_pending

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                # Settle completions in plan order for reproducible logs
                for future in sorted(done, key=lambda f: position[in_flight[f].address]):
                    in_flight.pop(future)
                    work = future.result()
                    outcome = self._settle(work, token, known)
                    outcomes[work.change.address] = outcome
                    if outcome.status == ChangeStatus.UNCOMMITTED:
                        halted = True

        for change in pending:
            outcomes[change.address] = ChangeOutcome(
                change.address, change.action, ChangeStatus.CANCELLED,
                error="apply stopped before this change was started",
            )

        result = ApplyResult(
            outcomes=[outcomes[change.address] for change in changes],
            cancelled=cancelled,
        )
        logger.info(f"Apply finished: {result.summary()}")
        return result

    # -- scheduling helpers ---------------------------------------------------

    @staticmethod
    def _succeeded(outcome: Optional[ChangeOutcome]) -> bool:
        return outcome is not None and outcome.status in (ChangeStatus.APPLIED, ChangeStatus.NOOP)

    def _blocker(
        self,
        change: Change,
        outcomes: Mapping[str, ChangeOutcome],
        in_plan: set,
    ) -> Optional[str]:
        for dep in change.depends_on:
            if dep not in in_plan:
                continue
            outcome = outcomes.get(dep)
            if outcome is not None and not self._succeeded(outcome):
                return dep
        return None

    @staticmethod
    def _failed(change: Change, error: Exception) -> ChangeOutcome:
        logger.error(f"{change.action.value} {change.address} failed: {error}")
        return ChangeOutcome(change.address, change.action, ChangeStatus.FAILED, error=str(error))

    @staticmethod
    def _resolve(change: Change, known: Mapping[str, Dict[str, Any]]) -> Dict[str, Any]:
        if change.action == Action.DESTROY:
            return {}
        resolved = resolve_attributes(change.config, known.get)
        unresolved = sorted(name for name, value in resolved.items() if not value.is_known())
        if unresolved:
            raise ConfigurationError(
                f"{change.address}: unresolved references in {', '.join(unresolved)}"
            )
        return {name: value.to_python() for name, value in resolved.items()}

    # -- provider calls (worker threads) --------------------------------------

    def _run(self, change: Change, attributes: Dict[str, Any]) -> _Work:
        work = _Work(change)
        try:
            if change.action == Action.CREATE:
                work.record = self._create(change, attributes)
            elif change.action == Action.UPDATE:
                work.record = self._update(change, attributes)
            elif change.action == Action.REPLACE:
                self._replace(change, attributes, work)
            elif change.action == Action.DESTROY:
                self._destroy(change)
                work.remove = True
            elif change.action == Action.READ:
                work.record = self._read(change, attributes)
        except Exception as e:
            if not isinstance(e, (ProviderError, ConfigurationError)):
                e = ProviderError(change.address, change.action.value, e)
            work.error = e
        return work

    def _make_record(
        self, change: Change, external_id: str, attributes: Dict[str, Any]
    ) -> StateRecord:
        registration = self.registry.get(change.type)
        return StateRecord(
            address=change.address,
            type=change.type,
            name=change.name,
            attributes=dict(attributes),
            external_id=external_id,
            schema_version=registration.policy.schema_version,
            provider=registration.provider_name,
            dependencies=list(change.dependencies),
            mode=change.mode,
        )

    def _create(self, change: Change, attributes: Dict[str, Any]) -> StateRecord:
        provider = self.registry.provider(change.type)
        try:
            external_id, live = provider.create(attributes)
        except Exception as e:
            raise ProviderError(change.address, "create", e) from e
        return self._make_record(change, external_id, live)

    def _update(self, change: Change, attributes: Dict[str, Any]) -> StateRecord:
        provider = self.registry.provider(change.type)
        external_id = change.prior.external_id
        try:
            live = provider.update(external_id, attributes)
        except Exception as e:
            raise ProviderError(change.address, "update", e) from e
        return self._make_record(change, external_id, live)

    def _delete(self, change: Change):
        provider = self.registry.provider(change.type)
        try:
            provider.delete(change.prior.external_id)
        except Exception as e:
            raise ProviderError(change.address, "delete", e) from e

    def _replace(self, change: Change, attributes: Dict[str, Any], work: _Work):
        if change.create_before_destroy:
            work.record = self._create(change, attributes)
            try:
                self._delete(change)
            except ProviderError:
                logger.error(
                    f"{change.address}: replacement created but old object "
                    f"{change.prior.external_id} could not be deleted"
                )
                raise
        else:
            self._delete(change)
            # The old object is gone; the record must go with it if create fails
            work.remove = True
            work.record = self._create(change, attributes)
            work.remove = False

    def _destroy(self, change: Change):
        if change.mode == DATA:
            return
        self._delete(change)

    def _read(self, change: Change, attributes: Dict[str, Any]) -> StateRecord:
        external_id = attributes.get("id")
        if not isinstance(external_id, str) or not external_id:
            raise ConfigurationError(f"{change.address}: data source needs a string 'id' attribute")
        provider = self.registry.provider(change.type)
        try:
            live = provider.read(external_id)
        except Exception as e:
            raise ProviderError(change.address, "read", e) from e
        if live is None:
            raise ProviderError(change.address, "read", LookupError(f"{external_id} not found"))
        return self._make_record(change, external_id, live)

    # -- commits (dispatching thread) -----------------------------------------

    def _settle_noop(self, change: Change, token: LockInfo) -> ChangeOutcome:
        """Record a no-op's current dependencies when they differ from state."""
        prior = change.prior
        external_id = prior.external_id if prior else None
        if prior is not None and sorted(prior.dependencies) != list(change.dependencies):
            record = replace(prior, dependencies=list(change.dependencies))
            try:
                self.store.commit(token, changed=[record])
            except (StateBackendError, LockContention) as e:
                logger.error(f"Dependencies of {change.address} could not be recorded: {e}")
                return ChangeOutcome(
                    change.address, change.action, ChangeStatus.UNCOMMITTED,
                    error=str(e), external_id=external_id,
                )
            logger.debug(f"{change.address}: recorded dependencies {list(change.dependencies)}")
        return ChangeOutcome(
            change.address, change.action, ChangeStatus.NOOP, external_id=external_id
        )

    def _settle(
        self,
        work: _Work,
        token: LockInfo,
        known: Dict[str, Dict[str, Any]],
    ) -> ChangeOutcome:
        change = work.change
        external_id = work.record.external_id if work.record else (
            change.prior.external_id if change.prior else None
        )

        if work.record is not None or work.remove:
            changed = [work.record] if work.record is not None else []
            removed = [change.address] if work.remove and work.record is None else []
            try:
                self.store.commit(token, changed=changed, removed=removed)
            except (StateBackendError, LockContention) as e:
                logger.error(
                    f"{change.address} was applied but could not be recorded "
                    f"(external id {external_id}): {e}"
                )
                return ChangeOutcome(
                    change.address, change.action, ChangeStatus.UNCOMMITTED,
                    error=str(e), external_id=external_id,
                )
            if work.record is not None:
                known[change.address] = work.record.attributes
            else:
                known.pop(change.address, None)

        if work.error is not None:
            outcome = self._failed(change, work.error)
            outcome.external_id = external_id
            return outcome

        logger.debug(f"{change.address}: {change.action.value} complete")
        return ChangeOutcome(
            change.address, change.action, ChangeStatus.APPLIED, external_id=external_id
        )
