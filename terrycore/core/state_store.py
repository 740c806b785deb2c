"""
Durable state of managed resources.

The StateStore keeps the last-applied attributes of every managed resource
and guards them with an explicit lock. Storage is delegated to a backend;
the backend is responsible for making lock acquisition and document writes
atomic.

Persisted document layout (version 2):

    {
        "version": 2,
        "serial": 7,
        "lineage": "3f1c...",
        "resources": [ {<StateRecord>}, ... ]
    }
"""

import copy
import getpass
import json
import logging
import os
import shutil
import socket
import tempfile
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import LockContention, StateBackendError, StateCorruption
from .graph import DATA, MANAGED
from .values import Attributes, to_attributes

logger = logging.getLogger(__name__)

STATE_VERSION = 2


@dataclass
class StateRecord:
    """
    Last-applied state of one resource.

    Attributes:
        address: Resource address, e.g. "aws_instance.web"
        type: Resource type
        name: Resource name
        attributes: Attributes as last reported by the provider (plain JSON values)
        external_id: Provider-assigned identifier
        schema_version: Resource type schema version at apply time
        provider: Name of the provider that manages the resource
        dependencies: Addresses this resource depended on at apply time
        mode: "managed" or "data"
    """
    address: str
    type: str
    name: str
    attributes: Dict[str, Any]
    external_id: str
    schema_version: int = 0
    provider: str = ""
    dependencies: List[str] = field(default_factory=list)
    mode: str = MANAGED

    def values(self) -> Attributes:
        """Attributes as tagged values."""
        return to_attributes(self.attributes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "mode": self.mode,
            "type": self.type,
            "name": self.name,
            "provider": self.provider,
            "schema_version": self.schema_version,
            "external_id": self.external_id,
            "attributes": copy.deepcopy(self.attributes),
            "dependencies": sorted(self.dependencies),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "StateRecord":
        """
        Raises:
            StateCorruption: If required fields are missing or mistyped
        """
        if not isinstance(data, dict):
            raise StateCorruption(f"State record is not an object: {data!r}")
        try:
            record = cls(
                address=data["address"],
                type=data["type"],
                name=data["name"],
                attributes=copy.deepcopy(data["attributes"]),
                external_id=data["external_id"],
                schema_version=data.get("schema_version", 0),
                provider=data.get("provider", ""),
                dependencies=list(data.get("dependencies", [])),
                mode=data.get("mode", MANAGED),
            )
        except KeyError as e:
            raise StateCorruption(f"State record missing field {e}: {data!r}") from None

        if not isinstance(record.address, str) or not isinstance(record.external_id, str):
            raise StateCorruption(f"State record has invalid identifiers: {data!r}")
        if not isinstance(record.attributes, dict):
            raise StateCorruption(f"State record {record.address} has non-object attributes")
        if record.mode not in (MANAGED, DATA):
            raise StateCorruption(f"State record {record.address} has unknown mode {record.mode!r}")
        return record


@dataclass(frozen=True)
class LockInfo:
    """
    A held state lock.

    Attributes:
        lock_id: Unique token id
        holder: "user@host:pid" of the process holding the lock
        operation: Operation guarded by the lock, e.g. "apply"
        created_at: ISO-8601 acquisition time (UTC)
    """
    lock_id: str
    holder: str
    operation: str
    created_at: str

    @classmethod
    def new(cls, operation: str, holder: Optional[str] = None) -> "LockInfo":
        return cls(
            lock_id=str(uuid.uuid4()),
            holder=holder or _default_holder(),
            operation=operation,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "lock_id": self.lock_id,
            "holder": self.holder,
            "operation": self.operation,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockInfo":
        return cls(
            lock_id=str(data.get("lock_id", "")),
            holder=str(data.get("holder", "unknown")),
            operation=str(data.get("operation", "unknown")),
            created_at=str(data.get("created_at", "")),
        )

    def describe(self) -> str:
        return f"{self.holder} ({self.operation}, since {self.created_at}, id {self.lock_id})"


@dataclass
class StateSnapshot:
    """A consistent view of the store."""
    serial: int
    lineage: str
    records: Dict[str, StateRecord]


def _default_holder() -> str:
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{user}@{socket.gethostname()}:{os.getpid()}"


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class StateBackend(ABC):
    """
    Storage for the state document and its lock.

    try_lock must be a strongly consistent conditional write: two callers
    can never both succeed.
    """

    @abstractmethod
    def try_lock(self, info: LockInfo) -> bool:
        """Record the lock if no lock is held. Returns True on success."""

    @abstractmethod
    def current_lock(self) -> Optional[LockInfo]:
        """Return the held lock, or None."""

    @abstractmethod
    def unlock(self, lock_id: str) -> bool:
        """Remove the lock if it has this id. Returns True if removed."""

    @abstractmethod
    def force_unlock(self) -> Optional[LockInfo]:
        """Remove any lock unconditionally and return it."""

    @abstractmethod
    def read(self) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None if nothing was ever written."""

    @abstractmethod
    def write(self, document: Dict[str, Any]) -> None:
        """Replace the stored document atomically."""


class MemoryBackend(StateBackend):
    """
    In-process backend.

    Several StateStore instances may share one MemoryBackend to model
    independent processes working on the same state.
    """

    def __init__(self, document: Optional[Dict[str, Any]] = None):
        self._mutex = threading.Lock()
        self._document = self._copy(document) if document is not None else None
        self._lock: Optional[LockInfo] = None

    @staticmethod
    def _copy(document: Dict[str, Any]) -> Dict[str, Any]:
        # Round-trip through JSON so the stored form matches a real medium
        return json.loads(json.dumps(document))

    def try_lock(self, info: LockInfo) -> bool:
        with self._mutex:
            if self._lock is not None:
                return False
            self._lock = info
            return True

    def current_lock(self) -> Optional[LockInfo]:
        with self._mutex:
            return self._lock

    def unlock(self, lock_id: str) -> bool:
        with self._mutex:
            if self._lock is None or self._lock.lock_id != lock_id:
                return False
            self._lock = None
            return True

    def force_unlock(self) -> Optional[LockInfo]:
        with self._mutex:
            previous, self._lock = self._lock, None
            return previous

    def read(self) -> Optional[Dict[str, Any]]:
        with self._mutex:
            return self._copy(self._document) if self._document is not None else None

    def write(self, document: Dict[str, Any]) -> None:
        try:
            stored = self._copy(document)
        except (TypeError, ValueError) as e:
            raise StateBackendError(f"State is not serializable: {e}") from e
        with self._mutex:
            self._document = stored


class LocalBackend(StateBackend):
    """
    JSON state file on the local filesystem.

    The lock is a sibling "<path>.lock" file created with O_CREAT|O_EXCL.
    Writes go to a temporary file in the same directory which then replaces
    the state file, so readers see either the old or the new document.
    """

    def __init__(self, path: str, backup: bool = True):
        self.path = path
        self.lock_path = f"{path}.lock"
        self.backup_path = f"{path}.backup"
        self.backup = backup

    def try_lock(self, info: LockInfo) -> bool:
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        except OSError as e:
            raise StateBackendError(f"Cannot create lock file {self.lock_path}: {e}") from e

        with os.fdopen(fd, "w") as f:
            json.dump(info.to_dict(), f)
        return True

    def current_lock(self) -> Optional[LockInfo]:
        try:
            with open(self.lock_path, "r") as f:
                return LockInfo.from_dict(json.load(f))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, AttributeError):
            # Lock file exists but is unreadable: still held
            logger.warning(f"Unreadable lock file {self.lock_path}")
            return LockInfo(lock_id="", holder="unknown", operation="unknown", created_at="")
        except OSError as e:
            raise StateBackendError(f"Cannot read lock file {self.lock_path}: {e}") from e

    def unlock(self, lock_id: str) -> bool:
        # Claim the lock file by renaming it, then check whose it was, so a
        # lock taken by someone else after a force-unlock is never deleted
        claim_path = f"{self.lock_path}.{uuid.uuid4().hex}.release"
        try:
            os.rename(self.lock_path, claim_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StateBackendError(f"Cannot release lock file {self.lock_path}: {e}") from e

        try:
            with open(claim_path, "r") as f:
                held = LockInfo.from_dict(json.load(f))
        except (OSError, json.JSONDecodeError, AttributeError):
            held = None

        if held is not None and held.lock_id == lock_id:
            os.remove(claim_path)
            return True

        self._restore_lock(claim_path)
        return False

    def _restore_lock(self, claim_path: str):
        """Put back a claimed lock file that belonged to another holder."""
        try:
            # link fails instead of overwriting if the state was locked meanwhile
            os.link(claim_path, self.lock_path)
        except FileExistsError:
            logger.warning(f"State was locked again while restoring {self.lock_path}")
        except OSError as e:
            raise StateBackendError(
                f"Cannot restore lock file {self.lock_path}; it is kept at {claim_path}: {e}"
            ) from e
        os.remove(claim_path)

    def force_unlock(self) -> Optional[LockInfo]:
        current = self.current_lock()
        if current is not None:
            self._remove_lock()
        return current

    def _remove_lock(self) -> bool:
        try:
            os.remove(self.lock_path)
            return True
        except FileNotFoundError:
            return False

    def read(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError as e:
            raise StateCorruption(f"State file {self.path} is not valid JSON: {e}") from e
        except OSError as e:
            raise StateBackendError(f"Cannot read state file {self.path}: {e}") from e

    def write(self, document: Dict[str, Any]) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile(
                "w", encoding="utf-8", dir=directory, prefix=".state-", suffix=".tmp", delete=False
            ) as tmp:
                tmp_path = tmp.name
                json.dump(document, tmp, indent=2, sort_keys=True)
                tmp.flush()
                os.fsync(tmp.fileno())

            if self.backup and os.path.exists(self.path):
                shutil.copy2(self.path, self.backup_path)
            os.replace(tmp_path, self.path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            raise StateBackendError(f"Cannot write state file {self.path}: {e}") from e
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.remove(tmp_path)


# ---------------------------------------------------------------------------
# Document migration
# ---------------------------------------------------------------------------

def _migrate_v1(document: Dict[str, Any]) -> Dict[str, Any]:
    """Version 1 kept resources in an object keyed by address, without dependencies."""
    resources = document.get("resources", {})
    if not isinstance(resources, dict):
        raise StateCorruption("Version 1 state must hold resources as an object")

    migrated = []
    for address in sorted(resources):
        entry = dict(resources[address])
        entry["address"] = address
        entry.setdefault("dependencies", [])
        entry.setdefault("mode", DATA if address.startswith("data.") else MANAGED)
        migrated.append(entry)

    return {
        "version": 2,
        "serial": document.get("serial", 0),
        "lineage": document.get("lineage", ""),
        "resources": migrated,
    }


_MIGRATIONS = {
    1: _migrate_v1,
}


def _parse_document(document: Optional[Dict[str, Any]]) -> StateSnapshot:
    if document is None:
        return StateSnapshot(serial=0, lineage="", records={})
    if not isinstance(document, dict):
        raise StateCorruption("State document is not an object")

    version = document.get("version")
    if not isinstance(version, int):
        raise StateCorruption("State document has no schema version")
    if version > STATE_VERSION:
        raise StateCorruption(
            f"State schema version {version} is newer than supported version {STATE_VERSION}"
        )
    while version < STATE_VERSION:
        migrate = _MIGRATIONS.get(version)
        if migrate is None:
            raise StateCorruption(f"No migration from state schema version {version}")
        logger.info(f"Migrating state from schema version {version}")
        document = migrate(document)
        version = document["version"]

    resources = document.get("resources", [])
    if not isinstance(resources, list):
        raise StateCorruption("State resources must be a list")

    records: Dict[str, StateRecord] = {}
    for entry in resources:
        record = StateRecord.from_dict(entry)
        if record.address in records:
            raise StateCorruption(f"Duplicate state record: {record.address}")
        records[record.address] = record

    serial = document.get("serial", 0)
    if not isinstance(serial, int):
        raise StateCorruption("State serial must be an integer")
    return StateSnapshot(serial=serial, lineage=str(document.get("lineage", "")), records=records)


def _render_document(snapshot: StateSnapshot) -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "serial": snapshot.serial,
        "lineage": snapshot.lineage,
        "resources": [snapshot.records[address].to_dict() for address in sorted(snapshot.records)],
    }


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class StateStore:
    """
    Locked, transactional access to state records.

    All mutation goes through commit(), which requires a lock token that the
    backend still recognises.
    """

    def __init__(
        self,
        backend: StateBackend,
        lock_timeout: float = 0.0,
        retry_interval: float = 1.0,
    ):
        self.backend = backend
        self.lock_timeout = lock_timeout
        self.retry_interval = retry_interval
        self._commit_mutex = threading.Lock()

    # -- locking -----------------------------------------------------------

    def acquire_lock(self, operation: str, timeout: Optional[float] = None) -> LockInfo:
        """
        Acquire the state lock.

        Args:
            operation: Name of the guarded operation
            timeout: Seconds to keep retrying; 0 fails fast. Defaults to
                the store's lock_timeout.

        Returns:
            The lock token

        Raises:
            LockContention: If the lock is held elsewhere past the timeout
        """
        timeout = self.lock_timeout if timeout is None else timeout
        deadline = time.monotonic() + max(timeout, 0.0)
        info = LockInfo.new(operation)

        while True:
            if self.backend.try_lock(info):
                # Verify rather than trust the backend's answer
                held = self.backend.current_lock()
                if held is None or held.lock_id != info.lock_id:
                    raise LockContention(
                        "State lock acquisition could not be verified",
                        holder=held,
                    )
                logger.debug(f"Acquired state lock {info.lock_id} for {operation}")
                return info

            holder = self.backend.current_lock()
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                who = holder.describe() if holder else "another process"
                raise LockContention(f"State is locked by {who}", holder=holder)
            time.sleep(min(self.retry_interval, remaining))

    def release_lock(self, token: LockInfo) -> None:
        """Release the lock. Stale or already released tokens are ignored."""
        try:
            if self.backend.unlock(token.lock_id):
                logger.debug(f"Released state lock {token.lock_id}")
            else:
                logger.warning(f"State lock {token.lock_id} was no longer held")
        except Exception as e:
            logger.error(f"Failed to release state lock {token.lock_id}: {e}")

    @contextmanager
    def lock(self, operation: str, timeout: Optional[float] = None) -> Iterator[LockInfo]:
        token = self.acquire_lock(operation, timeout)
        try:
            yield token
        finally:
            self.release_lock(token)

    def current_lock(self) -> Optional[LockInfo]:
        return self.backend.current_lock()

    def force_unlock(self, lock_id: str) -> Optional[LockInfo]:
        """
        Administratively remove a stale lock.

        Args:
            lock_id: Id of the lock to remove; must match the held lock

        Returns:
            The removed lock, or None if the state was not locked

        Raises:
            LockContention: If a different lock is held
        """
        current = self.backend.current_lock()
        if current is None:
            logger.info("State is not locked")
            return None
        if current.lock_id != lock_id:
            raise LockContention(
                f"Lock id {lock_id} does not match held lock {current.lock_id}",
                holder=current,
            )
        removed = self.backend.force_unlock()
        logger.warning(f"Force-unlocked state lock held by {current.describe()}")
        return removed

    def _verify(self, token: LockInfo):
        held = self.backend.current_lock()
        if held is None or held.lock_id != token.lock_id:
            raise LockContention(
                f"State lock {token.lock_id} is not held",
                holder=held,
            )

    # -- reading -----------------------------------------------------------

    def read_snapshot(self, token: LockInfo) -> StateSnapshot:
        """Consistent snapshot under an active lock."""
        self._verify(token)
        return _parse_document(self.backend.read())

    def read_all(self, token: LockInfo) -> Dict[str, StateRecord]:
        """All state records under an active lock."""
        return self.read_snapshot(token).records

    def snapshot(self) -> StateSnapshot:
        """
        Lock-free read for inspection.

        Backends replace the document atomically, so the result is a
        consistent if possibly outdated view.
        """
        return _parse_document(self.backend.read())

    # -- writing -----------------------------------------------------------

    def commit(
        self,
        token: LockInfo,
        changed: Iterable[StateRecord] = (),
        removed: Iterable[str] = (),
    ) -> int:
        """
        Apply record changes and removals in one atomic write.

        Returns:
            The new state serial

        Raises:
            LockContention: If the token no longer holds the lock
            StateBackendError: If the write failed; nothing was written
        """
        changed = list(changed)
        removed = list(removed)
        with self._commit_mutex:
            self._verify(token)
            snapshot = _parse_document(self.backend.read())

            for record in changed:
                snapshot.records[record.address] = StateRecord.from_dict(record.to_dict())
            for address in removed:
                if snapshot.records.pop(address, None) is None:
                    logger.debug(f"Nothing to remove for {address}")

            snapshot.serial += 1
            if not snapshot.lineage:
                snapshot.lineage = str(uuid.uuid4())

            self.backend.write(_render_document(snapshot))

        logger.debug(
            f"Committed state serial {snapshot.serial}: "
            f"{len(changed)} changed, {len(removed)} removed"
        )
        return snapshot.serial
