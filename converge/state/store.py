"""
State store: last-applied attribute snapshots, keyed by node address.

A store handle is passed explicitly to the planner and executor; there is no
module-level state. The lock is held for a whole plan+apply cycle.
"""
import abc
import contextlib
import json
import logging
import os
import socket
import tempfile
import threading
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from converge.errors import ConfigError, PlanConflict, StateConflict
from converge.models.state import StateRecord

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class StateStore(abc.ABC):
    @abc.abstractmethod
    def get(self, address: str) -> Optional[StateRecord]:
        """Return the record for `address`, or None when it is not in state."""

    @abc.abstractmethod
    def put(self, address: str, record: StateRecord) -> None:
        ...

    @abc.abstractmethod
    def delete(self, address: str) -> None:
        ...

    @abc.abstractmethod
    def list(self) -> List[StateRecord]:
        ...

    @abc.abstractmethod
    def get_outputs(self) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def set_outputs(self, outputs: Dict[str, Any]) -> None:
        ...

    @abc.abstractmethod
    def lock(self) -> None:
        """Acquire exclusive access; raises PlanConflict when another run holds it."""

    @abc.abstractmethod
    def unlock(self) -> None:
        ...

    @contextlib.contextmanager
    def locked(self) -> Iterator["StateStore"]:
        self.lock()
        try:
            yield self
        finally:
            self.unlock()


class MemoryStateStore(StateStore):
    """In-process store. Handy for tests and throwaway runs."""

    def __init__(self, records: Optional[List[StateRecord]] = None):
        self._records: Dict[str, StateRecord] = {r.address: r for r in records or []}
        self._outputs: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self.serial = 0

    def get(self, address: str) -> Optional[StateRecord]:
        return self._records.get(address)

    def put(self, address: str, record: StateRecord) -> None:
        self._records[address] = record
        self.serial += 1

    def delete(self, address: str) -> None:
        self._records.pop(address, None)
        self.serial += 1

    def list(self) -> List[StateRecord]:
        return [self._records[a] for a in sorted(self._records)]

    def get_outputs(self) -> Dict[str, Any]:
        return dict(self._outputs)

    def set_outputs(self, outputs: Dict[str, Any]) -> None:
        self._outputs = dict(outputs)
        self.serial += 1

    def lock(self) -> None:
        if not self._lock.acquire(blocking=False):
            raise PlanConflict("state is locked by another run in this process")

    def unlock(self) -> None:
        if self._lock.locked():
            self._lock.release()


class JsonStateStore(StateStore):
    """
    Durable JSON document with a lock file next to it.

    Every write bumps `serial`; a write is refused with StateConflict when the
    serial on disk is not the one this handle last read or wrote.
    """

    def __init__(self, path: str, lock_timeout: float = 0.0, poll_interval: float = 0.2):
        self.path = path
        self.lock_path = path + ".lock"
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        self._doc: Optional[Dict[str, Any]] = None
        self._serial = 0
        self._held = False
        self._mutex = threading.Lock()

    # ------------------------------------------------------------ document

    def _read_disk(self) -> Optional[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, encoding="utf-8") as fh:
                doc = json.load(fh)
        except (OSError, ValueError) as exc:
            raise ConfigError(f"cannot read state file {self.path}: {exc}") from exc
        if not isinstance(doc, dict) or doc.get("version") != STATE_VERSION:
            raise ConfigError(f"{self.path}: unsupported state format (expected version {STATE_VERSION})")
        return doc

    def _document(self) -> Dict[str, Any]:
        if self._doc is None:
            doc = self._read_disk()
            if doc is None:
                doc = {
                    "version": STATE_VERSION,
                    "serial": 0,
                    "lineage": str(uuid.uuid4()),
                    "resources": {},
                    "outputs": {},
                }
            self._doc = doc
            self._serial = doc["serial"]
        return self._doc

    def _write(self) -> None:
        doc = self._document()
        on_disk = self._read_disk()
        if on_disk is not None and (
            on_disk.get("serial") != self._serial or on_disk.get("lineage") != doc["lineage"]
        ):
            raise StateConflict(
                f"{self.path} was modified by another writer "
                f"(serial {on_disk.get('serial')}, expected {self._serial})"
            )
        doc["serial"] = self._serial + 1
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as fh:
                json.dump(doc, fh, indent=2, sort_keys=True)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp)
            raise
        self._serial = doc["serial"]
        logger.debug("wrote %s (serial %d)", self.path, self._serial)

    @property
    def serial(self) -> int:
        return self._document()["serial"]

    def get(self, address: str) -> Optional[StateRecord]:
        with self._mutex:
            data = self._document()["resources"].get(address)
        return StateRecord.from_dict(data) if data else None

    def put(self, address: str, record: StateRecord) -> None:
        with self._mutex:
            self._document()["resources"][address] = record.to_dict()
            self._write()

    def delete(self, address: str) -> None:
        with self._mutex:
            if self._document()["resources"].pop(address, None) is not None:
                self._write()

    def list(self) -> List[StateRecord]:
        with self._mutex:
            resources = self._document()["resources"]
            return [StateRecord.from_dict(resources[a]) for a in sorted(resources)]

    def get_outputs(self) -> Dict[str, Any]:
        with self._mutex:
            return dict(self._document().get("outputs", {}))

    def set_outputs(self, outputs: Dict[str, Any]) -> None:
        with self._mutex:
            self._document()["outputs"] = dict(outputs)
            self._write()

    # ------------------------------------------------------------ locking

    def lock_info(self) -> Optional[Dict[str, Any]]:
        try:
            with open(self.lock_path, encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except ValueError:
            return {"owner": "unknown"}

    def lock(self) -> None:
        deadline = time.monotonic() + self.lock_timeout
        os.makedirs(os.path.dirname(os.path.abspath(self.lock_path)), exist_ok=True)
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if time.monotonic() >= deadline:
                    info = self.lock_info() or {}
                    raise PlanConflict(
                        f"state {self.path} is locked by {info.get('owner', 'unknown')} "
                        f"since {info.get('created', '?')} (lock id {info.get('id', '?')})"
                    )
                time.sleep(self.poll_interval)
                continue
            info = {
                "id": str(uuid.uuid4()),
                "owner": f"{os.getpid()}@{socket.gethostname()}",
                "created": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(info, fh)
            break
        self._held = True
        # Start from what is on disk now, not a copy read before the lock.
        self._doc = None
        self._document()
        logger.debug("acquired state lock %s", self.lock_path)

    def unlock(self) -> None:
        if not self._held:
            return
        self._held = False
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.lock_path)
        logger.debug("released state lock %s", self.lock_path)

    def force_unlock(self) -> Optional[Dict[str, Any]]:
        """Remove a stale lock file left behind by a crashed run."""
        info = self.lock_info()
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.lock_path)
        return info
