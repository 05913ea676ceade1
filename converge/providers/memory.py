"""
In-process provider. Objects live in a dict; failures can be injected per
address, which is what the executor tests rely on.
"""
import copy
import hashlib
import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

from converge.errors import ProviderPermanentError
from converge.providers.base import ComputedValues, Provider


def object_id(resource_type: str, address: str) -> str:
    """Deterministic id, so a retried create maps onto the same object."""
    return f"{resource_type.replace('::', '-').lower()}-{hashlib.sha1(address.encode()).hexdigest()[:10]}"


class KeyValueProvider(Provider):
    """Shared create/read/update/delete logic over a simple object store."""

    def __init__(self, name: str, computed=None, data_sources=None):
        self.name = name
        self.values = ComputedValues(name, computed, data_sources)

    # storage hooks
    def _load(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _save(self, resource_type: str, resource_id: str, attributes: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _remove(self, resource_type: str, resource_id: str) -> None:
        raise NotImplementedError

    def read(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        return self._load(resource_type, resource_id)

    def create(self, resource_type: str, address: str, desired: Dict[str, Any]) -> Dict[str, Any]:
        resource_id = object_id(resource_type, address)
        existing = self._load(resource_type, resource_id) or {}
        attributes = {
            **desired,
            **self.values.generate(resource_type, address, resource_id, desired),
            "id": resource_id,
            "address": address,
            "created_at": existing.get("created_at", time.time()),
        }
        self._save(resource_type, resource_id, attributes)
        return copy.deepcopy(attributes)

    def update(self, resource_type: str, resource_id: str, desired: Dict[str, Any]) -> Dict[str, Any]:
        existing = self._load(resource_type, resource_id)
        if existing is None:
            raise ProviderPermanentError(f"{resource_type} {resource_id} does not exist")
        address = existing.get("address", resource_id)
        attributes = {
            **desired,
            **self.values.generate(resource_type, address, resource_id, desired),
            "id": resource_id,
            "address": address,
            "created_at": existing.get("created_at"),
        }
        self._save(resource_type, resource_id, attributes)
        return copy.deepcopy(attributes)

    def delete(self, resource_type: str, resource_id: str) -> None:
        self._remove(resource_type, resource_id)

    def read_data(self, resource_type: str, query: Dict[str, Any]) -> Dict[str, Any]:
        return self.values.lookup(resource_type, query)

    def computed_attributes(self, resource_type: str) -> Optional[Set[str]]:
        names = self.values.names(resource_type)
        return None if names is None else names | {"address", "created_at"}


class MemoryProvider(KeyValueProvider):
    def __init__(self, name: str = "memory", computed=None, data_sources=None, latency: float = 0.0):
        super().__init__(name, computed, data_sources)
        self.objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.latency = latency
        self.calls: List[Tuple[str, str]] = []
        self._faults: Dict[Tuple[str, str], List[Exception]] = {}
        self._lock = threading.Lock()

    def fail(self, operation: str, address: str, *errors: Exception) -> None:
        """Raise `errors` one by one on the next calls of `operation` for `address`."""
        with self._lock:
            self._faults.setdefault((operation, address), []).extend(errors)

    def _address_of(self, resource_type: str, resource_id: str) -> str:
        with self._lock:
            obj = self.objects.get((resource_type, resource_id))
        return obj.get("address", resource_id) if obj else resource_id

    def _call(self, operation: str, address: str) -> None:
        with self._lock:
            self.calls.append((operation, address))
            queued = self._faults.get((operation, address))
            error = queued.pop(0) if queued else None
        if self.latency:
            time.sleep(self.latency)
        if error is not None:
            raise error

    def _load(self, resource_type, resource_id):
        with self._lock:
            obj = self.objects.get((resource_type, resource_id))
            return copy.deepcopy(obj) if obj is not None else None

    def _save(self, resource_type, resource_id, attributes):
        with self._lock:
            self.objects[(resource_type, resource_id)] = copy.deepcopy(attributes)

    def _remove(self, resource_type, resource_id):
        with self._lock:
            self.objects.pop((resource_type, resource_id), None)

    def read(self, resource_type, resource_id):
        self._call("read", self._address_of(resource_type, resource_id))
        return super().read(resource_type, resource_id)

    def create(self, resource_type, address, desired):
        self._call("create", address)
        return super().create(resource_type, address, desired)

    def update(self, resource_type, resource_id, desired):
        self._call("update", self._address_of(resource_type, resource_id))
        return super().update(resource_type, resource_id, desired)

    def delete(self, resource_type, resource_id):
        self._call("delete", self._address_of(resource_type, resource_id))
        super().delete(resource_type, resource_id)
