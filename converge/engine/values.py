"""
Dependency-indexed table of resolved attribute values.

Producers publish their attributes once they are realized; consumers resolve
Ref/Template values against the table. During planning, values that are not
known yet resolve to UNKNOWN instead of raising.
"""
import threading
from typing import Any, Dict, Optional

from converge.models.node import Ref, Template


class _Unknown:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __str__(self) -> str:
        return "(known after apply)"


UNKNOWN = _Unknown()


class UnknownValue(Exception):
    def __init__(self, ref: Ref):
        self.ref = ref
        super().__init__(f"value of '{ref}' is not available")


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(contains_unknown(v) for v in value)
    return False


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def navigate(value: Any, path) -> Any:
    """Follow a key/index path into a value; raises LookupError when absent."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(value, list):
                raise LookupError(step)
            value = value[step]
        else:
            if not isinstance(value, dict):
                raise LookupError(step)
            value = value[step]
    return value


class ValueTable:
    def __init__(self):
        self._values: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def publish(self, address: str, attributes: Dict[str, Any]) -> None:
        with self._lock:
            self._values[address] = dict(attributes)

    def get(self, address: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._values.get(address)

    def __contains__(self, address: str) -> bool:
        with self._lock:
            return address in self._values

    def lookup(self, ref: Ref, strict: bool = True) -> Any:
        attributes = self.get(ref.address)
        try:
            if attributes is None:
                raise LookupError(ref.address)
            if not ref.attribute:
                return navigate(attributes, ref.path)
            return navigate(attributes[ref.attribute], ref.path)
        except (LookupError, IndexError):
            if strict:
                raise UnknownValue(ref)
            return UNKNOWN

    def resolve(self, value: Any, strict: bool = True) -> Any:
        if isinstance(value, Ref):
            return self.lookup(value, strict)
        if isinstance(value, Template):
            parts = [self.lookup(p, strict) if isinstance(p, Ref) else p for p in value.parts]
            if any(p is UNKNOWN for p in parts):
                return UNKNOWN
            return "".join(format_value(p) for p in parts)
        if isinstance(value, dict):
            return {k: self.resolve(v, strict) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve(v, strict) for v in value]
        return value
