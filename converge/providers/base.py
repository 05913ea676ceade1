"""
Provider plugin interface.

The engine only talks to remote APIs through this contract; every backend
(cloud control plane, cluster control plane, the local sandbox) implements it
once. Read and Delete must be safe to repeat, and Create/Update must be
idempotent for the same node address so retries after a partial success do
not duplicate remote objects.
"""
import abc
from typing import Any, Dict, Optional, Set

from converge.errors import ProviderPermanentError


class Provider(abc.ABC):
    name: str = "base"

    @abc.abstractmethod
    def read(self, resource_type: str, resource_id: str) -> Optional[Dict[str, Any]]:
        """Current remote attributes, or None when the object does not exist."""

    @abc.abstractmethod
    def create(self, resource_type: str, address: str, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Create the object and return its attributes, including `id`."""

    @abc.abstractmethod
    def update(self, resource_type: str, resource_id: str, desired: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete the object. Deleting an object that is already gone succeeds."""

    def read_data(self, resource_type: str, query: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError(f"{self.name} has no data sources")

    def computed_attributes(self, resource_type: str) -> Optional[Set[str]]:
        """Attribute names only known after apply; None accepts any name."""
        return None


class ComputedValues:
    """
    Generates computed attributes from format strings, e.g.
    {"aws_lb": {"dns_name": "{name}.elb.example.com"}}.
    Placeholders: {id}, {name}, {type}, {address}, {provider}, plus any
    desired attribute.
    """

    def __init__(self, provider: str, computed: Optional[Dict[str, Dict[str, Any]]] = None,
                 data_sources: Optional[Dict[str, Dict[str, Any]]] = None):
        self.provider = provider
        self.computed = computed or {}
        self.data_sources = data_sources or {}

    def names(self, resource_type: str) -> Optional[Set[str]]:
        if resource_type not in self.computed:
            return None
        return set(self.computed[resource_type]) | {"id"}

    def _expand(self, template: Any, fields: Dict[str, Any]) -> Any:
        if isinstance(template, str):
            return template.format_map(_Defaulting(fields))
        if isinstance(template, list):
            return [self._expand(t, fields) for t in template]
        if isinstance(template, dict):
            return {k: self._expand(v, fields) for k, v in template.items()}
        return template

    def generate(self, resource_type: str, address: str, resource_id: str,
                 desired: Dict[str, Any]) -> Dict[str, Any]:
        fields = {
            "name": address.rsplit(".", 1)[-1],
            "type": resource_type,
            "address": address,
            "provider": self.provider,
            **{k: v for k, v in desired.items() if isinstance(v, (str, int, float, bool))},
            "id": resource_id,
        }
        return {k: self._expand(v, fields) for k, v in self.computed.get(resource_type, {}).items()}

    def lookup(self, resource_type: str, query: Dict[str, Any]) -> Dict[str, Any]:
        if resource_type not in self.data_sources:
            raise ProviderPermanentError(f"{self.provider}: unknown data source '{resource_type}'")
        fields = {k: v for k, v in query.items() if isinstance(v, (str, int, float, bool))}
        fields.setdefault("type", resource_type)
        result = self._expand(self.data_sources[resource_type], fields)
        return {**query, **result}


class _Defaulting(dict):
    def __missing__(self, key):
        return "{" + key + "}"

