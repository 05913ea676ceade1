from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class StateRecord:
    """Last-applied snapshot of one managed node."""
    address: str
    resource_type: str
    provider: str
    resource_id: str
    inputs: Dict[str, Any] = field(default_factory=dict)      # resolved desired attributes
    attributes: Dict[str, Any] = field(default_factory=dict)  # everything the provider returned
    dependencies: List[str] = field(default_factory=list)
    updated_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "resource_type": self.resource_type,
            "provider": self.provider,
            "resource_id": self.resource_id,
            "inputs": self.inputs,
            "attributes": self.attributes,
            "dependencies": sorted(self.dependencies),
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        return cls(
            address=data["address"],
            resource_type=data["resource_type"],
            provider=data.get("provider", ""),
            resource_id=data.get("resource_id", ""),
            inputs=data.get("inputs", {}) or {},
            attributes=data.get("attributes", {}) or {},
            dependencies=list(data.get("dependencies", []) or []),
            updated_at=data.get("updated_at", ""),
        )
