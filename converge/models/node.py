from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple, Union

MANAGED = "managed"
DATA = "data"


@dataclass(frozen=True)
class Ref:
    """Deferred binding to another node's attribute (or to an input variable)."""
    address: str                # "aws_lb.web", "data.aws_zone.main" or "var.domain"
    attribute: str = ""         # "" for whole-node references such as depends_on
    path: Tuple[Union[str, int], ...] = ()

    @property
    def is_variable(self) -> bool:
        return self.address.startswith("var.")

    def __str__(self) -> str:
        text = self.address
        if self.attribute:
            text += f".{self.attribute}"
        for p in self.path:
            text += f"[{p}]" if isinstance(p, int) else f".{p}"
        return text


@dataclass(frozen=True)
class Template:
    """A string with embedded references, e.g. "${var.name}-svc"."""
    parts: Tuple[Union[str, Ref], ...]

    @property
    def is_single_ref(self) -> bool:
        return len(self.parts) == 1 and isinstance(self.parts[0], Ref)


def iter_refs(value: Any) -> Iterator[Ref]:
    """Yield every Ref inside an attribute value."""
    if isinstance(value, Ref):
        yield value
    elif isinstance(value, Template):
        for part in value.parts:
            if isinstance(part, Ref):
                yield part
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_refs(item)


def render(value: Any) -> Any:
    """Turn references back into ${...} text, for reports and JSON output."""
    if isinstance(value, Ref):
        return "${" + str(value) + "}"
    if isinstance(value, Template):
        return "".join(
            "${" + str(p) + "}" if isinstance(p, Ref) else p for p in value.parts
        )
    if isinstance(value, dict):
        return {k: render(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render(v) for v in value]
    return value


@dataclass
class ResourceNode:
    resource_type: str     # e.g. "aws_lb", "AWS::ElasticLoadBalancingV2::LoadBalancer"
    name: str              # logical name in the declarations
    provider: str          # "aws", "kubernetes", ...
    attributes: Dict[str, Any] = field(default_factory=dict)
    mode: str = MANAGED    # "managed" or "data"
    depends_on: List[str] = field(default_factory=list)
    source_format: str = ""      # "terraform", "template"
    source_file: str = ""

    @property
    def address(self) -> str:
        if self.mode == DATA:
            return f"data.{self.resource_type}.{self.name}"
        return f"{self.resource_type}.{self.name}"

    def references(self) -> List[Ref]:
        return list(iter_refs(self.attributes))

    @property
    def dependencies(self) -> Set[str]:
        deps = {r.address for r in self.references() if not r.is_variable}
        deps.update(self.depends_on)
        deps.discard(self.address)
        return deps


@dataclass
class Variable:
    name: str
    default: Any = None
    description: str = ""

    @property
    def required(self) -> bool:
        return self.default is None


@dataclass
class Configuration:
    nodes: List[ResourceNode] = field(default_factory=list)
    variables: Dict[str, Variable] = field(default_factory=dict)
    outputs: Dict[str, Any] = field(default_factory=dict)

    def merge(self, other: "Configuration") -> "Configuration":
        """Combine declarations from several files into one configuration."""
        return Configuration(
            nodes=self.nodes + other.nodes,
            variables={**self.variables, **other.variables},
            outputs={**self.outputs, **other.outputs},
        )

    def node(self, address: str) -> Optional[ResourceNode]:
        return next((n for n in self.nodes if n.address == address), None)
