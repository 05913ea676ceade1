"""
Resource graph builder: binds variables, validates references and orders
nodes by their dependency edges.
"""
import dataclasses
import heapq
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set

from converge.errors import ConfigError, CycleDetected, DuplicateNode, UnresolvedReference
from converge.models.node import Configuration, Ref, ResourceNode, Template, iter_refs
from converge.engine.values import format_value, navigate

logger = logging.getLogger(__name__)

ComputedSchema = Callable[[ResourceNode], Optional[Iterable[str]]]


def topological_order(deps: Mapping[str, Set[str]], rank: Optional[Mapping[str, Any]] = None) -> List[str]:
    """
    Kahn's algorithm over `deps` (node -> nodes it waits for). Ties are broken
    by `rank` (default: the node key) so the order is deterministic.
    Raises CycleDetected with one offending cycle.
    """
    rank = rank or {k: k for k in deps}
    in_degree = {k: len(v) for k, v in deps.items()}
    successors: Dict[str, List[str]] = {k: [] for k in deps}
    for node, waits_for in deps.items():
        for d in waits_for:
            successors[d].append(node)

    queue = [(rank[k], k) for k, d in in_degree.items() if d == 0]
    heapq.heapify(queue)
    order: List[str] = []
    while queue:
        _, node = heapq.heappop(queue)
        order.append(node)
        for succ in successors[node]:
            in_degree[succ] -= 1
            if in_degree[succ] == 0:
                heapq.heappush(queue, (rank[succ], succ))

    if len(order) != len(deps):
        remaining = {k for k in deps if in_degree[k] > 0}
        raise CycleDetected(_find_cycle(deps, remaining))
    return order


def _find_cycle(deps: Mapping[str, Set[str]], candidates: Set[str]) -> List[str]:
    visiting: List[str] = []
    on_path: Set[str] = set()
    done: Set[str] = set()

    def visit(node: str) -> Optional[List[str]]:
        visiting.append(node)
        on_path.add(node)
        for d in sorted(deps[node]):
            if d not in candidates or d in done:
                continue
            if d in on_path:
                return visiting[visiting.index(d):] + [d]
            found = visit(d)
            if found:
                return found
        on_path.discard(visiting.pop())
        done.add(node)
        return None

    for start in sorted(candidates):
        if start not in done:
            cycle = visit(start)
            if cycle:
                return cycle
    return sorted(candidates)


class ResourceGraph:
    """Validated DAG of resource nodes. Edges point from a node to what it depends on."""

    def __init__(self, nodes: Dict[str, ResourceNode], outputs: Optional[Dict[str, Any]] = None):
        self.nodes = nodes
        self.outputs = outputs or {}
        self._deps: Dict[str, Set[str]] = {a: set(n.dependencies) for a, n in nodes.items()}
        self._rdeps: Dict[str, Set[str]] = {a: set() for a in nodes}
        for addr, deps in self._deps.items():
            for d in deps:
                self._rdeps[d].add(addr)
        self._order = topological_order(self._deps)

    def __contains__(self, address: str) -> bool:
        return address in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dependencies_of(self, address: str) -> Set[str]:
        return set(self._deps[address])

    def dependents_of(self, address: str) -> Set[str]:
        return set(self._rdeps[address])

    def edges(self) -> List[tuple]:
        return sorted((a, d) for a, deps in self._deps.items() for d in deps)

    def order(self) -> List[str]:
        return list(self._order)

    def levels(self) -> List[List[str]]:
        """Groups of nodes that can run in parallel, level by level."""
        depth: Dict[str, int] = {}
        for addr in self._order:
            depth[addr] = 1 + max((depth[d] for d in self._deps[addr]), default=-1)
        groups: List[List[str]] = [[] for _ in range(max(depth.values(), default=-1) + 1)]
        for addr in self._order:
            groups[depth[addr]].append(addr)
        return groups


# ------------------------------------------------------------------ variables

def _bind(value: Any, values: Dict[str, Any], source: str) -> Any:
    """Substitute var.* references with their bound values."""
    if isinstance(value, Ref):
        return _variable_value(value, values, source) if value.is_variable else value
    if isinstance(value, Template):
        parts = []
        for p in value.parts:
            if isinstance(p, Ref) and p.is_variable:
                p = format_value(_variable_value(p, values, source))
            if isinstance(p, str) and parts and isinstance(parts[-1], str):
                parts[-1] += p
            else:
                parts.append(p)
        if all(isinstance(p, str) for p in parts):
            return "".join(parts)
        bound = Template(parts=tuple(parts))
        return bound.parts[0] if bound.is_single_ref else bound
    if isinstance(value, dict):
        return {k: _bind(v, values, source) for k, v in value.items()}
    if isinstance(value, list):
        return [_bind(v, values, source) for v in value]
    return value


def _variable_value(ref: Ref, values: Dict[str, Any], source: str) -> Any:
    name = ref.address[len("var."):]
    if name not in values:
        raise UnresolvedReference(source, ref.address, "is not declared")
    if values[name] is None:
        raise UnresolvedReference(source, ref.address, "has no value")
    try:
        return navigate(values[name], ref.path)
    except (LookupError, IndexError):
        raise UnresolvedReference(source, str(ref), "does not exist")


def bind_variables(config: Configuration, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    values = {name: v.default for name, v in config.variables.items()}
    for name, value in (overrides or {}).items():
        if name not in config.variables:
            raise ConfigError(f"value given for undeclared variable '{name}'")
        values[name] = value
    return values


# ------------------------------------------------------------------ builder

def build_graph(
    config: Configuration,
    variables: Optional[Mapping[str, Any]] = None,
    computed: Optional[ComputedSchema] = None,
) -> ResourceGraph:
    """
    Build and validate the dependency graph for a configuration.

    `computed` returns the attribute names a provider computes for a node,
    or None when any attribute may be referenced.
    """
    nodes: Dict[str, ResourceNode] = {}
    for node in config.nodes:
        if node.address in nodes:
            raise DuplicateNode(node.address, sorted({nodes[node.address].source_file, node.source_file} - {""}))
        nodes[node.address] = node

    values = bind_variables(config, variables)
    bound: Dict[str, ResourceNode] = {}
    for addr, node in nodes.items():
        bound[addr] = dataclasses.replace(node, attributes=_bind(node.attributes, values, addr))
    outputs = {name: _bind(v, values, f"output.{name}") for name, v in config.outputs.items()}

    for addr, node in bound.items():
        for ref in node.references():
            _check_reference(addr, ref, bound, computed)
        for dep in node.depends_on:
            if dep == addr:
                raise CycleDetected([addr, addr])
            if dep not in bound:
                raise UnresolvedReference(addr, dep)
    for name, value in outputs.items():
        for ref in iter_refs(value):
            _check_reference(f"output.{name}", ref, bound, computed)

    graph = ResourceGraph(bound, outputs)
    logger.debug("built graph with %d nodes and %d edges", len(graph), len(graph.edges()))
    return graph


def _check_reference(source: str, ref: Ref, nodes: Dict[str, ResourceNode], computed: Optional[ComputedSchema]) -> None:
    target = nodes.get(ref.address)
    if target is None:
        raise UnresolvedReference(source, ref.address)
    if ref.address == source:
        raise CycleDetected([source, source])
    if not ref.attribute or ref.attribute == "id" or ref.attribute in target.attributes:
        return
    if computed is None:
        return
    names = computed(target)
    if names is None or ref.attribute in set(names):
        return
    raise UnresolvedReference(source, f"{ref.address}.{ref.attribute}", "is not an attribute of that resource")
