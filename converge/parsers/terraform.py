from typing import Any, Dict, List, Tuple

import hcl2
from rich.console import Console

from converge.errors import ConfigError
from converge.models.node import DATA, MANAGED, Configuration, Ref, ResourceNode, Variable
from converge.parsers.expressions import parse_value

console = Console(stderr=True)

# Meta-arguments that configure the engine rather than the remote object
_META_ARGS = {"depends_on", "provider", "lifecycle", "count", "for_each", "connection", "provisioner"}
_UNSUPPORTED_META = ("count", "for_each")


def _infer_provider(resource_type: str) -> str:
    return resource_type.split("_", 1)[0] if "_" in resource_type else "unknown"


def _unwrap(val: Any) -> Any:
    """
    python-hcl2 wraps single-element blocks in a list.
    Recursively unwrap single-element lists that contain dicts.
    """
    if isinstance(val, list):
        if len(val) == 1 and isinstance(val[0], dict):
            return _unwrap(val[0])
        return [_unwrap(v) for v in val]
    if isinstance(val, dict):
        return {k: _unwrap(v) for k, v in val.items()}
    return val


def _strip_interp(val: Any) -> str:
    text = str(val)
    if text.startswith("${") and text.endswith("}"):
        return text[2:-1]
    return text


def _depends_on(raw: Any, where: str) -> List[str]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raw = [raw]
    out = []
    for item in raw:
        ref = parse_value(item)
        if not isinstance(ref, Ref):
            raise ConfigError(f"{where}: depends_on entries must be resource references, got {item!r}")
        out.append(ref.address)
    return out


def _iter_blocks(blocks: Any) -> List[Tuple[str, str, Dict[str, Any]]]:
    """Flatten hcl2's [{type: {name: body}}] shape into (type, name, body) triples."""
    out = []
    for block in blocks or []:
        for resource_type, instances in block.items():
            if isinstance(instances, dict):
                instances = [instances]
            for instance_map in instances or []:
                if not isinstance(instance_map, dict):
                    continue
                for name, raw_props in instance_map.items():
                    props = _unwrap(raw_props) if isinstance(raw_props, dict) else {}
                    out.append((resource_type, name, props if isinstance(props, dict) else {}))
    return out


def _build_node(resource_type: str, name: str, props: Dict[str, Any], mode: str, filepath: str) -> ResourceNode:
    where = f"{filepath}: {resource_type}.{name}"
    for meta in _UNSUPPORTED_META:
        if meta in props:
            console.print(f"[yellow]Warning:[/yellow] {where}: '{meta}' is not supported and was ignored")
    provider = _strip_interp(props["provider"]).split(".")[0] if "provider" in props else _infer_provider(resource_type)
    attributes = {k: parse_value(v) for k, v in props.items() if k not in _META_ARGS}
    return ResourceNode(
        resource_type=resource_type,
        name=name,
        provider=provider,
        attributes=attributes,
        mode=mode,
        depends_on=_depends_on(props.get("depends_on"), where),
        source_format="terraform",
        source_file=filepath,
    )


def parse_file(filepath: str) -> Configuration:
    try:
        with open(filepath) as fh:
            data = hcl2.load(fh)
    except Exception as exc:
        raise ConfigError(f"failed to parse {filepath}: {exc}") from exc

    config = Configuration()
    for resource_type, name, props in _iter_blocks(data.get("resource")):
        config.nodes.append(_build_node(resource_type, name, props, MANAGED, filepath))
    for resource_type, name, props in _iter_blocks(data.get("data")):
        config.nodes.append(_build_node(resource_type, name, props, DATA, filepath))

    for block in data.get("variable", []) or []:
        for name, body in block.items():
            body = _unwrap(body) if isinstance(body, (dict, list)) else {}
            body = body if isinstance(body, dict) else {}
            config.variables[name] = Variable(
                name=name,
                default=body.get("default"),
                description=body.get("description", ""),
            )

    for block in data.get("output", []) or []:
        for name, body in block.items():
            body = _unwrap(body) if isinstance(body, (dict, list)) else {}
            if not isinstance(body, dict) or "value" not in body:
                raise ConfigError(f"{filepath}: output '{name}' has no value")
            config.outputs[name] = parse_value(body["value"])

    return config

