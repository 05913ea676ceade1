"""
Template front end: YAML/JSON documents with a top-level Resources mapping
and CloudFormation-style intrinsics (Ref, GetAtt, Sub, DependsOn).
"""
import json
import os
import re
from typing import Any, Dict, List, Set

import yaml

from converge.errors import ConfigError
from converge.models.node import Configuration, Ref, ResourceNode, Template, Variable

# ------------------------------------------------------------------ YAML loader
# yaml.safe_load can't handle the short intrinsic tags (!Ref, !Sub, !GetAtt).
# We register a multi-constructor that turns them into plain dicts so the rest
# of the parser can operate on normal Python objects.

class _TemplateLoader(yaml.SafeLoader):
    pass


def _tag_constructor(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> Any:
    """Convert any !Tag into {"Tag": value} so downstream code can traverse it."""
    if isinstance(node, yaml.ScalarNode):
        return {tag_suffix: loader.construct_scalar(node)}
    if isinstance(node, yaml.SequenceNode):
        return {tag_suffix: loader.construct_sequence(node, deep=True)}
    if isinstance(node, yaml.MappingNode):
        return {tag_suffix: loader.construct_mapping(node, deep=True)}
    return {tag_suffix: None}


_TemplateLoader.add_multi_constructor("!", _tag_constructor)

_SUB_RE = re.compile(r"\$\{([^}!]+)\}")


class _Resolver:
    """Turns intrinsics into Ref/Template values once all logical names are known."""

    def __init__(self, addresses: Dict[str, str], parameters: Set[str]):
        self.addresses = addresses
        self.parameters = parameters

    def ref(self, name: str, attribute: str = "id", path: tuple = ()) -> Any:
        if name in self.parameters:
            return Ref(address=f"var.{name}")
        if name.startswith("AWS::"):
            # pseudo parameters are resolved by the remote side
            return {"Ref": name}
        return Ref(address=self.addresses.get(name, name), attribute=attribute, path=path)

    def get_att(self, target: Any) -> Ref:
        if isinstance(target, str):
            target = target.split(".", 1)
        if not isinstance(target, list) or len(target) != 2:
            raise ConfigError(f"invalid GetAtt target: {target!r}")
        name, attr = target
        parts = str(attr).split(".")
        return self.ref(name, parts[0], tuple(parts[1:]))

    def sub(self, text: Any) -> Any:
        if isinstance(text, list):
            # Fn::Sub with a variable map is not supported; keep the literal.
            return {"Fn::Sub": text}
        parts: List[Any] = []
        pos = 0
        for m in _SUB_RE.finditer(text):
            expr = m.group(1).strip()
            if expr.startswith("AWS::"):
                continue
            name, _, attr = expr.partition(".")
            value = self.ref(name, attr.split(".")[0] if attr else "id",
                             tuple(attr.split(".")[1:]) if attr else ())
            if m.start() > pos:
                parts.append(text[pos:m.start()])
            parts.append(value)
            pos = m.end()
        if not parts:
            return text
        if pos < len(text):
            parts.append(text[pos:])
        if len(parts) == 1 and isinstance(parts[0], Ref):
            return parts[0]
        return Template(parts=tuple(parts))

    def value(self, val: Any) -> Any:
        if isinstance(val, dict):
            if len(val) == 1:
                key, inner = next(iter(val.items()))
                if key == "Ref" and isinstance(inner, str):
                    return self.ref(inner)
                if key in ("GetAtt", "Fn::GetAtt"):
                    return self.get_att(inner)
                if key in ("Sub", "Fn::Sub"):
                    return self.sub(inner)
            return {k: self.value(v) for k, v in val.items()}
        if isinstance(val, list):
            return [self.value(v) for v in val]
        return val


def _template_to_provider(resource_type: str) -> str:
    # AWS::S3::Bucket -> aws, Kubernetes::Deployment -> kubernetes
    return resource_type.split("::", 1)[0].lower() if "::" in resource_type else "unknown"


def _load(filepath: str) -> Any:
    _, ext = os.path.splitext(filepath.lower())
    with open(filepath) as fh:
        if ext == ".json":
            return json.load(fh)
        return yaml.load(fh, Loader=_TemplateLoader)


def parse_file(filepath: str) -> Configuration:
    try:
        template = _load(filepath)
    except Exception as exc:
        raise ConfigError(f"failed to parse {filepath}: {exc}") from exc

    if not isinstance(template, dict):
        raise ConfigError(f"{filepath}: template must be a mapping")
    resources = template.get("Resources", {}) or {}
    if not isinstance(resources, dict):
        raise ConfigError(f"{filepath}: Resources must be a mapping")

    config = Configuration()
    parameters = template.get("Parameters", {}) or {}
    for name, body in parameters.items():
        body = body if isinstance(body, dict) else {}
        config.variables[name] = Variable(
            name=name,
            default=body.get("Default"),
            description=body.get("Description", ""),
        )

    addresses = {
        logical: f"{definition.get('Type', '')}.{logical}"
        for logical, definition in resources.items()
        if isinstance(definition, dict)
    }
    resolver = _Resolver(addresses, set(config.variables))

    for logical_name, definition in resources.items():
        if not isinstance(definition, dict):
            continue
        resource_type = definition.get("Type", "")
        if not resource_type:
            raise ConfigError(f"{filepath}: resource '{logical_name}' has no Type")
        depends = definition.get("DependsOn", []) or []
        if isinstance(depends, str):
            depends = [depends]
        config.nodes.append(ResourceNode(
            resource_type=resource_type,
            name=logical_name,
            provider=definition.get("Provider") or _template_to_provider(resource_type),
            attributes=resolver.value(definition.get("Properties", {}) or {}),
            depends_on=[addresses.get(d, d) for d in depends],
            source_format="template",
            source_file=filepath,
        ))

    for name, body in (template.get("Outputs", {}) or {}).items():
        if not isinstance(body, dict) or "Value" not in body:
            raise ConfigError(f"{filepath}: output '{name}' has no Value")
        config.outputs[name] = resolver.value(body["Value"])

    return config

