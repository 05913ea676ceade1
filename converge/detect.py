import json
import os

import yaml

# Loader that tolerates intrinsic YAML tags (!Ref, !Sub, etc.) without
# raising an error, so detect_format can read templates.
class _TagTolerantLoader(yaml.SafeLoader):
    pass

_TagTolerantLoader.add_multi_constructor(
    "!",
    lambda loader, suffix, node: loader.construct_yaml_str(node)
    if isinstance(node, yaml.ScalarNode) else None,
)


def _is_template(doc) -> bool:
    if not isinstance(doc, dict):
        return False
    resources = doc.get("Resources")
    return isinstance(resources, dict) and any(
        isinstance(v, dict) and "::" in str(v.get("Type", ""))
        for v in resources.values()
    )


def detect_format(filepath: str) -> str:
    """
    Return 'terraform', 'template' or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext == ".tf":
        return "terraform"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except Exception:
            return "unknown"
        return "template" if _is_template(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                docs = list(yaml.load_all(fh, Loader=_TagTolerantLoader))
        except Exception:
            return "unknown"
        if any(_is_template(doc) for doc in docs):
            return "template"

    return "unknown"
