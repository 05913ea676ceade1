"""
Reference parsing for ${...} interpolations.

Only plain references are understood: var.NAME, TYPE.NAME[.ATTR...] and
data.TYPE.NAME[.ATTR...]. Any other interpolation (function calls,
conditionals) is kept as literal text, with a warning when it mentions a
resource, since no dependency edge is recorded for it.
"""
import re
from typing import Any, List, Optional, Union

from rich.console import Console
from rich.markup import escape

from converge.models.node import Ref, Template

console = Console(stderr=True)

_INTERP_RE = re.compile(r"\$\{([^{}]*)\}")

# Resource types always carry a provider prefix ("aws_lb"), which keeps
# locals, each.* and path.* out.
_REF_RE = re.compile(
    r"""^(?:var\.[A-Za-z_][\w-]*
        |(?:data\.)?[A-Za-z][A-Za-z0-9]*_\w*\.[A-Za-z_][\w-]*
          (?:\.[A-Za-z_][\w-]*|\[\d+\]|\["[^"]+"\])*)$""",
    re.VERBOSE,
)
_TOKEN_RE = re.compile(r'\.?([A-Za-z_][\w-]*)|\[(\d+)\]|\["([^"]+)"\]')
_NODE_RE = re.compile(r"(?<![\w.])((?:data\.)?[A-Za-z][A-Za-z0-9]*_\w*\.[A-Za-z_][\w-]*)")


def _tokens(expr: str) -> List[Union[str, int]]:
    out: List[Union[str, int]] = []
    for name, index, key in _TOKEN_RE.findall(expr):
        if name:
            out.append(name)
        elif index:
            out.append(int(index))
        else:
            out.append(key)
    return out


def parse_reference(expr: str) -> Optional[Ref]:
    """Parse the inside of ${...}; None when it is not a plain reference."""
    expr = expr.strip()
    if not _REF_RE.match(expr):
        return None
    toks = _tokens(expr)
    if toks[0] == "var":
        return Ref(address=f"var.{toks[1]}", path=tuple(toks[2:]))
    if toks[0] == "data":
        address, rest = f"data.{toks[1]}.{toks[2]}", toks[3:]
    else:
        address, rest = f"{toks[0]}.{toks[1]}", toks[2:]
    if rest and isinstance(rest[0], str):
        return Ref(address=address, attribute=rest[0], path=tuple(rest[1:]))
    return Ref(address=address, path=tuple(rest))


def _warn_hidden_references(interpolation: str) -> None:
    mentioned = sorted(set(_NODE_RE.findall(interpolation)))
    if mentioned:
        console.print(
            f"[yellow]Warning:[/yellow] {escape(interpolation)} is not a plain reference; "
            f"no dependency on {', '.join(mentioned)} was recorded",
            soft_wrap=True,
        )


def parse_string(text: str) -> Any:
    """
    Convert a string with interpolations into a Ref (the whole string is one
    reference), a Template (text mixed with references) or the string itself.
    """
    parts: List[Union[str, Ref]] = []
    pos = 0
    found = False
    for m in _INTERP_RE.finditer(text):
        ref = parse_reference(m.group(1))
        if ref is None:
            _warn_hidden_references(m.group(0))
            continue
        found = True
        if m.start() > pos:
            parts.append(text[pos:m.start()])
        parts.append(ref)
        pos = m.end()
    if not found:
        return text
    if pos < len(text):
        parts.append(text[pos:])
    template = Template(parts=tuple(parts))
    return template.parts[0] if template.is_single_ref else template


def parse_value(val: Any) -> Any:
    """Recursively parse interpolations in a decoded attribute value."""
    if isinstance(val, str):
        return parse_string(val)
    if isinstance(val, list):
        return [parse_value(v) for v in val]
    if isinstance(val, dict):
        return {k: parse_value(v) for k, v in val.items()}
    return val
