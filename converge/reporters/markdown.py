"""
Markdown + Mermaid change-set report generator.
"""
import re
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Optional

from jinja2 import Environment

from converge import __version__
from converge.engine.executor import ApplyReport
from converge.engine.graph import ResourceGraph
from converge.models.change import Action, ChangeSet, EntryStatus
from converge.models.node import DATA, render

_ACTION_SYMBOL = {
    "create": "+",
    "update": "~",
    "destroy": "-",
    "no-op": " ",
    "read": "<=",
}

_ACTION_STYLE = {
    "create": "fill:#88cc00,color:#000",
    "update": "fill:#ffcc00,color:#000",
    "destroy": "fill:#ff4444,color:#fff",
    "read": "fill:#66aaff,color:#000",
}

_STATUS_STYLE = {
    "failed": "fill:#ff4444,color:#fff",
    "skipped": "fill:#bbbbbb,color:#000",
}


class _Row(NamedTuple):
    address: str
    provider: str
    mode: str
    deps: List[str]
    action: Optional[str] = None
    status: Optional[str] = None


def _sanitize_node_id(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_]", "_", name)


def _node_shape(row: _Row) -> str:
    label = row.address.replace('"', "'")
    if row.mode == DATA:
        return f'[/"{label}"/]'
    if row.action == Action.DESTROY.value:
        return f'(["{label}"])'
    return f'["{label}"]'


def _build_mermaid(rows: List[_Row]) -> str:
    subgraphs: Dict[str, List[_Row]] = defaultdict(list)
    for r in rows:
        subgraphs[r.provider or "unknown"].append(r)

    lines = ["flowchart LR"]
    for provider in sorted(subgraphs):
        lines.append(f"    subgraph {_sanitize_node_id(provider)}")
        for r in subgraphs[provider]:
            lines.append(f"        {_sanitize_node_id(r.address)}{_node_shape(r)}")
        lines.append("    end")

    known = {r.address for r in rows}
    added_edges = set()
    for r in rows:
        src_id = _sanitize_node_id(r.address)
        for dep in r.deps:
            if dep not in known:
                continue
            edge_key = (src_id, _sanitize_node_id(dep))
            if edge_key not in added_edges:
                added_edges.add(edge_key)
                lines.append(f"    {edge_key[0]} --> {edge_key[1]}")

    for r in rows:
        style = _STATUS_STYLE.get(r.status or "") or _ACTION_STYLE.get(r.action or "")
        if style:
            lines.append(f"    style {_sanitize_node_id(r.address)} {style}")

    return "\n".join(lines)


def mermaid_for_graph(graph: ResourceGraph) -> str:
    rows = [
        _Row(addr, graph.nodes[addr].provider, graph.nodes[addr].mode, sorted(graph.dependencies_of(addr)))
        for addr in graph.order()
    ]
    return _build_mermaid(rows)


def mermaid_for_change_set(change_set: ChangeSet, applied: bool = False) -> str:
    rows = [
        _Row(
            e.address, e.provider, e.mode, list(e.dependencies), e.action.value,
            e.status.value if applied and e.status != EntryStatus.PENDING else None,
        )
        for e in change_set
    ]
    return _build_mermaid(rows)


_TEMPLATE = """\
# {{ title }}

**Generated:** {{ generated }}
**Source:** {{ source }}
**Tool:** converge v{{ version }}

---

## Summary

{% if not change_set.has_changes %}No changes. The infrastructure matches the declarations.
{% else %}{% for action in ["create", "update", "destroy", "read", "no-op"] %}{% if counts[action] %}
- **{{ action }}**: {{ counts[action] }}{% endif %}{% endfor %}
{% endif %}
{% if report %}
**Result:** {% if report.succeeded %}all {{ entries|length }} entries applied{% else %}{{ report.failures|length }} of {{ entries|length }} entries not applied{% endif %}{% if report.cancelled %} (cancelled){% endif %}

{% endif %}
---

## Change-Set

| # | | Address | Action | Provider |{% if report %} Status | Attempts |{% endif %}
|---|---|---------|--------|----------|{% if report %}--------|----------|{% endif %}
{% for e in entries %}| {{ loop.index }} | `{{ symbol[e.action.value] }}` | `{{ e.address }}` | {{ e.action.value }} | {{ e.provider }} |{% if report %} {{ e.status.value }} | {{ e.attempts }} |{% endif %}
{% endfor %}
{% if changed %}
---

## Attribute Changes
{% for e in changed %}
### {{ symbol[e.action.value] }} {{ e.address }}

| Attribute | Before | After |
|-----------|--------|-------|
{% for key, pair in e.changes.items() %}| `{{ key }}` | `{{ show(pair[0]) }}` | `{{ show(pair[1]) }}` |
{% endfor %}{% endfor %}
{% endif %}
{% if report and report.failures %}
---

## Failures

| Address | Status | Cause |
|---------|--------|-------|
{% for e in report.failures %}| `{{ e.address }}` | {{ e.status.value }} | {{ e.cause }} |
{% endfor %}
{% endif %}
{% if report and report.outputs %}
---

## Outputs

| Name | Value |
|------|-------|
{% for name, value in report.outputs.items() %}| `{{ name }}` | `{{ value }}` |
{% endfor %}
{% endif %}
---

## Dependency Graph

```mermaid
{{ mermaid }}
```
"""


def _show(value) -> str:
    if value is None:
        return "null"
    return str(render(value)).replace("|", "\\|")


def build_report(change_set: ChangeSet, source_path: str, report: Optional[ApplyReport] = None) -> str:
    env = Environment(autoescape=False)
    template = env.from_string(_TEMPLATE)

    return template.render(
        title="Apply Report" if report else "Plan",
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        change_set=change_set,
        counts=change_set.counts(),
        entries=change_set.entries,
        changed=[e for e in change_set if e.action in (Action.CREATE, Action.UPDATE, Action.DESTROY) and e.changes],
        report=report,
        symbol=_ACTION_SYMBOL,
        show=_show,
        mermaid=mermaid_for_change_set(change_set, applied=report is not None),
    )
