"""
Interactive HTML + Mermaid change-set report generator.
"""
from datetime import datetime, timezone
from typing import Optional

from jinja2 import Environment

from converge import __version__
from converge.engine.executor import ApplyReport
from converge.models.change import ChangeSet
from converge.models.node import render
from converge.reporters import markdown

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ title }} - converge</title>
    <script src="https://cdn.jsdelivr.net/npm/mermaid/dist/mermaid.min.js"></script>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, sans-serif; line-height: 1.6; color: #333; max-width: 1200px; margin: 0 auto; padding: 2rem; background: #f9f9f9; }
        header { border-bottom: 2px solid #ddd; margin-bottom: 2rem; padding-bottom: 1rem; }
        h1 { color: #1565c0; margin-bottom: 0; }
        .meta { color: #666; font-size: 0.9rem; margin-bottom: 2rem; }
        .summary-cards { display: grid; grid-template-columns: repeat(auto-fit, minmax(150px, 1fr)); gap: 1rem; margin-bottom: 2rem; }
        .card { background: white; padding: 1rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); text-align: center; border-left: 5px solid #ddd; }
        .card.create { border-left-color: #4caf50; }
        .card.update { border-left-color: #ffc107; }
        .card.destroy { border-left-color: #f44336; }
        .card.read { border-left-color: #2196f3; }
        .card-num { font-size: 2rem; font-weight: bold; margin-bottom: 0.2rem; }
        .card-label { color: #666; font-size: 0.8rem; text-transform: uppercase; }
        .mermaid-container { background: white; padding: 2rem; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); margin-bottom: 2rem; overflow-x: auto; }
        .entry-table { width: 100%; border-collapse: collapse; background: white; border-radius: 8px; overflow: hidden; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }
        .entry-table th, .entry-table td { padding: 1rem; text-align: left; border-bottom: 1px solid #eee; vertical-align: top; }
        .entry-table th { background: #f5f5f5; font-weight: 600; }
        .action { font-weight: bold; padding: 0.2rem 0.5rem; border-radius: 4px; font-size: 0.8rem; }
        .act-create { background: #e8f5e9; color: #2e7d32; }
        .act-update { background: #fffde7; color: #f9a825; }
        .act-destroy { background: #ffebee; color: #c62828; }
        .act-read { background: #e3f2fd; color: #1565c0; }
        .status-failed { color: #c62828; font-weight: bold; }
        .status-skipped { color: #999; }
        .changes { background: #f5f5f5; font-family: monospace; padding: 0.5rem 1rem; border-radius: 4px; border-left: 3px solid #ddd; white-space: pre-wrap; margin-top: 0.5rem; font-size: 0.85rem; }
        footer { margin-top: 4rem; text-align: center; color: #999; font-size: 0.8rem; }
    </style>
</head>
<body>
    <header>
        <h1>{{ title }}</h1>
        <div class="meta">Generated: {{ generated }} | Source: {{ source }} | converge v{{ version }}</div>
    </header>

    <div class="summary-cards">
        <div class="card create"><div class="card-num">{{ counts["create"] }}</div><div class="card-label">create</div></div>
        <div class="card update"><div class="card-num">{{ counts["update"] }}</div><div class="card-label">update</div></div>
        <div class="card destroy"><div class="card-num">{{ counts["destroy"] }}</div><div class="card-label">destroy</div></div>
        <div class="card read"><div class="card-num">{{ counts["read"] }}</div><div class="card-label">read</div></div>
    </div>

    <h2>Dependency Graph</h2>
    <div class="mermaid-container">
        <div class="mermaid">
{{ mermaid }}
        </div>
    </div>

    <h2>Change-Set</h2>
    <table class="entry-table">
        <thead>
            <tr>
                <th>#</th>
                <th>Action</th>
                <th>Address</th>
                <th>Depends on</th>
                {% if report %}<th>Status</th>{% endif %}
            </tr>
        </thead>
        <tbody>
            {% for e in entries %}
            <tr>
                <td>{{ loop.index }}</td>
                <td><span class="action act-{{ e.action.value }}">{{ e.action.value }}</span></td>
                <td>
                    <strong>{{ e.address }}</strong>
                    {% if e.changes %}
                    <div class="changes">{% for key, pair in e.changes.items() %}{{ key }}: {{ show(pair[0]) }} => {{ show(pair[1]) }}
{% endfor %}</div>
                    {% endif %}
                </td>
                <td>{{ e.depends_on|join(", ") }}</td>
                {% if report %}<td class="status-{{ e.status.value }}">{{ e.status.value }}{% if e.cause %}<div style="font-size: 0.85rem;">{{ e.cause }}</div>{% endif %}</td>{% endif %}
            </tr>
            {% endfor %}
        </tbody>
    </table>

    <footer>
        converge: declarative reconciliation engine
    </footer>

    <script>
        mermaid.initialize({ startOnLoad: true, theme: 'neutral', securityLevel: 'strict' });
    </script>
</body>
</html>
"""


def _show(value) -> str:
    return "null" if value is None else str(render(value))


def build_report(change_set: ChangeSet, source_path: str, report: Optional[ApplyReport] = None) -> str:
    env = Environment(autoescape=True)
    template = env.from_string(_HTML_TEMPLATE)

    return template.render(
        title="Apply Report" if report else "Plan",
        generated=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M UTC"),
        source=source_path,
        version=__version__,
        counts=change_set.counts(),
        entries=change_set.entries,
        report=report,
        show=_show,
        mermaid=markdown.mermaid_for_change_set(change_set, applied=report is not None),
    )
