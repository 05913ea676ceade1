"""
JSON change-set report generator.
"""
import json
from datetime import datetime, timezone
from typing import Optional

from converge import __version__
from converge.engine.executor import ApplyReport
from converge.engine.values import UNKNOWN
from converge.models.change import ChangeSet


def _default(value):
    if value is UNKNOWN:
        return "(known after apply)"
    return str(value)


def build_report(change_set: ChangeSet, source_path: str, report: Optional[ApplyReport] = None) -> str:
    doc = {
        "meta": {
            "generated": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            "source": source_path,
            "tool": "converge",
            "version": __version__,
        },
        "plan": change_set.to_dict(),
    }
    if report is not None:
        doc["apply"] = report.to_dict()
    return json.dumps(doc, indent=2, default=_default)
