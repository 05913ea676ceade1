"""
Report generator tests.
"""
import json

from converge.engine import Executor, build_graph, plan_changes
from converge.errors import ProviderPermanentError
from converge.reporters import html_reporter, json_reporter, markdown
from converge.state import MemoryStateStore

from conftest import make_registry


class TestReporters:
    def setup_method(self):
        self.registry = make_registry()
        self.store = MemoryStateStore()

    def _plan(self, config):
        self.graph = build_graph(config)
        return plan_changes(self.graph, self.store, self.registry)

    def _apply(self, config):
        change_set = self._plan(config)
        return Executor(self.registry, self.store, backoff_multiplier=0).apply(change_set)

    def test_markdown_plan(self, stack):
        content = markdown.build_report(self._plan(stack), "stack.tf")
        assert content.startswith("# Plan")
        assert "- **create**: 7" in content
        assert "`aws_acm_certificate_validation.cert`" in content
        assert "(known after apply)" in content
        assert "```mermaid" in content

    def test_markdown_apply_failures(self, stack):
        self.registry.get("aws").fail("create", "aws_lb.web", ProviderPermanentError("no capacity"))
        report = self._apply(stack)
        content = markdown.build_report(report.change_set, "stack.tf", report)
        assert content.startswith("# Apply Report")
        assert "## Failures" in content
        assert "no capacity" in content
        assert "dependency aws_lb.web failed" in content

    def test_markdown_no_changes(self, stack):
        self._apply(stack)
        content = markdown.build_report(self._plan(stack), "stack.tf")
        assert "No changes." in content

    def test_mermaid_for_graph(self, stack):
        chart = markdown.mermaid_for_graph(build_graph(stack))
        assert chart.startswith("flowchart LR")
        assert "subgraph aws" in chart
        assert "subgraph kubernetes" in chart
        assert "aws_acm_certificate_validation_cert --> aws_acm_certificate_cert" in chart
        assert 'data_aws_route53_zone_main[/"data.aws_route53_zone.main"/]' in chart

    def test_mermaid_for_change_set_styles(self, stack):
        chart = markdown.mermaid_for_change_set(self._plan(stack))
        assert "style aws_lb_web fill:#88cc00" in chart

    def test_json_plan(self, stack):
        doc = json.loads(json_reporter.build_report(self._plan(stack), "stack.tf"))
        assert doc["meta"]["source"] == "stack.tf"
        assert "apply" not in doc
        entries = {e["address"]: e for e in doc["plan"]["entries"]}
        arn = entries["aws_acm_certificate_validation.cert"]["changes"]["certificate_arn"]
        assert arn == {"before": None, "after": "(known after apply)"}

    def test_json_apply(self, stack):
        report = self._apply(stack)
        doc = json.loads(json_reporter.build_report(report.change_set, "stack.tf", report))
        assert doc["apply"]["succeeded"] is True
        assert doc["apply"]["status"]["applied"] == 8
        assert doc["apply"]["failures"] == []

    def test_html_escapes_values(self, stack):
        stack.node("aws_lb.web").attributes["name"] = "<script>alert(1)</script>"
        content = html_reporter.build_report(self._plan(stack), "stack.tf")
        assert "<!DOCTYPE html>" in content or "<html" in content
        assert "<script>alert(1)</script>" not in content
        assert "&lt;script&gt;" in content
