"""
End-to-end CLI tests against the sandbox provider in a temporary directory.
"""
import json
import os
import shutil
import subprocess
import sys

import pytest
from click.testing import CliRunner

from converge.cli import EXIT_FAILED, EXIT_INVALID, EXIT_LOCKED, EXIT_OK, cli

FIXTURES = os.path.join(os.path.dirname(__file__), "fixtures")


def test_module_execution():
    """Test that 'python -m converge' works."""
    result = subprocess.run(
        [sys.executable, "-m", "converge", "--help"],
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0
    assert "converge" in result.stdout


class TestCli:
    @pytest.fixture(autouse=True)
    def workspace(self, tmp_path, monkeypatch):
        shutil.copy(os.path.join(FIXTURES, "stack.tf"), tmp_path / "stack.tf")
        shutil.copy(os.path.join(FIXTURES, "converge.yaml"), tmp_path / "converge.yaml")
        monkeypatch.chdir(tmp_path)
        self.tmp_path = tmp_path
        self.runner = CliRunner()

    def invoke(self, *args, **kwargs):
        return self.runner.invoke(cli, ["--no-color", *args], obj={}, **kwargs)

    def test_plan_on_empty_state(self):
        result = self.invoke("plan")
        assert result.exit_code == EXIT_OK, result.output
        assert "7 to create" in result.output
        assert "1 to read" in result.output

    def test_apply_then_plan_shows_no_changes(self):
        result = self.invoke("apply", "--auto-approve")
        assert result.exit_code == EXIT_OK, result.output
        assert os.path.exists(self.tmp_path / ".converge" / "state.json")
        assert os.path.isdir(self.tmp_path / ".converge" / "sandbox" / "aws" / "aws_lb")

        result = self.invoke("plan")
        assert result.exit_code == EXIT_OK, result.output
        assert "No changes." in result.output

    def test_apply_requires_confirmation(self):
        result = self.invoke("apply", input="n\n")
        assert result.exit_code == EXIT_FAILED
        assert "nothing was applied" in result.output
        assert not os.path.exists(self.tmp_path / ".converge" / "state.json")

    def test_apply_confirmed_interactively(self):
        result = self.invoke("apply", input="y\n")
        assert result.exit_code == EXIT_OK, result.output

    def test_outputs(self):
        self.invoke("apply", "--auto-approve")

        result = self.runner.invoke(cli, ["output", "load_balancer_hostname"], obj={})
        assert result.exit_code == EXIT_OK
        assert "web-1234.us-east-1.elb.amazonaws.com" in result.output

        result = self.runner.invoke(cli, ["output", "missing"], obj={})
        assert result.exit_code == EXIT_FAILED

    def test_variable_override(self):
        result = self.invoke("apply", "--auto-approve", "--var", "domain=shop.example.com")
        assert result.exit_code == EXIT_OK, result.output
        result = self.runner.invoke(cli, ["output", "app_url"], obj={})
        assert "https://shop.example.com" in result.output

    def test_variable_file(self):
        (self.tmp_path / "prod.yaml").write_text("domain: prod.example.com\n")
        result = self.invoke("apply", "--auto-approve", "--var-file", "prod.yaml")
        assert result.exit_code == EXIT_OK, result.output
        result = self.runner.invoke(cli, ["output", "app_url"], obj={})
        assert "https://prod.example.com" in result.output

    def test_undeclared_variable(self):
        result = self.invoke("plan", "--var", "region=eu-west-1")
        assert result.exit_code == EXIT_INVALID

    def test_state_commands(self):
        self.invoke("apply", "--auto-approve")

        result = self.runner.invoke(cli, ["state", "list"], obj={})
        assert result.exit_code == EXIT_OK
        addresses = result.output.split()
        assert "aws_lb.web" in addresses
        assert "data.aws_route53_zone.main" not in addresses

        result = self.runner.invoke(cli, ["state", "show", "aws_lb.web"], obj={})
        assert result.exit_code == EXIT_OK
        assert '"resource_type": "aws_lb"' in result.output

        result = self.runner.invoke(cli, ["state", "show", "aws_lb.nope"], obj={})
        assert result.exit_code == EXIT_FAILED

    def test_destroy(self):
        self.invoke("apply", "--auto-approve")
        result = self.invoke("destroy", "--auto-approve")
        assert result.exit_code == EXIT_OK, result.output

        result = self.runner.invoke(cli, ["state", "list"], obj={})
        assert result.output.strip() == ""
        assert os.listdir(self.tmp_path / ".converge" / "sandbox" / "aws" / "aws_lb") == []

    def test_removed_declaration_is_destroyed(self):
        self.invoke("apply", "--auto-approve")
        text = (self.tmp_path / "stack.tf").read_text()
        start = text.index('resource "kubernetes_deployment" "app"')
        end = text.index('resource "aws_route53_record" "app"')
        (self.tmp_path / "stack.tf").write_text(text[:start] + text[end:])

        result = self.invoke("plan")
        assert "1 to destroy" in result.output

    def test_cycle_exits_invalid(self):
        (self.tmp_path / "stack.tf").write_text(
            'resource "aws_a" "one" {\n  ref = aws_b.two.id\n}\n'
            'resource "aws_b" "two" {\n  ref = aws_a.one.id\n}\n'
        )
        result = self.invoke("plan")
        assert result.exit_code == EXIT_INVALID
        assert "cycle" in result.output

    def test_unresolved_reference_exits_invalid(self):
        (self.tmp_path / "stack.tf").write_text('resource "aws_a" "one" {\n  ref = aws_b.two.id\n}\n')
        result = self.invoke("apply", "--auto-approve")
        assert result.exit_code == EXIT_INVALID
        assert not os.path.exists(self.tmp_path / ".converge" / "sandbox")

    def test_locked_state_exits_conflict(self):
        os.makedirs(self.tmp_path / ".converge")
        (self.tmp_path / ".converge" / "state.json.lock").write_text(
            json.dumps({"id": "x", "owner": "someone@elsewhere", "created": "2026-01-01T00:00:00Z"})
        )
        result = self.invoke("plan")
        assert result.exit_code == EXIT_LOCKED
        assert "someone@elsewhere" in result.output

        result = self.runner.invoke(cli, ["force-unlock"], obj={})
        assert result.exit_code == EXIT_OK
        assert self.invoke("plan").exit_code == EXIT_OK

    def test_provider_error_exits_failed(self):
        (self.tmp_path / "extra.tf").write_text('data "aws_ami" "base" {\n  name = "ubuntu"\n}\n')
        result = self.invoke("plan")
        assert result.exit_code == EXIT_FAILED
        assert "aws_ami" in result.output

    def test_json_report(self):
        result = self.invoke("plan", "--format", "json", "-o", "plan.json")
        assert result.exit_code == EXIT_OK, result.output
        with open(self.tmp_path / "plan.json", encoding="utf-8") as fh:
            doc = json.load(fh)
        assert doc["plan"]["summary"]["create"] == 7
        assert doc["meta"]["tool"] == "converge"

    def test_markdown_report_encoding_and_newline(self):
        result = self.invoke("apply", "--auto-approve", "--format", "markdown", "--output", "report.md")
        assert result.exit_code == EXIT_OK, result.output

        with open(self.tmp_path / "report.md", "rb") as f:
            content = f.read()
        assert b"\r\n" not in content
        assert b"# Apply Report" in content
        content.decode("utf-8")

    def test_graph(self):
        result = self.runner.invoke(cli, ["graph"], obj={})
        assert result.exit_code == EXIT_OK, result.output
        assert "flowchart LR" in result.output
        assert "aws_route53_record_app --> aws_lb_web" in result.output

    def test_bad_settings_file(self):
        (self.tmp_path / "converge.yaml").write_text("apply:\n  parallelism: lots\n")
        result = self.invoke("plan")
        assert result.exit_code == EXIT_INVALID
