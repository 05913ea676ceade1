"""
Apply executor and engine tests, run against the in-memory provider.
"""
import threading

import pytest

from converge.config import ApplySettings
from converge.engine import Engine, Executor, build_graph, plan_changes
from converge.errors import PlanConflict, ProviderPermanentError, ProviderTransientError
from converge.models.change import Action, EntryStatus
from converge.models.node import Configuration, Ref, ResourceNode
from converge.providers import MemoryProvider, ProviderRegistry
from converge.state import MemoryStateStore

from conftest import make_registry


def _executor(registry, store, **kwargs):
    kwargs.setdefault("backoff_multiplier", 0)
    return Executor(registry, store, **kwargs)


def _chain(*names):
    """aws_x.<name> nodes where each one references the previous one's id."""
    nodes, previous = [], None
    for name in names:
        attributes = {"name": name}
        if previous:
            attributes["parent"] = Ref(previous, "id")
        node = ResourceNode("aws_x", name, "aws", attributes)
        nodes.append(node)
        previous = node.address
    return Configuration(nodes=nodes)


class _ConcurrencyCounter(MemoryProvider):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.active = 0
        self.peak = 0
        self._count_lock = threading.Lock()

    def create(self, resource_type, address, desired):
        with self._count_lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            return super().create(resource_type, address, desired)
        finally:
            with self._count_lock:
                self.active -= 1


class _CancelOnCreate(MemoryProvider):
    def __init__(self, event, **kwargs):
        super().__init__(**kwargs)
        self.event = event

    def create(self, resource_type, address, desired):
        self.event.set()
        return super().create(resource_type, address, desired)


class _FailingStore(MemoryStateStore):
    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on

    def put(self, address, record):
        if address == self.fail_on:
            raise OSError("disk full")
        super().put(address, record)


class TestExecutor:
    def setup_method(self):
        self.registry = make_registry(latency=0.01)
        self.store = MemoryStateStore()

    def _plan(self, config):
        return plan_changes(build_graph(config), self.store, self.registry)

    def test_stack_applies_in_dependency_order(self, stack):
        change_set = self._plan(stack)
        report = _executor(self.registry, self.store).apply(change_set)
        assert report.succeeded, report.failures

        for entry in change_set:
            if entry.started_at is None:
                continue
            for dep in entry.depends_on:
                upstream = change_set.get(dep)
                assert upstream.finished_at <= entry.started_at, f"{entry.address} started before {dep}"

    def test_state_holds_resolved_values(self, stack):
        _executor(self.registry, self.store).apply(self._plan(stack))
        cert = self.store.get("aws_acm_certificate.cert")
        validation = self.store.get("aws_acm_certificate_validation.cert")
        assert validation.inputs["certificate_arn"] == cert.attributes["arn"]
        assert validation.inputs["validation_record_fqdns"] == ["_acme.app.example.com"]
        assert "aws_route53_record.cert_validation" in validation.dependencies

        record = self.store.get("aws_route53_record.app")
        assert record.inputs["zone_id"] == "Z-example.com"
        assert record.inputs["records"] == ["web-1234.us-east-1.elb.amazonaws.com"]
        assert self.store.get("data.aws_route53_zone.main") is None

    def test_parallelism_bound(self):
        counter = _ConcurrencyCounter(name="aws", latency=0.02)
        registry = ProviderRegistry({"aws": counter})
        config = Configuration(nodes=[ResourceNode("aws_x", f"n{i}", "aws", {"i": i}) for i in range(6)])
        change_set = plan_changes(build_graph(config), self.store, registry)
        report = _executor(registry, self.store, parallelism=2).apply(change_set)
        assert report.succeeded
        assert 1 <= counter.peak <= 2

    def test_failure_skips_dependents(self, stack):
        aws = self.registry.get("aws")
        aws.fail("create", "aws_acm_certificate.cert", ProviderPermanentError("quota exceeded"))

        change_set = self._plan(stack)
        report = _executor(self.registry, self.store).apply(change_set)
        assert not report.succeeded

        cert = change_set.get("aws_acm_certificate.cert")
        assert cert.status == EntryStatus.FAILED
        assert cert.cause == "quota exceeded"
        assert cert.attempts == 1
        for address in ("aws_route53_record.cert_validation",
                        "aws_acm_certificate_validation.cert",
                        "aws_route53_record.app"):
            assert change_set.get(address).status == EntryStatus.SKIPPED
        assert change_set.get("aws_route53_record.cert_validation").cause.startswith(
            "dependency aws_acm_certificate.cert"
        )
        # independent branches still converge
        assert change_set.get("aws_lb.web").status == EntryStatus.APPLIED
        assert change_set.get("kubernetes_deployment.app").status == EntryStatus.APPLIED
        assert self.store.get("aws_lb.web") is not None
        assert self.store.get("aws_acm_certificate.cert") is None

    def test_transient_errors_are_retried(self):
        aws = self.registry.get("aws")
        aws.fail("create", "aws_x.a", ProviderTransientError("throttled"), ProviderTransientError("throttled"))

        change_set = self._plan(_chain("a", "b"))
        report = _executor(self.registry, self.store).apply(change_set)
        assert report.succeeded
        assert change_set.get("aws_x.a").attempts == 3
        assert change_set.get("aws_x.b").attempts == 1
        assert aws.calls.count(("create", "aws_x.a")) == 3
        assert len(aws.objects) == 2

    def test_retries_give_up(self):
        aws = self.registry.get("aws")
        aws.fail("create", "aws_x.a", *[ProviderTransientError("timeout")] * 3)

        change_set = self._plan(_chain("a", "b"))
        report = _executor(self.registry, self.store, max_attempts=2).apply(change_set)
        entry = change_set.get("aws_x.a")
        assert entry.status == EntryStatus.FAILED
        assert entry.cause == "gave up after 2 attempts: timeout"
        assert change_set.get("aws_x.b").status == EntryStatus.SKIPPED
        assert [e.address for e in report.failures] == ["aws_x.a", "aws_x.b"]

    def test_permanent_errors_are_not_retried(self):
        aws = self.registry.get("aws")
        aws.fail("create", "aws_x.a", ProviderPermanentError("invalid name"))
        change_set = self._plan(_chain("a"))
        _executor(self.registry, self.store).apply(change_set)
        assert change_set.get("aws_x.a").attempts == 1
        assert aws.calls.count(("create", "aws_x.a")) == 1

    def test_cancel_before_start(self):
        event = threading.Event()
        event.set()
        change_set = self._plan(_chain("a", "b"))
        report = _executor(self.registry, self.store, cancel_event=event).apply(change_set)
        assert report.cancelled
        assert all(e.status == EntryStatus.SKIPPED and e.cause == "cancelled" for e in change_set)
        assert self.registry.get("aws").calls == []

    def test_cancel_lets_in_flight_work_finish(self):
        event = threading.Event()
        registry = ProviderRegistry({"aws": _CancelOnCreate(event, name="aws")})
        change_set = plan_changes(build_graph(_chain("a", "b")), self.store, registry)
        report = _executor(registry, self.store, parallelism=1, cancel_event=event).apply(change_set)
        assert report.cancelled
        assert change_set.get("aws_x.a").status == EntryStatus.APPLIED
        assert change_set.get("aws_x.b").status == EntryStatus.SKIPPED
        assert self.store.get("aws_x.a") is not None

    def test_state_write_failure_stops_the_run(self):
        store = _FailingStore(fail_on="aws_x.a")
        change_set = plan_changes(build_graph(_chain("a", "b")), store, self.registry)
        report = _executor(self.registry, store).apply(change_set)
        entry = change_set.get("aws_x.a")
        assert entry.status == EntryStatus.FAILED
        assert entry.cause.startswith("state write failed")
        assert change_set.get("aws_x.b").status == EntryStatus.SKIPPED
        assert report.cancelled

    def test_destroy_runs_dependents_first(self, stack):
        graph = build_graph(stack)
        _executor(self.registry, self.store).apply(plan_changes(graph, self.store, self.registry))

        change_set = plan_changes(graph, self.store, self.registry, destroy=True)
        report = _executor(self.registry, self.store).apply(change_set)
        assert report.succeeded
        assert self.store.list() == []
        assert self.registry.get("aws").objects == {}

        app = change_set.get("aws_route53_record.app")
        lb = change_set.get("aws_lb.web")
        assert app.finished_at <= lb.started_at

    def test_no_op_entries_do_not_call_providers(self, stack):
        graph = build_graph(stack)
        _executor(self.registry, self.store).apply(plan_changes(graph, self.store, self.registry))
        aws = self.registry.get("aws")
        aws.calls.clear()

        change_set = plan_changes(graph, self.store, self.registry, refresh=False)
        report = _executor(self.registry, self.store).apply(change_set)
        assert report.succeeded
        assert aws.calls == []
        assert all(e.action in (Action.NOOP, Action.READ) for e in change_set)

    def test_invalid_parallelism(self):
        with pytest.raises(ValueError):
            Executor(self.registry, self.store, parallelism=0)


class TestEngine:
    def setup_method(self):
        self.registry = make_registry()
        self.store = MemoryStateStore()
        self.engine = Engine(self.registry, self.store, ApplySettings(backoff_multiplier=0))

    def test_apply_records_outputs(self, stack):
        report = self.engine.apply(stack)
        assert report.succeeded
        assert report.outputs == {
            "app_url": "https://app.example.com",
            "load_balancer_hostname": "web-1234.us-east-1.elb.amazonaws.com",
        }
        assert self.store.get_outputs() == report.outputs

    def test_variables_flow_into_apply(self, stack):
        self.engine.apply(stack, {"domain": "shop.example.com"})
        assert self.store.get("aws_acm_certificate.cert").inputs["domain_name"] == "shop.example.com"
        assert self.store.get_outputs()["app_url"] == "https://shop.example.com"

    def test_apply_is_idempotent(self, stack):
        self.engine.apply(stack)
        assert not self.engine.plan(stack).has_changes

    def test_missing_output_reported(self, stack):
        self.registry.get("aws").fail("create", "aws_lb.web", ProviderPermanentError("no capacity"))
        report = self.engine.apply(stack)
        assert not report.succeeded
        assert "load_balancer_hostname" in report.missing_outputs
        assert "load_balancer_hostname" not in self.store.get_outputs()

    def test_confirm_can_abort(self, stack):
        seen = []

        def confirm(change_set):
            seen.append(change_set)
            return False

        assert self.engine.apply(stack, confirm=confirm) is None
        assert seen and seen[0].has_changes
        assert self.store.list() == []

    def test_destroy(self, stack):
        self.engine.apply(stack)
        report = self.engine.destroy(stack)
        assert report.succeeded
        assert self.store.list() == []
        assert self.store.get_outputs() == {}

    def test_plan_refuses_locked_state(self, stack):
        self.store.lock()
        try:
            with pytest.raises(PlanConflict):
                self.engine.plan(stack)
        finally:
            self.store.unlock()

    def test_template_stack_converges(self, template_stack):
        report = self.engine.apply(template_stack)
        assert report.succeeded, report.failures
        lb = self.store.get("AWS::ElasticLoadBalancingV2::LoadBalancer.LoadBalancer")
        record = self.store.get("AWS::Route53::RecordSet.AppRecord")
        assert record.inputs["Comment"] == f"alias for {lb.resource_id} in ${{AWS::Region}}"
        assert not self.engine.plan(template_stack).has_changes
