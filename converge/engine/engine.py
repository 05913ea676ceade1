import logging
import threading
from typing import Any, Callable, Mapping, Optional

from converge.config import ApplySettings
from converge.engine.executor import ApplyReport, Executor
from converge.engine.graph import ResourceGraph, build_graph
from converge.engine.planner import plan_changes
from converge.engine.values import UnknownValue
from converge.models.change import ChangeSet
from converge.models.node import Configuration
from converge.state.store import StateStore

logger = logging.getLogger(__name__)


class Engine:
    """Runs build -> plan -> apply against one state store, under its lock."""

    def __init__(
        self,
        providers,
        store: StateStore,
        settings: Optional[ApplySettings] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.providers = providers
        self.store = store
        self.settings = settings or ApplySettings()
        self.cancel_event = cancel_event or threading.Event()

    def _retry(self) -> dict:
        return {
            "max_attempts": self.settings.max_attempts,
            "backoff_multiplier": self.settings.backoff_multiplier,
            "backoff_max": self.settings.backoff_max,
        }

    def build(self, config: Configuration, variables: Optional[Mapping[str, Any]] = None) -> ResourceGraph:
        return build_graph(config, variables, computed=self.providers.computed_attributes)

    def plan(
        self,
        config: Configuration,
        variables: Optional[Mapping[str, Any]] = None,
        refresh: bool = True,
        destroy: bool = False,
    ) -> ChangeSet:
        graph = self.build(config, variables)
        with self.store.locked():
            return plan_changes(graph, self.store, self.providers, refresh=refresh, destroy=destroy, **self._retry())

    def apply(
        self,
        config: Configuration,
        variables: Optional[Mapping[str, Any]] = None,
        refresh: bool = True,
        destroy: bool = False,
        confirm: Optional[Callable[[ChangeSet], bool]] = None,
    ) -> Optional[ApplyReport]:
        """
        Plan and apply under one lock. `confirm` sees the change-set before
        anything is executed; returning False aborts and yields None.
        """
        graph = self.build(config, variables)
        with self.store.locked():
            change_set = plan_changes(graph, self.store, self.providers, refresh=refresh, destroy=destroy, **self._retry())
            if confirm is not None and not confirm(change_set):
                logger.info("apply aborted before execution")
                return None
            executor = Executor(
                self.providers,
                self.store,
                parallelism=self.settings.parallelism,
                max_attempts=self.settings.max_attempts,
                backoff_multiplier=self.settings.backoff_multiplier,
                backoff_max=self.settings.backoff_max,
                cancel_event=self.cancel_event,
            )
            report = executor.apply(change_set)
            if destroy:
                self.store.set_outputs({})
            else:
                for name, expr in sorted(graph.outputs.items()):
                    try:
                        report.outputs[name] = executor.values.resolve(expr)
                    except UnknownValue as exc:
                        report.missing_outputs[name] = str(exc)
                        logger.warning("output %s not available: %s", name, exc)
                self.store.set_outputs(report.outputs)
        return report

    def destroy(
        self,
        config: Configuration,
        variables: Optional[Mapping[str, Any]] = None,
        confirm: Optional[Callable[[ChangeSet], bool]] = None,
    ) -> Optional[ApplyReport]:
        return self.apply(config, variables, destroy=True, confirm=confirm)
