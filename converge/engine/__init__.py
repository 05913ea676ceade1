"""Plan and apply engine."""

from converge.engine.engine import Engine
from converge.engine.executor import ApplyReport, Executor
from converge.engine.graph import ResourceGraph, build_graph
from converge.engine.planner import plan_changes

__all__ = ["ApplyReport", "Engine", "Executor", "ResourceGraph", "build_graph", "plan_changes"]
