"""
Diff/plan engine: compares the desired graph with the state store and
produces a topologically ordered change-set.
"""
import dataclasses
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from converge.engine.graph import ResourceGraph, topological_order
from converge.engine.retry import retrying
from converge.engine.values import UNKNOWN, ValueTable, contains_unknown
from converge.models.change import Action, ChangeSet, ChangeSetEntry
from converge.models.node import DATA
from converge.models.state import StateRecord
from converge.state.store import StateStore

logger = logging.getLogger(__name__)


def diff_inputs(before: Dict[str, Any], after: Dict[str, Any]) -> Dict[str, Tuple[Any, Any]]:
    """Field-level differences; unknown values always count as a change."""
    changes = {}
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if contains_unknown(new) or old != new:
            changes[key] = (old, new)
    return changes


def _refresh(records: Dict[str, StateRecord], providers, retry: Dict[str, Any]) -> Tuple[Dict[str, StateRecord], Set[str]]:
    """
    Read every record's remote object. Returns refreshed records and the
    addresses whose remote object no longer exists.
    """
    refreshed: Dict[str, StateRecord] = {}
    vanished: Set[str] = set()
    for addr, record in records.items():
        provider = providers.get(record.provider)
        remote = retrying(f"refresh {addr}", **retry)(provider.read, record.resource_type, record.resource_id)
        if remote is None:
            logger.info("%s no longer exists remotely", addr)
            vanished.add(addr)
            refreshed[addr] = record
            continue
        # Declared inputs are compared against what the remote side reports now.
        current = {k: remote.get(k, v) for k, v in record.inputs.items()}
        if current != record.inputs:
            logger.info("%s drifted from its last applied configuration", addr)
        refreshed[addr] = dataclasses.replace(record, inputs=current, attributes=dict(remote))
    return refreshed, vanished


def plan_changes(
    graph: ResourceGraph,
    store: StateStore,
    providers=None,
    refresh: bool = True,
    destroy: bool = False,
    max_attempts: int = 1,
    backoff_multiplier: float = 0.5,
    backoff_max: float = 10.0,
) -> ChangeSet:
    retry = {"max_attempts": max_attempts, "backoff_multiplier": backoff_multiplier, "backoff_max": backoff_max}
    records = {r.address: r for r in store.list()}
    vanished: Set[str] = set()
    if refresh and providers is not None and records:
        records, vanished = _refresh(records, providers, retry)

    planned = ValueTable()
    entries: Dict[str, ChangeSetEntry] = {}

    if not destroy:
        for addr in graph.order():
            node = graph.nodes[addr]
            desired = planned.resolve(node.attributes, strict=False)
            entry = ChangeSetEntry(
                address=addr,
                action=Action.NOOP,
                resource_type=node.resource_type,
                provider=node.provider,
                mode=node.mode,
                desired=node.attributes,
                depends_on=sorted(graph.dependencies_of(addr)),
                dependencies=sorted(graph.dependencies_of(addr)),
            )
            entries[addr] = entry

            if node.mode == DATA:
                entry.action = Action.READ
                if providers is not None and not contains_unknown(desired):
                    provider = providers.get(node.provider)
                    entry.attributes = retrying(f"read {addr}", **retry)(provider.read_data, node.resource_type, desired)
                    planned.publish(addr, {**desired, **entry.attributes})
                continue

            prior = records.get(addr)
            entry.prior = prior
            if prior is None or addr in vanished:
                entry.action = Action.CREATE
                entry.changes = {k: (None, v) for k, v in sorted(desired.items())}
                planned.publish(addr, {k: v for k, v in desired.items() if v is not UNKNOWN})
                continue

            entry.changes = diff_inputs(prior.inputs, desired)
            if entry.changes:
                entry.action = Action.UPDATE
                # computed attributes may change with the update, so only the id stays known
                planned.publish(addr, {"id": prior.resource_id, **{k: v for k, v in desired.items() if v is not UNKNOWN}})
            else:
                entry.attributes = dict(prior.attributes)
                planned.publish(addr, prior.attributes)

    doomed = [r for a, r in records.items() if destroy or a not in graph]
    for record in doomed:
        entries[record.address] = ChangeSetEntry(
            address=record.address,
            action=Action.DESTROY,
            resource_type=record.resource_type,
            provider=record.provider,
            prior=record,
            changes={k: (v, None) for k, v in sorted(record.inputs.items())},
            dependencies=sorted(record.dependencies),
        )

    _order_destroys(entries, records)
    return _sorted_change_set(entries, graph)


def _order_destroys(entries: Dict[str, ChangeSetEntry], records: Dict[str, StateRecord]) -> None:
    """
    A destroy waits for everything that depended on the doomed node: the
    destroys of its dependents and the updates that drop their reference to it.
    """
    for addr, entry in entries.items():
        if entry.action != Action.DESTROY:
            continue
        waits_for = set()
        for other_addr, other in entries.items():
            if other_addr == addr:
                continue
            prior_deps = set(other.prior.dependencies) if other.prior else set()
            if other.action == Action.DESTROY and addr in other.dependencies:
                waits_for.add(other_addr)
            elif other.action in (Action.UPDATE, Action.NOOP) and addr in prior_deps:
                waits_for.add(other_addr)
        entry.depends_on = sorted(waits_for)


def _sorted_change_set(entries: Dict[str, ChangeSetEntry], graph: ResourceGraph) -> ChangeSet:
    position = {addr: i for i, addr in enumerate(graph.order())}
    rank = {
        addr: (1, addr) if e.action == Action.DESTROY else (0, f"{position.get(addr, 0):08d}")
        for addr, e in entries.items()
    }
    order = topological_order({a: set(e.depends_on) for a, e in entries.items()}, rank)
    change_set = ChangeSet(entries=[entries[a] for a in order])
    logger.info("plan: %s", ", ".join(f"{n} to {a}" for a, n in change_set.counts().items() if n))
    return change_set
