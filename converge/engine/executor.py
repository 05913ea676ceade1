"""
Apply executor: walks a change-set on a worker pool, honouring dependency
order, and commits state after every entry that succeeds.
"""
import dataclasses
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from converge.errors import ProviderError, ProviderPermanentError, ProviderTransientError
from converge.engine.retry import retrying
from converge.engine.values import ValueTable
from converge.models.change import Action, ChangeSet, ChangeSetEntry, EntryStatus
from converge.models.state import StateRecord, utc_timestamp
from converge.state.store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class ApplyReport:
    change_set: ChangeSet
    outputs: Dict[str, Any] = field(default_factory=dict)
    missing_outputs: Dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def failures(self) -> List[ChangeSetEntry]:
        return [e for e in self.change_set if e.status != EntryStatus.APPLIED]

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def counts(self) -> Dict[str, int]:
        return {s.value: sum(1 for e in self.change_set if e.status == s) for s in EntryStatus}

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "cancelled": self.cancelled,
            "status": self.counts(),
            "entries": [e.to_dict() for e in self.change_set],
            "failures": [{"address": e.address, "status": e.status.value, "cause": e.cause} for e in self.failures],
            "outputs": self.outputs,
        }


class Executor:
    def __init__(
        self,
        providers,
        store: StateStore,
        parallelism: int = 4,
        max_attempts: int = 5,
        backoff_multiplier: float = 0.5,
        backoff_max: float = 10.0,
        cancel_event: Optional[threading.Event] = None,
    ):
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.providers = providers
        self.store = store
        self.parallelism = parallelism
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self.cancel_event = cancel_event or threading.Event()
        self.values = ValueTable()

    # ------------------------------------------------------------ scheduling

    def apply(self, change_set: ChangeSet) -> ApplyReport:
        entries = {e.address: e for e in change_set}
        pending: List[ChangeSetEntry] = list(change_set)
        running: Dict[Future, ChangeSetEntry] = {}
        report = ApplyReport(change_set=change_set)

        logger.info("applying %d entries with parallelism %d", len(pending), self.parallelism)
        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix="converge") as pool:
            while pending or running:
                if self.cancel_event.is_set() and pending:
                    report.cancelled = True
                    for entry in pending:
                        self._finish(entry, EntryStatus.SKIPPED, "cancelled")
                    pending = []

                progressed = True
                while progressed and pending and len(running) < self.parallelism:
                    progressed = False
                    for entry in list(pending):
                        if len(running) >= self.parallelism:
                            break
                        blockers = [entries[d] for d in entry.depends_on if d in entries]
                        if any(not b.status.terminal for b in blockers):
                            continue
                        pending.remove(entry)
                        progressed = True
                        bad = next((b for b in blockers if b.status != EntryStatus.APPLIED), None)
                        if bad is not None:
                            self._finish(entry, EntryStatus.SKIPPED, f"dependency {bad.address} {bad.status.value}")
                        elif self._completes_inline(entry):
                            self._complete_inline(entry)
                        else:
                            entry.status = EntryStatus.IN_PROGRESS
                            entry.started_at = time.monotonic()
                            logger.debug("start %s %s", entry.action.value, entry.address)
                            running[pool.submit(self._run, entry)] = entry

                if not running:
                    if pending:
                        # every remaining entry waits on something outside the change-set
                        for entry in pending:
                            self._finish(entry, EntryStatus.SKIPPED, "dependency never scheduled")
                        pending = []
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    self._complete(running.pop(future), future)

        for entry in report.failures:
            logger.warning("%s %s: %s", entry.address, entry.status.value, entry.cause)
        return report

    def _completes_inline(self, entry: ChangeSetEntry) -> bool:
        if entry.action == Action.NOOP:
            if entry.attributes is None and entry.prior is not None:
                entry.attributes = dict(entry.prior.attributes)
            return True
        return entry.action == Action.READ and entry.attributes is not None

    def _complete_inline(self, entry: ChangeSetEntry) -> None:
        prior = entry.prior
        if entry.action == Action.NOOP and prior is not None and sorted(prior.dependencies) != entry.dependencies:
            # Edges changed without an attribute change; destroy ordering reads them from state.
            try:
                self.store.put(entry.address, dataclasses.replace(
                    prior, dependencies=list(entry.dependencies), updated_at=utc_timestamp(),
                ))
            except Exception as exc:
                logger.error("state write for %s failed: %s", entry.address, exc)
                self.cancel_event.set()
                self._finish(entry, EntryStatus.FAILED, f"state write failed: {exc}")
                return
            logger.debug("%s: recorded dependencies %s", entry.address, entry.dependencies)
        self._publish(entry, entry.attributes or {})
        self._finish(entry, EntryStatus.APPLIED)

    def _publish(self, entry: ChangeSetEntry, attributes: Dict[str, Any]) -> None:
        if entry.action != Action.DESTROY:
            self.values.publish(entry.address, attributes)

    def _finish(self, entry: ChangeSetEntry, status: EntryStatus, cause: Optional[str] = None) -> None:
        entry.status = status
        entry.cause = cause
        entry.finished_at = time.monotonic()
        logger.debug("%s %s", entry.address, status.value)

    def _complete(self, entry: ChangeSetEntry, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            self._finish(entry, EntryStatus.FAILED, _describe(exc, entry))
            return
        desired, attributes = future.result()
        try:
            self._commit(entry, desired, attributes)
        except Exception as exc:
            # The remote side changed but state did not; stop before more drift piles up.
            logger.error("state write for %s failed: %s", entry.address, exc)
            self.cancel_event.set()
            self._finish(entry, EntryStatus.FAILED, f"state write failed: {exc}")
            return
        self._publish(entry, attributes)
        self._finish(entry, EntryStatus.APPLIED)
        logger.info("%s: %s complete", entry.address, entry.action.value)

    def _commit(self, entry: ChangeSetEntry, desired: Dict[str, Any], attributes: Dict[str, Any]) -> None:
        if entry.action == Action.DESTROY:
            self.store.delete(entry.address)
        elif entry.action in (Action.CREATE, Action.UPDATE):
            self.store.put(entry.address, StateRecord(
                address=entry.address,
                resource_type=entry.resource_type,
                provider=entry.provider,
                resource_id=str(attributes["id"]),
                inputs=desired,
                attributes=attributes,
                dependencies=list(entry.dependencies),
            ))
        entry.attributes = attributes

    # ------------------------------------------------------------ workers

    def _run(self, entry: ChangeSetEntry) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        provider = self.providers.get(entry.provider)
        desired = self.values.resolve(entry.desired) if entry.action != Action.DESTROY else {}

        retryer = retrying(entry.address, self.max_attempts, self.backoff_multiplier, self.backoff_max)
        for attempt in retryer:
            with attempt:
                entry.attempts = attempt.retry_state.attempt_number
                attributes = self._call(provider, entry, desired)
        return desired, {**desired, **attributes}

    def _call(self, provider, entry: ChangeSetEntry, desired: Dict[str, Any]) -> Dict[str, Any]:
        if entry.action == Action.CREATE:
            attributes = provider.create(entry.resource_type, entry.address, desired)
        elif entry.action == Action.UPDATE:
            attributes = provider.update(entry.resource_type, entry.prior.resource_id, desired)
        elif entry.action == Action.DESTROY:
            provider.delete(entry.resource_type, entry.prior.resource_id)
            return {}
        elif entry.action == Action.READ:
            return provider.read_data(entry.resource_type, desired)
        else:
            raise ValueError(f"unexpected action {entry.action}")
        if not attributes or "id" not in attributes:
            raise ProviderPermanentError(f"provider {provider.name} returned no id for {entry.address}")
        return attributes


def _describe(exc: BaseException, entry: ChangeSetEntry) -> str:
    if isinstance(exc, ProviderTransientError):
        return f"gave up after {entry.attempts} attempts: {exc}"
    if isinstance(exc, ProviderError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}"
