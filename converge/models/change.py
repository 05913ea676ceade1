from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from converge.models.node import MANAGED, render
from converge.models.state import StateRecord


class Action(str, Enum):
    CREATE  = "create"
    UPDATE  = "update"
    DESTROY = "destroy"
    NOOP    = "no-op"
    READ    = "read"


class EntryStatus(str, Enum):
    PENDING     = "pending"
    IN_PROGRESS = "in-progress"
    APPLIED     = "applied"
    FAILED      = "failed"
    SKIPPED     = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (EntryStatus.APPLIED, EntryStatus.FAILED, EntryStatus.SKIPPED)


CHANGING_ACTIONS = (Action.CREATE, Action.UPDATE, Action.DESTROY)


@dataclass
class ChangeSetEntry:
    address: str
    action: Action
    resource_type: str
    provider: str
    mode: str = MANAGED
    desired: Dict[str, Any] = field(default_factory=dict)
    prior: Optional[StateRecord] = None
    changes: Dict[str, Tuple[Any, Any]] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)  # node edges, persisted with the record
    status: EntryStatus = EntryStatus.PENDING
    cause: Optional[str] = None
    attempts: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    attributes: Optional[Dict[str, Any]] = None  # values known after this entry (or read at plan time)

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "action": self.action.value,
            "resource_type": self.resource_type,
            "provider": self.provider,
            "mode": self.mode,
            "depends_on": list(self.depends_on),
            "changes": {
                k: {"before": render(before), "after": render(after)}
                for k, (before, after) in self.changes.items()
            },
            "status": self.status.value,
            "cause": self.cause,
            "attempts": self.attempts,
        }


@dataclass
class ChangeSet:
    entries: List[ChangeSetEntry] = field(default_factory=list)

    def __iter__(self) -> Iterator[ChangeSetEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def get(self, address: str) -> Optional[ChangeSetEntry]:
        return next((e for e in self.entries if e.address == address), None)

    def addresses(self, action: Optional[Action] = None) -> List[str]:
        return [e.address for e in self.entries if action is None or e.action == action]

    def counts(self) -> Dict[str, int]:
        return {a.value: sum(1 for e in self.entries if e.action == a) for a in Action}

    @property
    def has_changes(self) -> bool:
        return any(e.action in CHANGING_ACTIONS for e in self.entries)

    def to_dict(self) -> dict:
        return {
            "summary": self.counts(),
            "entries": [e.to_dict() for e in self.entries],
        }
