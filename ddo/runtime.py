from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from types import MappingProxyType
from typing import Any, Callable, Mapping


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class OpState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATES = frozenset({OpState.SUCCEEDED, OpState.FAILED, OpState.CANCELLED})

# PENDING -> FAILED is the failed-by-dependency path; CANCELLED is only
# reachable by operations that are not executing a provider call.
ALLOWED_TRANSITIONS: dict[OpState, frozenset[OpState]] = {
    OpState.PENDING: frozenset({OpState.RUNNING, OpState.FAILED, OpState.CANCELLED}),
    OpState.RUNNING: frozenset({OpState.SUCCEEDED, OpState.RETRYING, OpState.FAILED}),
    OpState.RETRYING: frozenset({OpState.RUNNING, OpState.FAILED, OpState.CANCELLED}),
}


class InvalidTransition(RuntimeError):
    pass


@dataclass
class OperationOutcome:
    op_id: str
    kind: str
    provider: str
    action: str
    state: OpState = OpState.PENDING
    attempts: int = 0
    error: str | None = None
    error_class: str | None = None  # transient|permanent|dependency|cancelled|unexpected
    blocked_by: str | None = None
    detail: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    @property
    def retried(self) -> bool:
        return self.attempts > 1

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        d["retried"] = self.retried
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> OperationOutcome:
        fields = {k: data.get(k) for k in cls.__dataclass_fields__}
        fields["state"] = OpState(data["state"])
        fields["attempts"] = int(data.get("attempts") or 0)
        return cls(**fields)


@dataclass
class RunResult:
    run_id: str
    project: str
    started_at: str
    finished_at: str
    outcomes: list[OperationOutcome] = field(default_factory=list)
    cancelled: bool = False
    cancel_reason: str | None = None

    def counts(self) -> dict[str, int]:
        out = {s.value: 0 for s in TERMINAL_STATES}
        for o in self.outcomes:
            out[o.state.value] = out.get(o.state.value, 0) + 1
        return out

    @property
    def succeeded(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes if o.state is OpState.SUCCEEDED]

    @property
    def failed(self) -> list[OperationOutcome]:
        return [o for o in self.outcomes if o.state is OpState.FAILED]

    @property
    def status(self) -> str:
        """succeeded (nothing left to do), partial (needs attention) or failed (nothing happened)."""
        if all(o.state is OpState.SUCCEEDED for o in self.outcomes):
            return "succeeded"
        if not self.succeeded:
            return "failed"
        return "partial"

    @property
    def exit_code(self) -> int:
        return {"succeeded": 0, "partial": 2, "failed": 1}[self.status]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "project": self.project,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "status": self.status,
            "cancelled": self.cancelled,
            "cancel_reason": self.cancel_reason,
            "counts": self.counts(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class ObservedState:
    """Per-provider snapshot of remote resources, captured once per run and read-only afterwards."""

    def __init__(self, snapshot: Mapping[str, Mapping[str, Mapping[str, Any]]]):
        frozen = {
            provider: MappingProxyType({key: copy.deepcopy(dict(params)) for key, params in resources.items()})
            for provider, resources in snapshot.items()
        }
        self._data = MappingProxyType(frozen)

    @classmethod
    def empty(cls) -> ObservedState:
        return cls({})

    def providers(self) -> list[str]:
        return list(self._data)

    def get(self, provider: str, key: str) -> dict[str, Any] | None:
        params = self._data.get(provider, {}).get(key)
        return copy.deepcopy(params) if params is not None else None

    def items(self, provider: str) -> list[tuple[str, dict[str, Any]]]:
        return [(k, copy.deepcopy(v)) for k, v in self._data.get(provider, {}).items()]

    def __len__(self) -> int:
        return sum(len(v) for v in self._data.values())


class RunState:
    """Thread-safe per-operation state for one run. Enforces the operation state machine."""

    def __init__(self, outcomes: list[OperationOutcome]) -> None:
        self.lock = Lock()
        self._outcomes: dict[str, OperationOutcome] = {o.op_id: o for o in outcomes}

    def state(self, op_id: str) -> OpState:
        with self.lock:
            return self._outcomes[op_id].state

    def transition(
        self,
        op_id: str,
        new: OpState,
        notify: Callable[[OpState, OperationOutcome], None] | None = None,
        **updates: Any,
    ) -> tuple[OpState, OperationOutcome]:
        """Move op_id to a new state. Returns (previous_state, copy of the updated outcome).

        ``notify`` runs before the lock is released, so no reader can act on
        the new state before it has been reported.
        """
        with self.lock:
            outcome = self._outcomes[op_id]
            prev = outcome.state
            if new not in ALLOWED_TRANSITIONS.get(prev, frozenset()):
                raise InvalidTransition(f"{op_id}: {prev.value} -> {new.value}")
            outcome.state = new
            for k, v in updates.items():
                setattr(outcome, k, v)
            if new is OpState.RUNNING:
                outcome.attempts += 1
                if outcome.started_at is None:
                    outcome.started_at = utc_now()
            if new in TERMINAL_STATES:
                outcome.finished_at = utc_now()
            updated = copy.copy(outcome)
            if notify is not None:
                notify(prev, updated)
            return prev, updated

    def snapshot(self) -> list[OperationOutcome]:
        with self.lock:
            return [copy.copy(o) for o in self._outcomes.values()]
