"""Execution reporter: progress events, plan and run summaries.

The reporter only observes. Nothing it does (or fails to do) feeds back
into orchestration decisions.
"""
from __future__ import annotations

import json
import sqlite3
import sys
from dataclasses import asdict, dataclass
from threading import Lock
from typing import TextIO

from . import db
from .alerts import alert_run
from .planner import OpKind, OperationPlan
from .runtime import OperationOutcome, OpState, RunResult, utc_now


LEVEL_BY_STATE = {
    OpState.RETRYING: "WARN",
    OpState.FAILED: "ERROR",
    OpState.CANCELLED: "WARN",
}


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    op_id: str
    from_state: str
    to_state: str
    ts: str
    attempt: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def render_plan(plan: OperationPlan) -> str:
    if plan.is_empty:
        return f"{plan.project}: no changes, deployed state matches the manifest."
    branches = plan.branches()
    lines = [f"{plan.project}: {len(plan)} operation(s) in {len(branches)} independent branch(es)"]
    for i, branch in enumerate(branches, start=1):
        lines.append(f"  branch {i}:")
        for oid in branch:
            op = plan.get(oid)
            after = f"  (after {', '.join(op.depends_on)})" if op.depends_on else ""
            lines.append(f"    {op.describe()}{after}")
    return "\n".join(lines)


def render_summary(result: RunResult) -> str:
    counts = result.counts()
    lines = [
        f"Run {result.run_id} ({result.project}): {result.status}",
        "  " + "  ".join(f"{s.value} {counts.get(s.value, 0)}" for s in (OpState.SUCCEEDED, OpState.FAILED, OpState.CANCELLED)),
    ]
    retried = [o for o in result.outcomes if o.retried]
    if retried:
        lines.append(f"  retried: {len(retried)} operation(s)")
    if result.cancelled:
        lines.append(f"  cancelled: {result.cancel_reason or 'aborted'}")
    if result.failed:
        lines.append("Failed operations:")
        for o in result.failed:
            cause = f"blocked by {o.blocked_by}" if o.blocked_by else f"{o.error_class}: {o.error}"
            lines.append(f"  - {o.op_id}: {cause}")
    certs = [o for o in result.outcomes if o.kind == OpKind.ISSUE_CERTIFICATE.value and o.detail]
    if certs:
        lines.append("Certificates:")
        for o in certs:
            lines.append(f"  - {o.op_id.split(':', 1)[1]}: {o.detail}")
    records = [o for o in result.outcomes if o.kind == OpKind.UPSERT_RECORD.value and o.state is OpState.SUCCEEDED]
    if records:
        lines.append("DNS records applied (propagation is up to the registrar's TTL):")
        for o in records:
            lines.append(f"  - {o.detail}")
    return "\n".join(lines)


class Reporter:
    """Streams progress to a text stream and the event log, then summarizes the run."""

    def __init__(self, stream: TextIO | None = None, json_lines: bool = False, persist: bool = True, alert: bool = True):
        self.stream = stream if stream is not None else sys.stdout
        self.json_lines = json_lines
        self.persist = persist
        self.alert = alert
        self.events: list[ProgressEvent] = []
        self.stream_error: str | None = None
        self._lock = Lock()

    def _write(self, text: str) -> None:
        # A closed or broken console (`ddo apply | head`) stops console output only.
        with self._lock:
            if self.stream_error is not None:
                return
            try:
                self.stream.write(text + "\n")
                self.stream.flush()
            except (OSError, ValueError) as e:
                self.stream_error = f"{type(e).__name__}: {e}"

    def show(self, text: str) -> None:
        """Write free-form text to the console stream."""
        self._write(text)

    def _log(self, level: str, message: str, project: str | None = None, run_id: str | None = None, op_id: str | None = None) -> None:
        if not self.persist:
            return
        try:
            db.log_event(level, message, project=project, run_id=run_id, op_id=op_id)
        except sqlite3.Error as e:
            sys.stderr.write(f"warning: event log unavailable: {e}\n")

    def run_started(self, run_id: str, plan: OperationPlan) -> None:
        msg = f"run {run_id}: {len(plan)} operation(s) in {len(plan.branches())} branch(es)"
        self._log("INFO", msg, project=plan.project, run_id=run_id)
        if self.json_lines:
            self._write(json.dumps({"event": "run_started", "run_id": run_id, "operations": len(plan), "ts": utc_now()}, default=str))
        else:
            self._write(msg)

    def transition(self, run_id: str, project: str, outcome: OperationOutcome, prev: OpState, message: str = "") -> None:
        event = ProgressEvent(
            run_id=run_id,
            op_id=outcome.op_id,
            from_state=prev.value,
            to_state=outcome.state.value,
            ts=utc_now(),
            attempt=outcome.attempts,
            message=message,
        )
        with self._lock:
            self.events.append(event)
        text = f"{event.ts} {event.op_id}: {event.from_state} -> {event.to_state}"
        if message:
            text += f" ({message})"
        self._log(LEVEL_BY_STATE.get(outcome.state, "INFO"), text, project=project, run_id=run_id, op_id=outcome.op_id)
        if self.json_lines:
            self._write(json.dumps({"event": "transition", **event.to_dict()}, default=str))
        else:
            self._write(text)

    def run_finished(self, result: RunResult) -> None:
        if self.persist:
            try:
                db.save_run(result)
            except sqlite3.Error as e:
                sys.stderr.write(f"warning: could not store run {result.run_id}: {e}\n")
        self._log(
            "INFO" if result.status == "succeeded" else "ERROR",
            f"run {result.run_id} finished: {result.status}",
            project=result.project,
            run_id=result.run_id,
        )
        summary = render_summary(result)
        if self.json_lines:
            self._write(json.dumps({"event": "run_finished", **result.to_dict()}, default=str))
        else:
            self._write(summary)
        if self.alert and result.status != "succeeded":
            alert_run(result, summary)
