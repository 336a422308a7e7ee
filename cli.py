from __future__ import annotations

import argparse
import json
import signal
import sys
from typing import Any

import requests

from ddo import db
from ddo.errors import ManifestError, OrchestratorError
from ddo.manifest import load_manifest
from ddo.providers import build_providers
from ddo.reconciler import Orchestrator, RetryPolicy
from ddo.reporter import Reporter, render_plan, render_summary
from ddo.runtime import OperationOutcome, RunResult
from ddo.settings import settings


EXIT_OK = 0
EXIT_FATAL = 1


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _err(msg: str) -> None:
    sys.stderr.write(msg + "\n")


def _report_fatal(e: OrchestratorError) -> int:
    if isinstance(e, ManifestError):
        _err("manifest is invalid:")
        for p in e.problems:
            _err(f"  - {p}")
    else:
        _err(f"error: {e}")
    return EXIT_FATAL


def _orchestrator(args: argparse.Namespace, reporter: Reporter) -> Orchestrator:
    manifest = load_manifest(args.manifest)
    providers = build_providers(manifest)
    retry = RetryPolicy()
    if getattr(args, "max_retries", None) is not None:
        retry.max_retries = max(0, args.max_retries)
    return Orchestrator(
        manifest,
        providers,
        reporter=reporter,
        retry=retry,
        max_workers=getattr(args, "workers", None),
        run_timeout_s=getattr(args, "timeout", None),
    )


def cmd_plan(args: argparse.Namespace) -> int:
    try:
        orch = _orchestrator(args, Reporter(persist=False, alert=False))
    except OrchestratorError as e:
        return _report_fatal(e)
    try:
        plan = orch.plan()
    except OrchestratorError as e:
        return _report_fatal(e)
    finally:
        orch.close()
    if args.json:
        _print(
            {
                "project": plan.project,
                "operations": [
                    {
                        "id": op.id,
                        "kind": op.kind.value,
                        "action": op.action,
                        "provider": op.provider,
                        "fingerprint": op.fingerprint,
                        "depends_on": list(op.depends_on),
                    }
                    for op in plan.operations
                ],
                "branches": plan.branches(),
            }
        )
    else:
        print(render_plan(plan))
    return EXIT_OK


def cmd_apply(args: argparse.Namespace) -> int:
    db.init_db()
    reporter = Reporter(json_lines=args.json)
    try:
        orch = _orchestrator(args, reporter)
    except OrchestratorError as e:
        return _report_fatal(e)

    def _abort(signum: int, frame: Any) -> None:
        _err("abort requested: finishing in-flight operations, starting no new ones")
        orch.cancel("operator abort")

    previous = signal.signal(signal.SIGINT, _abort)
    try:
        plan = orch.plan()
        if not args.json:
            reporter.show(render_plan(plan))
        result = orch.apply(plan)
    except OrchestratorError as e:
        return _report_fatal(e)
    finally:
        signal.signal(signal.SIGINT, previous)
        orch.close()
    if reporter.stream_error:
        _err(f"warning: progress output lost: {reporter.stream_error}")
    for problem in orch.reporter_errors:
        _err(f"warning: reporter failed: {problem}")
    return result.exit_code


def _fetch_remote(base: str, run_id: str | None) -> RunResult | None:
    path = f"/runs/{run_id}" if run_id else "/runs/latest"
    auth = None
    if settings.api_password:
        auth = (settings.api_user, settings.api_password)
    r = requests.get(f"{base.rstrip('/')}{path}", auth=auth, timeout=10)
    if r.status_code == 404:
        return None
    r.raise_for_status()
    data = r.json()
    return RunResult(
        run_id=data["run_id"],
        project=data["project"],
        started_at=data["started_at"],
        finished_at=data["finished_at"],
        outcomes=[OperationOutcome.from_dict(o) for o in data.get("outcomes", [])],
        cancelled=bool(data.get("cancelled")),
        cancel_reason=data.get("cancel_reason"),
    )


def cmd_status(args: argparse.Namespace) -> int:
    try:
        if args.api:
            result = _fetch_remote(args.api, args.run_id)
        else:
            db.init_db()
            result = db.get_run(args.run_id) if args.run_id else db.latest_run(args.project)
    except requests.RequestException as e:
        _err(f"error: status API unreachable: {e}")
        return EXIT_FATAL
    if result is None:
        _err("no run found" + (f" with id {args.run_id}" if args.run_id else ""))
        return EXIT_FATAL
    if args.json:
        _print(result.to_dict())
    else:
        print(render_summary(result))
    return EXIT_OK


def cmd_events(args: argparse.Namespace) -> int:
    db.init_db()
    events = db.latest_events(limit=args.limit, run_id=args.run_id)
    if args.json:
        _print(events)
        return EXIT_OK
    for ev in reversed(events):
        print(f"{ev['ts']} {ev['level']:<5} {ev['op_id'] or '-'}: {ev['message']}")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="ddo", description="Declarative deployment orchestrator")
    p.add_argument("--db", help="Run store path (default: $DDO_DB_PATH or ddo.db)")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_plan = sub.add_parser("plan", help="Show the operations needed to reach the manifest (dry run)")
    s_plan.add_argument("manifest", help="Path to the manifest (.yaml/.yml/.json)")
    s_plan.add_argument("--json", action="store_true", help="Machine-readable output")

    s_apply = sub.add_parser("apply", help="Execute the plan")
    s_apply.add_argument("manifest", help="Path to the manifest (.yaml/.yml/.json)")
    s_apply.add_argument("--workers", type=int, help="Parallel workers (default: $DDO_MAX_WORKERS)")
    s_apply.add_argument("--max-retries", type=int, help="Retries per transient failure (default: $DDO_MAX_RETRIES)")
    s_apply.add_argument("--timeout", type=float, help="Cancel the run after this many seconds")
    s_apply.add_argument("--json", action="store_true", help="Emit progress as JSON lines")

    s_status = sub.add_parser("status", help="Show a stored run result (latest by default)")
    s_status.add_argument("run_id", nargs="?")
    s_status.add_argument("--project", help="Latest run of this project")
    s_status.add_argument("--api", help="Query a status API instead of the local run store, e.g. http://localhost:8000")
    s_status.add_argument("--json", action="store_true")

    s_ev = sub.add_parser("events", help="Show the event log")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--run-id")
    s_ev.add_argument("--json", action="store_true")

    args = p.parse_args(argv)

    if args.db:
        db.configure(args.db)

    handlers = {"plan": cmd_plan, "apply": cmd_apply, "status": cmd_status, "events": cmd_events}
    return handlers[args.cmd](args)


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
