from __future__ import annotations

import random
import secrets
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from threading import Event, Lock, Semaphore, Timer
from typing import Any, Callable, Mapping, TypeVar

from .errors import CancellationError, PermanentProviderError, PlanError, TransientProviderError
from .manifest import HealthContract, Manifest, ScalingParams
from .planner import OpKind, Operation, OperationPlan, plan as make_plan
from .providers.base import CertStatus, Provider, ServiceRef
from .reporter import Reporter
from .runtime import ObservedState, OperationOutcome, OpState, RunResult, RunState, utc_now
from .settings import settings


T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Exponential backoff for transient provider errors.

    ``max_retries`` bounds the number of retries after the first attempt; a
    transient error still failing after that is reclassified as FAILED.
    """

    max_retries: int = field(default_factory=lambda: settings.max_retries)
    base_delay_s: float = field(default_factory=lambda: settings.backoff_base_s)
    max_delay_s: float = field(default_factory=lambda: settings.backoff_max_s)
    multiplier: float = 2.0
    jitter: float = 0.25

    def delay(self, retry: int) -> float:
        d = min(self.base_delay_s * (self.multiplier**retry), self.max_delay_s)
        if self.jitter:
            d += random.uniform(-d * self.jitter, d * self.jitter)
        return max(0.0, d)


class Orchestrator:
    """Reconciles a manifest against its providers: observe, plan, apply.

    Independent branches of the plan run concurrently on a worker pool;
    a per-provider semaphore caps in-flight calls to each provider.
    """

    def __init__(
        self,
        manifest: Manifest,
        providers: Mapping[str, Provider],
        reporter: Reporter | None = None,
        retry: RetryPolicy | None = None,
        max_workers: int | None = None,
        provider_concurrency: int | None = None,
        run_timeout_s: float | None = None,
    ):
        self.manifest = manifest
        self.providers = dict(providers)
        self.reporter = reporter or Reporter(persist=False, alert=False)
        self.retry = retry or RetryPolicy()
        self.max_workers = max(1, int(max_workers or settings.max_workers))
        self.run_timeout_s = settings.run_timeout_s if run_timeout_s is None else run_timeout_s
        cap = max(1, int(provider_concurrency or settings.provider_concurrency))
        self._semaphores: dict[str, Semaphore] = {}
        for name in self.providers:
            cfg = manifest.providers.get(name)
            self._semaphores[name] = Semaphore((cfg.concurrency if cfg else None) or cap)
        self._cancel = Event()
        self.cancel_reason: str | None = None
        self._refs_lock = Lock()
        self._service_refs: dict[str, ServiceRef] = {}
        self._timer: Timer | None = None
        self.reporter_errors: list[str] = []

    # --- control ---

    def cancel(self, reason: str = "operator abort") -> None:
        """Stop starting operations. In-flight provider calls run to completion."""
        if self.cancel_reason is None:
            self.cancel_reason = reason
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def close(self) -> None:
        self._stop_clock()
        for p in self.providers.values():
            p.close()

    def _start_clock(self) -> None:
        """Arm the run timeout once; it covers observe as well as apply."""
        if self._timer is not None or not self.run_timeout_s or self.run_timeout_s <= 0:
            return
        self._timer = Timer(self.run_timeout_s, self.cancel, args=(f"run timeout after {self.run_timeout_s:g}s",))
        self._timer.daemon = True
        self._timer.start()

    def _stop_clock(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _retry_delay(self, retries: int, error: TransientProviderError) -> float:
        return max(self.retry.delay(retries), error.retry_after or 0.0)

    def _report(self, fn: Callable[..., None], *args: Any) -> None:
        # Reporter failures are kept for the operator; they never change the run.
        try:
            fn(*args)
        except Exception as e:
            self.reporter_errors.append(f"{type(e).__name__}: {e}")

    # --- observe / plan ---

    def _with_retry(self, fn: Callable[[], T]) -> T:
        retries = 0
        while True:
            try:
                return fn()
            except TransientProviderError as e:
                if retries >= self.retry.max_retries:
                    raise
                if self._cancel.wait(self._retry_delay(retries, e)):
                    raise CancellationError(self.cancel_reason or "cancelled")
                retries += 1

    def observe(self) -> ObservedState:
        """Fetch observed state from every provider once. The snapshot is read-only."""
        self._start_clock()
        snapshot: dict[str, Any] = {}
        for name, p in sorted(self.providers.items()):
            if self._cancel.is_set():
                raise CancellationError(self.cancel_reason or "cancelled")
            snapshot[name] = self._with_retry(p.observe)
        return ObservedState(snapshot)

    def plan(self, observed: ObservedState | None = None) -> OperationPlan:
        return make_plan(self.manifest, observed if observed is not None else self.observe())

    # --- apply ---

    def apply(self, plan: OperationPlan | None = None, run_id: str | None = None) -> RunResult:
        run_id = run_id or secrets.token_hex(6)
        if plan is None:
            plan = self.plan()
        started_at = utc_now()
        state = RunState([OperationOutcome(op.id, op.kind.value, op.provider, op.action) for op in plan.operations])

        self._report(self.reporter.run_started, run_id, plan)
        self._start_clock()
        try:
            self._execute(plan, state, run_id)
        finally:
            self._stop_clock()

        result = RunResult(
            run_id=run_id,
            project=self.manifest.project,
            started_at=started_at,
            finished_at=utc_now(),
            outcomes=state.snapshot(),
            cancelled=self._cancel.is_set(),
            cancel_reason=self.cancel_reason,
        )
        self._report(self.reporter.run_finished, result)
        return result

    def _transition(self, state: RunState, run_id: str, op_id: str, new: OpState, message: str = "", **updates: Any) -> None:
        def notify(prev: OpState, outcome: OperationOutcome) -> None:
            self._report(self.reporter.transition, run_id, self.manifest.project, outcome, prev, message)

        state.transition(op_id, new, notify=notify, **updates)

    def _execute(self, plan: OperationPlan, state: RunState, run_id: str) -> None:
        # `pending` stays in topological order, so a failure propagates to
        # every downstream operation within a single pass.
        pending = [op.id for op in plan.operations]
        futures: dict[Future[None], str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="ddo") as pool:
            while pending or futures:
                if self._cancel.is_set():
                    for oid in pending:
                        self._transition(
                            state, run_id, oid, OpState.CANCELLED, "not started",
                            error_class="cancelled", error=self.cancel_reason,
                        )
                    pending = []
                else:
                    waiting: list[str] = []
                    for oid in pending:
                        op = plan.get(oid)
                        deps = {d: state.state(d) for d in op.depends_on}
                        failed = next((d for d, s in deps.items() if s is OpState.FAILED), None)
                        if failed is not None:
                            self._transition(
                                state, run_id, oid, OpState.FAILED, f"dependency {failed} failed",
                                error_class="dependency", error=f"dependency {failed} failed", blocked_by=failed,
                            )
                        elif all(s is OpState.SUCCEEDED for s in deps.values()):
                            futures[pool.submit(self._run_operation, state, op, run_id)] = oid
                        else:
                            waiting.append(oid)
                    pending = waiting

                if not futures:
                    if pending:
                        raise PlanError(f"operations can never become ready: {pending}")
                    break
                done, _ = wait(list(futures), timeout=0.2, return_when=FIRST_COMPLETED)
                for fut in done:
                    futures.pop(fut)
                    fut.result()

    def _run_operation(self, state: RunState, op: Operation, run_id: str) -> None:
        sem = self._semaphores[op.provider]
        retries = 0
        while True:
            with sem:
                if self._cancel.is_set():
                    self._transition(
                        state, run_id, op.id, OpState.CANCELLED,
                        "cancelled before retry" if retries else "not started",
                        error_class="cancelled", error=self.cancel_reason,
                    )
                    return
                self._transition(state, run_id, op.id, OpState.RUNNING, f"attempt {retries + 1}")
                try:
                    detail = self._invoke(op)
                except TransientProviderError as e:
                    error: TransientProviderError = e
                except PermanentProviderError as e:
                    self._transition(state, run_id, op.id, OpState.FAILED, str(e), error_class="permanent", error=str(e))
                    return
                except Exception as e:  # adapter bug or unclassified failure; recorded, never masked
                    msg = f"{type(e).__name__}: {e}"
                    self._transition(state, run_id, op.id, OpState.FAILED, msg, error_class="unexpected", error=msg)
                    return
                else:
                    self._transition(state, run_id, op.id, OpState.SUCCEEDED, detail, detail=detail, error=None)
                    return

            if retries >= self.retry.max_retries:
                msg = f"{error} (gave up after {retries} retries)"
                self._transition(state, run_id, op.id, OpState.FAILED, msg, error_class="transient", error=msg)
                return
            delay = self._retry_delay(retries, error)
            retries += 1
            self._transition(
                state, run_id, op.id, OpState.RETRYING,
                f"{error}; retry {retries}/{self.retry.max_retries} in {delay:.1f}s",
                error_class="transient", error=str(error),
            )
            self._cancel.wait(delay)

    # --- dispatch ---

    def _service_ref(self, name: str) -> ServiceRef:
        with self._refs_lock:
            ref = self._service_refs.get(name)
        if ref is not None:
            return ref
        return ServiceRef(provider=self.manifest.service(name).provider, name=name)

    def _invoke(self, op: Operation) -> str:
        p = self.providers[op.provider]
        params = op.params
        name = op.key.split(":", 1)[1]

        if op.kind is OpKind.BUILD_IMAGE:
            tag = p.build_image(name, params["context"], params["tag"])
            return f"built {tag}"
        if op.kind is OpKind.UPSERT_RECORD:
            rec = p.upsert_record(params["name"], params["type"], params["value"])
            return f"{rec.name} {rec.type} {rec.value}"
        if op.kind is OpKind.DEPLOY_CONTAINER:
            scaling = ScalingParams(
                min_instances=params["min_instances"],
                max_instances=params["max_instances"],
                concurrency=params["concurrency"],
            )
            health = HealthContract(path=params["health_path"], port=params["port"]) if params.get("health_path") else None
            ref = p.deploy_container(name, params["image"], scaling, health, dict(params.get("env") or {}))
            with self._refs_lock:
                self._service_refs[name] = ref
            return f"deployed {params['image']}" + (f" at {ref.url}" if ref.url else "")
        if op.kind is OpKind.BIND_DOMAIN:
            b = p.bind_domain(self._service_ref(params["service"]), params["hostname"])
            return f"{b.hostname} -> {b.service}"
        if op.kind is OpKind.ROUTE_HOST:
            b = p.route_host(params["hostname"], self._service_ref(params["service"]))
            return f"{b.hostname} -> {b.service} via {b.provider}"
        if op.kind is OpKind.ISSUE_CERTIFICATE:
            status = p.issue_certificate(list(params["hostnames"]))
            if status is CertStatus.FAILED:
                raise PermanentProviderError(
                    f"certificate issuance failed for {', '.join(params['hostnames'])}", provider=op.provider
                )
            return status.value
        if op.kind is OpKind.DELETE_RECORD:
            p.delete_record(params["name"], params["type"])
            return f"deleted {params['name']} {params['type']}"
        if op.kind is OpKind.DELETE_CONTAINER:
            p.delete_container(params["name"])
            return f"deleted service {params['name']}"
        if op.kind is OpKind.UNBIND_DOMAIN:
            p.unbind_domain(params["hostname"])
            return f"released {params['hostname']}"
        raise PermanentProviderError(f"unknown operation kind {op.kind}", provider=op.provider)
