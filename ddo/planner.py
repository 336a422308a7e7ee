"""Diff desired state against observed state and order the result.

Pure functions: nothing here calls a provider. Given the same manifest and
the same observed state, the plan (and its order) is always the same.
"""
from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .errors import PlanError
from .manifest import Manifest
from .providers.base import (
    binding_key,
    build_key,
    certificate_key,
    fingerprint,
    record_key,
    route_key,
    service_key,
    service_params,
)
from .runtime import ObservedState


class OpKind(str, Enum):
    BUILD_IMAGE = "build_image"
    UPSERT_RECORD = "upsert_record"
    DEPLOY_CONTAINER = "deploy_container"
    BIND_DOMAIN = "bind_domain"
    ROUTE_HOST = "route_host"
    ISSUE_CERTIFICATE = "issue_certificate"
    DELETE_RECORD = "delete_record"
    DELETE_CONTAINER = "delete_container"
    UNBIND_DOMAIN = "unbind_domain"


# Observed resources of these kinds are removed when the manifest drops them.
# Images and certificates are left where they are.
DELETE_KIND_BY_PREFIX = {
    "record": OpKind.DELETE_RECORD,
    "service": OpKind.DELETE_CONTAINER,
    "binding": OpKind.UNBIND_DOMAIN,
    "route": OpKind.UNBIND_DOMAIN,
}


@dataclass(frozen=True)
class DesiredResource:
    provider: str
    key: str
    kind: OpKind
    params: dict[str, Any]
    depends_on: tuple[tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Operation:
    id: str
    kind: OpKind
    action: str  # create|update|delete
    provider: str
    key: str
    params: dict[str, Any]
    fingerprint: str
    depends_on: tuple[str, ...] = ()

    def describe(self) -> str:
        return f"{self.action:<6} {self.kind.value:<17} {self.provider}/{self.key}"


def op_id(provider: str, key: str) -> str:
    return f"{provider}/{key}"


@dataclass(frozen=True)
class OperationPlan:
    project: str
    operations: tuple[Operation, ...]
    _index: dict[str, Operation] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        self._index.update({op.id: op for op in self.operations})

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def is_empty(self) -> bool:
        return not self.operations

    def get(self, operation_id: str) -> Operation:
        return self._index[operation_id]

    def dependents(self, operation_id: str) -> list[str]:
        return [op.id for op in self.operations if operation_id in op.depends_on]

    def branches(self) -> list[list[str]]:
        """Independent sub-graphs (connected components), each in execution order."""
        parent = {op.id: op.id for op in self.operations}

        def find(x: str) -> str:
            while parent[x] != x:
                parent[x] = parent[parent[x]]
                x = parent[x]
            return x

        for op in self.operations:
            for dep in op.depends_on:
                a, b = find(op.id), find(dep)
                if a != b:
                    parent[a] = b

        groups: dict[str, list[str]] = {}
        for op in self.operations:
            groups.setdefault(find(op.id), []).append(op.id)
        return list(groups.values())


def desired_resources(manifest: Manifest) -> list[DesiredResource]:
    """Every resource the manifest asks for, with its dependency edges."""
    out: list[DesiredResource] = []
    for name in sorted(manifest.services):
        svc = manifest.services[name]
        deps: tuple[tuple[str, str], ...] = ()
        if svc.build is not None:
            bkey = build_key(name)
            out.append(
                DesiredResource(svc.provider, bkey, OpKind.BUILD_IMAGE, {"context": svc.build.context, "tag": svc.build.tag})
            )
            deps = ((svc.provider, bkey),)
        out.append(
            DesiredResource(
                svc.provider,
                service_key(name),
                OpKind.DEPLOY_CONTAINER,
                service_params(svc.image_ref, svc.scaling, svc.health, svc.env),
                deps,
            )
        )

    for d in sorted(manifest.domains, key=lambda b: b.hostname):
        svc = manifest.service(d.service)
        host = d.hostname
        deploy = (svc.provider, service_key(svc.name))

        record: tuple[str, str] | None = None
        if d.dns is not None and d.value is not None:
            record = (d.dns, record_key(host, d.record_type))
            out.append(
                DesiredResource(d.dns, record[1], OpKind.UPSERT_RECORD, {"name": host, "type": d.record_type, "value": d.value})
            )

        params = {"hostname": host, "service": svc.name}
        if d.load_balancer is not None:
            serving = (d.load_balancer, route_key(host))
            out.append(DesiredResource(d.load_balancer, serving[1], OpKind.ROUTE_HOST, params, (deploy,)))
        else:
            serving = (svc.provider, binding_key(host))
            out.append(DesiredResource(svc.provider, serving[1], OpKind.BIND_DOMAIN, params, (deploy,)))

        if d.certificate:
            cert_deps = (serving,) + ((record,) if record else ())
            out.append(
                DesiredResource(serving[0], certificate_key(host), OpKind.ISSUE_CERTIFICATE, {"hostnames": [host]}, cert_deps)
            )
    return out


def diff(manifest: Manifest, observed: ObservedState) -> list[Operation]:
    """Operations that move observed state to the manifest. Converged resources produce nothing."""
    desired = desired_resources(manifest)
    wanted = {(r.provider, r.key) for r in desired}

    ops: dict[str, Operation] = {}
    pending_deps: dict[str, list[tuple[str, str]]] = {}
    for res in desired:
        fp = fingerprint(res.params)
        current = observed.get(res.provider, res.key)
        if current is not None and fingerprint(current) == fp:
            continue
        oid = op_id(res.provider, res.key)
        ops[oid] = Operation(
            id=oid,
            kind=res.kind,
            action="update" if current is not None else "create",
            provider=res.provider,
            key=res.key,
            params=res.params,
            fingerprint=fp,
        )
        pending_deps[oid] = list(res.depends_on)

    deletes: dict[str, Operation] = {}
    for provider in observed.providers():
        if provider not in manifest.providers:
            continue
        for key, params in sorted(observed.items(provider)):
            if (provider, key) in wanted:
                continue
            kind = DELETE_KIND_BY_PREFIX.get(key.split(":", 1)[0])
            if kind is None:
                continue
            oid = op_id(provider, key)
            deletes[oid] = Operation(
                id=oid,
                kind=kind,
                action="delete",
                provider=provider,
                key=key,
                params=_delete_params(kind, key, params),
                fingerprint=fingerprint({"delete": key}),
            )

    out: dict[str, Operation] = {}
    for oid, op in ops.items():
        deps = [op_id(p, k) for p, k in pending_deps[oid] if op_id(p, k) in ops]
        if op.kind in (OpKind.BIND_DOMAIN, OpKind.ROUTE_HOST):
            # A hostname has one target at a time: release it elsewhere first.
            host = op.params["hostname"]
            deps.extend(
                d.id for d in deletes.values() if d.kind is OpKind.UNBIND_DOMAIN and d.params.get("hostname") == host
            )
        elif op.kind is OpKind.UPSERT_RECORD:
            # A CNAME cannot coexist with other records of the same name.
            name = op.params["name"]
            deps.extend(d.id for d in deletes.values() if d.kind is OpKind.DELETE_RECORD and d.params.get("name") == name)
        out[oid] = _with_deps(op, deps)

    for oid, op in deletes.items():
        release: list[str] = []
        if op.kind is OpKind.DELETE_CONTAINER:
            name = op.params["name"]
            release = [
                d.id
                for d in deletes.values()
                if d.kind is OpKind.UNBIND_DOMAIN and d.params.get("service") == name
            ]
        out[oid] = _with_deps(op, release)
    return list(out.values())


def _with_deps(op: Operation, deps: list[str]) -> Operation:
    return Operation(
        id=op.id,
        kind=op.kind,
        action=op.action,
        provider=op.provider,
        key=op.key,
        params=op.params,
        fingerprint=op.fingerprint,
        depends_on=tuple(sorted(set(deps))),
    )


def _delete_params(kind: OpKind, key: str, observed: dict[str, Any]) -> dict[str, Any]:
    if kind is OpKind.DELETE_RECORD:
        return {"name": observed.get("name"), "type": observed.get("type")}
    if kind is OpKind.DELETE_CONTAINER:
        return {"name": key.split(":", 1)[1]}
    return {"hostname": key.split(":", 1)[1], "service": observed.get("service")}


def build_plan(project: str, operations: list[Operation]) -> OperationPlan:
    """Validate the dependency graph and order it with Kahn's algorithm.

    Ties are broken by operation id, so the order is deterministic.
    Raises PlanError on unknown dependencies or cycles.
    """
    by_id = {op.id: op for op in operations}
    if len(by_id) != len(operations):
        raise PlanError("duplicate operation ids in plan")

    graph: dict[str, list[str]] = defaultdict(list)
    in_degree: dict[str, int] = {oid: 0 for oid in by_id}
    for op in operations:
        for dep in op.depends_on:
            if dep not in by_id:
                raise PlanError(f"operation {op.id} depends on unknown operation {dep}")
            graph[dep].append(op.id)
            in_degree[op.id] += 1

    queue = deque(sorted(oid for oid, n in in_degree.items() if n == 0))
    ordered: list[Operation] = []
    while queue:
        node = queue.popleft()
        ordered.append(by_id[node])
        for nxt in sorted(graph[node]):
            in_degree[nxt] -= 1
            if in_degree[nxt] == 0:
                queue.append(nxt)

    if len(ordered) != len(operations):
        remaining = sorted(oid for oid, n in in_degree.items() if n > 0)
        raise PlanError(f"dependency cycle between operations: {remaining}")
    return OperationPlan(project=project, operations=tuple(ordered))


def plan(manifest: Manifest, observed: ObservedState) -> OperationPlan:
    return build_plan(manifest.project, diff(manifest, observed))
