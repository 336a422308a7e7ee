from __future__ import annotations

import json
import os
import time
from threading import Lock
from typing import Any, Callable

from ..errors import PermanentProviderError
from ..manifest import HealthContract, ProviderConfig, ScalingParams
from .base import (
    BindingRef,
    CertStatus,
    Provider,
    RecordRef,
    ServiceRef,
    binding_key,
    build_key,
    certificate_key,
    record_key,
    route_key,
    service_key,
    service_params,
)


# Several memory providers may share one state file.
_STATE_FILE_LOCK = Lock()


class MemoryProvider(Provider):
    """In-process control plane implementing every verb.

    Used to rehearse a manifest locally and by the test-suite. With the
    ``state_file`` option the state survives between CLI invocations, so
    ``plan`` / ``apply`` / ``plan`` shows convergence end to end.

    Test hooks:
      - ``faults``: {"verb:target": [exc, ...]} raised in order, one per call
      - ``delays``: {"verb": seconds} latency per verb
      - ``on_call``: callable(verb, target) invoked before each call
    """

    kind = "memory"

    def __init__(self, config: ProviderConfig, project: str):
        super().__init__(config, project)
        self._lock = Lock()
        self.state_file: str | None = config.options.get("state_file")
        self.certificate_status = CertStatus(str(config.options.get("certificate_status", "ACTIVE")).upper())
        self.domain_suffix: str = config.options.get("domain_suffix", "run.local")
        self.resources: dict[str, dict[str, Any]] = {}
        self.faults: dict[str, list[Exception]] = {}
        self.delays: dict[str, float] = {}
        self.on_call: Callable[[str, str], None] | None = None
        self.calls: list[tuple[str, str]] = []
        self.mutations = 0
        self._in_flight = 0
        self.max_in_flight = 0
        self._load()

    # --- persistence ---

    @property
    def _state_slot(self) -> str:
        return f"{self.project}/{self.name}"

    def _load(self) -> None:
        if not self.state_file or not os.path.exists(self.state_file):
            return
        with _STATE_FILE_LOCK, open(self.state_file, encoding="utf-8") as fh:
            data = json.load(fh)
        self.resources = dict(data.get(self._state_slot, {}))

    def _save(self) -> None:
        if not self.state_file:
            return
        with _STATE_FILE_LOCK:
            self._write_state()

    def _write_state(self) -> None:
        assert self.state_file is not None
        data: dict[str, Any] = {}
        if os.path.exists(self.state_file):
            with open(self.state_file, encoding="utf-8") as fh:
                data = json.load(fh)
        data[self._state_slot] = self.resources
        tmp = f"{self.state_file}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, sort_keys=True)
        os.replace(tmp, self.state_file)

    # --- plumbing ---

    def _call(self, verb: str, target: str) -> None:
        with self._lock:
            self.calls.append((verb, target))
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            queued = self.faults.get(f"{verb}:{target}")
            exc = queued.pop(0) if queued else None
        try:
            if self.on_call is not None:
                self.on_call(verb, target)
            delay = self.delays.get(verb, 0.0)
            if delay:
                time.sleep(delay)
            if exc is not None:
                raise exc
        finally:
            with self._lock:
                self._in_flight -= 1

    def _put(self, key: str, params: dict[str, Any]) -> bool:
        """Store params under key. Returns False when nothing changed."""
        with self._lock:
            if self.resources.get(key) == params:
                return False
            self.resources[key] = params
            self.mutations += 1
            self._save()
            return True

    def _drop(self, key: str) -> None:
        with self._lock:
            if self.resources.pop(key, None) is not None:
                self.mutations += 1
                self._save()

    def _service_url(self, name: str) -> str:
        return f"https://{name}.{self.project}.{self.domain_suffix}"

    # --- verbs ---

    def observe(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self.resources.items()}

    def upsert_record(self, name: str, rtype: str, value: str) -> RecordRef:
        self._call("upsert_record", name)
        self._put(record_key(name, rtype), {"name": name, "type": rtype, "value": value})
        return RecordRef(provider=self.name, name=name, type=rtype, value=value)

    def delete_record(self, name: str, rtype: str) -> None:
        self._call("delete_record", name)
        self._drop(record_key(name, rtype))

    def build_image(self, name: str, context: str, tag: str) -> str:
        self._call("build_image", name)
        self._put(build_key(name), {"context": context, "tag": tag})
        return tag

    def deploy_container(
        self,
        name: str,
        image_ref: str,
        scaling: ScalingParams,
        health: HealthContract | None = None,
        env: dict[str, str] | None = None,
    ) -> ServiceRef:
        self._call("deploy_container", name)
        if not image_ref:
            raise PermanentProviderError(f"service '{name}' has no image", provider=self.name)
        self._put(service_key(name), service_params(image_ref, scaling, health, env or {}))
        return ServiceRef(provider=self.name, name=name, url=self._service_url(name))

    def delete_container(self, name: str) -> None:
        self._call("delete_container", name)
        self._drop(service_key(name))

    def bind_domain(self, service_ref: ServiceRef, hostname: str) -> BindingRef:
        self._call("bind_domain", hostname)
        self._put(binding_key(hostname), {"hostname": hostname, "service": service_ref.name})
        return BindingRef(provider=self.name, hostname=hostname, service=service_ref.name)

    def unbind_domain(self, hostname: str) -> None:
        self._call("unbind_domain", hostname)
        self._drop(binding_key(hostname))
        self._drop(route_key(hostname))
        self._drop(certificate_key(hostname))

    def route_host(self, hostname: str, service_ref: ServiceRef) -> BindingRef:
        self._call("route_host", hostname)
        self._put(route_key(hostname), {"hostname": hostname, "service": service_ref.name})
        return BindingRef(provider=self.name, hostname=hostname, service=service_ref.name)

    def issue_certificate(self, hostnames: list[str]) -> CertStatus:
        self._call("issue_certificate", ",".join(hostnames))
        if self.certificate_status is not CertStatus.FAILED:
            for host in hostnames:
                self._put(certificate_key(host), {"hostnames": [host]})
        return self.certificate_status
