from __future__ import annotations

import json
import os
import secrets
from typing import Any

import docker
from docker.errors import APIError, BuildError, DockerException, NotFound

from ..errors import PermanentProviderError, ProviderError, TransientProviderError
from ..health import probe_url, wait_healthy
from ..manifest import HealthContract, ProviderConfig, ScalingParams
from ..settings import settings
from .base import Provider, ServiceRef, build_key, service_key, service_params


LABEL_PROJECT = "ddo.project"
LABEL_SERVICE = "ddo.service"
LABEL_PARAMS = "ddo.params"


def container_http_base(container_name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{container_name}:{int(internal_port)}"


def replica_count(min_instances: int) -> int:
    """A local engine cannot scale to zero, so at least one replica runs."""
    return max(1, int(min_instances))


def _params_label(params: dict[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, separators=(",", ":"))


class DockerProvider(Provider):
    """Container platform backed by the local Docker engine.

    Containers and images are labeled with the project, the service and the
    parameters they were created from, so observed state can be rebuilt from
    the engine alone after a restart.
    """

    kind = "docker"

    def __init__(self, config: ProviderConfig, project: str, client: Any = None):
        super().__init__(config, project)
        self._client_override = client
        self.network = str(config.options.get("network", settings.docker_network))
        self.verify_health = bool(config.options.get("verify_health", False))
        self.health_timeout_s = float(config.options.get("health_timeout_s", settings.health_timeout_s))

    def _client(self) -> Any:
        if self._client_override is not None:
            return self._client_override
        try:
            return docker.from_env()
        except DockerException as e:
            raise TransientProviderError(f"Docker is not available: {e}", provider=self.name) from e

    def _classify(self, action: str, e: DockerException) -> ProviderError:
        if isinstance(e, (NotFound, BuildError)):
            return PermanentProviderError(f"{action}: {e}", provider=self.name)
        if isinstance(e, APIError) and e.is_client_error():
            return PermanentProviderError(f"{action}: {e}", provider=self.name)
        return TransientProviderError(f"{action}: {e}", provider=self.name)

    def _labels(self, service: str, params: dict[str, Any]) -> dict[str, str]:
        return {LABEL_PROJECT: self.project, LABEL_SERVICE: service, LABEL_PARAMS: _params_label(params)}

    def _containers(self, service: str | None = None) -> list[Any]:
        labels = [f"{LABEL_PROJECT}={self.project}"]
        if service:
            labels.append(f"{LABEL_SERVICE}={service}")
        try:
            return list(self._client().containers.list(all=True, filters={"label": labels}))
        except DockerException as e:
            raise self._classify("list containers", e) from e

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(self.network)
        except NotFound:
            try:
                c.networks.create(self.network, driver="bridge")
            except DockerException as e:
                raise self._classify(f"create network {self.network}", e) from e
        except DockerException as e:
            raise self._classify(f"inspect network {self.network}", e) from e

    def observe(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        by_service: dict[str, list[Any]] = {}
        for cont in self._containers():
            svc = (cont.labels or {}).get(LABEL_SERVICE)
            if svc:
                by_service.setdefault(svc, []).append(cont)
        for svc, conts in sorted(by_service.items()):
            labels = {(c.labels or {}).get(LABEL_PARAMS) for c in conts}
            if len(labels) != 1 or None in labels or any(c.status != "running" for c in conts):
                # Stopped, mixed or partial: not converged, so the next plan redeploys it.
                continue
            params = json.loads(labels.pop())
            if len(conts) == replica_count(params.get("min_instances", 0)):
                out[service_key(svc)] = params
        try:
            images = self._client().images.list(filters={"label": [f"{LABEL_PROJECT}={self.project}"]})
        except DockerException as e:
            raise self._classify("list images", e) from e
        for img in images:
            labels = img.labels or {}
            svc = labels.get(LABEL_SERVICE)
            if svc and LABEL_PARAMS in labels:
                out[build_key(svc)] = json.loads(labels[LABEL_PARAMS])
        return out

    def build_image(self, name: str, context: str, tag: str) -> str:
        if not os.path.isdir(context):
            raise PermanentProviderError(f"build context not found: {context}", provider=self.name)
        params = {"context": context, "tag": tag}
        c = self._client()
        try:
            existing = c.images.get(tag)
            if (existing.labels or {}).get(LABEL_PARAMS) == _params_label(params):
                return tag
        except NotFound:
            pass
        except DockerException as e:
            raise self._classify(f"inspect image {tag}", e) from e
        try:
            c.images.build(path=context, tag=tag, rm=True, labels=self._labels(name, params))
        except DockerException as e:
            raise self._classify(f"build {tag}", e) from e
        return tag

    def deploy_container(
        self,
        name: str,
        image_ref: str,
        scaling: ScalingParams,
        health: HealthContract | None = None,
        env: dict[str, str] | None = None,
    ) -> ServiceRef:
        """Run the desired replicas, then retire every other container of the service.

        Stopped or exited containers are retired too, whatever parameters they carry.
        """
        params = service_params(image_ref, scaling, health, env or {})
        label = _params_label(params)
        replicas = replica_count(scaling.min_instances)

        current = self._containers(name)
        matching = [x for x in current if x.status == "running" and (x.labels or {}).get(LABEL_PARAMS) == label]
        if len(matching) == replicas and len(current) == replicas:
            return self._ref(name, matching[0].name, health)

        self.ensure_network()
        c = self._client()
        started: list[Any] = []
        try:
            for _ in range(replicas - len(matching)):
                started.append(
                    c.containers.run(
                        image_ref,
                        detach=True,
                        name=f"ddo-{self.project}-{name}-{secrets.token_hex(3)}",
                        environment=dict(env or {}),
                        network=self.network,
                        labels=self._labels(name, params),
                        restart_policy={"Name": "on-failure", "MaximumRetryCount": 3},
                    )
                )
        except DockerException as e:
            self._remove(started)
            raise self._classify(f"run {image_ref}", e) from e

        if self.verify_health and health is not None:
            for cont in started:
                url = probe_url(container_http_base(cont.name, health.port), health)
                ok, msg = wait_healthy(url, self.health_timeout_s)
                if not ok:
                    self._remove(started)
                    raise TransientProviderError(f"{name}: new container not healthy ({msg})", provider=self.name)

        stale = [x for x in current if x not in matching]
        stale.extend(matching[replicas:])
        self._remove(stale)
        keep = matching[:replicas] + started
        return self._ref(name, keep[0].name, health)

    def _ref(self, name: str, container_name: str, health: HealthContract | None) -> ServiceRef:
        url = container_http_base(container_name, health.port) if health else None
        return ServiceRef(provider=self.name, name=name, url=url)

    def _remove(self, containers: list[Any]) -> None:
        for cont in containers:
            try:
                cont.remove(force=True)
            except NotFound:
                continue
            except DockerException as e:
                raise self._classify(f"remove {cont.name}", e) from e

    def delete_container(self, name: str) -> None:
        self._remove(self._containers(name))
