from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..errors import PermanentProviderError
from ..manifest import HealthContract, ProviderConfig, ScalingParams


class CertStatus(str, Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"


@dataclass(frozen=True)
class RecordRef:
    provider: str
    name: str
    type: str
    value: str


@dataclass(frozen=True)
class ServiceRef:
    provider: str
    name: str
    url: str | None = None


@dataclass(frozen=True)
class BindingRef:
    provider: str
    hostname: str
    service: str


# Resource keys. Every provider reports managed resources under these keys,
# so the engine can diff any provider the same way.
def record_key(hostname: str, rtype: str) -> str:
    return f"record:{hostname}:{rtype}"


def service_key(name: str) -> str:
    return f"service:{name}"


def build_key(name: str) -> str:
    return f"build:{name}"


def binding_key(hostname: str) -> str:
    return f"binding:{hostname}"


def route_key(hostname: str) -> str:
    return f"route:{hostname}"


def certificate_key(hostname: str) -> str:
    return f"certificate:{hostname}"


def fingerprint(params: dict[str, Any]) -> str:
    """Stable digest of the parameters that define a resource."""
    raw = json.dumps(params, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def service_params(image_ref: str, scaling: ScalingParams, health: HealthContract | None, env: dict[str, str]) -> dict[str, Any]:
    return {
        "image": image_ref,
        "min_instances": scaling.min_instances,
        "max_instances": scaling.max_instances,
        "concurrency": scaling.concurrency,
        "health_path": health.path if health else None,
        "port": health.port if health else None,
        "env": dict(sorted(env.items())),
    }


class Provider:
    """Uniform capability interface over one external control plane.

    Subclasses override the verbs their platform supports; the rest fail with
    a permanent error. Every verb must be idempotent: calling it again with
    the same arguments against matching remote state returns the existing
    reference without changing anything.
    """

    kind = "abstract"

    def __init__(self, config: ProviderConfig, project: str):
        self.config = config
        self.name = config.name
        self.project = project

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"

    @classmethod
    def supports(cls, verb: str) -> bool:
        """True when this adapter implements verb instead of inheriting the refusal."""
        return getattr(cls, verb) is not getattr(Provider, verb)

    def _unsupported(self, verb: str) -> PermanentProviderError:
        return PermanentProviderError(f"provider '{self.name}' ({self.kind}) does not support {verb}", provider=self.name)

    def observe(self) -> dict[str, dict[str, Any]]:
        """Return {resource_key: params} for every resource this project manages here."""
        raise NotImplementedError

    def upsert_record(self, name: str, rtype: str, value: str) -> RecordRef:
        raise self._unsupported("upsert_record")

    def delete_record(self, name: str, rtype: str) -> None:
        raise self._unsupported("delete_record")

    def build_image(self, name: str, context: str, tag: str) -> str:
        raise self._unsupported("build_image")

    def deploy_container(
        self,
        name: str,
        image_ref: str,
        scaling: ScalingParams,
        health: HealthContract | None = None,
        env: dict[str, str] | None = None,
    ) -> ServiceRef:
        raise self._unsupported("deploy_container")

    def delete_container(self, name: str) -> None:
        raise self._unsupported("delete_container")

    def bind_domain(self, service_ref: ServiceRef, hostname: str) -> BindingRef:
        raise self._unsupported("bind_domain")

    def unbind_domain(self, hostname: str) -> None:
        raise self._unsupported("unbind_domain")

    def route_host(self, hostname: str, service_ref: ServiceRef) -> BindingRef:
        raise self._unsupported("route_host")

    def issue_certificate(self, hostnames: list[str]) -> CertStatus:
        raise self._unsupported("issue_certificate")

    def close(self) -> None:
        return None
