"""Manifest model: the operator's declarative description of the deployment.

A manifest is YAML (or JSON) shaped like::

    project: shop
    dns_provider: registrar
    providers:
      registrar: {kind: http-dns, endpoint: https://dns.example.net/v1, zone: example.com,
                  credentials_env: DDO_REGISTRAR_TOKEN}
      web: {kind: http-frontend, endpoint: https://api.pages.example.net, dns_target: cname.pages.example.net}
    services:
      - {name: frontend, provider: web, image: registry.example.net/shop/frontend:1.4.0}
    domains:
      - {hostname: app.example.com, service: frontend, record_type: CNAME}

Parsing is pure: nothing here talks to a provider.
"""
from __future__ import annotations

import ipaddress
import json
import os
import re
from dataclasses import dataclass, field
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import ManifestError


NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")
HOSTNAME_RE = re.compile(r"^(?=.{1,253}$)([a-z0-9]([a-z0-9\-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}$")

# Keys that look like credentials are refused; credentials come from the environment.
SECRET_KEYS = {"token", "password", "secret", "api_key", "apikey", "access_key", "secret_key", "credentials"}


# --- document schema ---------------------------------------------------------


class ProviderDoc(BaseModel):
    model_config = ConfigDict(extra="allow")

    kind: str = Field(..., description="memory|docker|http-dns|http-frontend|http-container|http-lb")
    endpoint: str | None = Field(None, description="Control-plane base URL")
    concurrency: int | None = Field(None, ge=1, le=64, description="Max in-flight calls to this provider")
    dns_target: str | None = Field(None, description="Default record value for hostnames served here")
    credentials_env: str | None = Field(None, description="Env var holding the API credential")


class ScalingDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    min_instances: int = Field(0, ge=0, le=1000)
    max_instances: int = Field(1, ge=1, le=1000)
    concurrency: int = Field(80, ge=1, le=1000, description="Requests per instance")


class HealthDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    path: str = "/health"
    port: int = Field(8080, ge=1, le=65535)


class BuildDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    context: str
    tag: str


class ServiceDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    provider: str
    image: str | None = None
    build: BuildDoc | None = None
    scaling: ScalingDoc = Field(default_factory=ScalingDoc)
    health: HealthDoc | None = None
    env: dict[str, str] = Field(default_factory=dict)


class DomainDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    hostname: str
    service: str
    record_type: Literal["CNAME", "A", "ALIAS"] = "CNAME"
    value: str | None = None
    dns: str | None = None
    load_balancer: str | None = None
    certificate: bool = True


class ManifestDoc(BaseModel):
    model_config = ConfigDict(extra="forbid")

    project: str
    dns_provider: str | None = None
    providers: dict[str, ProviderDoc]
    services: list[ServiceDoc] = Field(default_factory=list)
    domains: list[DomainDoc] = Field(default_factory=list)


# --- validated model ---------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    kind: str
    endpoint: str | None = None
    concurrency: int | None = None
    dns_target: str | None = None
    credentials_env: str | None = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ScalingParams:
    min_instances: int = 0
    max_instances: int = 1
    concurrency: int = 80


@dataclass(frozen=True)
class HealthContract:
    path: str = "/health"
    port: int = 8080


@dataclass(frozen=True)
class BuildRecipe:
    context: str
    tag: str


@dataclass(frozen=True)
class ServiceManifest:
    name: str
    provider: str
    image: str | None
    build: BuildRecipe | None
    scaling: ScalingParams
    health: HealthContract | None = None
    env: dict[str, str] = field(default_factory=dict)

    @property
    def image_ref(self) -> str:
        """Image the platform runs: the build tag when built from source."""
        if self.build is not None:
            return self.build.tag
        return self.image or ""


@dataclass(frozen=True)
class DomainBinding:
    hostname: str
    service: str
    record_type: str
    value: str | None
    dns: str | None
    load_balancer: str | None
    certificate: bool


@dataclass(frozen=True)
class Manifest:
    project: str
    providers: dict[str, ProviderConfig]
    services: dict[str, ServiceManifest]
    domains: tuple[DomainBinding, ...]

    def service(self, name: str) -> ServiceManifest:
        return self.services[name]

    def hostnames(self) -> list[str]:
        return [d.hostname for d in self.domains]


# --- parsing -----------------------------------------------------------------


def _format_pydantic(err: PydanticValidationError) -> list[str]:
    out: list[str] = []
    for e in err.errors():
        loc = ".".join(str(x) for x in e.get("loc", ()))
        out.append(f"{loc}: {e.get('msg')}" if loc else str(e.get("msg")))
    return out


def _normalize_host(hostname: str) -> str:
    return hostname.strip().lower().rstrip(".")


def _provider_config(name: str, doc: ProviderDoc, problems: list[str]) -> ProviderConfig:
    options = dict(doc.model_extra or {})
    for key in options:
        if key.lower() in SECRET_KEYS:
            problems.append(
                f"providers.{name}.{key}: credentials must not be embedded in the manifest; "
                "name an environment variable with credentials_env"
            )
    if not NAME_RE.match(name):
        problems.append(f"providers.{name}: invalid provider name")
    return ProviderConfig(
        name=name,
        kind=doc.kind,
        endpoint=doc.endpoint,
        concurrency=doc.concurrency,
        dns_target=doc.dns_target,
        credentials_env=doc.credentials_env,
        options=options,
    )


def _service(doc: ServiceDoc, providers: dict[str, ProviderConfig], problems: list[str]) -> ServiceManifest:
    where = f"services.{doc.name}"
    if not NAME_RE.match(doc.name):
        problems.append(f"{where}: invalid service name (lowercase letters, digits, hyphen; start with a letter)")
    if not doc.provider.strip():
        problems.append(f"{where}.provider: missing provider target")
    elif doc.provider not in providers:
        problems.append(f"{where}.provider: unknown provider '{doc.provider}'")
    if (doc.image is None) == (doc.build is None):
        problems.append(f"{where}: exactly one of 'image' or 'build' is required")
    if doc.scaling.min_instances > doc.scaling.max_instances:
        problems.append(
            f"{where}.scaling: min_instances ({doc.scaling.min_instances}) > max_instances ({doc.scaling.max_instances})"
        )
    health = None
    if doc.health is not None:
        if not doc.health.path.startswith("/") or "://" in doc.health.path or ".." in doc.health.path:
            problems.append(f"{where}.health.path: must be a simple absolute path")
        health = HealthContract(path=doc.health.path, port=doc.health.port)
    return ServiceManifest(
        name=doc.name,
        provider=doc.provider,
        image=doc.image,
        build=BuildRecipe(context=doc.build.context, tag=doc.build.tag) if doc.build else None,
        scaling=ScalingParams(
            min_instances=doc.scaling.min_instances,
            max_instances=doc.scaling.max_instances,
            concurrency=doc.scaling.concurrency,
        ),
        health=health,
        env=dict(doc.env),
    )


def _domain(
    doc: DomainDoc,
    default_dns: str | None,
    providers: dict[str, ProviderConfig],
    services: dict[str, ServiceManifest],
    problems: list[str],
) -> DomainBinding:
    host = _normalize_host(doc.hostname)
    where = f"domains.{host}"
    if not HOSTNAME_RE.match(host):
        problems.append(f"{where}: invalid hostname")

    svc = services.get(doc.service)
    if svc is None:
        problems.append(f"{where}.service: unknown service '{doc.service}'")

    dns = doc.dns or default_dns
    if dns is not None and dns not in providers:
        problems.append(f"{where}.dns: unknown provider '{dns}'")
    if doc.load_balancer is not None and doc.load_balancer not in providers:
        problems.append(f"{where}.load_balancer: unknown provider '{doc.load_balancer}'")

    value = doc.value
    if value is None and dns is not None:
        serving = doc.load_balancer or (svc.provider if svc else None)
        cfg = providers.get(serving) if serving else None
        value = cfg.dns_target if cfg else None
        if value is None and serving in providers:
            problems.append(f"{where}.value: no record value and provider '{serving}' has no dns_target")
    if value is not None and doc.record_type == "A":
        try:
            ipaddress.IPv4Address(value)
        except ValueError:
            problems.append(f"{where}.value: A record needs an IPv4 address, got '{value}'")

    return DomainBinding(
        hostname=host,
        service=doc.service,
        record_type=doc.record_type,
        value=value,
        dns=dns,
        load_balancer=doc.load_balancer,
        certificate=doc.certificate,
    )


def parse_manifest(data: Any) -> Manifest:
    """Validate a decoded manifest document. Raises ManifestError with every problem found."""
    if not isinstance(data, dict):
        raise ManifestError("manifest must be a mapping at the top level")
    try:
        doc = ManifestDoc.model_validate(data)
    except PydanticValidationError as e:
        raise ManifestError(_format_pydantic(e)) from e

    problems: list[str] = []
    if not NAME_RE.match(doc.project):
        problems.append("project: invalid project name")

    providers = {name: _provider_config(name, p, problems) for name, p in doc.providers.items()}
    if doc.dns_provider is not None and doc.dns_provider not in providers:
        problems.append(f"dns_provider: unknown provider '{doc.dns_provider}'")

    services: dict[str, ServiceManifest] = {}
    for s in doc.services:
        if s.name in services:
            problems.append(f"services.{s.name}: duplicate service name")
            continue
        services[s.name] = _service(s, providers, problems)

    domains: list[DomainBinding] = []
    seen: set[str] = set()
    for d in doc.domains:
        binding = _domain(d, doc.dns_provider, providers, services, problems)
        if binding.hostname in seen:
            problems.append(f"domains.{binding.hostname}: duplicate hostname")
            continue
        seen.add(binding.hostname)
        domains.append(binding)

    if problems:
        raise ManifestError(problems)
    return Manifest(project=doc.project, providers=providers, services=services, domains=tuple(domains))


def load_manifest(path: str) -> Manifest:
    """Read and validate a manifest file (.yaml/.yml or .json)."""
    if not os.path.isfile(path):
        raise ManifestError(f"manifest not found: {path}")
    with open(path, encoding="utf-8") as fh:
        raw = fh.read()
    try:
        if path.endswith(".json"):
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ManifestError(f"cannot parse {path}: {e}") from e
    return parse_manifest(data)
