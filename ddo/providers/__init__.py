"""Provider adapters and the registry that builds them from manifest configs."""
from __future__ import annotations

from ..errors import ConfigError, ManifestError
from ..manifest import Manifest, ProviderConfig
from .base import BindingRef, CertStatus, Provider, RecordRef, ServiceRef, fingerprint
from .docker import DockerProvider
from .http import HttpContainerProvider, HttpDnsProvider, HttpFrontendProvider, HttpLoadBalancerProvider
from .memory import MemoryProvider


PROVIDER_KINDS: dict[str, type[Provider]] = {
    MemoryProvider.kind: MemoryProvider,
    DockerProvider.kind: DockerProvider,
    HttpDnsProvider.kind: HttpDnsProvider,
    HttpFrontendProvider.kind: HttpFrontendProvider,
    HttpContainerProvider.kind: HttpContainerProvider,
    HttpLoadBalancerProvider.kind: HttpLoadBalancerProvider,
}


def register_provider(kind: str, cls: type[Provider]) -> None:
    """Make a new provider kind available to manifests."""
    PROVIDER_KINDS[kind] = cls


def build_provider(config: ProviderConfig, project: str) -> Provider:
    cls = PROVIDER_KINDS.get(config.kind)
    if cls is None:
        known = ", ".join(sorted(PROVIDER_KINDS))
        raise ConfigError(f"provider '{config.name}': unknown kind '{config.kind}' (known: {known})")
    return cls(config, project)


def capability_problems(manifest: Manifest) -> list[str]:
    """What the manifest asks of providers whose kind cannot do it.

    Kinds that are not registered are left to build_provider to report.
    """
    problems: list[str] = []

    def need(provider: str | None, verb: str, where: str) -> None:
        cfg = manifest.providers.get(provider) if provider else None
        cls = PROVIDER_KINDS.get(cfg.kind) if cfg else None
        if cls is not None and not cls.supports(verb):
            problems.append(f"{where}: provider '{provider}' ({cfg.kind}) does not support {verb}")

    for name in sorted(manifest.services):
        svc = manifest.services[name]
        need(svc.provider, "deploy_container", f"services.{name}.provider")
        if svc.build is not None:
            need(svc.provider, "build_image", f"services.{name}.build")
    for d in manifest.domains:
        where = f"domains.{d.hostname}"
        if d.value is not None:
            need(d.dns, "upsert_record", f"{where}.dns")
        serving = d.load_balancer or manifest.service(d.service).provider
        need(serving, "route_host" if d.load_balancer else "bind_domain", where)
        if d.certificate:
            need(serving, "issue_certificate", f"{where}.certificate")
    return problems


def build_providers(manifest: Manifest) -> dict[str, Provider]:
    problems = capability_problems(manifest)
    if problems:
        raise ManifestError(problems)
    built: dict[str, Provider] = {}
    try:
        for name, cfg in manifest.providers.items():
            built[name] = build_provider(cfg, manifest.project)
    except ConfigError:
        for p in built.values():
            p.close()
        raise
    return built


__all__ = [
    "BindingRef",
    "CertStatus",
    "PROVIDER_KINDS",
    "Provider",
    "RecordRef",
    "ServiceRef",
    "build_provider",
    "build_providers",
    "capability_problems",
    "fingerprint",
    "register_provider",
]
