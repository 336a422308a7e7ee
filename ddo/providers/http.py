"""REST control-plane adapters (httpx).

Each adapter speaks a small JSON contract to one managed service. The
contract is the same shape everywhere: collections under
``/projects/<project>/...`` (or ``/zones/<zone>/records`` for DNS) that
accept idempotent PUT / DELETE and list what they hold with GET.
"""
from __future__ import annotations

import os
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import ConfigError, PermanentProviderError, TransientProviderError
from ..manifest import HealthContract, ProviderConfig, ScalingParams
from ..settings import settings
from .base import (
    BindingRef,
    CertStatus,
    Provider,
    RecordRef,
    ServiceRef,
    binding_key,
    certificate_key,
    record_key,
    route_key,
    service_key,
    service_params,
)


RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}


class ControlPlaneClient:
    """Thin httpx wrapper that turns transport and HTTP failures into classified provider errors."""

    def __init__(
        self,
        provider: str,
        base_url: str,
        token: str | None,
        timeout_s: float,
        transport: httpx.BaseTransport | None = None,
    ):
        self.provider = provider
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout_s,
            follow_redirects=False,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def request(self, method: str, path: str, body: dict[str, Any] | None = None, missing_ok: bool = False) -> Any:
        try:
            resp = self._client.request(method, path, json=body)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{method} {path}: timeout ({type(e).__name__})", provider=self.provider) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{method} {path}: {type(e).__name__}: {e}", provider=self.provider) from e

        if resp.status_code == 404 and missing_ok:
            return None
        if resp.status_code in RETRYABLE_STATUS:
            wait_s = parse_retry_after(resp.headers.get("Retry-After"))
            msg = f"{method} {path}: HTTP {resp.status_code}" + (f" (retry after {wait_s:g}s)" if wait_s is not None else "")
            raise TransientProviderError(msg, provider=self.provider, retry_after=wait_s)
        if resp.status_code >= 400:
            raise PermanentProviderError(f"{method} {path}: HTTP {resp.status_code}: {_error_text(resp)}", provider=self.provider)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise PermanentProviderError(f"{method} {path}: invalid JSON response", provider=self.provider) from e


def parse_retry_after(value: str | None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def _error_text(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or data)
    return str(data)


def _seg(value: str) -> str:
    return quote(value, safe="")


class HttpProvider(Provider):
    """Base for adapters reached over HTTP with a bearer credential from the environment."""

    def __init__(self, config: ProviderConfig, project: str, transport: httpx.BaseTransport | None = None):
        super().__init__(config, project)
        if not config.endpoint:
            raise ConfigError(f"provider '{config.name}' ({self.kind}) needs an endpoint")
        token = None
        if config.credentials_env:
            token = os.getenv(config.credentials_env)
            if not token:
                raise ConfigError(
                    f"provider '{config.name}': environment variable {config.credentials_env} is not set"
                )
        timeout_s = float(config.options.get("timeout_s", settings.http_timeout_s))
        self.client = ControlPlaneClient(config.name, config.endpoint, token, timeout_s, transport=transport)

    def close(self) -> None:
        self.client.close()

    def _malformed(self, what: str, e: Exception) -> PermanentProviderError:
        return PermanentProviderError(f"malformed {what} from provider: {type(e).__name__}: {e}", provider=self.name)

    def _get(self, path: str, missing_ok: bool = False) -> Any:
        return self.client.request("GET", path, missing_ok=missing_ok)

    def _put(self, path: str, body: dict[str, Any]) -> Any:
        return self.client.request("PUT", path, body)

    def _delete(self, path: str) -> None:
        self.client.request("DELETE", path, missing_ok=True)

    def _certificates(self, path: str) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        data = self._get(path)
        try:
            for cert in data.get("certificates", []):
                if str(cert.get("status", "")).upper() == CertStatus.FAILED.value:
                    continue
                host = cert["hostname"]
                out[certificate_key(host)] = {"hostnames": [host]}
        except (AttributeError, KeyError, TypeError) as e:
            raise self._malformed("certificate list", e) from e
        return out

    def _issue(self, path: str, hostnames: list[str]) -> CertStatus:
        data = self.client.request("POST", path, {"hostnames": sorted(hostnames)})
        if not isinstance(data, dict):
            raise self._malformed("certificate status", TypeError(f"expected an object, got {type(data).__name__}"))
        raw = str(data.get("status", "PENDING")).upper()
        try:
            return CertStatus(raw)
        except ValueError as e:
            raise PermanentProviderError(f"unknown certificate status '{raw}'", provider=self.name) from e


class HttpDnsProvider(HttpProvider):
    """DNS registrar / zone API. Records owned by a project carry a ``ddo:<project>`` comment."""

    kind = "http-dns"

    def __init__(self, config: ProviderConfig, project: str, transport: httpx.BaseTransport | None = None):
        super().__init__(config, project, transport=transport)
        self.zone = config.options.get("zone")
        if not self.zone:
            raise ConfigError(f"provider '{config.name}' (http-dns) needs a 'zone'")
        self.marker = f"ddo:{project}"

    def _record_path(self, name: str, rtype: str) -> str:
        return f"/zones/{_seg(self.zone)}/records/{_seg(name)}/{rtype}"

    def observe(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        data = self._get(f"/zones/{_seg(self.zone)}/records")
        try:
            for rec in data.get("records", []):
                if rec.get("comment") != self.marker:
                    continue
                out[record_key(rec["name"], rec["type"])] = {"name": rec["name"], "type": rec["type"], "value": rec["value"]}
        except (AttributeError, KeyError, TypeError) as e:
            raise self._malformed("record list", e) from e
        return out

    def upsert_record(self, name: str, rtype: str, value: str) -> RecordRef:
        path = self._record_path(name, rtype)
        current = self._get(path, missing_ok=True)
        if not current or current.get("value") != value or current.get("comment") != self.marker:
            self._put(path, {"value": value, "comment": self.marker})
        return RecordRef(provider=self.name, name=name, type=rtype, value=value)

    def delete_record(self, name: str, rtype: str) -> None:
        self._delete(self._record_path(name, rtype))


class _HostingProvider(HttpProvider):
    """Shared shape of platforms that run an app and map hostnames onto it."""

    app_collection = "apps"
    domain_collection = "domains"
    app_field = "app"

    def _base(self) -> str:
        return f"/projects/{_seg(self.project)}"

    def observe(self) -> dict[str, dict[str, Any]]:
        base = self._base()
        out: dict[str, dict[str, Any]] = {}
        apps = self._get(f"{base}/{self.app_collection}")
        domains = self._get(f"{base}/{self.domain_collection}")
        try:
            for app in apps.get(self.app_collection, []):
                out[service_key(app["name"])] = dict(app.get("params") or {})
            for dom in domains.get(self.domain_collection, []):
                out[binding_key(dom["hostname"])] = {"hostname": dom["hostname"], "service": dom[self.app_field]}
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise self._malformed(f"{self.app_collection} listing", e) from e
        out.update(self._certificates(f"{base}/certificates"))
        return out

    def deploy_container(
        self,
        name: str,
        image_ref: str,
        scaling: ScalingParams,
        health: HealthContract | None = None,
        env: dict[str, str] | None = None,
    ) -> ServiceRef:
        path = f"{self._base()}/{self.app_collection}/{_seg(name)}"
        params = service_params(image_ref, scaling, health, env or {})
        current = self._get(path, missing_ok=True)
        if current and current.get("params") == params:
            return ServiceRef(provider=self.name, name=name, url=current.get("url"))
        data = self._put(path, {"params": params})
        return ServiceRef(provider=self.name, name=name, url=data.get("url"))

    def delete_container(self, name: str) -> None:
        self._delete(f"{self._base()}/{self.app_collection}/{_seg(name)}")

    def bind_domain(self, service_ref: ServiceRef, hostname: str) -> BindingRef:
        path = f"{self._base()}/{self.domain_collection}/{_seg(hostname)}"
        current = self._get(path, missing_ok=True)
        if not current or current.get(self.app_field) != service_ref.name:
            self._put(path, {self.app_field: service_ref.name})
        return BindingRef(provider=self.name, hostname=hostname, service=service_ref.name)

    def unbind_domain(self, hostname: str) -> None:
        self._delete(f"{self._base()}/{self.domain_collection}/{_seg(hostname)}")

    def issue_certificate(self, hostnames: list[str]) -> CertStatus:
        return self._issue(f"{self._base()}/certificates", hostnames)


class HttpFrontendProvider(_HostingProvider):
    """Static-site / frontend hosting platform."""

    kind = "http-frontend"
    app_collection = "sites"
    domain_collection = "domains"
    app_field = "site"


class HttpContainerProvider(_HostingProvider):
    """Serverless container platform."""

    kind = "http-container"
    app_collection = "services"
    domain_collection = "domain-mappings"
    app_field = "service"


class HttpLoadBalancerProvider(HttpProvider):
    """Load balancer: host rules to backend groups, managed certificates."""

    kind = "http-lb"

    def _base(self) -> str:
        return f"/projects/{_seg(self.project)}"

    def observe(self) -> dict[str, dict[str, Any]]:
        base = self._base()
        out: dict[str, dict[str, Any]] = {}
        rules = self._get(f"{base}/host-rules")
        try:
            for rule in rules.get("host-rules", []):
                out[route_key(rule["hostname"])] = {"hostname": rule["hostname"], "service": rule["backend"]}
        except (AttributeError, KeyError, TypeError) as e:
            raise self._malformed("host rule list", e) from e
        out.update(self._certificates(f"{base}/certificates"))
        return out

    def route_host(self, hostname: str, service_ref: ServiceRef) -> BindingRef:
        path = f"{self._base()}/host-rules/{_seg(hostname)}"
        body: dict[str, Any] = {"backend": service_ref.name}
        if service_ref.url:
            body["backend_url"] = service_ref.url
        current = self._get(path, missing_ok=True)
        if not current or any(current.get(k) != v for k, v in body.items()):
            self._put(path, body)
        return BindingRef(provider=self.name, hostname=hostname, service=service_ref.name)

    def unbind_domain(self, hostname: str) -> None:
        self._delete(f"{self._base()}/host-rules/{_seg(hostname)}")

    def issue_certificate(self, hostnames: list[str]) -> CertStatus:
        return self._issue(f"{self._base()}/certificates", hostnames)
