import json

import httpx
import pytest

from ddo.errors import ConfigError, PermanentProviderError, TransientProviderError
from ddo.manifest import ProviderConfig, ScalingParams
from ddo.providers.base import CertStatus, ServiceRef
from ddo.providers.http import (
    ControlPlaneClient,
    parse_retry_after,
    HttpContainerProvider,
    HttpDnsProvider,
    HttpFrontendProvider,
    HttpLoadBalancerProvider,
)


class FakeControlPlane:
    """Minimal REST store: PUT/GET/DELETE by path, GET on a collection lists its members."""

    def __init__(self):
        self.items = {}
        self.requests = []
        self.fail_next = []
        self.certificates = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if self.fail_next:
            return self.fail_next.pop(0)

        if request.method == "POST" and path.endswith("/certificates"):
            body = json.loads(request.content)
            for host in body["hostnames"]:
                self.certificates[host] = "ACTIVE"
            return httpx.Response(200, json={"status": "ACTIVE"})
        if request.method == "GET" and path.endswith("/certificates"):
            return httpx.Response(
                200, json={"certificates": [{"hostname": h, "status": s} for h, s in self.certificates.items()]}
            )
        if request.method == "PUT":
            body = json.loads(request.content)
            if "params" in body:
                body = {**body, "url": f"https://{path.rsplit('/', 1)[1]}.apps.example.net"}
            self.items[path] = body
            return httpx.Response(200, json=body)
        if request.method == "DELETE":
            if self.items.pop(path, None) is None:
                return httpx.Response(404, json={"error": "not found"})
            return httpx.Response(204)
        if request.method == "GET":
            if path in self.items:
                return httpx.Response(200, json=self.items[path])
            members = {p: v for p, v in self.items.items() if p.rsplit("/", 1)[0] == path}
            if members or path.endswith(("/records", "/sites", "/domains", "/services", "/domain-mappings", "/host-rules")):
                return httpx.Response(200, json=self._listing(path, members))
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(405)

    def _listing(self, path, members):
        collection = path.rsplit("/", 1)[1]
        out = []
        for p, v in members.items():
            leaf = p.rsplit("/", 1)[1]
            if collection == "records":
                continue
            if collection in ("sites", "services"):
                out.append({"name": leaf, **v})
            elif collection == "host-rules":
                out.append({"hostname": leaf, **v})
            else:
                out.append({"hostname": leaf, **v})
        if collection == "records":
            for p, v in self.items.items():
                parts = p.split("/")
                if "records" in parts and len(parts) == parts.index("records") + 3:
                    out.append({"name": parts[-2], "type": parts[-1], **v})
        return {collection: out}


@pytest.fixture
def plane():
    return FakeControlPlane()


def _config(kind, **options):
    return ProviderConfig(
        name=kind.replace("http-", ""),
        kind=kind,
        endpoint="https://control.example.net/v1",
        credentials_env="DDO_TEST_TOKEN",
        options=options,
    )


@pytest.fixture(autouse=True)
def token(monkeypatch):
    monkeypatch.setenv("DDO_TEST_TOKEN", "t0ken")


def test_missing_credential_is_a_config_error(monkeypatch, plane):
    monkeypatch.delenv("DDO_TEST_TOKEN")
    with pytest.raises(ConfigError, match="DDO_TEST_TOKEN"):
        HttpFrontendProvider(_config("http-frontend"), "shop", transport=httpx.MockTransport(plane))


def test_missing_endpoint_is_a_config_error(plane):
    cfg = ProviderConfig(name="web", kind="http-frontend")
    with pytest.raises(ConfigError, match="needs an endpoint"):
        HttpFrontendProvider(cfg, "shop", transport=httpx.MockTransport(plane))


def test_bearer_token_is_sent():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={})

    client = ControlPlaneClient("web", "https://control.example.net", "t0ken", 5, transport=httpx.MockTransport(handler))
    client.request("GET", "/ping")
    assert seen["auth"] == "Bearer t0ken"


@pytest.mark.parametrize("status", [429, 500, 503])
def test_retryable_status_is_transient(status):
    client = ControlPlaneClient(
        "web", "https://control.example.net", None, 5, transport=httpx.MockTransport(lambda r: httpx.Response(status))
    )
    with pytest.raises(TransientProviderError):
        client.request("GET", "/x")


@pytest.mark.parametrize("status", [400, 403, 409, 422])
def test_client_errors_are_permanent(status):
    client = ControlPlaneClient(
        "web",
        "https://control.example.net",
        None,
        5,
        transport=httpx.MockTransport(lambda r: httpx.Response(status, json={"error": "quota exceeded"})),
    )
    with pytest.raises(PermanentProviderError, match="quota exceeded"):
        client.request("PUT", "/x", {"a": 1})


def test_network_errors_are_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = ControlPlaneClient("web", "https://control.example.net", None, 5, transport=httpx.MockTransport(handler))
    with pytest.raises(TransientProviderError, match="ConnectError"):
        client.request("GET", "/x")


def test_dns_upsert_is_idempotent(plane):
    dns = HttpDnsProvider(_config("http-dns", zone="example.com"), "shop", transport=httpx.MockTransport(plane))

    ref = dns.upsert_record("app.example.com", "CNAME", "cname.pages.example.net")
    assert ref.value == "cname.pages.example.net"
    puts = [r for r in plane.requests if r[0] == "PUT"]
    assert len(puts) == 1

    dns.upsert_record("app.example.com", "CNAME", "cname.pages.example.net")
    assert len([r for r in plane.requests if r[0] == "PUT"]) == 1

    assert dns.observe() == {
        "record:app.example.com:CNAME": {"name": "app.example.com", "type": "CNAME", "value": "cname.pages.example.net"}
    }

    dns.delete_record("app.example.com", "CNAME")
    # Deleting again is not an error
    dns.delete_record("app.example.com", "CNAME")
    assert dns.observe() == {}


def test_dns_ignores_records_it_does_not_own(plane):
    plane.items["/v1/zones/example.com/records/mail.example.com/MX"] = {"value": "mx.example.net", "comment": "manual"}
    dns = HttpDnsProvider(_config("http-dns", zone="example.com"), "shop", transport=httpx.MockTransport(plane))
    assert dns.observe() == {}


def test_dns_requires_zone(plane):
    with pytest.raises(ConfigError, match="zone"):
        HttpDnsProvider(_config("http-dns"), "shop", transport=httpx.MockTransport(plane))


def test_frontend_deploy_bind_and_certificate(plane):
    web = HttpFrontendProvider(_config("http-frontend"), "shop", transport=httpx.MockTransport(plane))

    ref = web.deploy_container("frontend", "registry.example.net/shop/frontend:1.4.0", ScalingParams())
    assert ref.url == "https://frontend.apps.example.net"

    again = web.deploy_container("frontend", "registry.example.net/shop/frontend:1.4.0", ScalingParams())
    assert again.url == ref.url
    assert len([r for r in plane.requests if r[0] == "PUT"]) == 1

    binding = web.bind_domain(ref, "app.example.com")
    assert binding.service == "frontend"
    assert plane.items["/v1/projects/shop/domains/app.example.com"] == {"site": "frontend"}

    assert web.issue_certificate(["app.example.com"]) is CertStatus.ACTIVE

    observed = web.observe()
    assert observed["binding:app.example.com"] == {"hostname": "app.example.com", "service": "frontend"}
    assert observed["certificate:app.example.com"] == {"hostnames": ["app.example.com"]}
    assert observed["service:frontend"]["image"] == "registry.example.net/shop/frontend:1.4.0"


def test_container_platform_uses_domain_mappings(plane):
    run = HttpContainerProvider(_config("http-container"), "shop", transport=httpx.MockTransport(plane))
    run.bind_domain(ServiceRef(provider="container", name="api"), "api.example.com")
    assert plane.items["/v1/projects/shop/domain-mappings/api.example.com"] == {"service": "api"}

    run.unbind_domain("api.example.com")
    assert "/v1/projects/shop/domain-mappings/api.example.com" not in plane.items


def test_load_balancer_routes_host_once(plane):
    lb = HttpLoadBalancerProvider(_config("http-lb"), "shop", transport=httpx.MockTransport(plane))
    backend = ServiceRef(provider="run", name="api", url="https://api.apps.example.net")

    lb.route_host("api.example.com", backend)
    lb.route_host("api.example.com", backend)
    # Re-routing without a known URL keeps the rule as is
    lb.route_host("api.example.com", ServiceRef(provider="run", name="api"))

    assert len([r for r in plane.requests if r[0] == "PUT"]) == 1
    assert lb.observe()["route:api.example.com"] == {"hostname": "api.example.com", "service": "api"}


def test_unsupported_verb_is_permanent(plane):
    lb = HttpLoadBalancerProvider(_config("http-lb"), "shop", transport=httpx.MockTransport(plane))
    with pytest.raises(PermanentProviderError, match="does not support deploy_container"):
        lb.deploy_container("api", "img:1", ScalingParams())


def test_server_error_during_deploy_is_transient(plane):
    plane.fail_next = [httpx.Response(200, json={}), httpx.Response(503, headers={"Retry-After": "7"})]
    web = HttpFrontendProvider(_config("http-frontend"), "shop", transport=httpx.MockTransport(plane))
    with pytest.raises(TransientProviderError, match="retry after 7s") as exc:
        web.deploy_container("frontend", "img:1", ScalingParams())
    assert exc.value.retry_after == 7.0


def test_rate_limit_carries_retry_after(plane):
    plane.fail_next = [httpx.Response(429, headers={"Retry-After": "60"})]
    dns = HttpDnsProvider(_config("http-dns", zone="example.com"), "shop", transport=httpx.MockTransport(plane))

    with pytest.raises(TransientProviderError) as exc:
        dns.observe()

    assert exc.value.retry_after == 60.0


def test_parse_retry_after():
    assert parse_retry_after(None) is None
    assert parse_retry_after("") is None
    assert parse_retry_after("120") == 120.0
    assert parse_retry_after("-5") == 0.0
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 0.0
    assert parse_retry_after("soon") is None


def test_malformed_listing_is_permanent(plane):
    plane.fail_next = [httpx.Response(200, json={"records": [{"name": "app.example.com", "comment": "ddo:shop"}]})]
    dns = HttpDnsProvider(_config("http-dns", zone="example.com"), "shop", transport=httpx.MockTransport(plane))
    with pytest.raises(PermanentProviderError, match="malformed record list"):
        dns.observe()

    plane.fail_next = [httpx.Response(200, json={"services": [{"params": {}}]})]
    run = HttpContainerProvider(_config("http-container"), "shop", transport=httpx.MockTransport(plane))
    with pytest.raises(PermanentProviderError, match="malformed services listing"):
        run.observe()

    plane.fail_next = [httpx.Response(200, json=["not", "an", "object"])]
    lb = HttpLoadBalancerProvider(_config("http-lb"), "shop", transport=httpx.MockTransport(plane))
    with pytest.raises(PermanentProviderError, match="malformed host rule list"):
        lb.observe()
