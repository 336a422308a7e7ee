import json

import pytest
import requests

import cli
from ddo import db


SHOP_YAML = """
project: shop
dns_provider: registrar
providers:
  registrar: {{kind: memory, state_file: "{state}"}}
  pages: {{kind: memory, state_file: "{state}", dns_target: cname.pages.example.net}}
  containers: {{kind: memory, state_file: "{state}"}}
  edge: {{kind: memory, state_file: "{state}", dns_target: 203.0.113.10}}
services:
  - {{name: frontend, provider: pages, image: "registry.example.net/shop/frontend:1.4.0"}}
  - name: api
    provider: containers
    image: "registry.example.net/shop/api:2.0.1"
    scaling: {{min_instances: 1, max_instances: 10}}
domains:
  - {{hostname: app.example.com, service: frontend}}
  - {{hostname: api.example.com, service: api, record_type: A, load_balancer: edge}}
"""


@pytest.fixture
def manifest_path(tmp_path):
    path = tmp_path / "shop.yaml"
    path.write_text(SHOP_YAML.format(state=tmp_path / "state.json"), encoding="utf-8")
    return str(path)


def test_plan_apply_plan_converges(isolated_db, manifest_path, capsys):
    assert cli.main(["plan", manifest_path]) == 0
    out = capsys.readouterr().out
    assert "8 operation(s) in 2 independent branch(es)" in out

    assert cli.main(["apply", manifest_path]) == 0
    out = capsys.readouterr().out
    assert ": succeeded" in out

    # State persisted by the memory providers: nothing left to do
    assert cli.main(["plan", manifest_path]) == 0
    assert "no changes" in capsys.readouterr().out


def test_plan_json(manifest_path, capsys):
    assert cli.main(["plan", manifest_path, "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["project"] == "shop"
    assert len(data["operations"]) == 8
    assert len(data["branches"]) == 2


def test_invalid_manifest_exits_1(tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text(
        "project: shop\nproviders: {a: {kind: memory}}\n"
        "services:\n  - {name: api, provider: a, image: x, scaling: {min_instances: 3, max_instances: 1}}\n",
        encoding="utf-8",
    )
    assert cli.main(["plan", str(bad)]) == 1
    err = capsys.readouterr().err
    assert "manifest is invalid" in err
    assert "min_instances (3) > max_instances (1)" in err


def test_unknown_provider_kind_exits_1(isolated_db, tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text("project: shop\nproviders: {a: {kind: mainframe}}\n", encoding="utf-8")
    assert cli.main(["apply", str(bad)]) == 1
    assert "unknown kind 'mainframe'" in capsys.readouterr().err


def test_status_shows_latest_run(isolated_db, manifest_path, capsys):
    assert cli.main(["status"]) == 1
    capsys.readouterr()

    cli.main(["apply", manifest_path, "--json"])
    lines = capsys.readouterr().out.splitlines()
    finished = json.loads(lines[-1])
    assert finished["event"] == "run_finished"

    assert cli.main(["status", "--json"]) == 0
    data = json.loads(capsys.readouterr().out)
    assert data["run_id"] == finished["run_id"]
    assert data["status"] == "succeeded"

    assert cli.main(["status", finished["run_id"]]) == 0
    assert f"Run {finished['run_id']} (shop): succeeded" in capsys.readouterr().out


def test_events_lists_transitions(isolated_db, manifest_path, capsys):
    cli.main(["apply", manifest_path])
    capsys.readouterr()

    assert cli.main(["events", "--limit", "200"]) == 0
    out = capsys.readouterr().out
    assert "containers/service:api" in out
    assert "PENDING -> RUNNING" in out


def test_status_from_api(monkeypatch, capsys):
    payload = {
        "run_id": "abc",
        "project": "shop",
        "started_at": "2026-01-01T00:00:00Z",
        "finished_at": "2026-01-01T00:00:03Z",
        "status": "succeeded",
        "cancelled": False,
        "cancel_reason": None,
        "outcomes": [
            {"op_id": "dns/record:app.example.com:CNAME", "kind": "upsert_record", "provider": "dns",
             "action": "create", "state": "SUCCEEDED", "attempts": 1, "detail": "app.example.com CNAME x"},
        ],
    }

    class _Resp:
        status_code = 200

        def raise_for_status(self):
            return None

        def json(self):
            return payload

    calls = []

    def fake_get(url, auth=None, timeout=None):
        calls.append(url)
        return _Resp()

    monkeypatch.setattr(cli.requests, "get", fake_get)

    assert cli.main(["status", "--api", "http://ddo.internal:8000/"]) == 0
    assert calls == ["http://ddo.internal:8000/runs/latest"]
    assert "Run abc (shop): succeeded" in capsys.readouterr().out


def test_status_api_unreachable(monkeypatch, capsys):
    def fake_get(url, auth=None, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["status", "--api", "http://ddo.internal:8000"]) == 1
    assert "unreachable" in capsys.readouterr().err


def test_db_option_selects_the_run_store(monkeypatch, tmp_path, manifest_path, capsys):
    monkeypatch.setattr(db, "_db_path_override", None)
    store = tmp_path / "runs" / "audit.db"

    assert cli.main(["--db", str(store), "apply", manifest_path]) == 0
    capsys.readouterr()

    assert store.exists()
    assert cli.main(["--db", str(store), "status"]) == 0
    assert "(shop): succeeded" in capsys.readouterr().out


def test_plan_rejects_kind_that_cannot_serve_the_manifest(tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text(
        "project: shop\n"
        "providers:\n"
        "  registrar: {kind: http-dns, endpoint: 'https://dns.example.net/v1', zone: example.com}\n"
        "services:\n"
        "  - {name: api, provider: registrar, image: 'shop/api:1'}\n",
        encoding="utf-8",
    )
    assert cli.main(["plan", str(bad)]) == 1
    err = capsys.readouterr().err
    assert "manifest is invalid" in err
    assert "does not support deploy_container" in err
