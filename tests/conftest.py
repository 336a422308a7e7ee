import os as _os
import sys
from dataclasses import replace

import pytest

# Ensure project root is importable (so `import cli` / `import ddo` work without installing)
_project_root = _os.path.dirname(_os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from ddo import db  # noqa: E402
from ddo.manifest import parse_manifest  # noqa: E402
from ddo.providers import build_providers  # noqa: E402


@pytest.fixture
def isolated_db(tmp_path, monkeypatch):
    """Point the run store at a fresh sqlite file."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path / "ddo-test.db")))
    db.init_db()
    return db


@pytest.fixture
def shop_doc():
    """Two independent branches: a static frontend and a container API behind a load balancer."""
    return {
        "project": "shop",
        "dns_provider": "registrar",
        "providers": {
            "registrar": {"kind": "memory"},
            "pages": {"kind": "memory", "dns_target": "cname.pages.example.net"},
            "containers": {"kind": "memory"},
            "edge": {"kind": "memory", "dns_target": "203.0.113.10"},
        },
        "services": [
            {"name": "frontend", "provider": "pages", "image": "registry.example.net/shop/frontend:1.4.0"},
            {
                "name": "api",
                "provider": "containers",
                "image": "registry.example.net/shop/api:2.0.1",
                "scaling": {"min_instances": 1, "max_instances": 10, "concurrency": 80},
                "health": {"path": "/health", "port": 8080},
            },
        ],
        "domains": [
            {"hostname": "app.example.com", "service": "frontend", "record_type": "CNAME"},
            {"hostname": "api.example.com", "service": "api", "record_type": "A", "load_balancer": "edge"},
        ],
    }


@pytest.fixture
def shop(shop_doc):
    manifest = parse_manifest(shop_doc)
    return manifest, build_providers(manifest)
