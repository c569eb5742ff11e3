import importlib.util
from pathlib import Path

import pytest_asyncio

from conftest import FakeCrawler, FakeEmbeddingProvider
from site_kb.container import build_services
from site_kb.index.models import VectorRecord

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "reconcile_index.py"


def load_script():
    spec = importlib.util.spec_from_file_location("reconcile_index", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


@pytest_asyncio.fixture
async def services(settings):
    services = build_services(settings, provider=FakeEmbeddingProvider(), crawler=FakeCrawler([]))
    await services.start()
    yield services
    await services.close()


async def test_reconcile_removes_orphan_vectors(services, capsys):
    backend = services.index.backend
    await backend.upsert("tenant_acme", [VectorRecord("orphan-1", "site", [1.0, 0.0, 0.0])])

    exit_code = await load_script().reconcile_tenants(services, ["acme"])

    assert exit_code == 0
    assert await backend.ids("tenant_acme") == set()
    assert "acme: removed 1 orphan vectors, 0 orphan documents" in capsys.readouterr().out


async def test_reconcile_skips_invalid_tenant(services, capsys):
    exit_code = await load_script().reconcile_tenants(services, ["../other", "acme"])

    assert exit_code == 1
    out = capsys.readouterr().out
    assert "../other: skipped" in out
    assert "acme: removed 0 orphan vectors" in out
