import os
import sys

import httpx
import pytest

# Ensure the repository root is on sys.path so `import app` works without installing
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from fakes import MemoryRepository  # noqa: E402


@pytest.fixture
def repo():
    return MemoryRepository()


@pytest.fixture
def funnel(repo):
    """Default six-stage funnel: Novo Lead .. Negociação, Ganho (won), Perdido (lost)."""
    return repo.add_funnel("Vendas")


@pytest.fixture
def stages(funnel):
    return {s.name: s for s in funnel.stages}


@pytest.fixture
def contact(repo):
    return repo.add_contact("Ana")


@pytest.fixture
def deal(repo, stages, contact):
    return repo.add_deal(stages["Novo Lead"], contact=contact)


@pytest.fixture
def requests_seen():
    return []


@pytest.fixture
def http(requests_seen):
    """AsyncClient that records requests and answers 200."""
    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        return httpx.Response(200, json={"ok": True})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def unreachable_http():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
