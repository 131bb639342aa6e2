import asyncpg
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.engine.repository import PgEngineRepository
from app.engine.routes import get_repo, router


class UuidRejectingConnection:
    """Connection whose parameter encoding fails the way asyncpg's uuid codec does."""

    def __init__(self):
        self.queries = []

    async def fetchrow(self, sql, *args):
        self.queries.append(sql)
        raise asyncpg.DataError(f"invalid input for query argument $1: {args[0]!r} (invalid UUID)")


@pytest.mark.asyncio
async def test_lookups_by_malformed_id_find_nothing():
    conn = UuidRejectingConnection()
    repo = PgEngineRepository(conn)

    assert await repo.get_deal("abc") is None
    assert await repo.get_stage("abc") is None
    assert await repo.get_funnel("abc") is None
    assert await repo.get_rule("abc") is None
    assert await repo.get_published_form("abc") is None
    assert await repo.find_latest_deal_id("abc", "def") is None
    assert len(conn.queries) == 6


@pytest.fixture
def pg_client():
    app = FastAPI()
    app.include_router(router)

    async def _repo():
        yield PgEngineRepository(UuidRejectingConnection())

    app.dependency_overrides[get_repo] = _repo
    return TestClient(app)


def test_malformed_deal_id_is_404(pg_client):
    assert pg_client.post("/engine/automations/process", json={"deal_id": "abc"}).status_code == 404
    assert pg_client.post("/engine/deals/abc/move", json={"to_stage_id": "xyz"}).status_code == 404
    assert pg_client.get("/engine/deals/abc/history").status_code == 404
    assert pg_client.post("/engine/automations/abc/webhook", json={"deal_id": "abc"}).status_code == 404
