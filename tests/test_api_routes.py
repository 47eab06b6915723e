from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from brawlsync import __version__
from brawlsync.api.app import create_app
from brawlsync.core.config import SyncSettings
from brawlsync.core.errors import StoreUnavailableError
from brawlsync.core.store import MemoryStore
from brawlsync.refresh.queue import MemoryQueueStore
from brawlsync.runtime import build_runtime


class BrokenBudgetStore(MemoryStore):
    async def peek_tokens(self, key, capacity, interval):
        raise StoreUnavailableError("redis down", operation="peek")


def provider(request):
    if request.url.path == "/player/77/ranked":
        return httpx.Response(200, json={"name": "Newcomer", "rating": 1300, "tier": "Silver 3", "region": "EU"})
    if request.url.path == "/clan/9":
        return httpx.Response(200, json={"clan_id": 9, "clan_name": "Valhalla", "clan_create_date": 1600000000, "clan": []})
    return httpx.Response(404)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def runtime(repo, store):
    return build_runtime(
        SyncSettings(),
        store=store,
        queue_store=MemoryQueueStore(),
        repository=repo,
        transport=httpx.MockTransport(provider),
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime)) as test_client:
        yield test_client


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"service": "brawlsync", "version": __version__, "status": "running"}


def test_health_reports_budget_and_backlog(client, runtime):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["budget_remaining"] == runtime.limiter.capacity
    assert body["backlog"] == 0
    assert body["database"] == "ok"


def test_health_degraded_when_store_is_down(repo):
    runtime = build_runtime(
        SyncSettings(),
        store=BrokenBudgetStore(),
        queue_store=MemoryQueueStore(),
        repository=repo,
        transport=httpx.MockTransport(provider),
    )
    with TestClient(create_app(runtime)) as client:
        body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["budget_remaining"] is None


def test_health_degraded_when_database_is_down(client, repo):
    repo.reachable = False
    body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["database"] == "unreachable"
    assert body["store"] == "ok"


def test_status_lists_cursors_per_bracket(client, runtime):
    response = client.get("/status")
    assert response.status_code == 200
    body = response.json()
    assert set(body["cursors"]) == set(runtime.settings.sweep.brackets)
    first = runtime.settings.sweep.brackets[0]
    assert body["cursors"][first]["hot"] == runtime.settings.sweep.hot_pages[0]
    assert body["last_tick"] is None
    assert body["limiter"]["capacity"] == runtime.limiter.capacity


def test_known_player_is_served_from_storage(client, repo):
    now = datetime.now(timezone.utc)
    repo.players[5] = {"brawlhalla_id": 5, "name": "Nova", "ranked_updated_at": now, "stats_updated_at": now}
    response = client.get("/players/5")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Nova"
    assert body["is_refreshing"] is False


def test_unknown_player_is_discovered(client, repo):
    response = client.get("/players/77")
    assert response.status_code == 200
    body = response.json()
    assert body["name"] == "Newcomer"
    assert body["queued"] == ["stats"]
    assert repo.players[77]["rating"] == 1300


def test_unknown_player_missing_upstream_is_404(client):
    response = client.get("/players/404")
    assert response.status_code == 404
    assert response.json()["error_type"] == "RemoteNotFoundError"


def test_discovery_refused_when_budget_is_low(client, runtime, store):
    store.set_tokens(runtime.limiter.key, 3)
    response = client.get("/players/78")
    assert response.status_code == 503
    body = response.json()
    assert body["error_type"] == "QuotaExhaustedError"
    assert body["details"]["remaining"] == 3


def test_clan_lookup(client, repo):
    response = client.get("/clans/9")
    assert response.status_code == 200
    assert response.json()["clan_name"] == "Valhalla"
    assert repo.clans[9]["clan_name"] == "Valhalla"
