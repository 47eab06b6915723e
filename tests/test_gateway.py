import asyncio
import time
from datetime import datetime, timezone

import httpx
import pytest

from brawlsync.core.errors import RemoteApiError, RemoteNotFoundError, RemoteThrottledError, RemoteTransientError
from brawlsync.core.gateway import parse_retry_after


def _run_call(factory, handler, endpoint="/player/1/ranked", **kwargs):
    async def run():
        gateway = factory(handler, **kwargs)
        try:
            return await gateway.call(endpoint), gateway.request_count
        finally:
            await gateway.close()

    return asyncio.run(run())


def test_success_returns_json_and_sends_api_key(gateway_factory):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"brawlhalla_id": 1, "name": "Alpha"})

    data, count = _run_call(gateway_factory, handler)
    assert data["name"] == "Alpha"
    assert count == 1
    assert seen[0].url.params["api_key"] == "test-key"
    assert seen[0].url.path == "/player/1/ranked"


def test_throttled_request_waits_for_retry_after_then_succeeds(gateway_factory):
    calls = []

    def handler(request):
        calls.append(time.monotonic())
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "1"})
        return httpx.Response(200, json={"ok": True})

    data, count = _run_call(gateway_factory, handler)
    assert data == {"ok": True}
    assert count == 2
    assert calls[1] - calls[0] >= 0.95


def test_persistent_throttling_gives_up(gateway_factory):
    def handler(request):
        return httpx.Response(429)

    with pytest.raises(RemoteThrottledError) as excinfo:
        _run_call(gateway_factory, handler, max_throttle_retries=2)
    assert excinfo.value.status_code == 429


def test_server_errors_are_retried_once(gateway_factory):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    with pytest.raises(RemoteTransientError) as excinfo:
        _run_call(gateway_factory, handler)
    assert len(calls) == 2
    assert excinfo.value.status_code == 503


def test_server_error_then_success(gateway_factory):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(500)
        return httpx.Response(200, json=[1, 2])

    data, count = _run_call(gateway_factory, handler)
    assert data == [1, 2]
    assert count == 2


def test_timeout_is_transient(gateway_factory):
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("read timed out", request=request)

    with pytest.raises(RemoteTransientError) as excinfo:
        _run_call(gateway_factory, handler)
    assert len(calls) == 2
    assert excinfo.value.status_code is None


def test_not_found_is_not_retried(gateway_factory):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404)

    with pytest.raises(RemoteNotFoundError):
        _run_call(gateway_factory, handler)
    assert len(calls) == 1


def test_other_client_errors_are_final(gateway_factory):
    def handler(request):
        return httpx.Response(403)

    with pytest.raises(RemoteApiError) as excinfo:
        _run_call(gateway_factory, handler)
    assert not isinstance(excinfo.value, (RemoteNotFoundError, RemoteTransientError))
    assert excinfo.value.status_code == 403


def test_every_attempt_spends_budget(gateway_factory):
    def handler(request):
        return httpx.Response(200, json={})

    async def run():
        gateway = gateway_factory(handler, capacity=10)
        try:
            await gateway.get_player_stats(7)
            await gateway.get_clan(3)
            return await gateway.remaining_budget()
        finally:
            await gateway.close()

    assert asyncio.run(run()) == 8


def test_rankings_path_and_non_list_body(gateway_factory):
    paths = []

    def handler(request):
        paths.append(request.url.path)
        return httpx.Response(200, json={"error": "nope"})

    async def run():
        gateway = gateway_factory(handler)
        try:
            return await gateway.get_rankings("2v2", "eu", 3)
        finally:
            await gateway.close()

    assert asyncio.run(run()) == []
    assert paths == ["/rankings/2v2/eu/3"]


def test_player_search_and_legend_list(gateway_factory):
    seen = []

    def handler(request):
        seen.append(request.url)
        if request.url.path == "/legend/all":
            return httpx.Response(200, json=[{"legend_id": 3, "legend_name_key": "bodvar"}])
        return httpx.Response(200, json=[{"brawlhalla_id": 7, "name": "Echo"}])

    async def run():
        gateway = gateway_factory(handler)
        try:
            return await gateway.search_player("Echo"), await gateway.get_all_legends()
        finally:
            await gateway.close()

    found, legends = asyncio.run(run())
    assert found == [{"brawlhalla_id": 7, "name": "Echo"}]
    assert legends[0]["legend_name_key"] == "bodvar"
    assert seen[0].path == "/rankings/1v1/all/1"
    assert seen[0].params["name"] == "Echo"
    assert seen[0].params["api_key"] == "test-key"
    assert seen[1].path == "/legend/all"


def test_parse_retry_after_forms():
    now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert parse_retry_after("5") == 5.0
    assert parse_retry_after("Mon, 01 Jan 2024 12:00:30 GMT", now=now) == 30.0
    assert parse_retry_after("Mon, 01 Jan 2024 11:00:00 GMT", now=now) == 0.0
    assert parse_retry_after("soon") is None
    assert parse_retry_after(None) is None
