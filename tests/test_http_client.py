"""Tests for the resilient fetcher and batched gathering."""

import asyncio

import httpx
import pytest

from playlist_ingest.errors import (
    FetchTimeout,
    HttpStatusError,
    NetworkUnreachable,
    ParseError,
    RetriesExhausted,
    ValidationError,
)
from playlist_ingest.services.http_client import HttpClientService, backoff_delay, gather_in_batches


def _service(handler):
    return HttpClientService(backoff_base=0, backoff_cap=0, transport=httpx.MockTransport(handler))


def _fetch(svc, url="http://example.com/list.m3u", **kwargs):
    async def go():
        try:
            return await svc.fetch_text(url, **kwargs)
        finally:
            await svc.close()

    return asyncio.run(go())


class TestBackoff:
    def test_delays_double_then_cap(self):
        assert [backoff_delay(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_custom_base(self):
        assert backoff_delay(3, base=0.5, cap=10) == 2.0


class TestFetchText:
    def test_success_first_try(self):
        svc = _service(lambda request: httpx.Response(200, text="#EXTM3U"))
        assert _fetch(svc) == "#EXTM3U"

    def test_two_transient_failures_then_success(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, text="ok")

        assert _fetch(_service(handler), max_retries=3) == "ok"
        assert len(calls) == 3

    def test_404_is_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404, text="Not here")

        with pytest.raises(HttpStatusError) as exc:
            _fetch(_service(handler), max_retries=3)
        assert len(calls) == 1
        assert exc.value.status_code == 404
        assert exc.value.retryable is False
        assert "Not here" in str(exc.value)

    def test_long_error_body_uses_reason_phrase(self):
        svc = _service(lambda request: httpx.Response(403, text="x" * 600))
        with pytest.raises(HttpStatusError) as exc:
            _fetch(svc)
        assert "Forbidden" in str(exc.value)
        assert "xxxx" not in str(exc.value)

    def test_retries_exhausted_keeps_last_error(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        with pytest.raises(RetriesExhausted) as exc:
            _fetch(_service(handler), max_retries=2)
        assert len(calls) == 3
        assert isinstance(exc.value.last_error, HttpStatusError)
        assert exc.value.attempts == 3

    def test_timeout_is_classified(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(RetriesExhausted) as exc:
            _fetch(_service(handler), max_retries=1)
        assert isinstance(exc.value.last_error, FetchTimeout)

    def test_connect_error_is_classified(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RetriesExhausted) as exc:
            _fetch(_service(handler), max_retries=0)
        assert isinstance(exc.value.last_error, NetworkUnreachable)

    def test_invalid_url(self):
        svc = _service(lambda request: httpx.Response(200))
        with pytest.raises(ValidationError):
            _fetch(svc, url="ftp://example.com/file")
        with pytest.raises(ValidationError):
            _fetch(svc, url="not a url")

    def test_invalid_arguments(self):
        svc = _service(lambda request: httpx.Response(200))
        with pytest.raises(ValidationError):
            _fetch(svc, timeout=0)
        with pytest.raises(ValidationError):
            _fetch(svc, max_retries=-1)

    def test_params_and_user_agent_are_sent(self):
        seen = {}

        def handler(request):
            seen["query"] = dict(request.url.params)
            seen["ua"] = request.headers["user-agent"]
            return httpx.Response(200, text="{}")

        svc = HttpClientService(user_agent="Tester/2.0", transport=httpx.MockTransport(handler))
        _fetch(svc, params={"action": "get_live_streams"})
        assert seen["query"] == {"action": "get_live_streams"}
        assert seen["ua"] == "Tester/2.0"


class TestFetchJson:
    def test_invalid_json(self):
        svc = _service(lambda request: httpx.Response(200, text="<html>"))

        async def go():
            try:
                return await svc.fetch_json("http://example.com/api")
            finally:
                await svc.close()

        with pytest.raises(ParseError, match="Invalid JSON response from server"):
            asyncio.run(go())

    def test_decodes_payload(self):
        svc = _service(lambda request: httpx.Response(200, json={"a": [1, 2]}))

        async def go():
            try:
                return await svc.fetch_json("http://example.com/api")
            finally:
                await svc.close()

        assert asyncio.run(go()) == {"a": [1, 2]}


class TestGatherInBatches:
    def test_order_and_exceptions(self):
        async def ok(n):
            await asyncio.sleep(0)
            return n * 10

        async def bad():
            raise RuntimeError("nope")

        factories = [lambda n=n: ok(n) for n in range(4)]
        factories.insert(2, bad)
        results = asyncio.run(gather_in_batches(factories, batch_size=2, pause=0))
        assert results[:2] == [0, 10]
        assert isinstance(results[2], RuntimeError)
        assert results[3:] == [20, 30]

    def test_concurrency_cap(self):
        active = 0
        peak = 0

        async def work():
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1

        asyncio.run(gather_in_batches([work for _ in range(12)], batch_size=5, pause=0))
        assert peak == 5

    def test_empty(self):
        assert asyncio.run(gather_in_batches([])) == []
