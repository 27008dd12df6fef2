import asyncio

import httpx
import pytest

from conftest import RecordingSleep, make_queue
from reader.exceptions import (
    AuthError,
    HTTPError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ResponseFormatError,
    ServerError,
)
from reader.http_client import QUEUE_GAP, redact


def test_dispatch_order_matches_submission_order():
    seen = []
    in_flight = 0
    max_in_flight = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, max_in_flight
        in_flight += 1
        max_in_flight = max(max_in_flight, in_flight)
        seen.append(request.url.params["n"])
        await asyncio.sleep(0)
        in_flight -= 1
        return httpx.Response(200, json={"n": request.url.params["n"]})

    async def run():
        queue = make_queue(handler)
        urls = [f"https://api.example.test/v1/latest-news?n={i}" for i in range(8)]
        results = await asyncio.gather(*(queue.submit(url) for url in urls))
        await queue.close()
        return results

    results = asyncio.run(run())
    assert seen == [str(i) for i in range(8)]
    assert [r["n"] for r in results] == [str(i) for i in range(8)]
    assert max_in_flight == 1


def test_gap_inserted_only_while_backlog_remains():
    sleep = RecordingSleep()

    def handler(request):
        return httpx.Response(200, json={})

    async def run():
        queue = make_queue(handler, sleep=sleep)
        await asyncio.gather(*(queue.submit(f"https://api.example.test/x?i={i}") for i in range(3)))
        await queue.close()

    asyncio.run(run())
    assert sleep.delays.count(QUEUE_GAP) == 2


def test_min_interval_measured_from_previous_dispatch():
    sleep = RecordingSleep()

    def handler(request):
        return httpx.Response(200, json={})

    async def run():
        queue = make_queue(handler, sleep=sleep, min_request_interval=0.1)
        await queue.submit("https://api.example.test/a")
        await queue.submit("https://api.example.test/b")
        await queue.close()

    asyncio.run(run())
    spacing = [d for d in sleep.delays if d != QUEUE_GAP]
    assert len(spacing) == 1
    assert 0 < spacing[0] <= 0.1


def test_request_headers():
    captured = {}

    def handler(request):
        captured.update(request.headers)
        return httpx.Response(200, json={})

    async def run():
        queue = make_queue(handler)
        await queue.submit("https://api.example.test/a")
        await queue.close()

    asyncio.run(run())
    assert captured["accept"] == "application/json"
    assert captured["user-agent"] == "CurrentsNewsApp/1.0"


def test_unauthorized_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(401)

    async def run():
        queue = make_queue(handler, max_retries=3)
        with pytest.raises(AuthError) as exc_info:
            await queue.submit("https://api.example.test/a?apiKey=secret")
        await queue.close()
        return exc_info.value

    error = asyncio.run(run())
    assert len(calls) == 1
    assert error.status_code == 401
    assert "secret" not in error.url


def test_rate_limit_exhausts_after_max_retries():
    calls = []
    sleep = RecordingSleep()
    responses = iter([httpx.Response(429) for _ in range(5)])

    def handler(request):
        calls.append(request)
        return next(responses)

    async def run():
        queue = make_queue(handler, sleep=sleep, max_retries=3, retry_delay=1.0, backoff_multiplier=2)
        with pytest.raises(RateLimitError):
            await queue.submit("https://api.example.test/a")
        await queue.close()

    asyncio.run(run())
    assert len(calls) == 3
    # 429 backoff grows from retry_delay * multiplier ** attempt
    assert sleep.delays == [2.0, 4.0]


def test_server_errors_retry_then_classify():
    calls = []
    sleep = RecordingSleep()

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    async def run():
        queue = make_queue(handler, sleep=sleep, max_retries=3, retry_delay=1.0)
        with pytest.raises(ServerError) as exc_info:
            await queue.submit("https://api.example.test/a")
        await queue.close()
        return exc_info.value

    error = asyncio.run(run())
    assert len(calls) == 3
    assert sleep.delays == [1.0, 2.0]
    assert error.status_code == 503


def test_transient_failure_recovers():
    responses = iter([httpx.Response(500), httpx.Response(200, json={"news": []})])

    def handler(request):
        return next(responses)

    async def run():
        queue = make_queue(handler, max_retries=3)
        data = await queue.submit("https://api.example.test/a")
        await queue.close()
        return data

    assert asyncio.run(run()) == {"news": []}


def test_timeout_is_retried_and_classified():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    sleep = RecordingSleep()

    async def run():
        queue = make_queue(handler, sleep, max_retries=2)
        with pytest.raises(RequestTimeoutError):
            await queue.submit("https://api.example.test/a")
        await queue.close()

    asyncio.run(run())
    assert len(calls) == 2
    assert sleep.delays == [1.0]


def test_slow_response_is_cut_off_at_total_timeout():
    async def handler(request):
        # Trickles past the deadline without ever tripping a per-read timeout
        await asyncio.sleep(5)
        return httpx.Response(200, json={"news": []})

    async def run():
        queue = make_queue(handler, max_retries=1, timeout=0.1)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(RequestTimeoutError):
            await queue.submit("https://api.example.test/slow")
        elapsed = loop.time() - started
        await queue.close()
        return elapsed

    assert asyncio.run(run()) < 1.0


def test_transport_error_backoff():
    sleep = RecordingSleep()

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        queue = make_queue(handler, sleep, max_retries=3)
        with pytest.raises(NetworkError):
            await queue.submit("https://api.example.test/a")
        await queue.close()

    asyncio.run(run())
    assert sleep.delays == [1.0, 2.0]


def test_transport_error_becomes_network_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        queue = make_queue(handler, max_retries=2)
        with pytest.raises(NetworkError) as exc_info:
            await queue.submit("https://api.example.test/a")
        await queue.close()
        return exc_info.value

    assert not isinstance(asyncio.run(run()), RequestTimeoutError)


@pytest.mark.parametrize("status", [400, 403, 404])
def test_other_client_errors_fail_fast(status):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(status)

    async def run():
        queue = make_queue(handler, max_retries=3)
        with pytest.raises(HTTPError) as exc_info:
            await queue.submit("https://api.example.test/a")
        await queue.close()
        return exc_info.value

    error = asyncio.run(run())
    assert type(error) is HTTPError
    assert error.status_code == status
    assert len(calls) == 1


@pytest.mark.parametrize("response", [
    httpx.Response(200, json=["not", "an", "object"]),
    httpx.Response(200, text="<html>maintenance</html>"),
])
def test_non_object_body_is_a_format_error(response):
    calls = []

    def handler(request):
        calls.append(request)
        return response

    async def run():
        queue = make_queue(handler, max_retries=3)
        with pytest.raises(ResponseFormatError):
            await queue.submit("https://api.example.test/a")
        await queue.close()

    asyncio.run(run())
    assert len(calls) == 1


def test_failure_does_not_block_following_items():
    responses = iter([httpx.Response(401), httpx.Response(200, json={"ok": True})])

    def handler(request):
        return next(responses)

    async def run():
        queue = make_queue(handler)
        first, second = await asyncio.gather(
            queue.submit("https://api.example.test/a"),
            queue.submit("https://api.example.test/b"),
            return_exceptions=True,
        )
        await queue.close()
        return first, second

    first, second = asyncio.run(run())
    assert isinstance(first, AuthError)
    assert second == {"ok": True}


def test_submit_after_close_is_rejected():
    async def run():
        queue = make_queue(lambda request: httpx.Response(200, json={}))
        await queue.close()
        with pytest.raises(NetworkError):
            await queue.submit("https://api.example.test/a")

    asyncio.run(run())


def test_redact_removes_api_key():
    assert redact("https://api.example.test/v1/search?keywords=x&apiKey=secret") == \
        "https://api.example.test/v1/search?keywords=x"
