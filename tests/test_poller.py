import asyncio

import httpx
import pytest

from priella.poller import PollOutcome, poll_payment_status

BASE = "http://priella.test"
CID = "ws_CO_191220191020363925"


def scripted(responses):
    """MockTransport handler replaying `responses`; the last one repeats."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        item = responses[min(len(seen), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, httpx.Response):
            return item
        status, body = item
        return httpx.Response(status, json=body)

    return handler, seen


@pytest.fixture
async def make_client():
    clients = []

    def _make(handler):
        c = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(c)
        return c

    yield _make
    for c in clients:
        await c.aclose()


class TestPollPaymentStatus:

    async def test_pending_throughout_is_timeout_not_failure(self, make_client):
        handler, seen = scripted([(200, {"status": "pending"})])
        res = await poll_payment_status(
            make_client(handler), BASE, CID, interval_s=0.01, max_attempts=3
        )
        assert res.outcome is PollOutcome.TIMEOUT
        assert res.outcome is not PollOutcome.FAILED
        assert res.attempts == 3
        assert res.status == "pending"
        assert seen == [f"/api/payments/status/{CID}"] * 3
        assert "check" in res.message

    async def test_stops_on_completed(self, make_client):
        handler, seen = scripted([
            (200, {"status": "pending"}),
            (200, {"status": "pending"}),
            (200, {"status": "completed", "result_code": 0}),
        ])
        res = await poll_payment_status(
            make_client(handler), BASE, CID, interval_s=0.01, max_attempts=10
        )
        assert res.outcome is PollOutcome.COMPLETED
        assert res.attempts == 3
        assert res.result_code == 0
        assert len(seen) == 3

    async def test_stops_on_failed(self, make_client):
        handler, _ = scripted([
            (200, {"status": "failed", "result_code": 1032}),
        ])
        res = await poll_payment_status(
            make_client(handler), BASE, CID, interval_s=0.01, max_attempts=10
        )
        assert res.outcome is PollOutcome.FAILED
        assert res.result_code == 1032
        assert res.attempts == 1

    async def test_not_found_and_transport_errors_count_as_pending(
        self, make_client
    ):
        handler, seen = scripted([
            (404, {"error": "Transaction not found", "code": "not_found"}),
            httpx.ConnectError("connection reset"),
            (500, {}),
            (200, {"status": "completed", "result_code": 0}),
        ])
        res = await poll_payment_status(
            make_client(handler), BASE, CID, interval_s=0.01, max_attempts=10
        )
        assert res.outcome is PollOutcome.COMPLETED
        assert res.attempts == 4

    async def test_unreadable_bodies_count_as_pending(self, make_client):
        handler, seen = scripted([
            httpx.Response(200, content=b"<html>gateway timeout</html>"),
            (200, ["completed"]),
            (200, {"status": "completed", "result_code": 0}),
        ])
        res = await poll_payment_status(
            make_client(handler), BASE, CID, interval_s=0.01, max_attempts=10
        )
        assert res.outcome is PollOutcome.COMPLETED
        assert res.attempts == 3

    async def test_wall_clock_budget(self, make_client):
        handler, seen = scripted([(200, {"status": "pending"})])
        res = await poll_payment_status(
            make_client(handler), BASE, CID,
            interval_s=0.05, max_attempts=1000, max_wait_s=0.2,
        )
        assert res.outcome is PollOutcome.TIMEOUT
        assert 1 <= res.attempts < 1000

    async def test_stop_event_cancels(self, make_client):
        handler, seen = scripted([(200, {"status": "pending"})])
        stop = asyncio.Event()

        async def stop_soon():
            await asyncio.sleep(0.05)
            stop.set()

        setter = asyncio.create_task(stop_soon())
        res = await poll_payment_status(
            make_client(handler), BASE, CID,
            interval_s=10.0, max_attempts=5, stop=stop,
        )
        await setter
        assert res.outcome is PollOutcome.CANCELLED
        assert res.attempts == 1
        assert res.elapsed_s < 5

    async def test_stop_before_start(self, make_client):
        handler, seen = scripted([(200, {"status": "pending"})])
        stop = asyncio.Event()
        stop.set()
        res = await poll_payment_status(
            make_client(handler), BASE, CID, stop=stop
        )
        assert res.outcome is PollOutcome.CANCELLED
        assert seen == []

    async def test_task_cancellation_propagates(self, make_client):
        handler, _ = scripted([(200, {"status": "pending"})])
        task = asyncio.create_task(poll_payment_status(
            make_client(handler), BASE, CID, interval_s=10.0, max_attempts=5
        ))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
