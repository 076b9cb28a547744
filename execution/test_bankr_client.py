"""
Tests for the Bankr prompt client against a mocked HTTP transport.
"""
import json

import httpx
import pytest

from execution.bankr_client import BankrClient, BankrError, PromptResult, require_success


BASE_URL = "https://bankr.test"


async def no_sleep(_seconds):
    return None


def make_client(handler, **kwargs) -> BankrClient:
    transport = httpx.MockTransport(handler)
    return BankrClient(
        api_key="test-key",
        base_url=BASE_URL,
        poll_interval=2,
        max_polls=kwargs.pop("max_polls", 3),
        client=httpx.AsyncClient(transport=transport),
        sleep=no_sleep,
        **kwargs,
    )


class JobServer:
    """Accepts one prompt and answers polls from a scripted status list."""

    def __init__(self, statuses, response="done", transactions=None):
        self.statuses = list(statuses)
        self.response = response
        self.transactions = transactions or []
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/agent/prompt":
            return httpx.Response(200, json={"jobId": "job_1", "threadId": "thr_1"})
        if request.method == "GET" and request.url.path == "/agent/job/job_1":
            status = self.statuses.pop(0) if self.statuses else "pending"
            return httpx.Response(
                200,
                json={"status": status, "response": self.response, "transactions": self.transactions},
            )
        return httpx.Response(404)


async def test_prompt_polls_until_completed():
    server = JobServer(["pending", "processing", "completed"], response="Bought $5 of PEPE2")
    client = make_client(server)

    result = await client.prompt("Buy $5 of PEPE2 on Base", thread_id="thr_0")

    assert result.success
    assert result.status == "completed"
    assert result.job_id == "job_1"
    assert result.thread_id == "thr_1"
    assert result.response == "Bought $5 of PEPE2"

    submit = server.requests[0]
    assert submit.headers["X-API-Key"] == "test-key"
    assert json.loads(submit.content) == {"prompt": "Buy $5 of PEPE2 on Base", "threadId": "thr_0"}
    assert len(server.requests) == 4
    await client.disconnect()


async def test_failed_job():
    client = make_client(JobServer(["failed"], response="market not found"))
    result = await client.prompt("Bet $4 on YES")
    assert not result.success
    assert result.status == "failed"
    assert result.error == "market not found"


async def test_poll_budget_exhausted():
    server = JobServer([])
    client = make_client(server, max_polls=3)
    result = await client.prompt("slow request")
    assert not result.success
    assert result.status == "timeout"
    assert result.error == "Request timed out (6s)"
    assert len(server.requests) == 1 + 3


async def test_submit_http_error():
    client = make_client(lambda request: httpx.Response(503, text="maintenance"))
    result = await client.prompt("anything")
    assert not result.success
    assert "503" in result.error


async def test_missing_job_id():
    client = make_client(lambda request: httpx.Response(200, json={}))
    result = await client.prompt("anything")
    assert not result.success
    assert result.error == "No job ID returned from Bankr"


async def test_transport_error_is_returned_not_raised():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    result = await make_client(handler).prompt("anything")
    assert not result.success
    assert "connection refused" in result.error


async def test_no_api_key():
    client = BankrClient(api_key="", base_url=BASE_URL)
    result = await client.prompt("anything")
    assert not result.success
    assert result.status == "no_key"


def test_require_success():
    ok = PromptResult(success=True, response="fine")
    assert require_success(ok) is ok
    with pytest.raises(BankrError, match="ECONNRESET"):
        require_success(PromptResult(success=False, status="failed", error="ECONNRESET"))
