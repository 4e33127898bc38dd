"""End-to-end: HTTP gateway, breaker, polling and recovery together."""

import json

import httpx
import pytest

from runwatch.core.errors import CircuitOpenError
from runwatch.execution.circuit_breaker import CircuitBreakerConfig, CircuitMode, CircuitStore
from runwatch.execution.client import ExecutionMonitor
from runwatch.execution.gateway import HttpExecutionGateway
from runwatch.execution.models import ExecutionStatus, PollingStrategy
from runwatch.execution.polling import PollingConfig
from runwatch.execution.recovery import Retry
from runwatch.execution.resilience import RetryCircuitBreaker
from runwatch.execution.retry import ExponentialBackoff, RetryPolicy

BASE_URL = "https://automation.example.com"
FAST = PollingConfig(strategy=PollingStrategy.FIXED, base_interval=0.001, min_interval=0.0)
NO_DELAY = ExponentialBackoff(base_delay=0.0, jitter_ratio=0.0)


class FakeService:
    """Tiny stand-in for the remote service: one execution that waits for approval."""

    def __init__(self, outage: int = 0):
        self.status = "new"
        self.polls = 0
        self.outage = outage
        self.resume_body = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path == "/webhook/approval":
            return httpx.Response(200, json={"executionId": "42"})
        if request.method == "GET" and path == "/api/v1/executions/42":
            if self.outage:
                self.outage -= 1
                return httpx.Response(503, json={"message": "maintenance"})
            self.polls += 1
            if self.status == "new" and self.polls > 1:
                self.status = "running"
            elif self.status == "running" and self.polls > 3:
                self.status = "waiting"
            body = {"id": "42", "status": self.status}
            if self.status == "waiting":
                body["waitNodeData"] = {"form": "approve"}
            return httpx.Response(200, json=body)
        if request.method == "POST" and path == "/api/resume-workflow/42":
            self.resume_body = request.read()
            self.status = "success"
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)


def make_client(service, *, failure_threshold=5, max_retries=3):
    gateway = HttpExecutionGateway(
        BASE_URL, api_key="secret", client=httpx.AsyncClient(transport=httpx.MockTransport(service))
    )
    breaker = RetryCircuitBreaker(
        RetryPolicy(max_retries=max_retries, backoff=NO_DELAY),
        CircuitStore(CircuitBreakerConfig(failure_threshold=failure_threshold, cooldown_period=60.0)),
    )
    return ExecutionMonitor(gateway, breaker, FAST)


class TestApprovalFlow:
    """Start, wait for input, resume, complete."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self):
        service = FakeService()
        async with make_client(service) as client:
            execution_id = await client.start_execution("approval", {"amount": 120})
            seen = []
            async for record in client.monitor(execution_id):
                seen.append(record.status)
                if record.is_waiting:
                    assert record.wait_marker == {"form": "approve"}
                    await client.resume_execution(execution_id, {"approved": True})

        assert seen == [
            ExecutionStatus.NEW,
            ExecutionStatus.RUNNING,
            ExecutionStatus.WAITING,
            ExecutionStatus.SUCCESS,
        ]
        assert json.loads(service.resume_body) == {"body": {"approved": True}}

    @pytest.mark.asyncio
    async def test_short_outage_is_absorbed(self):
        service = FakeService(outage=2)
        async with make_client(service) as client:
            service.status = "success"
            record = await client.wait_for_completion("42")
        assert record.status == ExecutionStatus.SUCCESS
        assert client.circuit_mode("get-status") == CircuitMode.CLOSED


class TestOutage:
    """Long outages trip the shared circuit."""

    @pytest.mark.asyncio
    async def test_outage_opens_circuit(self):
        service = FakeService(outage=100)
        async with make_client(service, failure_threshold=3, max_retries=5) as client:
            with pytest.raises(CircuitOpenError):
                await client.wait_for_completion("42")
            assert client.circuit_mode("get-status") == CircuitMode.OPEN
            assert service.outage == 97

    @pytest.mark.asyncio
    async def test_retry_policy_cannot_outlast_open_circuit(self):
        service = FakeService(outage=100)
        async with make_client(service, failure_threshold=3, max_retries=1) as client:
            stream = client.monitor("42", recovery=Retry(max_retries=2, backoff=NO_DELAY))
            with pytest.raises(CircuitOpenError):
                async for _ in stream:
                    pass
            assert service.outage == 97
            assert stream.health.errors == 3
