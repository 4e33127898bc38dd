"""Tests for HttpExecutionGateway against an httpx.MockTransport."""

import json
from datetime import UTC, datetime, timedelta
from email.utils import format_datetime

import httpx
import pytest

from runwatch.core import errors
from runwatch.core.errors import (
    AuthError,
    ClientError,
    ConfigError,
    NetworkError,
    ParseError,
    RateLimitError,
    ServerError,
    UnknownError,
    ValidationError,
)
from runwatch.execution.gateway import (
    ExecutionGateway,
    HttpExecutionGateway,
    error_for_status,
    is_pseudo_id,
    parse_retry_after,
)
from runwatch.execution.models import ExecutionStatus

BASE_URL = "https://automation.example.com"


class Recorder:
    """MockTransport handler routing (method, path) to canned responses."""

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={"message": "no route"})
        if callable(route):
            return route(request)
        return route

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def make_gateway(routes=None, **kwargs):
    recorder = Recorder(routes)
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return HttpExecutionGateway(BASE_URL, client=client, **kwargs), recorder


class TestConstruction:
    """Configuration and protocol conformance."""

    def test_requires_base_url(self):
        with pytest.raises(ConfigError):
            HttpExecutionGateway("")

    def test_satisfies_protocol(self):
        gateway, _ = make_gateway()
        assert isinstance(gateway, ExecutionGateway)

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        gateway, recorder = make_gateway(
            {("GET", "/api/health"): httpx.Response(200)}, api_key="secret"
        )
        assert await gateway.health_check() is True
        assert recorder.last.headers["X-N8N-API-KEY"] == "secret"

    @pytest.mark.asyncio
    async def test_custom_api_key_header(self):
        gateway, recorder = make_gateway(
            {("GET", "/api/health"): httpx.Response(200)}, api_key="secret", api_key_header="X-Api-Key"
        )
        await gateway.health_check()
        assert recorder.last.headers["X-Api-Key"] == "secret"


class TestStartExecution:
    """POST /webhook/{trigger}."""

    @pytest.mark.asyncio
    async def test_returns_execution_id(self):
        gateway, recorder = make_gateway(
            {("POST", "/webhook/order-intake"): httpx.Response(200, json={"executionId": 42})}
        )
        assert await gateway.start_execution("order-intake", {"sku": "A1"}) == "42"
        assert json.loads(recorder.last.content) == {"sku": "A1"}

    @pytest.mark.asyncio
    async def test_pseudo_id_when_response_has_none(self):
        gateway, _ = make_gateway({("POST", "/webhook/order-intake"): httpx.Response(200, json={"ok": True})})
        execution_id = await gateway.start_execution("order-intake")
        assert execution_id.startswith("webhook-order-intake-")
        assert is_pseudo_id(execution_id)

    @pytest.mark.asyncio
    async def test_lookup_by_workflow(self):
        gateway, recorder = make_gateway(
            {
                ("POST", "/webhook/order-intake"): httpx.Response(200),
                ("GET", "/api/v1/executions"): httpx.Response(
                    200, json={"data": [{"id": "99", "status": "running", "workflowId": "wf-1"}]}
                ),
            },
            api_key="secret",
        )
        assert await gateway.start_execution("order-intake", workflow_id="wf-1") == "99"
        assert recorder.last.url.params["workflowId"] == "wf-1"
        assert recorder.last.url.params["limit"] == "1"

    @pytest.mark.asyncio
    async def test_lookup_failure_falls_back_to_pseudo_id(self):
        gateway, _ = make_gateway(
            {
                ("POST", "/webhook/order-intake"): httpx.Response(200),
                ("GET", "/api/v1/executions"): httpx.Response(500),
            },
            api_key="secret",
        )
        assert is_pseudo_id(await gateway.start_execution("order-intake", workflow_id="wf-1"))

    @pytest.mark.asyncio
    async def test_empty_trigger(self):
        gateway, recorder = make_gateway()
        with pytest.raises(ValidationError):
            await gateway.start_execution("")
        assert recorder.requests == []


class TestGetStatus:
    """GET /api/v1/executions/{id}."""

    @pytest.mark.asyncio
    async def test_parses_record(self):
        gateway, _ = make_gateway(
            {
                ("GET", "/api/v1/executions/42"): httpx.Response(
                    200, json={"id": "42", "status": "waiting", "waitTill": "2026-01-05T11:00:00Z"}
                )
            }
        )
        record = await gateway.get_status("42")
        assert record.status == ExecutionStatus.WAITING
        assert record.wait_marker == {"waitTill": "2026-01-05T11:00:00Z"}

    @pytest.mark.asyncio
    async def test_unwraps_data_envelope(self):
        gateway, _ = make_gateway(
            {("GET", "/api/v1/executions/42"): httpx.Response(200, json={"data": {"id": "42", "status": "success"}})}
        )
        assert (await gateway.get_status("42")).status == ExecutionStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_pseudo_id_rejected_locally(self):
        gateway, recorder = make_gateway()
        with pytest.raises(ValidationError):
            await gateway.get_status("webhook-order-intake-1700000000000")
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        gateway, _ = make_gateway({("GET", "/api/v1/executions/42"): httpx.Response(200, text="<html>")})
        with pytest.raises(ParseError):
            await gateway.get_status("42")

    @pytest.mark.asyncio
    async def test_unknown_status(self):
        gateway, _ = make_gateway(
            {("GET", "/api/v1/executions/42"): httpx.Response(200, json={"id": "42", "status": "paused"})}
        )
        with pytest.raises(ParseError):
            await gateway.get_status("42")

    @pytest.mark.asyncio
    async def test_not_found(self):
        gateway, _ = make_gateway()
        with pytest.raises(ValidationError) as exc_info:
            await gateway.get_status("404")
        assert exc_info.value.status_code == 404
        assert "no route" in exc_info.value.message


class TestResumeAndCancel:
    """Resume and cancel commands."""

    @pytest.mark.asyncio
    async def test_resume_wraps_payload(self):
        gateway, recorder = make_gateway({("POST", "/api/resume-workflow/42"): httpx.Response(200)})
        assert await gateway.resume_execution("42", {"approved": True}) is True
        assert json.loads(recorder.last.content) == {"body": {"approved": True}}

    @pytest.mark.asyncio
    async def test_resume_requires_payload(self):
        gateway, recorder = make_gateway()
        with pytest.raises(ValidationError):
            await gateway.resume_execution("42", {})
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_cancel(self):
        gateway, recorder = make_gateway({("DELETE", "/api/cancel-workflow/42"): httpx.Response(204)})
        assert await gateway.cancel_execution("42") is True
        assert recorder.last.method == "DELETE"


class TestTransportErrors:
    """httpx exceptions map onto transient errors."""

    @pytest.mark.asyncio
    async def test_timeout(self):
        def slow(request):
            raise httpx.ReadTimeout("slow", request=request)

        gateway, _ = make_gateway({("GET", "/api/v1/executions/42"): slow})
        with pytest.raises(errors.TimeoutError) as exc_info:
            await gateway.get_status("42")
        assert exc_info.value.retryable
        assert isinstance(exc_info.value.__cause__, httpx.ReadTimeout)

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def refused(request):
            raise httpx.ConnectError("refused", request=request)

        gateway, _ = make_gateway({("GET", "/api/v1/executions/42"): refused})
        with pytest.raises(NetworkError) as exc_info:
            await gateway.get_status("42")
        assert exc_info.value.context.url == f"{BASE_URL}/api/v1/executions/42"

    @pytest.mark.asyncio
    async def test_rate_limit_header(self):
        gateway, _ = make_gateway(
            {("POST", "/api/resume-workflow/42"): httpx.Response(429, headers={"Retry-After": "5"})}
        )
        with pytest.raises(RateLimitError) as exc_info:
            await gateway.resume_execution("42", {"a": 1})
        assert exc_info.value.retry_after == 5.0


class TestExtras:
    """validate_trigger, health_check, list_executions."""

    @pytest.mark.asyncio
    async def test_validate_trigger(self):
        gateway, _ = make_gateway({("GET", "/api/validate-webhook/known"): httpx.Response(200)})
        assert await gateway.validate_trigger("known") is True
        assert await gateway.validate_trigger("unknown") is False
        assert await gateway.validate_trigger("") is False

    @pytest.mark.asyncio
    async def test_health_check_failure(self):
        gateway, _ = make_gateway({("GET", "/api/health"): httpx.Response(503)})
        assert await gateway.health_check() is False

    @pytest.mark.asyncio
    async def test_list_executions_skips_bad_entries(self):
        gateway, _ = make_gateway(
            {
                ("GET", "/api/v1/executions"): httpx.Response(
                    200,
                    json={"data": [{"id": "1", "status": "success"}, {"id": "2", "status": "??"}, {"status": "new"}]},
                )
            }
        )
        records = await gateway.list_executions(limit=3)
        assert [r.id for r in records] == ["1"]

    @pytest.mark.asyncio
    async def test_context_manager_closes_owned_client(self):
        async with HttpExecutionGateway(BASE_URL) as gateway:
            assert gateway.base_url == BASE_URL
        assert gateway._client.is_closed


class TestErrorForStatus:
    """Status code mapping."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (400, ValidationError),
            (401, AuthError),
            (403, AuthError),
            (404, ValidationError),
            (408, errors.TimeoutError),
            (409, ValidationError),
            (410, ClientError),
            (422, ValidationError),
            (429, RateLimitError),
            (500, ServerError),
            (503, ServerError),
            (302, UnknownError),
        ],
    )
    def test_mapping(self, status, expected):
        error = error_for_status(status, url="https://x")
        assert type(error) is expected
        assert error.status_code == status
        assert error.context.http_status == status

    def test_plain_client_error_counts_toward_circuit(self):
        assert error_for_status(410).counts_toward_circuit
        assert not error_for_status(422).counts_toward_circuit


class TestParseRetryAfter:
    """Retry-After header parsing."""

    def test_seconds(self):
        assert parse_retry_after("12") == 12.0

    def test_http_date(self):
        when = datetime.now(UTC) + timedelta(seconds=30)
        delay = parse_retry_after(format_datetime(when, usegmt=True))
        assert 25.0 <= delay <= 31.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_missing_or_garbage(self, value):
        assert parse_retry_after(value) is None
