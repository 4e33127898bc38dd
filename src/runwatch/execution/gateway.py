"""Remote execution gateway — the four-operation contract and its HTTP client.

The engine only ever talks to an :class:`ExecutionGateway`. The bundled
:class:`HttpExecutionGateway` implements it with ``httpx.AsyncClient`` against
the webhook/REST contract::

    start    POST   /webhook/{trigger_id}            body: payload
    status   GET    /api/v1/executions/{id}
    resume   POST   /api/resume-workflow/{id}        body: {"body": payload}
    cancel   DELETE /api/cancel-workflow/{id}

Transport failures and HTTP statuses are translated into the runwatch error
taxonomy here, so nothing above this module ever sees an httpx exception.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, Protocol, runtime_checkable

import httpx

from runwatch.core import errors
from runwatch.core.errors import (
    AuthError,
    ClientError,
    NetworkError,
    ParseError,
    RateLimitError,
    RunwatchError,
    ServerError,
    UnknownError,
    ValidationError,
)
from runwatch.core.logging import get_logger
from runwatch.execution.models import ExecutionRecord

logger = get_logger(__name__)

DEFAULT_API_KEY_HEADER = "X-N8N-API-KEY"
PSEUDO_ID_PREFIX = "webhook-"

_VALIDATION_STATUSES = frozenset({400, 404, 409, 422})


@runtime_checkable
class ExecutionGateway(Protocol):
    """What the engine needs from a remote execution service."""

    async def start_execution(self, trigger_id: str, payload: dict[str, Any] | None = None) -> str:
        ...

    async def get_status(self, execution_id: str) -> ExecutionRecord:
        ...

    async def resume_execution(self, execution_id: str, input_payload: dict[str, Any]) -> bool:
        ...

    async def cancel_execution(self, execution_id: str) -> bool:
        ...


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def error_for_status(
    status_code: int,
    message: str = "",
    *,
    retry_after: float | None = None,
    url: str | None = None,
) -> RunwatchError:
    """Map a non-success HTTP status onto the error taxonomy.

    ========  ===================
    401/403   AuthError
    408       TimeoutError
    429       RateLimitError
    400/404/  ValidationError
    409/422
    other 4xx ClientError
    5xx       ServerError
    ========  ===================
    """
    text = message or f"HTTP {status_code}"
    if status_code in (401, 403):
        error: RunwatchError = AuthError(text, status_code=status_code)
    elif status_code == 408:
        error = errors.TimeoutError(text, status_code=status_code)
    elif status_code == 429:
        error = RateLimitError(text, retry_after=retry_after, status_code=status_code)
    elif status_code in _VALIDATION_STATUSES:
        error = ValidationError(text, status_code=status_code)
    elif 400 <= status_code < 500:
        error = ClientError(text, status_code=status_code)
    elif status_code >= 500:
        error = ServerError(text, status_code=status_code)
    else:
        error = UnknownError(text, status_code=status_code)
    return error.with_context(http_status=status_code, url=url)


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if isinstance(body.get(key), str) and body[key]:
                return f"HTTP {response.status_code}: {body[key]}"
    reason = response.reason_phrase or "error"
    return f"HTTP {response.status_code}: {reason}"


def is_pseudo_id(execution_id: str) -> bool:
    """True for the placeholder ids returned when a webhook gave no execution id."""
    return execution_id.startswith(PSEUDO_ID_PREFIX)


class HttpExecutionGateway:
    """:class:`ExecutionGateway` over HTTP.

    Args:
        base_url: Root URL of the remote service
        api_key: Sent in ``api_key_header`` when set
        api_key_header: Header name for the API key
        timeout: httpx timeout in seconds
        headers: Extra headers for every request
        client: Pre-built ``httpx.AsyncClient`` (tests pass one with a
            ``MockTransport``); the gateway then does not own it
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        api_key_header: str = DEFAULT_API_KEY_HEADER,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not base_url:
            raise errors.ConfigError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

        request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        request_headers.update(headers or {})
        if api_key:
            request_headers[api_key_header] = api_key

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._headers = request_headers

    async def __aenter__(self) -> HttpExecutionGateway:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        url = self._url(path)
        try:
            response = await self._client.request(
                method, url, json=json, params=params, headers=self._headers
            )
        except httpx.TimeoutException as exc:
            raise errors.TimeoutError(f"{method} {path} timed out", cause=exc).with_context(url=url) from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"{method} {path} failed: {exc}", cause=exc).with_context(url=url) from exc

        if response.is_success:
            return response

        raise error_for_status(
            response.status_code,
            _error_message(response),
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            url=url,
        )

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError("Response body is not valid JSON", payload=response.text, cause=exc) from exc

    # ── Contract ─────────────────────────────────────────────────────

    async def start_execution(
        self,
        trigger_id: str,
        payload: dict[str, Any] | None = None,
        *,
        workflow_id: str | None = None,
    ) -> str:
        """Trigger an execution and return its id.

        When the webhook response carries no id and ``workflow_id`` is given
        (with an API key), the newest execution of that workflow is looked
        up. Otherwise a ``webhook-{trigger}-{millis}`` placeholder is
        returned, which :meth:`get_status` refuses.
        """
        if not trigger_id:
            raise ValidationError("Trigger ID cannot be empty")

        response = await self._request("POST", f"/webhook/{trigger_id}", json=payload or {})
        body = self._json(response)

        if isinstance(body, dict):
            for key in ("executionId", "id"):
                if body.get(key) not in (None, ""):
                    execution_id = str(body[key])
                    logger.info("gateway.execution_started", trigger_id=trigger_id, execution_id=execution_id)
                    return execution_id

        if workflow_id and self.api_key:
            try:
                recent = await self.list_executions(workflow_id=workflow_id, limit=1)
            except RunwatchError as exc:
                logger.warning(
                    "gateway.execution_lookup_failed",
                    trigger_id=trigger_id,
                    workflow_id=workflow_id,
                    error_type=type(exc).__name__,
                )
            else:
                if recent:
                    return recent[0].id

        pseudo_id = f"{PSEUDO_ID_PREFIX}{trigger_id}-{int(time.time() * 1000)}"
        logger.info("gateway.execution_started", trigger_id=trigger_id, execution_id=pseudo_id, pseudo=True)
        return pseudo_id

    async def get_status(self, execution_id: str) -> ExecutionRecord:
        if not execution_id:
            raise ValidationError("Execution ID cannot be empty")
        if is_pseudo_id(execution_id):
            raise ValidationError(
                f"Execution '{execution_id}' was started without a trackable id"
            ).with_context(execution_id=execution_id)

        response = await self._request("GET", f"/api/v1/executions/{execution_id}")
        body = self._json(response)
        if isinstance(body, dict) and isinstance(body.get("data"), dict) and "id" not in body:
            body = body["data"]
        return ExecutionRecord.from_api(body)

    async def resume_execution(self, execution_id: str, input_payload: dict[str, Any]) -> bool:
        if not execution_id:
            raise ValidationError("Execution ID cannot be empty")
        if not input_payload:
            raise ValidationError("Resume payload cannot be empty").with_context(execution_id=execution_id)

        await self._request("POST", f"/api/resume-workflow/{execution_id}", json={"body": input_payload})
        logger.info("gateway.execution_resumed", execution_id=execution_id)
        return True

    async def cancel_execution(self, execution_id: str) -> bool:
        if not execution_id:
            raise ValidationError("Execution ID cannot be empty")

        await self._request("DELETE", f"/api/cancel-workflow/{execution_id}")
        logger.info("gateway.execution_cancelled", execution_id=execution_id)
        return True

    # ── Extras ───────────────────────────────────────────────────────

    async def validate_trigger(self, trigger_id: str) -> bool:
        """Check that a webhook trigger exists. Any failure reads as False."""
        if not trigger_id:
            return False
        try:
            await self._request("GET", f"/api/validate-webhook/{trigger_id}")
        except RunwatchError as exc:
            logger.debug("gateway.trigger_invalid", trigger_id=trigger_id, error_type=type(exc).__name__)
            return False
        return True

    async def health_check(self) -> bool:
        """True when the service answers ``/api/health`` with a 2xx."""
        try:
            await self._request("GET", "/api/health")
        except RunwatchError as exc:
            logger.warning("gateway.health_check_failed", error_type=type(exc).__name__, message=exc.message)
            return False
        return True

    async def list_executions(
        self,
        *,
        workflow_id: str | None = None,
        limit: int = 10,
    ) -> list[ExecutionRecord]:
        """Most recent executions, newest first. Unparseable entries are skipped."""
        params: dict[str, Any] = {"limit": limit}
        if workflow_id:
            params["workflowId"] = workflow_id

        response = await self._request("GET", "/api/v1/executions", params=params)
        body = self._json(response)
        items = body.get("data", []) if isinstance(body, dict) else body or []

        records: list[ExecutionRecord] = []
        for item in items:
            try:
                records.append(ExecutionRecord.from_api(item))
            except ParseError as exc:
                logger.debug("gateway.execution_skipped", reason=exc.message)
        return records
