"""HTTP client for the task-splitting codegen backend.

This module provides TaskSplittingClient, a thin async wrapper around the
REST endpoints and the Server-Sent-Events stream the execution tracker
consumes:

    POST {prefix}                          submit a job
    GET  {prefix}/{job_id}/status          job status snapshot
    GET  {prefix}/{job_id}/items           paginated layer hierarchy
    POST {prefix}/{job_id}/create-pr       start pull-request creation
    POST {prefix}/{job_id}/retry           retry a failed job
    GET  {prefix}/{job_id}/stream          codegen push stream (SSE)

Every failure, HTTP or transport, surfaces as TaskSplittingAPIError with a
message extracted from the backend's error body.
"""

import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from config import settings
from events.types import StreamEvent, StreamEventType
from models.schemas import JobSnapshot, LayersPage, SubmitJobRequest, SubmitJobResponse

logger = structlog.get_logger(__name__)

# Events after which the backend closes the stream
_STREAM_TERMINATORS = frozenset({StreamEventType.END, StreamEventType.ERROR})


class TaskSplittingAPIError(Exception):
    """Raised when a task-splitting request fails.

    Attributes:
        status_code: HTTP status of the failed response, None for transport
            failures.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def parse_api_error(response: httpx.Response) -> str:
    """Extract a human-readable message from an error response.

    Looks for ``detail``, ``message`` or ``error`` string fields in a JSON
    body and falls back to the status code.
    """
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        for field in ("detail", "message", "error"):
            value = body.get(field)
            if isinstance(value, str) and value:
                return value
            # FastAPI validation errors: [{"msg": ...}, ...]
            if isinstance(value, list) and value and isinstance(value[0], dict):
                msg = value[0].get("msg")
                if isinstance(msg, str):
                    return msg
    return f"Request failed with status {response.status_code}"


def parse_sse_block(block: list[str]) -> StreamEvent | None:
    """Parse one blank-line delimited SSE block into a StreamEvent.

    Args:
        block: The raw lines of the block, without terminators.

    Returns:
        The parsed event, or None for a block carrying no fields.
    """
    event_type = StreamEventType.MESSAGE.value
    event_id: str | None = None
    data_lines: list[str] = []

    for line in block:
        if not line or line.startswith(":"):
            continue
        if line.startswith("event:"):
            event_type = line[len("event:"):].strip()
        elif line.startswith("id:"):
            event_id = line[len("id:"):].strip() or None
        elif line.startswith("data:"):
            data_lines.append(line[len("data:"):].strip())

    if not data_lines and event_type == StreamEventType.MESSAGE and event_id is None:
        return None

    data: dict[str, Any] = {}
    if data_lines:
        raw = "\n".join(data_lines)
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            decoded = {"raw": raw}
        data = decoded if isinstance(decoded, dict) else {"raw": decoded}

    if event_id is not None:
        data["eventId"] = event_id

    return StreamEvent(type=event_type, data=data, event_id=event_id)


class TaskSplittingClient:
    """Async client for the task-splitting backend.

    The underlying httpx.AsyncClient may be injected (tests pass one built
    on httpx.MockTransport); otherwise one is created from settings and
    owned by this client.

    Usage:
        >>> client = TaskSplittingClient()
        >>> snapshot = await client.get_status("ts_abc123")
        >>> async for event in client.connect_stream("ts_abc123"):
        ...     print(event.type)
        >>> await client.aclose()
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self._base = f"{base_url or settings.workflows_url}{settings.api_prefix}"
        token = api_token if api_token is not None else settings.api_token
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=timeout_seconds or settings.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: Any = None,
    ) -> httpx.Response:
        url = f"{self._base}{path}"
        try:
            response = await self._http.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=self._headers,
            )
        except httpx.RequestError as e:
            logger.warning("task_splitting_request_error", method=method, url=url, error=str(e))
            raise TaskSplittingAPIError(str(e) or type(e).__name__) from e
        return response

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        message = parse_api_error(response)
        logger.warning(
            "task_splitting_request_failed",
            operation=operation,
            status_code=response.status_code,
            error=message,
        )
        raise TaskSplittingAPIError(message, status_code=response.status_code)

    async def submit_job(
        self,
        plan_item_id: str,
        recipe_id: str | None = None,
    ) -> SubmitJobResponse:
        """Submit a task-splitting job for a plan item.

        A 409 response carrying an existing ``task_splitting_id`` means the
        job was already submitted; it is returned as a successful
        submission so callers can proceed to polling.
        """
        request = SubmitJobRequest(plan_item_id=plan_item_id, recipe_id=recipe_id)
        response = await self._request(
            "POST", "", json_body=request.model_dump(exclude_none=True)
        )

        if response.status_code == httpx.codes.CONFLICT:
            try:
                body = response.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("task_splitting_id"), str):
                logger.info(
                    "task_splitting_already_submitted",
                    plan_item_id=plan_item_id,
                    job_id=body["task_splitting_id"],
                )
                return SubmitJobResponse.model_validate(body)

        self._raise_for_status(response, "submit_job")
        result = SubmitJobResponse.model_validate(response.json())
        logger.info("task_splitting_submitted", plan_item_id=plan_item_id, job_id=result.job_id)
        return result

    async def get_status(self, job_id: str) -> JobSnapshot:
        response = await self._request("GET", f"/{job_id}/status")
        self._raise_for_status(response, "get_status")
        return JobSnapshot.model_validate(response.json())

    async def get_items(self, job_id: str, start: int = 0, limit: int = 10) -> LayersPage:
        """Fetch one page of layers starting at layer order ``start``."""
        response = await self._request(
            "GET",
            f"/{job_id}/items",
            params={"start": start, "limit": limit},
        )
        self._raise_for_status(response, "get_items")
        return LayersPage.model_validate(response.json())

    async def create_pull_request(self, job_id: str) -> None:
        """Request pull-request creation; the outcome is observed via status."""
        response = await self._request("POST", f"/{job_id}/create-pr", json_body={})
        self._raise_for_status(response, "create_pull_request")
        logger.info("pull_request_requested", job_id=job_id)

    async def retry_job(self, job_id: str) -> dict[str, Any]:
        response = await self._request("POST", f"/{job_id}/retry", json_body={})
        self._raise_for_status(response, "retry_job")
        logger.info("task_splitting_retry_requested", job_id=job_id)
        body = response.json()
        return body if isinstance(body, dict) else {}

    async def connect_stream(
        self,
        job_id: str,
        cursor: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Open the codegen push stream and yield its events in order.

        Iteration ends after an ``end`` or ``error`` event, or when the
        server closes the response.

        Args:
            job_id: The job to stream.
            cursor: Last seen event id; the server resumes after it.

        Raises:
            TaskSplittingAPIError: If the connection cannot be established.
        """
        url = f"{self._base}/{job_id}/stream"
        params = {"cursor": cursor} if cursor else None
        headers = {**self._headers, "Accept": "text/event-stream"}

        try:
            async with self._http.stream(
                "GET", url, params=params, headers=headers, timeout=None
            ) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_status(response, "connect_stream")

                block: list[str] = []
                async for line in response.aiter_lines():
                    if line:
                        block.append(line)
                        continue
                    event = parse_sse_block(block)
                    block = []
                    if event is None:
                        continue
                    yield event
                    if event.type in _STREAM_TERMINATORS:
                        return

                # Flush a final block not followed by a blank line
                event = parse_sse_block(block)
                if event is not None:
                    yield event
        except httpx.RequestError as e:
            logger.warning("stream_connection_error", job_id=job_id, error=str(e))
            raise TaskSplittingAPIError(str(e) or type(e).__name__) from e
