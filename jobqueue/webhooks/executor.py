"""
Webhook delivery executor.

Performs one job attempt as a signed HTTP POST and keeps an append-only
audit row per attempt in the DeliveryAttemptStore.
"""

import asyncio
import json
import logging
import time
from typing import Any

import httpx
from pydantic import BaseModel, Field

from jobqueue.clock import Clock, SystemClock
from jobqueue.config import Settings, get_settings
from jobqueue.constants import (
    SPAN_DELIVER_WEBHOOK,
    WEBHOOK_DELIVERY_HEADER,
    WEBHOOK_EVENT_HEADER,
    WEBHOOK_SIGNATURE_HEADER,
    WEBHOOK_TIMESTAMP_HEADER,
    DeliveryOutcome,
)
from jobqueue.errors import TransientDeliveryFailure
from jobqueue.observability.metrics import MetricsCollector
from jobqueue.observability.tracing import job_span
from jobqueue.store.base import DeliveryAttemptStore
from jobqueue.types.job import DeliveryAttempt, JobContext, JobResult
from jobqueue.webhooks.signing import sign_payload

logger = logging.getLogger(__name__)


class WebhookPayload(BaseModel):
    """Payload of a job on a webhook queue."""

    url: str = Field(..., min_length=1)
    event: str = Field(..., min_length=1)
    data: Any = Field(default_factory=dict)


def encode_body(data: Any) -> bytes:
    """Serialize webhook data to the exact bytes that are signed and sent."""
    return json.dumps(data).encode("utf-8")


class WebhookDeliveryExecutor:
    """
    Delivers webhook jobs.

    The delivery id sent to receivers is the job id, so it stays the same
    across retries and receivers can deduplicate on it.
    """

    payload_model = WebhookPayload

    def __init__(
        self,
        attempt_store: DeliveryAttemptStore,
        clock: Clock | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
        snippet_chars: int | None = None,
        metrics: MetricsCollector | None = None,
        settings: Settings | None = None,
    ):
        """
        Initialize the executor.

        Args:
            attempt_store: Where delivery attempts are recorded.
            clock: Time source for timestamps.
            secret: Signing secret. Requests are unsigned without one.
            timeout: Hard request timeout in seconds.
            client: HTTP client to use. One is created (and owned) if omitted.
            snippet_chars: Maximum stored response body length.
            metrics: Metrics collector.
            settings: Defaults for the optional arguments.
        """
        settings = settings or get_settings()

        self.attempt_store = attempt_store
        self.clock = clock or SystemClock()
        self.secret = secret if secret is not None else settings.webhook_secret
        self.timeout = timeout if timeout is not None else settings.webhook_timeout_seconds
        self.snippet_chars = (
            snippet_chars
            if snippet_chars is not None
            else settings.webhook_response_snippet_chars
        )
        self.user_agent = settings.webhook_user_agent
        self.metrics = metrics

        self._owns_client = client is None
        self._client = client

    @property
    def client(self) -> httpx.AsyncClient:
        """The HTTP client, reopened if an owned client was closed."""
        if self._client is None or (self._owns_client and self._client.is_closed):
            self._client = httpx.AsyncClient()
        return self._client

    def build_headers(self, context: JobContext, event: str, body: bytes) -> dict[str, str]:
        """Headers for one delivery, signed when a secret is configured."""
        timestamp = int(self.clock.now().timestamp())

        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            WEBHOOK_EVENT_HEADER: event,
            WEBHOOK_DELIVERY_HEADER: str(context.job_id),
            WEBHOOK_TIMESTAMP_HEADER: str(timestamp),
        }
        if self.secret:
            headers[WEBHOOK_SIGNATURE_HEADER] = sign_payload(self.secret, timestamp, body)
        return headers

    async def _read_snippet(self, response: httpx.Response) -> str:
        """Read at most enough of the body for the snippet, never all of it."""
        limit = self.snippet_chars * 4  # worst-case UTF-8 width
        buffer = bytearray()
        async for chunk in response.aiter_bytes():
            buffer.extend(chunk)
            if len(buffer) >= limit:
                break
        text = bytes(buffer[:limit]).decode("utf-8", errors="replace")
        return text[: self.snippet_chars]

    async def _send(self, url: str, headers: dict[str, str], body: bytes) -> tuple[int, str]:
        """
        POST the body and read a bounded snippet of the response.

        `timeout` caps the whole exchange, not just each network phase, so
        a receiver trickling its response cannot hold the attempt open.

        Returns:
            Tuple of (status_code, response_snippet).

        Raises:
            TransientDeliveryFailure: On transport errors, timeouts and
                non-2xx responses.
        """
        try:
            async with asyncio.timeout(self.timeout):
                async with self.client.stream(
                    "POST", url, content=body, headers=headers, timeout=self.timeout
                ) as response:
                    snippet = await self._read_snippet(response)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise TransientDeliveryFailure(f"Timed out after {self.timeout}s: {e!r}") from e
        except httpx.HTTPError as e:
            raise TransientDeliveryFailure(f"HTTP request failed: {e}") from e

        if not response.is_success:
            raise TransientDeliveryFailure(
                f"HTTP {response.status_code}",
                status_code=response.status_code,
                body=snippet,
            )
        return response.status_code, snippet

    async def deliver(self, context: JobContext) -> DeliveryAttempt:
        """
        Perform one delivery attempt and record it.

        The attempt row is written as pending before the request so a crash
        mid-request leaves an attributable trace.

        Args:
            context: Context of the claimed job.

        Returns:
            The finalised DeliveryAttempt.
        """
        payload = WebhookPayload.model_validate(context.payload)
        body = encode_body(payload.data)
        headers = self.build_headers(context, payload.event, body)

        attempt = DeliveryAttempt(
            job_id=context.job_id,
            attempt_number=max(context.attempt, 1),
            url=payload.url,
            created_at=self.clock.now(),
        )
        await self.attempt_store.add(attempt)

        status_code: int | None = None
        snippet: str | None = None
        error: str | None = None
        outcome = DeliveryOutcome.SUCCESS
        start = time.monotonic()

        with job_span(
            SPAN_DELIVER_WEBHOOK,
            context.job_id,
            context.queue_name,
            attempt.attempt_number,
            **{"webhook.event": payload.event, "http.url": payload.url},
        ) as span:

            try:
                status_code, snippet = await self._send(payload.url, headers, body)
            except TransientDeliveryFailure as e:
                outcome = DeliveryOutcome.FAILURE
                error = str(e)
                status_code = e.status_code
                snippet = e.body

            if status_code is not None:
                span.set_attribute("http.status_code", status_code)

        duration = time.monotonic() - start

        finished = await self.attempt_store.finish(
            attempt.id,
            outcome,
            status_code=status_code,
            duration_ms=duration * 1000,
            response_body_snippet=snippet,
            error=error,
            finished_at=self.clock.now(),
        )

        if self.metrics is not None:
            self.metrics.record_webhook_delivery(outcome.value, duration)

        log = logger.info if outcome == DeliveryOutcome.SUCCESS else logger.warning
        log(
            "Webhook delivery finished",
            extra={
                "job_id": str(context.job_id),
                "attempt": attempt.attempt_number,
                "status_code": status_code,
                "outcome": outcome.value,
                "error": error,
            },
        )
        return finished

    async def execute(self, context: JobContext) -> JobResult:
        """Deliver and translate the attempt into a JobResult."""
        attempt = await self.deliver(context)

        if attempt.outcome == DeliveryOutcome.SUCCESS:
            return JobResult(
                success=True,
                output={
                    "delivery_attempt_id": str(attempt.id),
                    "status_code": attempt.status_code,
                },
                duration_ms=attempt.duration_ms,
            )

        return JobResult(
            success=False,
            error=attempt.error or "Webhook delivery failed",
            duration_ms=attempt.duration_ms,
        )

    async def aclose(self) -> None:
        """Close the HTTP client if this executor created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
