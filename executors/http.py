"""Webhook action executor.

POSTs each action as JSON to a configured URL and reads the outcome from the
response. This is the production path: point SIFT_ACTION_WEBHOOK_URL at an
automation service (a runbook runner, a ChatOps bot, a ticketing bridge).

Response mapping:
    2xx                          succeeded (body "detail" is kept if present)
    4xx                          failed — the receiver rejected the action,
                                 retrying the same request will not help
    5xx, timeout, connect error  ExecutorTransientFailure — retried by the
                                 dispatcher with exponential backoff
"""

import logging

import httpx

from core.errors import ExecutorTransientFailure
from executors.base import ActionExecutor
from schemas.remediation import ExecutionOutcome, RemediationAction

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class WebhookExecutor(ActionExecutor):
    """ActionExecutor backed by an HTTP webhook.

    Attributes:
        url: Endpoint that receives one POST per attempt.
        timeout: Per-request timeout in seconds. Keep it below the policy's
            attempt_timeout_seconds so httpx reports the timeout first.
        headers: Extra headers sent with every request (e.g. an auth token).
    """

    def __init__(
        self,
        url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialise the executor.

        Args:
            url: Webhook URL.
            timeout: Request timeout in seconds.
            headers: Optional extra request headers.
            transport: Optional httpx transport, used by tests to serve
                responses without a network.
        """
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    async def execute(self, action: RemediationAction) -> ExecutionOutcome:
        """POST the action and translate the response.

        Raises:
            ExecutorTransientFailure: On 5xx, timeout or connection failure.
        """
        body = action.model_dump(mode="json")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers, transport=self._transport) as client:
                response = await client.post(self.url, json=body)
        except httpx.TimeoutException as exc:
            raise ExecutorTransientFailure(f"timeout calling {self.url}: {exc}") from exc
        except httpx.TransportError as exc:
            raise ExecutorTransientFailure(f"transport error calling {self.url}: {exc}") from exc

        if response.status_code >= 500:
            raise ExecutorTransientFailure(f"{self.url} returned {response.status_code}")

        detail = _detail(response)
        if response.status_code >= 400:
            logger.error(
                "Webhook rejected action %s (%s on %s): %d %s",
                action.action_id, action.kind.value, action.resource, response.status_code, detail,
            )
            return ExecutionOutcome(succeeded=False, detail=f"HTTP {response.status_code}: {detail}")

        logger.info("Webhook accepted action %s (%s on %s).", action.action_id, action.kind.value, action.resource)
        return ExecutionOutcome(succeeded=True, detail=detail)


def _detail(response: httpx.Response) -> str:
    """Pull a human-readable detail out of a response body, if any."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("detail") or data.get("message") or "")
    return ""
