"""Generic HTTP integration executor."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import CancellationError, ExecutorError
from .base import ExecutorContext, ExecutorResult, NodeExecutor, render_template

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "Idempotency-Key"


class IntegrationExecutor(NodeExecutor):
    """Calls an HTTP endpoint described by node params.

    Node params: ``url`` (template), ``method`` (default POST), ``headers``,
    ``body`` (JSON, templated), ``timeout`` and ``output_key``. The attempt's
    idempotency key is always sent so receivers can deduplicate retries.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        default_timeout: float = 30.0,
    ) -> None:
        self._client = client
        self._default_timeout = default_timeout

    async def execute(
        self, input: Mapping[str, Any], context: ExecutorContext
    ) -> ExecutorResult:
        params = context.params
        url = render_template(params.get("url"), input)
        if not url:
            raise ExecutorError(f"Integration node {context.node_id} has no url")
        method = str(params.get("method", "POST")).upper()
        headers: Dict[str, str] = dict(render_template(params.get("headers", {}), input))
        headers[IDEMPOTENCY_HEADER] = context.idempotency_key
        body = render_template(params.get("body"), input)
        timeout = float(params.get("timeout", self._default_timeout))
        if await context.is_cancelled():
            raise CancellationError(f"Execution {context.execution_id} was cancelled")

        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, headers=headers, json=body, timeout=timeout
                )
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(
                        method, url, headers=headers, json=body
                    )
        except httpx.HTTPError as exc:
            raise ExecutorError(f"{method} {url} failed: {exc}") from exc

        if not response.is_success:
            logger.error(f"{method} {url} returned {response.status_code}")
            raise ExecutorError(
                f"{method} {url} returned {response.status_code}",
                details={"status_code": response.status_code},
            )

        return ExecutorResult.success(
            {
                context.output_key(): {
                    "status_code": response.status_code,
                    "body": _response_body(response),
                }
            }
        )


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
