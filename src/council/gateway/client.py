"""
Model gateway client.

One request/response contract per invocation::

    POST <base_url>/v1/invoke  {role, model, prompt, schema_hint, temperature}
    200 -> {text, parsed?, error?}

Transient failures (timeouts, 429, 5xx, upstream error payloads) are retried
with exponential backoff; auth failures and malformed responses propagate on
the first occurrence.
"""

import json
import re
import time
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config.settings import GatewayConfig, ModelEndpoint, ModelsConfig
from ..errors import (
    AuthFailure,
    GatewayTimeout,
    MalformedResponse,
    RateLimited,
    TransientGatewayError,
    UpstreamError,
)
from ..observability.logging import get_logger, get_trace_id
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from ..observability.tracing import trace_span

logger = get_logger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n(.*?)\n\s*```", re.DOTALL)


@dataclass
class GatewayResponse:
    """Raw model text plus the parsed value when a schema was requested."""

    text: str
    role: str
    model: str
    parsed: Any | None = None
    attempts: int = 1
    latency: float = 0.0


def _candidate_payloads(text: str) -> list[str]:
    candidates = [m.group(1) for m in _FENCED_JSON.finditer(text)]
    stripped = text.strip()
    candidates.append(stripped)
    for open_char, close_char in (("{", "}"), ("[", "]")):
        start, end = stripped.find(open_char), stripped.rfind(close_char)
        if start != -1 and end > start:
            candidates.append(stripped[start : end + 1])
    return candidates


def parse_structured(text: str, schema: type[BaseModel]) -> BaseModel | None:
    """Extract and validate a JSON payload from model text, or return None."""
    for candidate in _candidate_payloads(text):
        try:
            return schema.model_validate_json(candidate)
        except (ValidationError, ValueError):
            continue
    return None


class ModelGatewayClient:
    """Uniform async client for invoking a named model role."""

    def __init__(
        self,
        models: ModelsConfig,
        retry: GatewayConfig,
        http_client: httpx.AsyncClient | None = None,
        temperature: float = 0.1,
    ):
        self.models = models
        self.retry = retry
        self.temperature = temperature
        self._http_client = http_client
        self._owned_client = http_client is None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5)
            )
        return self._http_client

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owned_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def endpoint_for(self, role: str) -> ModelEndpoint:
        endpoint = self.models.for_role(role)
        if endpoint is None:
            raise ValueError(f"No model endpoint configured for role: {role!r}")
        return endpoint

    @trace_span("gateway.invoke")
    async def invoke(
        self, role: str, prompt: str, schema: type[BaseModel] | None = None
    ) -> GatewayResponse:
        """Invoke ``role`` with ``prompt``; parse into ``schema`` when given."""
        endpoint = self.endpoint_for(role)
        if not prompt or not prompt.strip():
            raise ValueError("prompt must be non-empty")
        self._ensure_client()

        start = time.perf_counter()
        attempts = 0
        outcome = "ok"
        try:
            with probe("gateway.invoke", get_trace_id(), role=role, model=endpoint.name):
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.retry.max_attempts),
                    wait=wait_exponential(
                        multiplier=self.retry.backoff_multiplier,
                        min=self.retry.backoff_min,
                        max=self.retry.backoff_max,
                    ),
                    retry=retry_if_exception_type(TransientGatewayError),
                    before_sleep=self._log_retry,
                    reraise=True,
                ):
                    with attempt:
                        attempts = attempt.retry_state.attempt_number
                        body = await self._send(role, endpoint, prompt, schema)
        except Exception as e:
            outcome = type(e).__name__
            raise
        finally:
            get_metrics_collector().record_gateway_call(
                role, time.perf_counter() - start, outcome
            )

        text = body["text"]
        parsed = None
        if schema is not None:
            server_parsed = body.get("parsed")
            if server_parsed is not None:
                try:
                    parsed = schema.model_validate(server_parsed)
                except ValidationError:
                    parsed = None
            if parsed is None:
                parsed = parse_structured(text, schema)
            if parsed is None:
                logger.warning(
                    "Model output did not match schema", role=role, schema=schema.__name__
                )

        return GatewayResponse(
            text=text,
            role=role,
            model=endpoint.name,
            parsed=parsed,
            attempts=attempts,
            latency=time.perf_counter() - start,
        )

    async def _send(
        self,
        role: str,
        endpoint: ModelEndpoint,
        prompt: str,
        schema: type[BaseModel] | None,
    ) -> dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if endpoint.api_key:
            headers["Authorization"] = f"Bearer {endpoint.api_key}"
        payload = {
            "role": role,
            "model": endpoint.name,
            "prompt": prompt,
            "schema_hint": schema.model_json_schema() if schema is not None else None,
            "temperature": self.temperature,
        }

        try:
            response = await self._http_client.post(
                f"{endpoint.base_url}/v1/invoke",
                json=payload,
                headers=headers,
                timeout=endpoint.timeout,
            )
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"{role} call timed out after {endpoint.timeout}s", role) from e
        except httpx.TransportError as e:
            raise UpstreamError(f"{role} transport error: {e}", role) from e

        status = response.status_code
        if status in (401, 403):
            raise AuthFailure(f"{role} credentials rejected", role, status)
        if status == 429:
            raise RateLimited(f"{role} rate limited", role, status)
        if status >= 500:
            raise UpstreamError(f"{role} upstream returned {status}", role, status)
        if status >= 400:
            raise MalformedResponse(f"{role} request rejected with {status}", role, status)

        try:
            body = response.json()
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"{role} response is not JSON", role, status) from e
        if not isinstance(body, dict):
            raise MalformedResponse(f"{role} response is not an object", role, status)
        if body.get("error"):
            raise UpstreamError(f"{role} upstream error: {body['error']}", role, status)
        if not isinstance(body.get("text"), str):
            raise MalformedResponse(f"{role} response has no text", role, status)
        return body

    @staticmethod
    def _log_retry(retry_state) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Transient gateway failure, retrying",
            attempt=retry_state.attempt_number,
            error=type(error).__name__ if error else "-",
        )
