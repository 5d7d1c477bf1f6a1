"""
Shared plumbing for provider clients: the normalized result type and the
bounded retry loop for transient failures.
"""
from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from verifyflow.core.errors import (
    ProviderRequestError,
    ProviderUnavailableError,
    TransientProviderError,
)
from verifyflow.observability.logging import log
import verifyflow.observability.metrics as metrics
from verifyflow.settings import settings
from verifyflow.utils.time import now_ms

# Normalized provider statuses
RESULT_SUCCESS = "success"
RESULT_FAILED = "failed"
RESULT_MANUAL_REVIEW = "manual_review"
RESULT_SENT = "sent"


@dataclass
class ProviderResult:
    status: str
    transaction_id: Optional[str] = None
    confidence: Optional[float] = None
    error_code: Optional[str] = None
    # Capability-specific normalized fields (matched, extracted_fields, scores, image_url, ...)
    fields: Dict[str, Any] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)


def _calc_backoff(attempt: int) -> float:
    """Exponential backoff with jitter, in seconds."""
    base = int(getattr(settings, "PROVIDER_BACKOFF_BASE_MS", 500) or 0)
    max_delay = int(getattr(settings, "PROVIDER_BACKOFF_MAX_MS", 4000) or 0)
    delay = base * (2 ** (attempt - 1))
    jitter = delay * 0.1 * random.uniform(-1, 1)
    return max(0.0, min(max_delay, delay + jitter)) / 1000.0


def call_with_retries(provider: str, operation: str, fn: Callable[[], ProviderResult]) -> ProviderResult:
    """
    Run ``fn`` and retry it on TransientProviderError up to PROVIDER_MAX_RETRIES
    times. Surfaces ProviderUnavailableError once the budget is spent; every
    other error propagates unchanged.
    """
    retries = max(0, int(settings.PROVIDER_MAX_RETRIES))
    last: Optional[TransientProviderError] = None

    for attempt in range(1, retries + 2):
        start = now_ms()
        try:
            result = fn()
            metrics.record_provider_latency(provider, now_ms() - start)
            return result
        except TransientProviderError as e:
            last = e
            metrics.increment_provider_transient(provider)
            log(
                event="provider_transient_failure",
                provider=provider,
                operation=operation,
                attempt=attempt,
                error=e.message[:300],
            )
            if attempt <= retries:
                time.sleep(_calc_backoff(attempt))

    log(event="provider_unavailable", provider=provider, operation=operation, attempts=retries + 1)
    raise ProviderUnavailableError(
        f"{provider} {operation} unavailable after {retries + 1} attempts",
        provider=provider,
        operation=operation,
        last_error=last.message if last else "",
    )


class ProviderClient:
    """
    Base httpx client. Holds no per-session state, so one instance is shared by
    every request thread.
    """

    name = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: float,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = float(timeout)
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _post(self, path: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return self._request("POST", path, payload, headers)

    def _get(self, path: str, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return self._request("GET", path, None, headers)

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Send and decode JSON. Transport problems, 5xx and 429 raise
        TransientProviderError; any other non-2xx raises ProviderRequestError.
        """
        hdrs = self._headers()
        hdrs.update(headers or {})
        try:
            with self._client() as client:
                resp = client.request(method, path, json=payload, headers=hdrs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.name} timeout: {e}")
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.name} transport error: {e}")

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransientProviderError(f"{self.name} returned {resp.status_code}")
        if not (200 <= resp.status_code < 300):
            raise ProviderRequestError(
                f"{self.name} rejected request: {resp.status_code}",
                provider=self.name,
                status_code=resp.status_code,
                body=(resp.text or "")[:500],
            )
        try:
            data = resp.json()
        except ValueError:
            raise TransientProviderError(f"{self.name} returned a non-JSON body")
        return data if isinstance(data, dict) else {"data": data}
