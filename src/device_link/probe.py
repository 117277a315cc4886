"""Timed HTTP probes against the device."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Iterator, Mapping, Union

import httpx

from .errors import ErrorKind
from .version import APP_VERSION

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "User-Agent": f"device-link/{APP_VERSION}",
    "Cache-Control": "no-cache",
}


@dataclass(frozen=True, slots=True)
class JsonPayload:
    """A response body that parsed as JSON."""

    value: Any

    def to_dict(self) -> dict[str, object]:
        return {"type": "json", "value": self.value}


@dataclass(frozen=True, slots=True)
class TextPayload:
    """A response body kept as raw text."""

    text: str

    def to_dict(self) -> dict[str, object]:
        return {"type": "text", "value": self.text}


Payload = Union[JsonPayload, TextPayload]


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Outcome of a single probe."""

    ok: bool
    endpoint: str
    latency_ms: float
    status_code: int | None = None
    payload: Payload | None = None
    error_kind: ErrorKind | None = None
    error: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, object | None]:
        return {
            "ok": self.ok,
            "endpoint": self.endpoint,
            "latency_ms": round(self.latency_ms, 2),
            "status_code": self.status_code,
            "payload": self.payload.to_dict() if self.payload is not None else None,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "error": self.error,
            "timestamp": self.timestamp,
        }


class ProbeHistory:
    """Bounded ring buffer of recent probe results."""

    def __init__(self, max_entries: int = 50) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._results: Deque[ProbeResult] = deque(maxlen=max_entries)

    def append(self, result: ProbeResult) -> None:
        self._results.append(result)

    def snapshot(self) -> list[ProbeResult]:
        return list(self._results)

    def clear(self) -> None:
        self._results.clear()

    @property
    def max_entries(self) -> int:
        return self._results.maxlen or 0

    def __len__(self) -> int:
        return len(self._results)

    def __iter__(self) -> Iterator[ProbeResult]:
        return iter(list(self._results))


class TransportProber:
    """Issue GET requests to the device and classify the outcome.

    Expected failures (timeouts, refused connections, non-2xx answers) are
    folded into a :class:`ProbeResult`; only cancellation escapes.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        history: ProbeHistory | None = None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._base_url = base_url.rstrip("/")
        self._timeout = float(timeout)
        self._history = history if history is not None else ProbeHistory()
        self._client = client
        self._owns_client = client is None
        self._transport = transport

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def history(self) -> ProbeHistory:
        return self._history

    def _url(self, endpoint: str) -> str:
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        return self._base_url + endpoint

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def probe(
        self,
        endpoint: str,
        timeout: float | None = None,
        params: Mapping[str, object] | None = None,
    ) -> ProbeResult:
        budget = self._timeout if timeout is None else float(timeout)
        client = self._get_client()
        started = time.perf_counter()

        def _elapsed() -> float:
            return (time.perf_counter() - started) * 1000.0

        try:
            response = await asyncio.wait_for(
                client.get(self._url(endpoint), params=params, headers=DEFAULT_HEADERS, timeout=budget),
                timeout=budget,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            result = ProbeResult(
                ok=False,
                endpoint=endpoint,
                latency_ms=_elapsed(),
                error_kind=ErrorKind.TIMEOUT,
                error=str(exc) or f"No answer within {budget:g}s",
            )
        except (httpx.HTTPError, OSError) as exc:
            result = ProbeResult(
                ok=False,
                endpoint=endpoint,
                latency_ms=_elapsed(),
                error_kind=ErrorKind.NETWORK_FAILURE,
                error=str(exc) or exc.__class__.__name__,
            )
        else:
            result = self._classify(endpoint, response, _elapsed())
        self._history.append(result)
        logger.debug(
            "Probe %s -> ok=%s status=%s latency=%.1fms",
            endpoint,
            result.ok,
            result.status_code,
            result.latency_ms,
        )
        return result

    @staticmethod
    def _classify(endpoint: str, response: httpx.Response, latency_ms: float) -> ProbeResult:
        text = response.text
        if not response.is_success:
            return ProbeResult(
                ok=False,
                endpoint=endpoint,
                latency_ms=latency_ms,
                status_code=response.status_code,
                payload=TextPayload(text),
                error_kind=ErrorKind.HTTP_ERROR,
                error=f"HTTP {response.status_code}",
            )
        payload: Payload
        try:
            payload = JsonPayload(response.json())
        except ValueError:
            payload = TextPayload(text)
        return ProbeResult(
            ok=True,
            endpoint=endpoint,
            latency_ms=latency_ms,
            status_code=response.status_code,
            payload=payload,
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


__all__ = [
    "DEFAULT_HEADERS",
    "JsonPayload",
    "Payload",
    "ProbeHistory",
    "ProbeResult",
    "TextPayload",
    "TransportProber",
]
