from __future__ import annotations

from collections.abc import Mapping
import logging
from types import TracebackType
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from profilehub.logging_utils import structured_log
from profilehub.services.domains.collectors.errors import (
    SetupFailure,
    SourceFetchError,
    TransientSourceError,
)
from profilehub.services.domains.collectors.types import CollectorTarget
from profilehub.services.domains.merge.types import RecordCandidate

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class HttpCandidateSource:
    """Fetches candidate records from a collector's JSON endpoint.

    The endpoint receives the target params as query parameters and answers
    ``{"records": [...]}``; each record is converted with
    ``RecordCandidate.from_payload``.
    """

    def __init__(
        self,
        *,
        collector: str,
        source_tag: str,
        endpoint_url: str,
        timeout_seconds: float,
        attempts: int,
        user_agent: str,
        retry_backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._collector = collector
        self._source_tag = source_tag
        self._endpoint_url = (endpoint_url or "").strip()
        self._timeout_seconds = float(timeout_seconds)
        self._attempts = max(1, int(attempts))
        self._user_agent = user_agent
        self._retry_backoff_seconds = max(0.0, float(retry_backoff_seconds))
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> HttpCandidateSource:
        if not self._endpoint_url:
            raise SetupFailure(f"No endpoint configured for collector '{self._collector}'.")
        self._client = httpx.AsyncClient(
            timeout=self._timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": self._user_agent, "Accept": "application/json"},
            transport=self._transport,
        )
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_once(self, params: Mapping[str, Any]) -> httpx.Response:
        if self._client is None:
            raise SetupFailure("HttpCandidateSource used outside of its context.")
        try:
            response = await self._client.get(self._endpoint_url, params=dict(params))
        except (httpx.NetworkError, httpx.TimeoutException) as exc:
            raise TransientSourceError(f"{exc.__class__.__name__}: {exc}") from exc
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise TransientSourceError(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            logger.warning(
                "source.http_error",
                extra={
                    "event": "source.http_error",
                    "collector": self._collector,
                    "status_code": response.status_code,
                    "body": response.text[:500],
                },
            )
            raise SourceFetchError(f"HTTP {response.status_code}")
        return response

    async def _get(self, params: Mapping[str, Any]) -> httpx.Response:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientSourceError),
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(multiplier=self._retry_backoff_seconds, max=10),
            reraise=True,
        ):
            with attempt:
                return await self._get_once(params)
        raise SourceFetchError("Request was not attempted.")

    async def fetch(self, target: CollectorTarget) -> list[RecordCandidate]:
        response = await self._get(target.params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceFetchError("Response is not valid JSON.") from exc
        records = payload.get("records") if isinstance(payload, Mapping) else None
        if not isinstance(records, list):
            raise SourceFetchError("Response has no 'records' list.")

        candidates: list[RecordCandidate] = []
        for record in records:
            if not isinstance(record, Mapping):
                structured_log(
                    logger,
                    "warning",
                    "source.record_ignored",
                    collector=self._collector,
                    target=target.key,
                )
                continue
            candidates.append(RecordCandidate.from_payload(record, source=self._source_tag))
        return candidates
