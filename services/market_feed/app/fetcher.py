"""
Single-exchange HTTP fetcher.

Performs one request through a session's identity and classifies the outcome:
- 2xx          -> FetchOutcome.SUCCESS
- 4xx (incl. 403/429) -> FetchOutcome.SOFT_BLOCK, returned, never raised
- 5xx          -> UpstreamServerError raised
- timeout / DNS / connection reset / proxy failure -> TransportFailure raised
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from shared.schemas import SourceConfig
from .errors import TransportFailure, UpstreamServerError
from .identity_pool import Session
from .stealth import build_headers, build_proxy_url

logger = logging.getLogger(__name__)


class FetchOutcome(str, Enum):
    SUCCESS = "success"
    SOFT_BLOCK = "soft_block"


@dataclass
class FetchResult:
    outcome: FetchOutcome
    status_code: int
    url: str
    text: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == FetchOutcome.SUCCESS

    def json(self) -> Any:
        return json.loads(self.text)


class Fetcher:
    """
    Issues requests on behalf of identity-pool sessions.

    A fresh httpx.AsyncClient is built per exchange so each request carries
    exactly its session's proxy, cookies and headers. An injected transport
    (tests, custom routing) replaces proxy routing.
    """

    def __init__(self, config: SourceConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.source_id = config.source_id
        self._transport = transport
        self.requests_remaining: Optional[int] = None
        self._fetch_count = 0
        self._soft_block_count = 0
        self._error_count = 0

    def _headers_for(self, session: Session) -> Dict[str, str]:
        headers = build_headers(
            session.user_agent,
            randomize=self.config.anti_detection.randomize_headers,
        )
        headers.update(self.config.headers)
        headers.update(session.headers)
        if self.config.auth_type == "bearer" and self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _params_for(self, params: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        merged = dict(params or {})
        if self.config.auth_type == "apikey" and self.config.api_key:
            merged[self.config.api_key_param] = self.config.api_key
        return merged

    def _build_client(self, session: Session) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {
            "headers": self._headers_for(session),
            "cookies": dict(session.cookies),
            "timeout": self.config.timeout_seconds,
            "follow_redirects": True,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        else:
            proxy_url = build_proxy_url(session.proxy)
            if proxy_url:
                kwargs["proxy"] = proxy_url
        return httpx.AsyncClient(**kwargs)

    async def fetch(
        self,
        session: Session,
        url: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> FetchResult:
        """Perform one GET with the session's identity and classify the response."""
        self._fetch_count += 1
        start = time.monotonic()
        log_extra = {"source_id": self.source_id, "session_id": session.id, "url": url}

        try:
            async with self._build_client(session) as client:
                response = await client.get(url, params=self._params_for(params))
        except httpx.TimeoutException as e:
            self._error_count += 1
            logger.warning(f"[{self.source_id}] Timeout via {session.id}: {url}", extra={
                **log_extra, "error_type": "timeout",
            })
            raise TransportFailure(f"timeout: {e}", url=url) from e
        except httpx.RequestError as e:
            self._error_count += 1
            logger.warning(f"[{self.source_id}] Transport error via {session.id}: {e}", extra={
                **log_extra, "error_type": type(e).__name__,
            })
            raise TransportFailure(f"{type(e).__name__}: {e}", url=url) from e

        duration_ms = int((time.monotonic() - start) * 1000)
        status = response.status_code

        for name, value in response.cookies.items():
            session.cookies[name] = value

        remaining = response.headers.get("x-requests-remaining")
        if remaining is not None and remaining.isdigit():
            self.requests_remaining = int(remaining)

        if status >= 500:
            self._error_count += 1
            logger.warning(f"[{self.source_id}] Upstream {status} via {session.id}", extra={
                **log_extra, "status_code": status, "duration_ms": duration_ms,
            })
            raise UpstreamServerError(f"upstream returned {status}", status_code=status, url=url)

        result = FetchResult(
            outcome=FetchOutcome.SUCCESS,
            status_code=status,
            url=str(response.url),
            text=response.text,
            headers=dict(response.headers),
            duration_ms=duration_ms,
        )

        if status >= 400:
            self._soft_block_count += 1
            result.outcome = FetchOutcome.SOFT_BLOCK
            logger.warning(f"[{self.source_id}] Soft block {status} via {session.id}", extra={
                **log_extra, "status_code": status, "duration_ms": duration_ms,
                "event_type": "soft_block",
            })
            return result

        logger.debug(f"[{self.source_id}] {status} in {duration_ms}ms via {session.id}", extra={
            **log_extra, "status_code": status, "duration_ms": duration_ms,
        })
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {
            "fetch_count": self._fetch_count,
            "soft_block_count": self._soft_block_count,
            "error_count": self._error_count,
            "requests_remaining": self.requests_remaining,
        }
