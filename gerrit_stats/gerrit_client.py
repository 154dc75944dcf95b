"""Gerrit REST API client with authentication and retry handling."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from gerrit_stats.config import (
    REQUEST_TIMEOUT,
    RETRY_BACKOFF,
    RETRY_MAX,
    XSSI_PREFIX,
)

logger = logging.getLogger(__name__)


class GerritError(Exception):
    """Base class for fatal Gerrit query failures."""

    def __init__(self, message: str, endpoint: str | None = None) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.user: str | None = None


class GerritAuthError(GerritError):
    """The server rejected the credentials (HTTP 401/403)."""


class GerritFetchError(GerritError):
    """A query failed permanently or exhausted its retry budget."""


class GerritClient:
    """Authenticated Gerrit REST client with automatic retries.

    Every request goes to the ``/a/`` namespace so Gerrit applies the
    HTTP basic credentials.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        timeout: float = REQUEST_TIMEOUT,
        retry_max: int = RETRY_MAX,
        retry_backoff: float = RETRY_BACKOFF,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._retry_max = retry_max
        self._retry_backoff = retry_backoff
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}/a",
            auth=httpx.BasicAuth(username, password),
            headers={"Accept": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    # ── REST ────────────────────────────────────────────────────────────

    def rest_get(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Send a GET request to the Gerrit REST API.

        Returns parsed JSON with the anti-XSSI prefix removed. Transport
        errors, 429 and any 5xx answer are retried with exponential backoff.
        Other request errors, such as an undecodable body, fail at once.

        Raises:
            GerritAuthError: on HTTP 401/403, without retrying.
            GerritFetchError: on other client errors or once retries run out.
        """
        for attempt in range(1, self._retry_max + 1):
            try:
                resp = self._client.get(endpoint, params=params)
            except httpx.TransportError as exc:
                logger.warning(
                    "Transport error on %s (attempt %d/%d): %s",
                    endpoint, attempt, self._retry_max, exc,
                )
                self._backoff(attempt)
                continue
            except httpx.RequestError as exc:
                raise GerritFetchError(f"request failed: {exc}", endpoint) from exc

            if resp.status_code in (401, 403):
                raise GerritAuthError(
                    f"authentication rejected (HTTP {resp.status_code})",
                    endpoint,
                )

            if resp.status_code == 429 or resp.is_server_error:
                logger.warning(
                    "HTTP %d on %s (attempt %d/%d)",
                    resp.status_code, endpoint, attempt, self._retry_max,
                )
                self._backoff(attempt)
                continue

            if resp.is_error:
                raise GerritFetchError(
                    f"HTTP {resp.status_code}: {resp.text.strip()[:200]}",
                    endpoint,
                )

            return self._decode(resp, endpoint)

        raise GerritFetchError(
            f"all {self._retry_max} attempts failed", endpoint
        )

    # ── Helpers ─────────────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> None:
        """Sleep before the next attempt; no sleep after the last one."""
        if attempt < self._retry_max:
            time.sleep(self._retry_backoff ** attempt)

    @staticmethod
    def _decode(resp: httpx.Response, endpoint: str) -> Any:
        body = resp.text
        if body.startswith(XSSI_PREFIX):
            body = body[len(XSSI_PREFIX):]
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GerritFetchError(f"unparsable response: {exc}", endpoint) from exc

    # ── Context manager ─────────────────────────────────────────────────

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> GerritClient:
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
