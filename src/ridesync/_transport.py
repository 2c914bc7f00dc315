"""HTTP transport for the ride resource API."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from ridesync._redact import redact_for_log
from ridesync.exceptions import HttpError

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by endpoint modules.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`HttpTransport`) concrete.
    """

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any: ...


class HttpTransport:
    """JSON-over-HTTP transport backed by an ``aiohttp.ClientSession``."""

    def __init__(
        self,
        base_url: str,
        http_session: aiohttp.ClientSession,
        *,
        timeout: float = 15.0,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._headers: dict[str, str] = {"content-type": "application/json", "accept": "application/json"}
        if headers:
            self._headers.update(headers)

    def set_bearer_token(self, token: str | None) -> None:
        """Attach (or drop) an ``Authorization: Bearer`` header."""
        if token:
            self._headers["authorization"] = f"Bearer {token}"
        else:
            self._headers.pop("authorization", None)

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send a request and decode the JSON reply.

        Empty 2xx bodies decode to ``None``. Non-2xx replies raise
        :class:`HttpError` carrying the status code and a body excerpt.
        """
        url = f"{self._base_url}{path}"
        body = json.dumps(payload, separators=(",", ":")) if payload is not None else None
        query = {k: str(v) for k, v in params.items() if v is not None} if params else None

        _logger.debug("%s %s payload=%s", method, url, redact_for_log(payload))

        try:
            async with self._http.request(
                method,
                url,
                data=body,
                params=query,
                headers=self._headers,
                timeout=self._timeout,
            ) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise HttpError(f"Request to {path} failed: {exc}", endpoint=path) from exc
        except TimeoutError as exc:
            raise HttpError(f"Request to {path} timed out", endpoint=path) from exc

        if not 200 <= status < 300:
            raise HttpError(
                f"HTTP {status} from {path}: {text[:200]}",
                status_code=status,
                endpoint=path,
                body=text[:2000],
            )

        if not text.strip():
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise HttpError(
                f"Invalid JSON from {path}: {text[:200]}",
                status_code=status,
                endpoint=path,
                body=text[:2000],
            ) from exc
