"""HTTP transport for job-document retrieval."""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

import aiohttp

from pyfleet._redact import redact_for_log, redact_url
from pyfleet.exceptions import FleetTransportError, JobDocumentError

_logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429})


class DocumentFetcher(Protocol):
    """Structural fetcher interface used by the job channel.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`HttpDocumentFetcher`) concrete.
    """

    async def fetch(self, location: str) -> dict[str, Any]:
        ...


class HttpDocumentFetcher:
    """Fetches job documents from their ``documentLocation`` URL."""

    def __init__(self, http_session: aiohttp.ClientSession) -> None:
        self._http = http_session

    async def fetch(self, location: str) -> dict[str, Any]:
        """GET *location* and return the decoded JSON object.

        Raises
        ------
        FleetTransportError
            On connection errors, 5xx, 408 and 429 responses (transient).
        JobDocumentError
            On any other non-200 status or a body that is not a JSON object.
        """
        headers = {"accept": "application/json"}
        _logger.debug("GET %s", redact_url(location))

        try:
            async with self._http.get(location, headers=headers) as resp:
                text = await resp.text()
                status = resp.status
        except aiohttp.ClientError as exc:
            raise FleetTransportError(
                f"Request to {redact_url(location)} failed: {exc}",
                endpoint=redact_url(location),
            ) from exc

        if status != 200:
            message = f"HTTP {status} fetching job document: {text[:200]}"
            if status >= 500 or status in _RETRYABLE_STATUS:
                raise FleetTransportError(message, status_code=status, endpoint=redact_url(location))
            raise JobDocumentError(message)

        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise JobDocumentError(f"Job document is not JSON: {text[:64]}") from exc
        if not isinstance(body, dict):
            raise JobDocumentError("Job document is not a JSON object")
        _logger.debug("Job document received: %s", redact_for_log(body))
        return body
