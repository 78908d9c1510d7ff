"""Region providers for the RegionProvider protocol.

``StaticRegionProvider`` serves a fixed list (configuration or tests).
``HttpRegionProvider`` fetches the authoritative list from a reference-data
HTTP endpoint using ``httpx``, retrying connection errors and timeouts with
exponential backoff.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from techkpi_ingest.config import IngestConfig

logger = logging.getLogger("techkpi_ingest")


class StaticRegionProvider:
    """Region provider over a fixed list of names."""

    def __init__(self, regions: list[str]) -> None:
        self._regions = [r.strip() for r in regions if r and r.strip()]

    def authoritative_regions(self) -> list[str]:
        return list(self._regions)


class HttpRegionProvider:
    """Region provider backed by a reference-data HTTP endpoint.

    Satisfies :class:`~techkpi_ingest.protocols.RegionProvider` via structural
    subtyping (no inheritance required).

    The endpoint must answer ``GET`` with JSON in one of these shapes:
    a list of names, a list of objects with a ``name`` or ``region`` key, or
    an object with a ``regions`` key holding either list.

    Parameters
    ----------
    url:
        Full URL of the regions endpoint.
    config:
        Pipeline configuration providing timeout and retry settings.
    headers:
        Extra request headers (for example an API key).
    """

    def __init__(
        self,
        url: str,
        config: IngestConfig | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        from techkpi_ingest.config import IngestConfig

        self._url = url
        self._config = config or IngestConfig()
        self._headers = headers or {}

    def _get(self) -> Any:
        """Send the GET request and return the decoded JSON body.

        Retries on connection/timeout errors and HTTP errors using the
        configured retry settings.
        """
        last_exc: Exception | None = None
        max_attempts = 1 + self._config.backend_max_retries

        for attempt in range(max_attempts):
            try:
                response = httpx.get(
                    self._url,
                    headers=self._headers,
                    timeout=self._config.backend_timeout_seconds,
                )
                response.raise_for_status()
            except httpx.TimeoutException as exc:
                last_exc = exc
                reason = "timed out"
            except httpx.HTTPStatusError as exc:
                last_exc = exc
                reason = f"failed with HTTP {exc.response.status_code}"
            except httpx.RequestError as exc:
                last_exc = exc
                reason = f"failed ({type(exc).__name__})"
            else:
                try:
                    return response.json()
                except ValueError as exc:
                    raise ConnectionError(
                        f"Region endpoint {self._url} returned a non-JSON body: {exc}"
                    ) from exc

            if attempt < max_attempts - 1:
                sleep_time = self._config.backend_backoff_base * (2 ** attempt)
                logger.warning(
                    "Region request %s (attempt %d/%d), retrying in %.1fs",
                    reason,
                    attempt + 1,
                    max_attempts,
                    sleep_time,
                )
                time.sleep(sleep_time)

        # All retries exhausted
        if isinstance(last_exc, httpx.TimeoutException):
            raise TimeoutError(
                f"Region request timed out after {max_attempts} attempts: {last_exc}"
            ) from last_exc

        raise ConnectionError(
            f"Region request failed after {max_attempts} attempts: {last_exc}"
        ) from last_exc

    def authoritative_regions(self) -> list[str]:
        """Fetch and return the region names, in the order the endpoint lists them."""
        data = self._get()
        if isinstance(data, dict):
            data = data.get("regions", [])
        if not isinstance(data, list):
            raise ConnectionError(
                f"Unexpected regions payload from {self._url}: {type(data).__name__}"
            )

        names: list[str] = []
        for item in data:
            if isinstance(item, dict):
                item = item.get("name") or item.get("region")
            if isinstance(item, str) and item.strip():
                names.append(item.strip())
        return names
