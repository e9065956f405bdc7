"""
Content Extractor client - The protected work behind the gateway.

The gateway only authorizes, meters and forwards; platform extraction runs
in a separate service reached over HTTP. Any failure of that service is an
UpstreamError so the pipeline never charges for it.
"""

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from structlog import get_logger

from creditgate.config import settings
from creditgate.exceptions import UpstreamError, UpstreamTimeoutError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExtractionResult:
    """Payload returned by the extractor for one request."""

    platform: str
    operation: str
    data: Any


class ContentExtractor(Protocol):
    """Extraction collaborator invoked after a request is authorized."""

    async def extract(
        self, platform: str, operation: str, params: dict[str, str]
    ) -> ExtractionResult:
        """
        Run one extraction.

        Raises:
            UpstreamError: The collaborator failed or returned an error
            UpstreamTimeoutError: The collaborator did not answer in time
        """
        ...

    async def close(self) -> None: ...


class HttpContentExtractor:
    """Calls ``GET {base_url}/{platform}/{operation}`` on the extractor service."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = (base_url or settings.upstream_extractor_url).rstrip("/")
        self.timeout = timeout or settings.upstream_timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._http_client

    async def extract(
        self, platform: str, operation: str, params: dict[str, str]
    ) -> ExtractionResult:
        try:
            response = await self.http_client.get(f"/{platform}/{operation}", params=params)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as exc:
            logger.warning("upstream_timeout", platform=platform, operation=operation)
            raise UpstreamTimeoutError(f"Extractor timed out for {platform}/{operation}") from exc
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "upstream_http_error",
                platform=platform,
                operation=operation,
                status=exc.response.status_code,
            )
            raise UpstreamError(
                f"Extractor returned {exc.response.status_code} for {platform}/{operation}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "upstream_unreachable",
                platform=platform,
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise UpstreamError(f"Extractor unreachable: {type(exc).__name__}") from exc
        except ValueError as exc:
            logger.warning("upstream_invalid_body", platform=platform, operation=operation)
            raise UpstreamError("Extractor returned a non-JSON body") from exc

        if isinstance(body, dict) and body.get("success") is False:
            logger.info(
                "upstream_reported_failure",
                platform=platform,
                operation=operation,
                error=str(body.get("error"))[:200],
            )
            raise UpstreamError(f"Extractor reported failure for {platform}/{operation}")

        data = body.get("data", body) if isinstance(body, dict) else body
        return ExtractionResult(platform=platform, operation=operation, data=data)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
