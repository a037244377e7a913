"""Base destination class and utilities."""

from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, List, Union
import logging
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type
import httpx

from reverse_etl.core.config import DESTINATION_CONFIGS, get_settings
from reverse_etl.models import ControlMessage, LogLevel, LogMessage, SyncConfig, TrackingReport
from reverse_etl.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

WriteResult = Union[TrackingReport, ControlMessage]


class DestinationError(Exception):
    """Base destination error."""
    pass


class AuthenticationError(DestinationError):
    """Authentication failed."""
    pass


class RateLimitError(DestinationError):
    """Rate limit exceeded."""
    pass


class BaseDestination(ABC):
    """Base class for all destination connectors."""

    connector_name: str = ""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        settings = get_settings()
        self.config = DESTINATION_CONFIGS.get(self.connector_name.lower(), {})
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.http_timeout)

        rate_limit = self.config.get("rate_limit", {"calls": 10, "window": 1})
        self.rate_limiter = rate_limiter or RateLimiter(
            calls=rate_limit["calls"],
            window=rate_limit["window"],
            redis_url=settings.redis_url if settings.distributed_rate_limit else None,
            prefix=f"destination:{self.connector_name.lower()}",
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.http_client.aclose()
        await self.rate_limiter.close()

    @abstractmethod
    async def write(
        self,
        sync: SyncConfig,
        records: List[Dict[str, Any]],
        action: str = "create",
        *,
        lookup_cache=None,
    ) -> WriteResult:
        """Deliver records; every failure is folded into the returned report."""
        pass

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type((httpx.TimeoutException, RateLimitError)),
        reraise=True,
    )
    async def make_api_request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Any] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make a rate-limited API request, retrying timeouts and 429s."""
        await self.rate_limiter.acquire(f"{self.connector_name}:{method}")

        response = await self.http_client.request(
            method=method,
            url=url,
            headers=headers,
            params=params,
            json=json,
        )
        if response.status_code == 429:
            raise RateLimitError(f"Rate limit exceeded: {response.text}")
        if response.status_code == 401:
            logger.error(f"Authentication failed for {method} {url}")
        return response

    def create_log_for_record(
        self,
        record: Dict[str, Any],
        level: LogLevel,
        request: Any,
        response: Any,
    ) -> LogMessage:
        """Build the per-record log entry kept on the record after delivery."""
        return LogMessage(
            name=type(self).__name__,
            level=level,
            message={
                "request": request,
                "response": response,
                "level": level.value,
                "record": record,
            },
        )
