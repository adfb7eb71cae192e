import httpx
import asyncio
import random
import time
from typing import Dict, Any, Optional
from abc import ABC, abstractmethod

from calendar_trader.core.logging import get_logger
from calendar_trader.core.cache import cache_manager
from calendar_trader.core.monitoring import ErrorMonitoring
from calendar_trader.core.config import settings


logger = get_logger(__name__)


class RateLimiter:
    """Rate limiter for API calls"""

    def __init__(self, calls_per_second: float):
        self.calls_per_second = calls_per_second
        self.min_interval = 1.0 / calls_per_second
        self.last_call_time = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self):
        """Acquire rate limit slot"""
        async with self._lock:
            current_time = time.time()
            time_since_last_call = current_time - self.last_call_time

            if time_since_last_call < self.min_interval:
                await asyncio.sleep(self.min_interval - time_since_last_call)

            self.last_call_time = time.time()


class ExternalAPIError(Exception):
    """Base exception for external API errors"""

    def __init__(
        self,
        message: str,
        service: str,
        status_code: Optional[int] = None,
        response_data: Optional[Any] = None
    ):
        super().__init__(message)
        self.service = service
        self.status_code = status_code
        self.response_data = response_data


class ExternalAPIService(ABC):
    """
    Base class for external API integrations with:
    - Automatic retries with exponential backoff (reads only by default)
    - Rate limiting
    - Response caching for idempotent GETs
    - Metrics collection
    - Request/response logging
    """

    def __init__(
        self,
        service_name: str,
        base_url: str,
        timeout: int = 30,
        max_retries: int = 3,
        rate_limit: Optional[float] = None,
        cache_ttl: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_base_delay: float = 1.0,
    ):
        self.service_name = service_name
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.cache_ttl = cache_ttl
        self.retry_base_delay = retry_base_delay
        self.rate_limiter = RateLimiter(rate_limit) if rate_limit else None

        self.headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": f"{settings.api.title}/{settings.api.version}",
            **(headers or {}),
        }

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=self.headers,
            verify=verify_ssl,
            transport=transport,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=50),
            follow_redirects=True
        )

        self.metrics: Dict[str, Any] = {
            "total_requests": 0,
            "successful_requests": 0,
            "failed_requests": 0,
            "cache_hits": 0,
            "total_response_time": 0.0,
            "errors_by_type": {}
        }

        self.logger = get_logger(f"external.{service_name}")

    @abstractmethod
    def _get_cache_key(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Generate cache key for the request - must be implemented by subclass"""
        pass

    @abstractmethod
    def _parse_error_response(self, response: httpx.Response) -> str:
        """Parse error message from response - must be implemented by subclass"""
        pass

    def _should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if request should be retried"""
        if attempt >= self.max_retries:
            return False

        if isinstance(exception, (httpx.TimeoutException, httpx.NetworkError)):
            return True

        if isinstance(exception, httpx.HTTPStatusError):
            return exception.response.status_code in [429, 500, 502, 503, 504]

        return False

    def _get_retry_delay(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        """Calculate retry delay with exponential backoff"""
        if response is not None and "Retry-After" in response.headers:
            try:
                return float(response.headers["Retry-After"])
            except ValueError:
                pass

        # Exponential backoff: 1s, 2s, 4s, 8s...
        delay = min(self.retry_base_delay * (2 ** attempt), 60.0)

        # Add jitter to prevent thundering herd
        return delay + random.uniform(0, delay * 0.1)

    def _record_error(self, error_type: str):
        self.metrics["errors_by_type"][error_type] = \
            self.metrics["errors_by_type"].get(error_type, 0) + 1

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
        use_cache: bool = False,
        cache_ttl: Optional[int] = None,
        retry: bool = True,
    ) -> Any:
        """
        Make HTTP request with retry, caching and logging

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint (joined with base_url)
            params: Query parameters
            json_data: JSON body data
            use_cache: Whether to use caching for GET requests
            cache_ttl: Override default cache TTL
            retry: False for non-idempotent calls such as order submission

        Returns:
            Parsed JSON response

        Raises:
            ExternalAPIError: On API errors
        """
        if self.rate_limiter:
            await self.rate_limiter.acquire()

        cache = cache_manager.cache
        cache_key = None
        namespace = f"external_api:{self.service_name}"
        if method == "GET" and use_cache:
            cache_key = self._get_cache_key(endpoint, params)
            cached_response = cache.get(cache_key, namespace=namespace)
            if cached_response is not None:
                self.metrics["cache_hits"] += 1
                self.logger.debug("Cache hit", cache_key=cache_key, service=self.service_name)
                return cached_response

        self.logger.log_external_api_call(
            service=self.service_name,
            endpoint=endpoint,
            method=method,
            params=params
        )

        max_attempts = self.max_retries if retry else 1
        last_exception: Optional[Exception] = None
        for attempt in range(max_attempts):
            start_time = time.time()

            try:
                response = await self.client.request(
                    method=method,
                    url=endpoint,
                    params=params,
                    json=json_data,
                )

                response_time = time.time() - start_time
                self.metrics["total_response_time"] += response_time

                response.raise_for_status()
                data = response.json() if response.content else {}

                self.logger.log_external_api_response(
                    service=self.service_name,
                    status_code=response.status_code,
                    response_time=response_time
                )

                self.metrics["total_requests"] += 1
                self.metrics["successful_requests"] += 1

                if cache_key:
                    cache.set(cache_key, data, ttl=cache_ttl or self.cache_ttl, namespace=namespace)

                ErrorMonitoring.add_breadcrumb(
                    message=f"External API call to {self.service_name}",
                    category="external_api",
                    level="info",
                    data={
                        "endpoint": endpoint,
                        "status_code": response.status_code,
                        "response_time_ms": round(response_time * 1000, 2)
                    }
                )

                return data

            except httpx.HTTPStatusError as e:
                last_exception = e
                error_message = self._parse_error_response(e.response)

                self.logger.warning(
                    f"HTTP error from {self.service_name}",
                    status_code=e.response.status_code,
                    error_message=error_message,
                    attempt=attempt + 1
                )
                self._record_error(f"http_{e.response.status_code}")

                if not retry or not self._should_retry(e, attempt + 1):
                    break

                retry_delay = self._get_retry_delay(attempt, e.response)
                self.logger.info(
                    f"Retrying request to {self.service_name}",
                    attempt=attempt + 1,
                    retry_delay=retry_delay
                )
                await asyncio.sleep(retry_delay)

            except (httpx.TimeoutException, httpx.NetworkError) as e:
                last_exception = e

                self.logger.warning(
                    f"Network error calling {self.service_name}",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    attempt=attempt + 1
                )
                self._record_error(type(e).__name__)

                if not retry or not self._should_retry(e, attempt + 1):
                    break

                await asyncio.sleep(self._get_retry_delay(attempt))

            except ValueError as e:
                # Response body was not JSON
                last_exception = e
                self._record_error("invalid_json")
                break

        # All retries failed
        self.metrics["total_requests"] += 1
        self.metrics["failed_requests"] += 1

        if isinstance(last_exception, httpx.HTTPStatusError):
            raise ExternalAPIError(
                message=f"API call to {self.service_name} failed: {self._parse_error_response(last_exception.response)}",
                service=self.service_name,
                status_code=last_exception.response.status_code,
                response_data=last_exception.response.text
            )
        raise ExternalAPIError(
            message=f"API call to {self.service_name} failed: {last_exception}",
            service=self.service_name
        )

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs) -> Any:
        """Make GET request"""
        return await self._make_request("GET", endpoint, params=params, **kwargs)

    async def post(self, endpoint: str, json_data: Optional[Any] = None, **kwargs) -> Any:
        """Make POST request"""
        return await self._make_request("POST", endpoint, json_data=json_data, **kwargs)

    async def delete(self, endpoint: str, **kwargs) -> Any:
        """Make DELETE request"""
        return await self._make_request("DELETE", endpoint, **kwargs)

    async def close(self):
        """Close HTTP client"""
        await self.client.aclose()

    def get_metrics(self) -> Dict[str, Any]:
        """Get service metrics"""
        total_requests = self.metrics["total_requests"]
        if total_requests > 0:
            success_rate = self.metrics["successful_requests"] / total_requests
            avg_response_time = self.metrics["total_response_time"] / total_requests
        else:
            success_rate = 0.0
            avg_response_time = 0.0

        return {
            "service": self.service_name,
            "total_requests": total_requests,
            "successful_requests": self.metrics["successful_requests"],
            "failed_requests": self.metrics["failed_requests"],
            "success_rate": round(success_rate, 4),
            "avg_response_time_ms": round(avg_response_time * 1000, 2),
            "cache_hits": self.metrics["cache_hits"],
            "errors_by_type": self.metrics["errors_by_type"]
        }
