import time
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from calendar_trader.core.logging import get_logger, set_request_id, clear_context
from calendar_trader.core.monitoring import ErrorMonitoring


logger = get_logger(__name__)


class LoggingMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with X-Request-ID and logs it with its duration
    """

    async def dispatch(self, request: Request, call_next):
        # Reuse the caller's request ID when it sends one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        set_request_id(request_id)
        path = request.url.path

        logger.info(
            f"API Request: {request.method} {path}",
            method=request.method,
            endpoint=path,
            client_ip=request.client.host if request.client else None,
        )
        ErrorMonitoring.add_breadcrumb(
            message=f"{request.method} {path}",
            category="request",
            data={"query_params": dict(request.query_params)}
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("Request processing error", error=e, endpoint=path, method=request.method)
            raise
        finally:
            clear_context()

        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)
        log = logger.info if response.status_code < 400 else logger.warning
        log(f"API Response: {response.status_code}", status_code=response.status_code,
            response_time_ms=elapsed_ms, endpoint=path)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(elapsed_ms)
        return response
