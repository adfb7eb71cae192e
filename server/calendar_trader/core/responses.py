"""
JSON envelope shared by every endpoint:

    {success, message, data | error, metadata, request_id, timestamp}
"""
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from fastapi import status
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from .logging import get_logger, request_id_var


logger = get_logger(__name__)


class ErrorCode:
    """Machine-readable codes carried in error.code"""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    CONFLICT = "CONFLICT"

    INTERNAL_ERROR = "INTERNAL_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"

    INVALID_STRATEGY = "INVALID_STRATEGY"
    INVALID_IMPORT = "INVALID_IMPORT"
    EXECUTOR_CONFIG_ERROR = "EXECUTOR_CONFIG_ERROR"
    EXECUTOR_STATE_ERROR = "EXECUTOR_STATE_ERROR"


def _envelope(success: bool, message: str, **fields: Any) -> Dict[str, Any]:
    content = {
        "success": success,
        "message": message,
        **fields,
        "request_id": request_id_var.get(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    # data stays even when null; other empty fields are dropped
    return {k: v for k, v in content.items() if v is not None or k == "data"}


def create_success_response(
    data: Any = None,
    message: str = "Success",
    status_code: int = status.HTTP_200_OK,
    metadata: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """
    Wrap data in the success envelope

    Args:
        data: Response payload, passed through jsonable_encoder
        message: Human-readable summary
        status_code: HTTP status code (default: 200)
        metadata: Extra top-level information such as counts
    """
    logger.debug(f"Success response: {message}", status_code=status_code)
    return JSONResponse(
        status_code=status_code,
        content=_envelope(True, message, data=jsonable_encoder(data), metadata=metadata),
    )


def create_error_response(
    error_code: str,
    message: str,
    status_code: int = status.HTTP_400_BAD_REQUEST,
    error_details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Wrap an error code and message in the error envelope"""
    logger.warning(
        f"Error response: {message}",
        error_code=error_code,
        status_code=status_code,
        error_details=error_details
    )

    error = {"code": error_code, "message": message}
    if error_details:
        error["details"] = jsonable_encoder(error_details)

    return JSONResponse(status_code=status_code, content=_envelope(False, message, error=error))


def validation_error(message: str, errors: Optional[List[Dict[str, Any]]] = None) -> JSONResponse:
    return create_error_response(
        error_code=ErrorCode.VALIDATION_ERROR,
        message=message,
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        error_details={"validation_errors": errors} if errors else None
    )


def not_found_error(resource: str, identifier: str) -> JSONResponse:
    return create_error_response(
        error_code=ErrorCode.NOT_FOUND,
        message=f"{resource} with id '{identifier}' not found",
        status_code=status.HTTP_404_NOT_FOUND,
        error_details={"resource": resource, "identifier": identifier}
    )


def internal_error(message: str, error: Optional[Exception] = None) -> JSONResponse:
    """500 response; exception details only when error is given"""
    details = None
    if error:
        details = {"error_type": type(error).__name__, "error_message": str(error)}
    return create_error_response(
        error_code=ErrorCode.INTERNAL_ERROR,
        message=message,
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_details=details
    )


def external_api_error(service: str, message: Optional[str] = None) -> JSONResponse:
    return create_error_response(
        error_code=ErrorCode.EXTERNAL_API_ERROR,
        message=message or f"External service '{service}' is unavailable",
        status_code=status.HTTP_502_BAD_GATEWAY,
        error_details={"service": service}
    )
