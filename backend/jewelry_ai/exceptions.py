from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import traceback
from .config import settings
from .logger import logger


GENERIC_FAILURE_MESSAGE = "Image generation failed. Please try again later."
GENERIC_ANALYSIS_FAILURE_MESSAGE = "Image analysis failed. Please try again with another photo."


class JewelryAiBaseException(Exception):
    """Base exception for the jewelry AI service"""
    def __init__(self, message: str, code: str = "INTERNAL_ERROR", status_code: int = 500):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(JewelryAiBaseException):
    """Raised when a configuration, job or analysis does not exist"""
    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} {entity_id} not found", "NOT_FOUND", 404)


class AccessDeniedError(JewelryAiBaseException):
    """Raised when a resource belongs to another registered user"""
    def __init__(self, message: str = "Access denied"):
        super().__init__(message, "ACCESS_DENIED", 403)


class QuotaExceededError(JewelryAiBaseException):
    """Raised when a guest has used up the free preview allowance"""
    def __init__(self, limit: int, guest_client_id: str):
        self.limit = limit
        self.guest_client_id = guest_client_id
        super().__init__(
            f"Free AI preview limit ({limit}) reached for guest {guest_client_id}. "
            "Please sign up to continue.",
            "AI_LIMIT_EXCEEDED",
            429,
        )


class InvalidRequestError(JewelryAiBaseException):
    """Raised when a request is well-formed JSON but semantically invalid"""
    def __init__(self, message: str):
        super().__init__(message, "VALIDATION_ERROR", 400)


class ImageGenerationError(JewelryAiBaseException):
    """Raised when an image generation provider fails"""
    def __init__(self, message: str = "Image generation failed"):
        super().__init__(message, "IMAGE_GENERATION_ERROR", 502)


class VisionAnalysisError(JewelryAiBaseException):
    """Raised when the vision model call fails"""
    def __init__(self, message: str = "Vision analysis failed"):
        super().__init__(message, "VISION_ANALYSIS_ERROR", 502)


class S3StorageError(JewelryAiBaseException):
    """Raised when S3 operations fail"""
    def __init__(self, message: str = "S3 storage operation failed"):
        super().__init__(message, "S3_STORAGE_ERROR", 502)


class InvalidJobStateError(JewelryAiBaseException):
    """Raised when a job is asked to make a transition its state does not allow"""
    def __init__(self, job_id: str, current_state: str, expected_state: str):
        super().__init__(
            f"Job {job_id} is in state '{current_state}', expected '{expected_state}'",
            "INVALID_JOB_STATE",
            409,
        )


def public_error_message(message, generic: str = GENERIC_FAILURE_MESSAGE):
    """Error text safe to return to API clients for a failed job or analysis."""
    if message is None:
        return None
    if settings.is_production:
        return generic
    return message


async def jewelry_ai_exception_handler(request: Request, exc: JewelryAiBaseException):
    """Handle custom application exceptions"""
    logger.error(
        f"Application exception: {exc.code} - {exc.message}",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "request_path": request.url.path,
        }
    )
    message = exc.message
    if exc.status_code >= 500 and settings.is_production:
        message = "An internal error occurred. Please try again later."
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.code,
            "message": message,
            "status_code": exc.status_code,
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra={
            "http_status_code": exc.status_code,
            "http_detail": exc.detail,
            "request_path": request.url.path,
        }
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
            "status_code": exc.status_code,
        }
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body/query validation failures"""
    errors = exc.errors()
    logger.warning(
        f"Request validation failed: {len(errors)} error(s)",
        extra={
            "request_path": request.url.path,
            "validation_errors": [str(e.get("msg")) for e in errors],
        }
    )
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    return JSONResponse(
        status_code=400,
        content={
            "error": "VALIDATION_ERROR",
            "message": message,
            "status_code": 400,
        }
    )


async def generic_exception_handler(request: Request, exc: Exception):
    """Handle all other exceptions"""
    logger.error(
        f"Unhandled exception: {type(exc).__name__} - {str(exc)}",
        extra={
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
            "request_path": request.url.path,
            "exc_traceback": traceback.format_exc(),
        }
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An internal error occurred. Please try again later.",
        }
    )
