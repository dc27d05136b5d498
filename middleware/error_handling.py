"""
Global error handling middleware that converts exceptions to problem details responses.
"""

import logging
import traceback
from typing import Callable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

PROBLEM_JSON = "application/problem+json"


class ProblemJSONResponse(JSONResponse):
    media_type = PROBLEM_JSON


def build_problem_details(request: Request, exc: Exception, is_development: bool) -> dict:
    """Map `exc` to a problem details body.

    Args:
        request: The request being processed
        exc: The exception that escaped the pipeline
        is_development: Include exception messages and stack traces

    Returns:
        dict: The problem details, `status` holds the HTTP status code
    """
    if isinstance(exc, ValueError):
        title, status = "Bad Request", 400
        detail = str(exc) if is_development else "Invalid request data"
    elif isinstance(exc, PermissionError):
        title, status = "Unauthorized", 401
        detail = "You are not authorized to access this resource"
    elif isinstance(exc, LookupError):
        title, status = "Not Found", 404
        detail = str(exc) if is_development else "The requested resource was not found"
    elif isinstance(exc, TimeoutError):
        title, status = "Request Timeout", 408
        detail = "The request timed out"
    else:
        title, status = "Internal Server Error", 500
        detail = str(exc) if is_development else "An error occurred while processing your request"

    problem = {
        "title": title,
        "status": status,
        "detail": detail,
        "instance": request.url.path,
    }

    if is_development:
        problem["extensions"] = {
            "exception": type(exc).__name__,
            "stackTrace": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
        }

    return problem


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Outermost exception boundary of the application."""

    def __init__(self, app: FastAPI, is_development: bool = False):
        super().__init__(app)
        self.is_development = is_development

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as e:
            logger.exception(f"An unhandled exception occurred on {request.method} {request.url.path}: {e}")
            problem = build_problem_details(request, e, self.is_development)
            return ProblemJSONResponse(status_code=problem["status"], content=problem)
