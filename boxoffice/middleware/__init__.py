"""
Middleware package for the Boxoffice booking engine.
"""

from .error_handler import ErrorHandlerMiddleware
from .logging import LoggingMiddleware, request_id_var

__all__ = [
    "ErrorHandlerMiddleware",
    "LoggingMiddleware",
    "request_id_var",
]
