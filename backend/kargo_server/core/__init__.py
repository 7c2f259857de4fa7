"""
Core module initialization.
Exports logging and request-context helpers.
"""
from .logging import setup_logging
from .request_context import request_id_var

__all__ = [
    # Logging
    "setup_logging",
    # Request context
    "request_id_var",
]
