"""HTTP boundary helpers."""

from .errors import error_response, install_exception_handlers

__all__ = ["error_response", "install_exception_handlers"]
