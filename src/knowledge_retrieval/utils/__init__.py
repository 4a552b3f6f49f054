"""Utility functions."""

from knowledge_retrieval.utils.logging import (
    get_logger,
    log_error,
    log_request,
    set_request_id,
    setup_logging,
)

__all__ = [
    "setup_logging",
    "get_logger",
    "set_request_id",
    "log_request",
    "log_error",
]
