"""Shared utility functions for the billing automation backend."""

from .date_parser import parse_flexible_date
from .sanitization import sanitize_filename, sanitize_log_value

__all__ = ["parse_flexible_date", "sanitize_filename", "sanitize_log_value"]
