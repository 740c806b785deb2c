"""
Security module for terrycore.

This module provides validation of identifiers and paths, and redaction of
sensitive attribute values in output.
"""

from .sanitizer import InputSanitizer, SecurityError
from .redactor import OutputRedactor, REDACTED

__all__ = ["InputSanitizer", "SecurityError", "OutputRedactor", "REDACTED"]
