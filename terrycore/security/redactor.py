"""
Redaction of sensitive attribute values.

Attributes a resource type marks as sensitive are collected into an
OutputRedactor so rendered plans, state views and log lines never show them.
"""

from typing import Any, Iterable, List, Mapping

REDACTED = "[REDACTED]"

# Shorter values would mask unrelated text; their fields are masked instead
MIN_REDACT_LENGTH = 4


class OutputRedactor:
    """
    Redacts sensitive values from text output.

    Example:
        >>> redactor = OutputRedactor(["s3cr3t"])
        >>> redactor.redact("password = s3cr3t")
        'password = [REDACTED]'
    """

    def __init__(self, sensitive_values: Iterable[str] = ()):
        self.sensitive_values: List[str] = []
        for value in sensitive_values:
            self.add(value)

    def add(self, value: Any):
        """
        Register a value to redact.

        Only strings of at least MIN_REDACT_LENGTH characters are registered.
        Numbers, booleans and short strings would match unrelated text; use
        mask_attributes to hide the fields that hold them.
        """
        if not isinstance(value, str) or len(value) < MIN_REDACT_LENGTH:
            return
        if value not in self.sensitive_values:
            self.sensitive_values.append(value)
            # Longest first so a secret containing another is fully masked
            self.sensitive_values.sort(key=len, reverse=True)

    def add_attributes(self, attributes: Mapping[str, Any], sensitive_fields: Iterable[str]):
        """Register the values of sensitive fields from a plain attribute mapping."""
        for field in sensitive_fields:
            if field in attributes:
                self.add(attributes[field])

    def redact(self, text: str) -> str:
        """
        Replace any occurrence of sensitive values with [REDACTED].

        Uses exact string matching (not regex) to avoid ReDoS.
        """
        if not text:
            return text

        redacted = text
        for sensitive_value in self.sensitive_values:
            redacted = redacted.replace(sensitive_value, REDACTED)
        return redacted

    @staticmethod
    def mask_attributes(
        attributes: Mapping[str, Any], sensitive_fields: Iterable[str]
    ) -> dict:
        """Return a copy of attributes with sensitive fields replaced."""
        sensitive = set(sensitive_fields)
        return {
            key: (REDACTED if key in sensitive else value)
            for key, value in attributes.items()
        }

    def clear(self):
        """Forget all registered values."""
        self.sensitive_values.clear()
