"""
Input validation for terrycore.

This module validates identifiers that reach the state store or a provider:
- Resource types and names from configuration
- Resource addresses passed to state commands
- Provider-assigned external identifiers
- State file paths
"""

import os
import re


class SecurityError(Exception):
    """Raised when a security validation fails."""
    pass


class InputSanitizer:
    """
    Provides input validation methods.

    All methods raise SecurityError if validation fails.
    """

    # Resource type: provider prefix plus kind, e.g. aws_instance
    RESOURCE_TYPE_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9_]*$')

    # Resource name: must start with letter/underscore,
    # can contain letters, digits, underscores, hyphens
    RESOURCE_NAME_PATTERN = re.compile(r'^[a-zA-Z_][a-zA-Z0-9_-]*$')

    # Maximum lengths to prevent resource exhaustion
    MAX_IDENTIFIER_LENGTH = 255
    MAX_EXTERNAL_ID_LENGTH = 2048

    @staticmethod
    def sanitize_resource_type(resource_type: str) -> str:
        """
        Validate a resource type.

        Raises:
            SecurityError: If the type is empty, too long or malformed
        """
        if not resource_type:
            raise SecurityError("Resource type cannot be empty")

        if len(resource_type) > InputSanitizer.MAX_IDENTIFIER_LENGTH:
            raise SecurityError(
                f"Resource type too long (max {InputSanitizer.MAX_IDENTIFIER_LENGTH})"
            )

        if not InputSanitizer.RESOURCE_TYPE_PATTERN.match(resource_type):
            raise SecurityError(
                f"Invalid resource type '{resource_type}': must start with a letter, "
                "contain only letters, digits, underscores"
            )

        return resource_type

    @staticmethod
    def sanitize_resource_name(name: str) -> str:
        """
        Validate a resource name.

        Rules:
        - Must start with letter or underscore
        - Can contain letters, digits, underscores, hyphens
        - Max length: 255 characters

        Raises:
            SecurityError: If name is invalid
        """
        if not name:
            raise SecurityError("Resource name cannot be empty")

        if len(name) > InputSanitizer.MAX_IDENTIFIER_LENGTH:
            raise SecurityError(
                f"Resource name too long (max {InputSanitizer.MAX_IDENTIFIER_LENGTH})"
            )

        if not InputSanitizer.RESOURCE_NAME_PATTERN.match(name):
            raise SecurityError(
                f"Invalid resource name '{name}': must start with letter/underscore, "
                "contain only letters, digits, underscores, hyphens"
            )

        return name

    @staticmethod
    def sanitize_address(address: str) -> str:
        """
        Validate a resource address: "type.name" or "data.type.name".

        Returns:
            The address, unchanged

        Raises:
            SecurityError: If the address is malformed
        """
        if not address:
            raise SecurityError("Resource address cannot be empty")

        parts = address.split(".")
        if parts[0] == "data":
            parts = parts[1:]
        if len(parts) != 2:
            raise SecurityError(f"Invalid resource address: {address}")

        InputSanitizer.sanitize_resource_type(parts[0])
        InputSanitizer.sanitize_resource_name(parts[1])
        return address

    @staticmethod
    def sanitize_external_id(external_id: str) -> str:
        """
        Validate a provider-assigned identifier.

        External ids are opaque, so only emptiness, length and control
        characters are checked.
        """
        if not isinstance(external_id, str) or not external_id:
            raise SecurityError("External id must be a non-empty string")

        if len(external_id) > InputSanitizer.MAX_EXTERNAL_ID_LENGTH:
            raise SecurityError(
                f"External id too long (max {InputSanitizer.MAX_EXTERNAL_ID_LENGTH})"
            )

        if any(ord(ch) < 32 for ch in external_id):
            raise SecurityError("External id contains control characters")

        return external_id

    @staticmethod
    def sanitize_state_path(path: str) -> str:
        """
        Validate and normalize a state file path.

        Security checks:
        - Resolves to absolute path, following symlinks
        - Parent directory must exist
        - Must not be a directory

        Returns:
            Normalized absolute path

        Raises:
            SecurityError: If path is unsafe
        """
        if not path:
            raise SecurityError("Path cannot be empty")

        if '\x00' in path:
            raise SecurityError("Path contains null bytes")

        try:
            abs_path = os.path.realpath(os.path.expanduser(path))
        except (OSError, ValueError) as e:
            raise SecurityError(f"Invalid path: {e}")

        if os.path.isdir(abs_path):
            raise SecurityError(f"State path is a directory: {path}")

        if not os.path.isdir(os.path.dirname(abs_path)):
            raise SecurityError(f"State directory does not exist: {path}")

        return abs_path
