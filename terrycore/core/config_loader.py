"""
Configuration loader.

This module parses Terraform-style HCL files into resource declarations:
resource and data blocks, references between them, explicit depends_on,
and input variables with defaults or .tfvars overrides.
"""

import glob
import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

import hcl2

from .errors import ConfigurationError
from .graph import DATA, MANAGED, ResourceDeclaration
from .values import ResourceRef, Value, ValueKind

logger = logging.getLogger(__name__)

_INTERPOLATION_RE = re.compile(r"\$\{([^}]*)\}")
_VARIABLE_RE = re.compile(r"^var\.([A-Za-z_][A-Za-z0-9_-]*)$")
_REFERENCE_RE = re.compile(
    r"^(data\.)?[A-Za-z][A-Za-z0-9_]*\.[A-Za-z_][A-Za-z0-9_-]*(\.[A-Za-z0-9_-]+)*$"
)
_NON_RESOURCE_ROOTS = {"local", "module", "path", "each", "count", "self", "terraform", "var"}

# Meta-arguments that are not resource attributes
_IGNORED_META = {"lifecycle", "provider", "provisioner", "connection"}
_UNSUPPORTED_META = {"count", "for_each"}


def load_tfvars(file_path: str) -> Dict[str, Any]:
    """
    Parse a .tfvars file into variable name-value pairs.

    Raises:
        FileNotFoundError: If file does not exist
        ConfigurationError: If file cannot be parsed
    """
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            parsed = hcl2.load(f)
    except FileNotFoundError:
        raise
    except Exception as e:
        raise ConfigurationError(f"Failed to parse tfvars file {file_path}: {e}") from e

    return {key: _clean(value) for key, value in parsed.items() if not _is_meta_key(key)}


def _is_meta_key(key: str) -> bool:
    # hcl2 may add bookkeeping keys such as __start_line__
    return key.startswith("__") and key.endswith("__")


def _unquote(text: str) -> str:
    # Newer hcl2 releases keep the quotes of string literals and block labels
    if len(text) >= 2 and text[0] == text[-1] == '"':
        return text[1:-1]
    return text


def _clean(value: Any) -> Any:
    """Drop hcl2 bookkeeping keys and quoting from parsed values."""
    if isinstance(value, dict):
        return {_unquote(k): _clean(v) for k, v in value.items() if not _is_meta_key(k)}
    if isinstance(value, list):
        return [_clean(item) for item in value]
    if isinstance(value, str):
        return _unquote(value)
    return value


class ConfigLoader:
    """
    Loads resource declarations from a directory of .tf files.

    Files are read in name order so the result is reproducible.
    """

    def __init__(
        self,
        project_path: str,
        variables: Optional[Dict[str, Any]] = None,
        tfvars_path: Optional[str] = None,
    ):
        """
        Args:
            project_path: Directory containing .tf files
            variables: Explicit variable values, highest precedence
            tfvars_path: Optional .tfvars file, applied over defaults
        """
        self.project_path = project_path
        self.variables = dict(variables or {})
        self.tfvars_path = tfvars_path

    def _tf_files(self) -> List[str]:
        return sorted(glob.glob(os.path.join(self.project_path, "*.tf")))

    def _parse_files(self) -> List[Tuple[str, Dict[str, Any]]]:
        tf_files = self._tf_files()
        if not tf_files:
            raise ConfigurationError(f"No .tf files found in {self.project_path}")

        logger.info(f"Found {len(tf_files)} configuration files")
        parsed = []
        for tf_file in tf_files:
            try:
                with open(tf_file, "r", encoding="utf-8") as f:
                    parsed.append((tf_file, _clean(hcl2.load(f))))
            except Exception as e:
                raise ConfigurationError(
                    f"Syntax error in {os.path.basename(tf_file)}: {e}"
                ) from e
        return parsed

    def validate_syntax(self) -> Tuple[bool, Optional[str]]:
        """
        Validate syntax by attempting to parse all files.

        Returns:
            Tuple of (is_valid, error_message)
        """
        try:
            self._parse_files()
        except ConfigurationError as e:
            return False, str(e)
        return True, None

    def load(self) -> List[ResourceDeclaration]:
        """
        Parse every file and return the declared resources.

        Raises:
            ConfigurationError: On syntax errors, missing variables or
                unsupported expressions
        """
        parsed = self._parse_files()
        values = self._variable_values(parsed)

        declarations = []
        for tf_file, document in parsed:
            for mode, key in ((MANAGED, "resource"), (DATA, "data")):
                for block in document.get(key, []):
                    for resource_type, by_name in block.items():
                        for name, body in by_name.items():
                            declarations.append(
                                self._declaration(mode, resource_type, name, body, values)
                            )

        logger.info(f"Loaded {len(declarations)} resource declarations")
        return declarations

    def _variable_values(self, parsed: List[Tuple[str, Dict[str, Any]]]) -> Dict[str, Any]:
        declared: Dict[str, Dict[str, Any]] = {}
        for _, document in parsed:
            for block in document.get("variable", []):
                for name, body in block.items():
                    declared[name] = body or {}

        values = {name: body["default"] for name, body in declared.items() if "default" in body}
        if self.tfvars_path:
            values.update(load_tfvars(self.tfvars_path))
        values.update(self.variables)

        missing = sorted(name for name in declared if name not in values)
        if missing:
            raise ConfigurationError(f"No value for required variables: {', '.join(missing)}")
        return values

    def _declaration(
        self,
        mode: str,
        resource_type: str,
        name: str,
        body: Dict[str, Any],
        variables: Dict[str, Any],
    ) -> ResourceDeclaration:
        address = f"{'data.' if mode == DATA else ''}{resource_type}.{name}"
        body = dict(body or {})

        unsupported = sorted(_UNSUPPORTED_META.intersection(body))
        if unsupported:
            raise ConfigurationError(f"{address}: {', '.join(unsupported)} is not supported")

        depends_on = [self._dependency(address, entry) for entry in body.pop("depends_on", [])]
        for meta in _IGNORED_META.intersection(body):
            logger.debug(f"{address}: ignoring {meta} block")
            body.pop(meta)

        attributes = {
            key: self._convert(address, value, variables) for key, value in body.items()
        }
        return ResourceDeclaration(
            type=resource_type,
            name=name,
            attributes=attributes,
            depends_on=depends_on,
            mode=mode,
        )

    @staticmethod
    def _dependency(address: str, entry: Any) -> str:
        text = str(entry).strip()
        match = _INTERPOLATION_RE.fullmatch(text)
        if match:
            text = match.group(1).strip()
        try:
            ref = ResourceRef.parse(text)
        except ValueError:
            raise ConfigurationError(f"{address}: invalid depends_on entry {entry!r}") from None
        return ref.address

    def _convert(self, address: str, value: Any, variables: Dict[str, Any]) -> Value:
        if isinstance(value, dict):
            return Value.of({k: self._convert(address, v, variables) for k, v in value.items()})
        if isinstance(value, list):
            return Value.of([self._convert(address, item, variables) for item in value])
        if isinstance(value, str) and "${" in value:
            return self._interpolate(address, value, variables)
        return Value.of(value)

    def _interpolate(self, address: str, text: str, variables: Dict[str, Any]) -> Value:
        whole = _INTERPOLATION_RE.fullmatch(text)
        if whole:
            return self._expression(address, whole.group(1).strip(), variables)

        parts: List[Any] = []
        position = 0
        for match in _INTERPOLATION_RE.finditer(text):
            if match.start() > position:
                parts.append(text[position:match.start()])
            resolved = self._expression(address, match.group(1).strip(), variables)
            if resolved.kind == ValueKind.REFERENCE:
                parts.append(resolved.payload)
            else:
                parts.append(_stringify(resolved.to_python()))
            position = match.end()
        if position < len(text):
            parts.append(text[position:])

        if not any(isinstance(part, ResourceRef) for part in parts):
            return Value.of("".join(parts))
        return Value.template(*parts)

    @staticmethod
    def _expression(address: str, expression: str, variables: Dict[str, Any]) -> Value:
        variable = _VARIABLE_RE.match(expression)
        if variable:
            name = variable.group(1)
            if name not in variables:
                raise ConfigurationError(f"{address}: undeclared variable var.{name}")
            return Value.of(variables[name])
        if not _REFERENCE_RE.match(expression) or expression.split(".")[0] in _NON_RESOURCE_ROOTS:
            raise ConfigurationError(f"{address}: unsupported expression ${{{expression}}}")
        return Value.reference(expression)


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)
