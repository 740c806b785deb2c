"""
Tests for security module - InputSanitizer and OutputRedactor.
"""

import os
import pytest

from terrycore.security import REDACTED, InputSanitizer, OutputRedactor, SecurityError


def test_sanitize_resource_name_valid():
    """Test valid resource names are accepted."""
    valid_names = [
        "web",
        "instance_type",
        "_private",
        "name-with-hyphens",
        "MixedCase123",
    ]

    for name in valid_names:
        assert InputSanitizer.sanitize_resource_name(name) == name


def test_sanitize_resource_name_invalid():
    """Test invalid resource names raise SecurityError."""
    invalid_names = [
        "",  # Empty
        "123invalid",  # Starts with digit
        "has spaces",  # Contains spaces
        "has@symbol",  # Invalid character
        "has.dot",  # Separator
        "-starts-with-hyphen",
        "a" * 256,  # Too long
    ]

    for name in invalid_names:
        with pytest.raises(SecurityError):
            InputSanitizer.sanitize_resource_name(name)


def test_sanitize_resource_type():
    assert InputSanitizer.sanitize_resource_type("aws_instance") == "aws_instance"
    for bad in ["", "_leading", "has-hyphen", "9lives", "a.b"]:
        with pytest.raises(SecurityError):
            InputSanitizer.sanitize_resource_type(bad)


def test_sanitize_address():
    assert InputSanitizer.sanitize_address("aws_vpc.main") == "aws_vpc.main"
    assert InputSanitizer.sanitize_address("data.aws_ami.base") == "data.aws_ami.base"

    for bad in ["", "aws_vpc", "aws_vpc.main.id", "data.aws_ami", "aws_vpc.ma;in", "module.x.y.z"]:
        with pytest.raises(SecurityError):
            InputSanitizer.sanitize_address(bad)


def test_sanitize_external_id():
    assert InputSanitizer.sanitize_external_id("arn:aws:s3:::bucket/key") == "arn:aws:s3:::bucket/key"

    for bad in ["", "with\nnewline", "nul\x00", "x" * 2049, None]:
        with pytest.raises(SecurityError):
            InputSanitizer.sanitize_external_id(bad)


def test_sanitize_state_path(tmp_path):
    path = tmp_path / "state.json"
    assert InputSanitizer.sanitize_state_path(str(path)) == os.path.realpath(str(path))

    with pytest.raises(SecurityError):
        InputSanitizer.sanitize_state_path(str(tmp_path))
    with pytest.raises(SecurityError):
        InputSanitizer.sanitize_state_path(str(tmp_path / "missing" / "state.json"))
    with pytest.raises(SecurityError):
        InputSanitizer.sanitize_state_path("state\x00.json")
    with pytest.raises(SecurityError):
        InputSanitizer.sanitize_state_path("")


def test_redact_longest_first():
    redactor = OutputRedactor(["abc", "abcdef"])
    assert redactor.redact("token=abcdef") == f"token={REDACTED}"


def test_redact_ignores_empty_and_bool():
    redactor = OutputRedactor()
    redactor.add("")
    redactor.add(None)
    redactor.add(True)
    assert redactor.sensitive_values == []
    assert redactor.redact("True") == "True"


def test_redact_ignores_numbers_and_short_strings():
    redactor = OutputRedactor()
    redactor.add(1)
    redactor.add(5432)
    redactor.add("abc")
    assert redactor.sensitive_values == []
    assert redactor.redact("Plan: 1 to add, abc") == "Plan: 1 to add, abc"


def test_redact_attributes():
    attributes = {"password": "s3cr3t", "name": "db", "port": 5432}
    redactor = OutputRedactor()
    redactor.add_attributes(attributes, ["password", "port", "missing"])

    assert redactor.redact("connect db:5432 with s3cr3t") == (
        f"connect db:5432 with {REDACTED}"
    )
    assert OutputRedactor.mask_attributes(attributes, {"password"}) == {
        "password": REDACTED, "name": "db", "port": 5432,
    }

    redactor.clear()
    assert redactor.redact("s3cr3t") == "s3cr3t"
