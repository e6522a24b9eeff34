"""
Tests for the host compatibility resolver.

This test suite covers:
1. Version parsing and comparison
2. Range grammar (exact, comparators, caret, tilde, x-ranges, ||)
3. The compatibility gate with and without force
"""

import pytest

from xaheen.errors import IncompatibleVersionError, ValidationError
from xaheen.plugin.compat import (
    check_compatibility,
    compare_versions,
    parse_range,
    parse_version,
)


class TestVersionParsing:
    """Test version parsing and comparison."""

    def test_parse_plain_and_prefixed(self):
        """Should accept plain versions and a leading v."""
        assert str(parse_version("2.0.0")) == "2.0.0"
        assert parse_version("v1.4.2") == parse_version("1.4.2")

    def test_parse_prerelease(self):
        """Pre-releases sort before the release."""
        assert parse_version("2.1.0-beta.1") < parse_version("2.1.0")

    @pytest.mark.parametrize("bad", ["", "   ", "not-a-version", "1..2"])
    def test_parse_invalid(self, bad):
        """Invalid version strings fail fast."""
        with pytest.raises(ValidationError, match="Invalid version"):
            parse_version(bad)

    def test_compare_versions(self):
        assert compare_versions("1.0.0", "2.0.0") == -1
        assert compare_versions("2.0.0", "2.0") == 0
        assert compare_versions("2.10.0", "2.9.9") == 1


class TestRangeGrammar:
    """Test range parsing and matching."""

    @pytest.mark.parametrize(
        "range_str,version,expected",
        [
            ("*", "0.0.1", True),
            ("", "9.9.9", True),
            ("1.2.3", "1.2.3", True),
            ("=1.2.3", "1.2.4", False),
            ("==2.0.0", "2.0.0", True),
            (">=1.0.0", "2.0.0", True),
            (">2.0.0", "2.0.0", False),
            ("<2.0.0", "1.9.9", True),
            ("<=2.0.0", "2.0.1", False),
            ("^2.0.0", "2.5.1", True),
            ("^2.0.0", "3.0.0", False),
            ("^0.2.3", "0.2.9", True),
            ("^0.2.3", "0.3.0", False),
            ("^0.0.3", "0.0.4", False),
            ("~1.2.3", "1.2.9", True),
            ("~1.2.3", "1.3.0", False),
            ("~=1.4.2", "1.4.7", True),
            ("~=1.4.2", "1.5.0", False),
            ("~=1.4", "1.9.0", True),
            ("1.x", "1.7.0", True),
            ("1.x", "2.0.0", False),
            ("1.2.*", "1.2.8", True),
            ("1.2.*", "1.3.0", False),
            (">=1.0.0 <2.0.0", "1.5.0", True),
            (">=1.0.0 <2.0.0", "2.0.0", False),
            (">= 1.0.0 < 2.0.0", "1.0.0", True),
            ("1.x || 2.x", "2.3.0", True),
            ("1.x || 3.x", "2.3.0", False),
            ("1.0.0 - 2.0.0", "2.0.0", True),
            (">1.2", "1.2.9", False),
            ("<=1.2", "1.2.9", True),
        ],
    )
    def test_range_contains(self, range_str, version, expected):
        assert parse_range(range_str).contains(version) is expected

    @pytest.mark.parametrize("bad", [">=abc", "^", "1.2.3 || ~=1"])
    def test_invalid_range(self, bad):
        """Malformed ranges raise ValidationError."""
        with pytest.raises(ValidationError):
            parse_range(bad)

    def test_range_str_is_raw(self):
        assert str(parse_range(" ^2.0.0 ")) == "^2.0.0"


class TestCompatibilityGate:
    """Test check_compatibility()."""

    def test_compatible(self):
        result = check_compatibility("xaheen-auth-generator", "^2.0.0", "2.0.0")
        assert result.compatible
        assert not result.forced
        assert result.warning is None

    def test_incompatible_without_force(self):
        """Should fail with a message naming the range and host."""
        with pytest.raises(IncompatibleVersionError, match="incompatible version") as exc:
            check_compatibility("xaheen-outdated-plugin", "^1.0.0", "2.0.0")
        assert "^1.0.0" in str(exc.value)
        assert "2.0.0" in str(exc.value)

    def test_incompatible_with_force(self):
        """Force downgrades the incompatibility to a warning."""
        result = check_compatibility("xaheen-outdated-plugin", "^1.0.0", "2.0.0", force=True)
        assert not result.compatible
        assert result.forced
        assert "incompatible version" in result.warning

    def test_invalid_host_version(self):
        with pytest.raises(ValidationError):
            check_compatibility("p", "^1.0.0", "two")
