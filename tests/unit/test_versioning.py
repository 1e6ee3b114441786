# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Unit tests for the version range matcher
"""

import pytest

from package_engine.core.errors import InvalidRangeError, InvalidVersionError
from package_engine.models.package_models import CompatibilityLevel, ImpactLevel
from package_engine.services.registry.versioning import (
    compare_versions,
    compatibility_level,
    impact_level,
    parse_range,
    parse_version,
    resolve_highest,
    satisfies,
    satisfies_all,
)


class TestParseVersion:
    """Test semantic version parsing and ordering"""

    def test_parses_components(self):
        version = parse_version("1.2.3-beta.1+build.5")
        assert version.release == (1, 2, 3)
        assert version.prerelease == ("beta", "1")
        assert version.build == ("build", "5")
        assert str(version) == "1.2.3-beta.1+build.5"

    def test_leading_v_is_accepted(self):
        assert parse_version("v2.0.0") == parse_version("2.0.0")

    @pytest.mark.parametrize("text", ["1.2", "1.2.3.4", "01.2.3", "latest", ""])
    def test_rejects_malformed(self, text):
        with pytest.raises(InvalidVersionError):
            parse_version(text)

    def test_prerelease_precedence(self):
        ordered = ["1.0.0-alpha", "1.0.0-alpha.1", "1.0.0-alpha.beta", "1.0.0-beta",
                   "1.0.0-beta.2", "1.0.0-beta.11", "1.0.0-rc.1", "1.0.0"]
        parsed = [parse_version(v) for v in ordered]
        assert parsed == sorted(parsed)

    def test_build_metadata_ignored_for_equality(self):
        assert compare_versions("1.0.0+a", "1.0.0+b") == 0
        assert compare_versions("1.0.0", "1.0.1") == -1
        assert compare_versions("2.0.0", "1.9.9") == 1


class TestSatisfies:
    """Test range satisfaction"""

    @pytest.mark.parametrize("version,range_expression,expected", [
        ("1.2.3", "1.2.3", True),
        ("1.2.4", "=1.2.3", False),
        ("1.9.0", "^1.2.3", True),
        ("2.0.0", "^1.2.3", False),
        ("1.2.2", "^1.2.3", False),
        ("0.2.9", "^0.2.3", True),
        ("0.3.0", "^0.2.3", False),
        ("0.0.3", "^0.0.3", True),
        ("0.0.4", "^0.0.3", False),
        ("1.2.9", "~1.2.3", True),
        ("1.3.0", "~1.2.3", False),
        ("1.9.0", "~1", True),
        ("1.5.0", ">=1.2.0 <2.0.0", True),
        ("2.0.0", ">=1.2.0 <2.0.0", False),
        ("1.5.0", ">= 1.2.0 < 2.0.0", True),
        ("1.0.1", ">1.0.0", True),
        ("1.0.0", ">1.0.0", False),
        ("2.0.0", "<=2.0.0", True),
        ("3.1.0", "^1.0.0 || ^3.0.0", True),
        ("2.1.0", "^1.0.0 || ^3.0.0", False),
        ("1.7.2", "1.x", True),
        ("2.0.0", "1.x", False),
        ("1.2.8", "1.2.*", True),
        ("1.3.0", "1.2.*", False),
        ("9.9.9", "*", True),
        ("9.9.9", "latest", True),
        ("2.3.4", "1.2.3 - 2.3.4", True),
        ("2.3.5", "1.2.3 - 2.3.4", False),
        ("2.9.9", "1.2 - 2", True),
        ("3.0.0", "1.2 - 2", False),
        ("1.5.0", ">1", False),
        ("2.0.0", ">1", True),
    ])
    def test_range_table(self, version, range_expression, expected):
        assert satisfies(version, range_expression) is expected

    def test_prerelease_excluded_without_matching_tag(self):
        assert satisfies("2.0.0-beta.1", "^1.0.0") is False
        assert satisfies("2.0.0-beta.1", "<2.0.0") is False
        assert satisfies("1.0.0-beta", "^1") is False
        assert satisfies("2.0.0-beta.1", "*") is False

    def test_prerelease_allowed_with_same_release_tag(self):
        assert satisfies("2.0.0-beta.1", ">=2.0.0-beta.0") is True
        assert satisfies("2.0.0-beta.2", "^2.0.0-beta.1") is True
        assert satisfies("2.0.0", "^2.0.0-beta.1") is True

    def test_prerelease_tag_does_not_open_other_releases(self):
        assert satisfies("2.1.0-alpha", ">=2.0.0-beta.0") is False

    @pytest.mark.parametrize("expression", [">>1.0.0", "^", "1.2.3 ||", "abc", "1.2.3-beta -", "x.1"])
    def test_malformed_ranges_raise(self, expression):
        with pytest.raises(InvalidRangeError):
            parse_range(expression)

    def test_invalid_range_error_is_local_validation_error(self):
        with pytest.raises(InvalidRangeError) as exc_info:
            satisfies("1.0.0", "~>>")
        assert exc_info.value.code_value == "invalid_request"
        assert exc_info.value.details["range"] == "~>>"


class TestResolveHighest:
    """Test highest-candidate selection"""

    def test_picks_highest_satisfying(self):
        candidates = ["1.0.0", "1.2.0", "2.0.0", "1.3.0-beta.1"]
        assert resolve_highest(candidates, "^1.0.0") == "1.2.0"

    def test_returns_none_when_nothing_satisfies(self):
        assert resolve_highest(["1.0.0", "1.1.0"], "^2.0.0") is None

    def test_intersection_of_several_ranges(self):
        candidates = ["1.1.0", "1.4.0", "1.9.0"]
        assert resolve_highest(candidates, ["^1.0.0", ">=1.2.0 <1.5.0"]) == "1.4.0"

    def test_skips_invalid_candidates(self):
        assert resolve_highest(["not-a-version", "1.0.0"], "*") == "1.0.0"

    def test_satisfies_all_ranges(self):
        assert satisfies_all("1.4.0", ["^1.0.0", parse_range(">=1.2.0 <1.5.0")]) is True
        assert satisfies_all("1.9.0", ["^1.0.0", "<1.5.0"]) is False
        assert satisfies_all("1.9.0", []) is True


class TestCompatibility:
    """Test compatibility and impact classification"""

    @pytest.mark.parametrize("source,target,level", [
        ("1.0.0", "1.0.0", CompatibilityLevel.FULLY_COMPATIBLE),
        ("1.0.0", "1.0.5", CompatibilityLevel.FULLY_COMPATIBLE),
        ("1.0.0", "1.3.0", CompatibilityLevel.BACKWARD_COMPATIBLE),
        ("1.9.0", "2.0.0", CompatibilityLevel.BREAKING_CHANGES),
        ("2.0.0", "1.9.0", CompatibilityLevel.INCOMPATIBLE),
    ])
    def test_compatibility_level(self, source, target, level):
        assert compatibility_level(source, target) == level

    @pytest.mark.parametrize("source,target,level", [
        ("1.0.0", "1.0.0", ImpactLevel.NONE),
        ("1.0.0", "1.0.1", ImpactLevel.LOW),
        ("1.0.0", "1.1.0", ImpactLevel.MEDIUM),
        ("1.0.0", "2.0.0", ImpactLevel.HIGH),
        ("2.0.0", "1.0.0", ImpactLevel.CRITICAL),
    ])
    def test_impact_level(self, source, target, level):
        assert impact_level(source, target) == level
