"""Tests for drift detection."""

from __future__ import annotations

from orchestrator.drift import (
    DriftKind,
    StateDriftError,
    compare_attributes,
    missing,
    normalize,
)
from orchestrator.resources import ErrorKind


class TestNormalize:
    """Tests for semantic normalization."""

    def test_empty_values_are_equivalent(self) -> None:
        """Test [], {}, "" and None normalize the same."""
        assert normalize([]) is None
        assert normalize({}) is None
        assert normalize("") is None
        assert normalize(None) is None

    def test_string_scalars(self) -> None:
        """Test numeric and boolean strings."""
        assert normalize("100") == 100
        assert normalize("1.5") == 1.5
        assert normalize("TRUE") is True
        assert normalize("v1.2") == "v1.2"

    def test_urls(self) -> None:
        """Test scheme case and trailing slashes are ignored."""
        assert normalize("HTTPS://example.com/") == normalize("https://example.com")


class TestCompareAttributes:
    """Tests for compare_attributes."""

    def test_equivalent(self) -> None:
        """Test semantically equal attributes report no drift."""
        stored = {"price_class": "PriceClass_100", "ttl": 300, "enabled": True}
        live = {"price_class": "PriceClass_100", "ttl": "300", "enabled": "true"}
        assert compare_attributes("distribution.site", stored, live) is None

    def test_provider_defaults_ignored(self) -> None:
        """Test keys added by the provider are not drift."""
        stored = {"bucket_name": "x"}
        live = {"bucket_name": "x", "versioning": "Enabled"}
        assert compare_attributes("bucket.site", stored, live) is None

    def test_managed_attributes_ignored(self) -> None:
        """Test ignored keys are skipped."""
        stored = {"bucket_name": "x", "last_modified": "create"}
        live = {"bucket_name": "x", "last_modified": "update"}
        assert (
            compare_attributes("bucket.site", stored, live, ignore=frozenset({"last_modified"}))
            is None
        )

    def test_nested_change(self) -> None:
        """Test nested changes are reported with their path."""
        stored = {"origin": {"host": "a.example", "port": 443}}
        live = {"origin": {"host": "b.example", "port": 443}}

        report = compare_attributes("distribution.site", stored, live)

        assert report is not None
        assert report.kind == DriftKind.MODIFIED
        assert [c.path for c in report.changes] == ["origin.host"]
        assert report.changes[0].live == "b.example"
        assert "origin.host" in report.describe()


class TestStateDriftError:
    """Tests for StateDriftError."""

    def test_missing_resource(self) -> None:
        """Test the out-of-band deletion report."""
        error = StateDriftError(missing("bucket.site"))
        assert error.kind == ErrorKind.STATE_DRIFT
        assert error.report.kind == DriftKind.MISSING
        assert "no longer exists" in str(error)
