# ==============================================================================
# Tests for Version Utilities
# ==============================================================================
"""
Unit tests for the installed-version report shown by `telemetry status`.
"""

from importlib.metadata import PackageNotFoundError

import pytest

from visitor_telemetry.utils import versions


@pytest.fixture()
def installed(monkeypatch):
    """Pretend only the distributions in the returned dict are installed."""
    packages: dict[str, str] = {}

    def fake_version(name):
        if name not in packages:
            raise PackageNotFoundError(name)
        return packages[name]

    monkeypatch.setattr(versions, "version", fake_version)
    return packages


class TestBackendDriver:
    def test_sqlite(self, installed):
        installed["aiosqlite"] = "0.20.0"
        assert versions.backend_driver("sqlite") == "aiosqlite 0.20.0"

    def test_opensearch_missing_metadata(self, installed):
        assert versions.backend_driver("opensearch") == "opensearch-py unknown"

    def test_json_has_no_driver(self, installed):
        assert versions.backend_driver("json") is None


def test_client_versions(installed):
    installed.update({"redis": "5.0.1", "httpx": "0.27.0"})

    assert versions.client_versions() == {
        "aiosqlite": None,
        "opensearch-py": None,
        "redis": "5.0.1",
        "httpx": "0.27.0",
    }


def test_telemetry_version_fallback(installed):
    assert versions.get_telemetry_version() == "0.1.0"
    installed["visitor-telemetry"] = "1.2.3"
    assert versions.get_telemetry_version() == "1.2.3"
