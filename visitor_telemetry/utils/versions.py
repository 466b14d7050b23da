# ==============================================================================
# Version Utilities
# ==============================================================================
"""
Installed versions of this package and of the client libraries behind each
storage backend and the lookup cache, as reported by `telemetry status`.
"""

from importlib.metadata import PackageNotFoundError, version

# Distribution that talks to each backend; the JSON file store needs none
BACKEND_DRIVERS = {
    "sqlite": "aiosqlite",
    "opensearch": "opensearch-py",
}

# Client libraries outside the storage layer
SERVICE_CLIENTS = ("redis", "httpx")


def _installed(distribution: str) -> str | None:
    try:
        return version(distribution)
    except PackageNotFoundError:
        return None


def get_telemetry_version() -> str:
    """visitor-telemetry version, or the source tree version when not installed."""
    return _installed("visitor-telemetry") or "0.1.0"


def backend_driver(backend: str) -> str | None:
    """
    Driver label for a storage backend.

    Args:
        backend: Backend name as reported by TelemetryStorage.backend_name

    Returns:
        "<distribution> <version>" (version "unknown" when the distribution
        metadata is missing), or None for backends without a driver
    """
    distribution = BACKEND_DRIVERS.get(backend)
    if distribution is None:
        return None
    return f"{distribution} {_installed(distribution) or 'unknown'}"


def client_versions() -> dict[str, str | None]:
    """Versions of every driver and service client, keyed by distribution."""
    names = [*BACKEND_DRIVERS.values(), *SERVICE_CLIENTS]
    return {name: _installed(name) for name in names}
