# ==============================================================================
# Application Configuration
# ==============================================================================
"""
Configuration management using pydantic-settings.

All configuration is loaded from environment variables, with support for
.env files via python-dotenv.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file before any settings are instantiated
load_dotenv()

StorageBackend = Literal["json", "sqlite", "opensearch"]

STORAGE_BACKENDS: tuple[str, ...] = ("json", "sqlite", "opensearch")


class StorageSettings(BaseSettings):
    """Storage engine selection.

    The backend is read once at process startup; switching backends requires
    a restart.
    """

    model_config = SettingsConfigDict(env_prefix="STORAGE_")

    backend: StorageBackend = Field(
        default="json",
        description="Storage backend (json, sqlite, opensearch)",
    )
    data_dir: Path = Field(
        default=Path("data"), description="Directory for the JSON file store"
    )
    max_interactions: int = Field(
        default=1000,
        description="Most recent interactions kept by the JSON file store",
    )


class SQLiteSettings(BaseSettings):
    """Embedded SQLite database settings."""

    model_config = SettingsConfigDict(env_prefix="SQLITE_")

    path: Path = Field(default=Path("data/telemetry.db"), description="Database file path")
    enforce_foreign_keys: bool = Field(
        default=False,
        description="Enable PRAGMA foreign_keys (rejects fixes for unknown sessions)",
    )


class OpenSearchSettings(BaseSettings):
    """OpenSearch connection settings."""

    model_config = SettingsConfigDict(env_prefix="OPENSEARCH_")

    host: str = Field(default="localhost", description="OpenSearch host")
    port: int = Field(default=9200, description="OpenSearch port")
    user: str = Field(default="admin", description="OpenSearch username")
    password: str = Field(default="admin", description="OpenSearch password")
    use_ssl: bool = Field(default=True, description="Use SSL")
    verify_certs: bool = Field(
        default=True, description="Verify SSL certificates (False for local self-signed)"
    )
    timeout: int = Field(default=10, description="Request timeout in seconds")

    # Index names are derived from this prefix
    index_prefix: str = Field(default="telemetry", description="Prefix for all index names")
    refresh_writes: bool = Field(
        default=True,
        description="Wait for a refresh after each write so reads see it immediately",
    )

    @property
    def hosts(self) -> list[dict]:
        """Build OpenSearch hosts configuration."""
        return [
            {
                "host": self.host,
                "port": self.port,
            }
        ]


class ValkeySettings(BaseSettings):
    """Valkey (Redis-compatible) settings for the address lookup cache."""

    model_config = SettingsConfigDict(env_prefix="VALKEY_")

    enabled: bool = Field(default=False, description="Cache address lookups in Valkey")
    host: str = Field(default="localhost", description="Valkey host")
    port: int = Field(default=6379, description="Valkey port")
    password: Optional[str] = Field(default=None, description="Valkey password")
    db: int = Field(default=0, description="Valkey database number")
    ssl: bool = Field(default=False, description="Use SSL/TLS connection")

    lookup_ttl_hours: int = Field(default=24, description="TTL for cached address lookups in hours")

    @property
    def url(self) -> str:
        """Build Valkey connection URL."""
        # Use rediss:// scheme for SSL connections
        scheme = "rediss" if self.ssl else "redis"
        if self.password:
            return f"{scheme}://:{self.password}@{self.host}:{self.port}/{self.db}"
        return f"{scheme}://{self.host}:{self.port}/{self.db}"


class LocationSettings(BaseSettings):
    """Location resolution settings.

    The device tier timeout bounds how long the pipeline waits for a
    device-reported position before falling through to the address lookup.
    """

    model_config = SettingsConfigDict(env_prefix="LOCATION_")

    device_timeout_seconds: float = Field(
        default=12.0, description="Maximum wait for a device position"
    )
    lookup_url: str = Field(
        default="http://ip-api.com/json/{ip}",
        description="Address geolocation lookup URL template",
    )
    lookup_timeout_seconds: float = Field(
        default=5.0, description="Timeout for the address geolocation lookup"
    )


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        extra="ignore",
    )

    # Nested settings
    storage: StorageSettings = Field(default_factory=StorageSettings)
    sqlite: SQLiteSettings = Field(default_factory=SQLiteSettings)
    opensearch: OpenSearchSettings = Field(default_factory=OpenSearchSettings)
    valkey: ValkeySettings = Field(default_factory=ValkeySettings)
    location: LocationSettings = Field(default_factory=LocationSettings)

    # General settings
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once and cached for subsequent calls.
    """
    return Settings()
