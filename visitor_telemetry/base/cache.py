# ==============================================================================
# Cache Abstract Base Class
# ==============================================================================
"""
Abstract interface for async key-value caching with TTL support.

This is NOT a storage backend (which owns the telemetry entities).
Cache is transient storage for performance optimization, used to avoid
repeating network-address lookups for the same client.

Implementations: Valkey, Redis, in-memory, etc.
"""

from abc import ABC, abstractmethod


class Cache(ABC):
    """
    Generic cache interface for key-value storage with TTL support.

    All values are stored as dicts (JSON-serializable). Implementations
    handle serialization/deserialization internally.
    """

    @abstractmethod
    async def get(self, key: str) -> dict | None:
        """
        Get a cached value.

        Args:
            key: Cache key

        Returns:
            Cached value as dict, or None if not found
        """
        ...

    @abstractmethod
    async def set(self, key: str, value: dict, ttl_seconds: int | None = None) -> None:
        """
        Set a cached value with optional TTL.

        Args:
            key: Cache key
            value: Value to cache (must be JSON-serializable dict)
            ttl_seconds: Optional time-to-live in seconds
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """
        Delete a key.

        Args:
            key: Cache key to delete

        Returns:
            True if key was deleted, False if not found
        """
        ...

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a pattern.

        Args:
            pattern: Pattern to match (e.g., "geo:ip:*")

        Returns:
            Count of keys deleted
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection."""
        ...
