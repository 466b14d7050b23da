# ==============================================================================
# Ingestion
# ==============================================================================
"""
Ingestion of collector payloads and interaction events.
"""

from visitor_telemetry.ingestion.collector import (
    CollectResult,
    IngestionService,
    build_resolver,
    client_ip_from_headers,
    session_from_payload,
)

__all__ = [
    "CollectResult",
    "IngestionService",
    "build_resolver",
    "client_ip_from_headers",
    "session_from_payload",
]
