# ==============================================================================
# OpenSearch Storage Implementation
# ==============================================================================
"""
External document store on OpenSearch (async client).

Indices (names derived from settings.opensearch.index_prefix):
- <prefix>-sessions: one document per session, _id = session id (the
  unique key)
- <prefix>-locations: location fixes with a geo_point "location" field
  (the geospatial index that serves find_near)
- <prefix>-ip-geolocations: successful network-address lookups
- <prefix>-interactions: append-only events

Session upserts use the native update API with doc_as_upsert semantics:
OpenSearch merges the partial document into the stored source, so
absent fields keep their stored value. Conflicting concurrent updates
are retried server-side (retry_on_conflict).

Proximity queries are a geo_distance filter sorted by _geo_distance,
answered from the index rather than by scanning.

Reads larger than index.max_result_window (including every limit=None
read behind export_all) page through the scroll API, and the location
rate walks session ids with a composite aggregation, so neither is
capped at 10000 documents.
"""

import json
import logging
from contextlib import aclosing, contextmanager
from typing import Iterator

from opensearchpy import AsyncOpenSearch
from opensearchpy.exceptions import ConflictError
from opensearchpy.exceptions import ConnectionError as OSConnectionError
from opensearchpy.exceptions import NotFoundError, RequestError, TransportError
from opensearchpy.helpers import async_scan

from visitor_telemetry.base.storage import (
    DEFAULT_FIX_LIMIT,
    DEFAULT_INTERACTION_LIMIT,
    DEFAULT_SESSION_LIMIT,
    TelemetryStorage,
)
from visitor_telemetry.core.errors import (
    ConstraintViolation,
    StorageUnavailable,
)
from visitor_telemetry.core.models import (
    AddressGeolocation,
    Interaction,
    LocationFix,
    NearbyFix,
    Session,
    StorageStatistics,
    session_changes,
    to_iso,
    utc_now,
)
from visitor_telemetry.utils.config import Settings, get_settings
from visitor_telemetry.utils.retry import RETRY_WAIT_MIN, retry_light_async

logger = logging.getLogger(__name__)

# Default index.max_result_window; larger or unbounded reads go through the scroll API
MAX_RESULT_WINDOW = 10000

# Page size for scroll reads and composite aggregation pages
SCAN_PAGE_SIZE = 1000

UPDATE_RETRY_ON_CONFLICT = 3

# ==============================================================================
# Index Mappings
# ==============================================================================

_INDEX_SETTINGS = {"number_of_shards": 1, "number_of_replicas": 0}

SESSIONS_MAPPING = {
    "properties": {
        "session_id": {"type": "keyword"},
        "client_ip": {"type": "keyword"},
        "device": {
            "properties": {
                "platform": {"type": "keyword"},
                "language": {"type": "keyword"},
                "user_agent": {"type": "text"},
            }
        },
        "screen": {
            "properties": {
                "width": {"type": "integer"},
                "height": {"type": "integer"},
            }
        },
        "timezone": {"type": "keyword"},
        # Opaque blobs: stored in _source, not indexed
        "fingerprints": {"type": "object", "enabled": False},
        "extra": {"type": "object", "enabled": False},
        "created_at": {"type": "date"},
        "updated_at": {"type": "date"},
    }
}

LOCATIONS_MAPPING = {
    "properties": {
        "fix_id": {"type": "keyword"},
        "session_id": {"type": "keyword"},
        "location": {"type": "geo_point"},
        "latitude": {"type": "double"},
        "longitude": {"type": "double"},
        "accuracy": {"type": "double"},
        "altitude": {"type": "double"},
        "altitude_accuracy": {"type": "double"},
        "heading": {"type": "double"},
        "speed": {"type": "double"},
        "tier": {"type": "keyword"},
        "timestamp": {"type": "date"},
        "created_at": {"type": "date"},
    }
}

IP_GEOLOCATIONS_MAPPING = {
    "properties": {
        "session_id": {"type": "keyword"},
        "ip_address": {"type": "keyword"},
        "status": {"type": "keyword"},
        "country": {"type": "keyword"},
        "country_code": {"type": "keyword"},
        "region": {"type": "keyword"},
        "region_name": {"type": "keyword"},
        "city": {"type": "keyword"},
        "postal_code": {"type": "keyword"},
        "latitude": {"type": "double"},
        "longitude": {"type": "double"},
        "timezone": {"type": "keyword"},
        "isp": {"type": "keyword"},
        "created_at": {"type": "date"},
    }
}

INTERACTIONS_MAPPING = {
    "properties": {
        "event_id": {"type": "keyword"},
        "session_id": {"type": "keyword"},
        "event_type": {"type": "keyword"},
        "payload": {"type": "object", "enabled": False},
        "timestamp": {"type": "date"},
    }
}


def _source(hit: dict) -> dict:
    return hit.get("_source", {})


def _hit_to_fix(hit: dict) -> LocationFix:
    source = dict(_source(hit))
    source.pop("location", None)
    return LocationFix.model_validate(source)


def _encode_fingerprints(document: dict) -> dict:
    # Each digest is a JSON string so a partial update replaces it whole
    fingerprints = document.get("fingerprints")
    if fingerprints:
        document["fingerprints"] = {k: json.dumps(v) for k, v in fingerprints.items()}
    return document


def _source_to_session(source: dict) -> Session:
    fingerprints = source.get("fingerprints") or {}
    decoded = {k: None if v is None else json.loads(v) for k, v in fingerprints.items()}
    return Session.model_validate({**source, "fingerprints": decoded})


def _session_query(session_id: str | None) -> dict:
    if session_id is None:
        return {"match_all": {}}
    return {"term": {"session_id": session_id}}


class OpenSearchStorage(TelemetryStorage):
    """
    OpenSearch implementation of TelemetryStorage.

    Uses opensearch-py's AsyncOpenSearch client. A client may be injected
    (tests); otherwise one is built from settings in initialize().
    """

    backend_name = "opensearch"

    def __init__(
        self,
        settings: Settings | None = None,
        client: AsyncOpenSearch | None = None,
        retry_wait_min: float = RETRY_WAIT_MIN,
    ):
        """
        Initialize the OpenSearch store.

        Args:
            settings: Application settings. If None, uses get_settings().
            client: Pre-built async client. If None, created in initialize().
            retry_wait_min: Minimum backoff for the connection check in initialize()
        """
        self._settings = settings or get_settings()
        self._client = client
        self._retry_wait_min = retry_wait_min

        prefix = self._settings.opensearch.index_prefix
        self.sessions_index = f"{prefix}-sessions"
        self.locations_index = f"{prefix}-locations"
        self.ip_geolocations_index = f"{prefix}-ip-geolocations"
        self.interactions_index = f"{prefix}-interactions"

        self._mappings = {
            self.sessions_index: SESSIONS_MAPPING,
            self.locations_index: LOCATIONS_MAPPING,
            self.ip_geolocations_index: IP_GEOLOCATIONS_MAPPING,
            self.interactions_index: INTERACTIONS_MAPPING,
        }

    @property
    def client(self) -> AsyncOpenSearch:
        """Get the OpenSearch client."""
        if self._client is None:
            raise StorageUnavailable(
                "OpenSearch connection not established. Call initialize() first.",
                self.backend_name,
            )
        return self._client

    @property
    def index_names(self) -> list[str]:
        return list(self._mappings)

    @property
    def _write_refresh(self) -> dict:
        return {"refresh": "wait_for"} if self._settings.opensearch.refresh_writes else {}

    def _build_client(self) -> AsyncOpenSearch:
        os_settings = self._settings.opensearch
        return AsyncOpenSearch(
            hosts=os_settings.hosts,
            http_auth=(os_settings.user, os_settings.password),
            use_ssl=os_settings.use_ssl,
            verify_certs=os_settings.verify_certs,
            ssl_show_warn=False,
            timeout=os_settings.timeout,
        )

    @contextmanager
    def _translate_errors(self, action: str) -> Iterator[None]:
        """
        Map opensearch-py exceptions onto the storage error taxonomy.

        A version conflict (409) is a ConstraintViolation. Every other
        transport failure means the cluster could not serve the request:
        connection errors, 5xx and 429 responses, auth failures, a missing
        index, or a request the mappings reject. Those are StorageUnavailable.
        """
        try:
            yield
        except ConflictError as e:
            raise ConstraintViolation(f"{action} failed: {e}", self.backend_name) from e
        except TransportError as e:
            raise StorageUnavailable(f"{action} failed: {e}", self.backend_name) from e

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def initialize(self) -> None:
        """Verify the cluster is reachable, then create any missing index."""
        if self._client is None:
            self._client = self._build_client()

        with self._translate_errors("initialize"):
            async for attempt in retry_light_async(
                (OSConnectionError,), logger, wait_min=self._retry_wait_min
            ):
                with attempt:
                    info = await self._client.info()

            for index_name, mapping in self._mappings.items():
                if await self._client.indices.exists(index=index_name):
                    continue
                try:
                    await self._client.indices.create(
                        index=index_name,
                        body={"settings": _INDEX_SETTINGS, "mappings": mapping},
                    )
                    logger.info("Created OpenSearch index: %s", index_name)
                except RequestError as e:
                    # Another process created it between exists() and create()
                    if e.error != "resource_already_exists_exception":
                        raise

        logger.info(
            "OpenSearchStorage connected (cluster=%s, prefix=%s)",
            info.get("cluster_name", "unknown"),
            self._settings.opensearch.index_prefix,
        )

    async def close(self) -> None:
        """Close connection and release resources."""
        if self._client:
            try:
                await self._client.close()
                logger.info("OpenSearchStorage connection closed")
            except Exception as e:
                logger.warning("Error closing connection: %s", e)
            finally:
                self._client = None

    async def check_connection(self) -> bool:
        if self._client is None:
            return False
        try:
            return bool(await self._client.ping())
        except TransportError:
            return False

    def describe(self) -> dict:
        os_settings = self._settings.opensearch
        return {
            "backend": self.backend_name,
            "host": f"{os_settings.host}:{os_settings.port}",
            "indices": self.index_names,
        }

    # ==========================================================================
    # Writes
    # ==========================================================================

    async def _upsert_session(self, session: Session) -> Session:
        now = to_iso(utc_now())
        changes = _encode_fingerprints(session_changes(session))
        changes["updated_at"] = now
        upsert = {**changes, "created_at": to_iso(session.created_at) or now}

        with self._translate_errors("upsert_session"):
            await self.client.update(
                index=self.sessions_index,
                id=session.session_id,
                body={"doc": changes, "upsert": upsert},
                retry_on_conflict=UPDATE_RETRY_ON_CONFLICT,
                **self._write_refresh,
            )

        stored = await self.get_session(session.session_id)
        if stored is None:
            raise StorageUnavailable(
                f"Session {session.session_id} missing after upsert", self.backend_name
            )
        return stored

    async def _insert_location_fix(self, fix: LocationFix) -> LocationFix:
        document = fix.to_document()
        document["location"] = {"lat": fix.latitude, "lon": fix.longitude}

        with self._translate_errors("record_location_fix"):
            await self.client.index(
                index=self.locations_index,
                id=fix.fix_id,
                body=document,
                op_type="create",
                **self._write_refresh,
            )
        return fix

    async def _insert_address_geolocation(self, geo: AddressGeolocation) -> AddressGeolocation:
        with self._translate_errors("record_address_geolocation"):
            await self.client.index(
                index=self.ip_geolocations_index,
                body=geo.to_document(),
                **self._write_refresh,
            )
        return geo

    async def _insert_interaction(self, event: Interaction) -> Interaction:
        with self._translate_errors("append_interaction"):
            await self.client.index(
                index=self.interactions_index,
                id=event.event_id,
                body=event.to_document(),
                op_type="create",
                **self._write_refresh,
            )
        return event

    # ==========================================================================
    # Reads
    # ==========================================================================

    async def _hits(
        self, action: str, index: str, query: dict, sort: list, limit: int | None
    ) -> list[dict]:
        """
        Matching hits in sort order, up to limit (None for all).

        Reads that fit in one result window are a single search; anything
        larger is paged through the scroll API.
        """
        if limit is not None and limit <= MAX_RESULT_WINDOW:
            with self._translate_errors(action):
                response = await self.client.search(
                    index=index, body={"size": limit, "query": query, "sort": sort}
                )
            return response["hits"]["hits"]

        hits: list[dict] = []
        with self._translate_errors(action):
            scan = async_scan(
                self.client,
                index=index,
                query={"query": query, "sort": sort},
                size=SCAN_PAGE_SIZE,
                preserve_order=True,
            )
            async with aclosing(scan) as pages:
                async for hit in pages:
                    hits.append(hit)
                    if limit is not None and len(hits) >= limit:
                        break
        return hits

    async def list_sessions(self, limit: int | None = DEFAULT_SESSION_LIMIT) -> list[Session]:
        hits = await self._hits(
            "list_sessions",
            self.sessions_index,
            {"match_all": {}},
            [{"created_at": {"order": "desc"}}],
            limit,
        )
        return [_source_to_session(_source(hit)) for hit in hits]

    async def get_session(self, session_id: str) -> Session | None:
        with self._translate_errors("get_session"):
            try:
                response = await self.client.get(index=self.sessions_index, id=session_id)
            except NotFoundError:
                return None
        return _source_to_session(response["_source"])

    async def list_location_fixes(
        self, session_id: str | None = None, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[LocationFix]:
        hits = await self._hits(
            "list_location_fixes",
            self.locations_index,
            _session_query(session_id),
            [{"created_at": {"order": "desc"}}],
            limit,
        )
        return [_hit_to_fix(hit) for hit in hits]

    async def list_address_geolocations(
        self, limit: int | None = DEFAULT_FIX_LIMIT
    ) -> list[AddressGeolocation]:
        hits = await self._hits(
            "list_address_geolocations",
            self.ip_geolocations_index,
            {"match_all": {}},
            [{"created_at": {"order": "desc"}}],
            limit,
        )
        return [AddressGeolocation.model_validate(_source(hit)) for hit in hits]

    async def list_interactions(
        self, session_id: str | None = None, limit: int | None = DEFAULT_INTERACTION_LIMIT
    ) -> list[Interaction]:
        hits = await self._hits(
            "list_interactions",
            self.interactions_index,
            _session_query(session_id),
            [{"timestamp": {"order": "desc"}}],
            limit,
        )
        return [Interaction.model_validate(_source(hit)) for hit in hits]

    async def _find_near(
        self, longitude: float, latitude: float, max_distance_m: float
    ) -> list[NearbyFix]:
        point = {"lat": latitude, "lon": longitude}
        hits = await self._hits(
            "find_near",
            self.locations_index,
            {
                "bool": {
                    "filter": {
                        "geo_distance": {"distance": f"{max_distance_m}m", "location": point}
                    }
                }
            },
            [
                {
                    "_geo_distance": {
                        "location": point,
                        "order": "asc",
                        "unit": "m",
                        "distance_type": "arc",
                    }
                }
            ],
            None,
        )
        return [NearbyFix(fix=_hit_to_fix(hit), distance_m=float(hit["sort"][0])) for hit in hits]

    async def _count(self, index: str, query: dict | None = None) -> int:
        body = {"query": query} if query else None
        with self._translate_errors("statistics"):
            response = await self.client.count(index=index, body=body)
        return int(response.get("count", 0))

    async def _count_located_sessions(self) -> int:
        """Stored sessions referenced by at least one fix."""
        located = 0
        after_key = None
        while True:
            composite: dict = {
                "size": SCAN_PAGE_SIZE,
                "sources": [{"session_id": {"terms": {"field": "session_id"}}}],
            }
            if after_key is not None:
                composite["after"] = after_key
            with self._translate_errors("statistics"):
                response = await self.client.search(
                    index=self.locations_index,
                    body={"size": 0, "aggs": {"sessions": {"composite": composite}}},
                )
            page = response["aggregations"]["sessions"]
            session_ids = [bucket["key"]["session_id"] for bucket in page["buckets"]]
            if not session_ids:
                return located
            # Fixes may reference sessions that were never stored
            located += await self._count(self.sessions_index, {"ids": {"values": session_ids}})
            after_key = page.get("after_key")
            if after_key is None:
                return located

    async def statistics(self) -> StorageStatistics:
        return StorageStatistics.from_counts(
            sessions=await self._count(self.sessions_index),
            fixes=await self._count(self.locations_index),
            interactions=await self._count(self.interactions_index),
            sessions_with_location=await self._count_located_sessions(),
        )

    # ==========================================================================
    # Administration
    # ==========================================================================

    async def clear_all(self) -> None:
        """Delete every document from every index (indices are kept)."""
        with self._translate_errors("clear_all"):
            for index_name in self.index_names:
                await self.client.delete_by_query(
                    index=index_name,
                    body={"query": {"match_all": {}}},
                    refresh=True,
                    conflicts="proceed",
                )
        logger.info(
            "OpenSearchStorage cleared (prefix=%s)", self._settings.opensearch.index_prefix
        )
