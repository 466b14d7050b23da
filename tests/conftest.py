# ==============================================================================
# Shared Test Fixtures
# ==============================================================================
"""
Pytest fixtures shared across all test modules.

Provides:
- Settings pointing every backend at a per-test temporary directory
- JsonFileStorage, SQLiteStorage and OpenSearchStorage instances, plus a
  parametrized `storage` fixture that runs a test once per backend
- An in-memory stand-in for opensearch-py's AsyncOpenSearch client
- fakeredis-backed ValkeyCache instances
"""

import copy
import uuid

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from opensearchpy.exceptions import ConflictError, NotFoundError, RequestError
from opensearchpy.exceptions import ConnectionError as OSConnectionError

from visitor_telemetry.core.geo import haversine_m
from visitor_telemetry.infrastructure.cache import ValkeyCache
from visitor_telemetry.infrastructure.storage import (
    JsonFileStorage,
    OpenSearchStorage,
    SQLiteStorage,
)
from visitor_telemetry.utils.config import (
    OpenSearchSettings,
    Settings,
    SQLiteSettings,
    StorageSettings,
    ValkeySettings,
)

# ==============================================================================
# Fake OpenSearch Client
# ==============================================================================


def _merge(base: dict, changes: dict) -> dict:
    """Partial-document merge as applied by the update API."""
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class FakeIndices:
    """The `client.indices` namespace."""

    def __init__(self, client: "FakeAsyncOpenSearch"):
        self._client = client

    async def exists(self, index: str) -> bool:
        return index in self._client.docs

    async def create(self, index: str, body: dict | None = None) -> dict:
        if index in self._client.docs:
            raise RequestError(400, "resource_already_exists_exception", {})
        self._client.docs[index] = {}
        self._client.mappings[index] = body
        return {"acknowledged": True, "index": index}


class FakeAsyncOpenSearch:
    """
    In-memory implementation of the AsyncOpenSearch calls the storage uses.

    Supports match_all, term, ids and bool/filter/geo_distance queries,
    field and _geo_distance sorts, the scroll API and single-source
    composite aggregations. Documents live in insertion order; sorts break
    ties with the later document first.
    """

    def __init__(self, info_failures: int = 0):
        self.docs: dict[str, dict[str, dict]] = {}
        self.mappings: dict[str, dict | None] = {}
        self.indices = FakeIndices(self)
        self.info_failures = info_failures
        self.info_calls = 0
        self.closed = False
        self.refresh_args: list = []
        self.search_bodies: list[dict] = []
        self.scrolls: dict[str, tuple[list, int]] = {}
        self.scroll_calls = 0

    def _index(self, index: str) -> dict[str, dict]:
        if index not in self.docs:
            raise NotFoundError(404, "index_not_found_exception", {"index": index})
        return self.docs[index]

    async def info(self) -> dict:
        self.info_calls += 1
        if self.info_calls <= self.info_failures:
            raise OSConnectionError("N/A", "Connection refused", Exception("refused"))
        return {"cluster_name": "fake-cluster", "version": {"number": "2.11.0"}}

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self.closed = True

    # --------------------------------------------------------------------------
    # Writes
    # --------------------------------------------------------------------------

    async def index(self, index, body, id=None, op_type=None, refresh=None):
        docs = self._index(index)
        doc_id = id or uuid.uuid4().hex
        if op_type == "create" and doc_id in docs:
            raise ConflictError(409, "version_conflict_engine_exception", {"_id": doc_id})
        docs[doc_id] = copy.deepcopy(body)
        self.refresh_args.append(refresh)
        return {"_id": doc_id, "result": "created"}

    async def update(self, index, id, body, retry_on_conflict=None, refresh=None):
        docs = self._index(index)
        if id in docs:
            docs[id] = _merge(docs[id], body["doc"])
            result = "updated"
        else:
            docs[id] = copy.deepcopy(body["upsert"])
            result = "created"
        self.refresh_args.append(refresh)
        return {"_id": id, "result": result}

    async def delete_by_query(self, index, body, refresh=None, conflicts=None):
        docs = self._index(index)
        matched = [
            doc_id
            for doc_id, source in docs.items()
            if self._matches(doc_id, source, body["query"])
        ]
        for doc_id in matched:
            del docs[doc_id]
        return {"deleted": len(matched)}

    # --------------------------------------------------------------------------
    # Reads
    # --------------------------------------------------------------------------

    async def get(self, index, id):
        docs = self._index(index)
        if id not in docs:
            raise NotFoundError(404, "not_found", {"_id": id, "found": False})
        return {"_id": id, "found": True, "_source": copy.deepcopy(docs[id])}

    def _matches(self, doc_id: str, source: dict, query: dict) -> bool:
        if "match_all" in query:
            return True
        if "term" in query:
            ((field, value),) = query["term"].items()
            return source.get(field) == value
        if "ids" in query:
            return doc_id in query["ids"]["values"]
        if "bool" in query:
            geo = query["bool"]["filter"]["geo_distance"]
            return self._distance(source, geo["location"]) <= float(geo["distance"].rstrip("m"))
        raise ValueError(f"Unsupported query: {query}")

    @staticmethod
    def _distance(source: dict, point: dict) -> float:
        location = source["location"]
        return haversine_m(point["lat"], point["lon"], location["lat"], location["lon"])

    def _sorted_hits(self, index: str, body: dict) -> list[dict]:
        docs = self._index(index)
        query = body.get("query", {"match_all": {}})
        hits = [
            {"_id": doc_id, "_source": copy.deepcopy(source)}
            for doc_id, source in docs.items()
            if self._matches(doc_id, source, query)
        ]

        for spec in body.get("sort", []):
            ((field, options),) = spec.items()
            if field == "_geo_distance":
                for hit in hits:
                    hit["sort"] = [self._distance(hit["_source"], options["location"])]
                hits.sort(key=lambda h: h["sort"][0])
            else:
                hits.reverse()
                hits.sort(
                    key=lambda h: h["_source"].get(field) or "",
                    reverse=options["order"] == "desc",
                )
        return hits

    def _composite(self, hits: list[dict], composite: dict) -> dict:
        ((name, source),) = composite["sources"][0].items()
        field = source["terms"]["field"]
        keys = sorted({hit["_source"][field] for hit in hits if hit["_source"].get(field)})
        if "after" in composite:
            keys = [key for key in keys if key > composite["after"][name]]
        page = keys[: composite["size"]]
        result: dict = {"buckets": [{"key": {name: key}, "doc_count": 1} for key in page]}
        if page:
            result["after_key"] = {name: page[-1]}
        return result

    async def search(self, index=None, body=None, scroll=None, size=None, **kwargs):
        body = body or {}
        self.search_bodies.append(body)
        hits = self._sorted_hits(index, body)
        page_size = size if size is not None else body.get("size", 10)

        response: dict = {
            "_shards": {"total": 1, "successful": 1, "skipped": 0, "failed": 0},
            "hits": {"total": {"value": len(hits)}, "hits": hits[:page_size]},
        }
        if scroll is not None:
            scroll_id = uuid.uuid4().hex
            self.scrolls[scroll_id] = (hits[page_size:], page_size)
            response["_scroll_id"] = scroll_id

        if "aggs" in body:
            response["aggregations"] = {
                name: self._composite(hits, agg["composite"]) for name, agg in body["aggs"].items()
            }
        return response

    async def scroll(self, body=None, scroll_id=None, scroll=None, **kwargs):
        scroll_id = scroll_id or body["scroll_id"]
        remaining, page_size = self.scrolls[scroll_id]
        self.scrolls[scroll_id] = (remaining[page_size:], page_size)
        self.scroll_calls += 1
        return {
            "_scroll_id": scroll_id,
            "_shards": {"total": 1, "successful": 1, "skipped": 0, "failed": 0},
            "hits": {"hits": remaining[:page_size]},
        }

    async def clear_scroll(self, body=None, scroll_id=None, **kwargs):
        ids = scroll_id or body["scroll_id"]
        for cleared in [ids] if isinstance(ids, str) else ids:
            self.scrolls.pop(cleared, None)
        return {"succeeded": True}

    async def count(self, index, body=None):
        docs = self._index(index)
        query = body["query"] if body else {"match_all": {}}
        matched = sum(1 for doc_id, source in docs.items() if self._matches(doc_id, source, query))
        return {"count": matched}


# ==============================================================================
# Settings
# ==============================================================================


@pytest.fixture()
def settings(tmp_path):
    """Settings with every file-backed path under tmp_path."""
    return Settings(
        storage=StorageSettings(backend="json", data_dir=tmp_path / "data", max_interactions=1000),
        sqlite=SQLiteSettings(path=tmp_path / "telemetry.db", enforce_foreign_keys=False),
        opensearch=OpenSearchSettings(index_prefix="test", refresh_writes=True),
        valkey=ValkeySettings(enabled=False),
    )


# ==============================================================================
# Storage Backends
# ==============================================================================


@pytest.fixture()
async def json_storage(settings):
    """An initialized JsonFileStorage in a temporary directory."""
    async with JsonFileStorage(settings) as storage:
        yield storage


@pytest.fixture()
async def sqlite_storage(settings):
    """An initialized SQLiteStorage on a temporary database file."""
    async with SQLiteStorage(settings) as storage:
        yield storage


@pytest.fixture()
def fake_opensearch():
    """A fresh in-memory OpenSearch client."""
    return FakeAsyncOpenSearch()


@pytest.fixture()
def make_fake_opensearch():
    """Factory for in-memory clients, e.g. ones that refuse the first N info() calls."""
    return FakeAsyncOpenSearch


@pytest.fixture()
async def opensearch_storage(settings, fake_opensearch):
    """An initialized OpenSearchStorage backed by the in-memory client."""
    async with OpenSearchStorage(settings, client=fake_opensearch, retry_wait_min=0) as storage:
        yield storage


@pytest.fixture(params=["json", "sqlite", "opensearch"])
async def storage(request, settings):
    """Each backend in turn, initialized and empty."""
    match request.param:
        case "json":
            backend = JsonFileStorage(settings)
        case "sqlite":
            backend = SQLiteStorage(settings)
        case "opensearch":
            backend = OpenSearchStorage(settings, client=FakeAsyncOpenSearch(), retry_wait_min=0)
    async with backend:
        yield backend


# ==============================================================================
# Cache
# ==============================================================================


@pytest.fixture()
async def fake_redis():
    """A clean async fakeredis client for each test.

    Uses decode_responses=True to match the real ValkeyCache behavior.
    """
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture()
def fake_cache(fake_redis):
    """A ValkeyCache with its client replaced by fakeredis."""
    return ValkeyCache(url="redis://fake:6379/0", client=fake_redis)
