"""
In-process reference document engine.

Implements the storage contract on plain dictionaries so the soft delete
layer and the purge pipeline can run without an external database. Every
single-document mutation happens under a per-collection lock, which makes
``find_one_and_update`` and ``delete_one`` atomic compare-and-set
operations, matching what a production document store guarantees.
"""

import asyncio
import copy
import math
import secrets
import time
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .base import (
    GEO_NEAR_STAGE,
    MATCH_STAGE,
    SEARCH_STAGES,
    DeleteResult,
    Document,
    DocumentCollection,
    DocumentDatabase,
    DuplicateKeyError,
    Filter,
    InvalidPipelineError,
    Pipeline,
    SearchNotEnabledError,
    SortSpec,
    UpdateResult,
)
from .query import MISSING, apply_update, get_path, matches, project, sort_documents

# Radius used for spherical distances on GeoJSON points, in meters
EARTH_RADIUS_METERS = 6378100.0


def new_object_id() -> str:
    """
    Generate a new document identity.

    A 4-byte creation timestamp followed by 8 random bytes, hex encoded, so
    identities sort roughly by creation time and are never reused.
    """
    return f"{int(time.time()):08x}{secrets.token_hex(8)}"


def _point_coordinates(value: Any) -> Optional[Tuple[float, float, bool]]:
    """Return (x, y, is_geojson) for a GeoJSON point or legacy pair."""
    if isinstance(value, Mapping) and value.get("type") == "Point":
        coordinates = value.get("coordinates")
        if isinstance(coordinates, (list, tuple)) and len(coordinates) == 2:
            return float(coordinates[0]), float(coordinates[1]), True
        return None
    if (
        isinstance(value, (list, tuple))
        and len(value) == 2
        and all(isinstance(c, (int, float)) and not isinstance(c, bool) for c in value)
    ):
        return float(value[0]), float(value[1]), False
    return None


def _haversine(lng1: float, lat1: float, lng2: float, lat2: float) -> float:
    """Central angle between two (longitude, latitude) points, in radians."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * math.asin(min(1.0, math.sqrt(a)))


def _find_location(document: Document, key: Optional[str]) -> Optional[Any]:
    if key:
        value = get_path(document, key)
        return None if value is MISSING else value
    for value in document.values():
        if _point_coordinates(value) is not None:
            return value
    return None


def _geo_near(documents: List[Document], spec: Mapping[str, Any]) -> List[Document]:
    if not isinstance(spec, Mapping):
        raise InvalidPipelineError("$geoNear requires an options document")

    distance_field = spec.get("distanceField")
    if not distance_field:
        raise InvalidPipelineError("$geoNear requires a 'distanceField' option")

    near = _point_coordinates(spec.get("near"))
    if near is None:
        raise InvalidPipelineError("$geoNear requires a 'near' point")
    near_x, near_y, near_geojson = near

    spherical = bool(spec.get("spherical", False)) or near_geojson
    max_distance = spec.get("maxDistance")
    min_distance = spec.get("minDistance")
    query = spec.get("query") or {}
    key = spec.get("key")
    include_locs = spec.get("includeLocs")

    results: List[Tuple[float, Document]] = []
    for document in documents:
        if not matches(document, query):
            continue
        location = _find_location(document, key)
        point = _point_coordinates(location)
        if point is None:
            continue
        x, y, _ = point

        if spherical:
            distance = _haversine(near_x, near_y, x, y)
            if near_geojson:
                distance *= EARTH_RADIUS_METERS
        else:
            distance = math.hypot(x - near_x, y - near_y)

        if max_distance is not None and distance > max_distance:
            continue
        if min_distance is not None and distance < min_distance:
            continue

        result = copy.deepcopy(document)
        result[distance_field] = distance
        if include_locs:
            result[include_locs] = copy.deepcopy(location)
        results.append((distance, result))

    results.sort(key=lambda item: item[0])
    return [document for _, document in results]


def run_pipeline(documents: List[Document], pipeline: Pipeline) -> List[Document]:
    """
    Evaluate an aggregation pipeline over a list of documents.

    Supports ``$match``, ``$geoNear``, ``$sort``, ``$skip``, ``$limit``,
    ``$project`` and ``$count``. Search stages raise
    :class:`SearchNotEnabledError` because this engine keeps no search index.
    """
    if not isinstance(pipeline, (list, tuple)):
        raise InvalidPipelineError("Pipeline must be a list of stages")

    current = documents
    for index, stage in enumerate(pipeline):
        if not isinstance(stage, Mapping) or len(stage) != 1:
            raise InvalidPipelineError(
                "A pipeline stage specification object must contain exactly one field"
            )
        ((name, spec),) = stage.items()

        if name in SEARCH_STAGES:
            raise SearchNotEnabledError(name)
        if name == GEO_NEAR_STAGE:
            if index != 0:
                raise InvalidPipelineError(
                    "$geoNear is only valid as the first stage in a pipeline"
                )
            current = _geo_near(current, spec)
        elif name == MATCH_STAGE:
            current = [document for document in current if matches(document, spec)]
        elif name == "$sort":
            current = sort_documents(current, spec)
        elif name == "$skip":
            current = current[int(spec) :]
        elif name == "$limit":
            if int(spec) <= 0:
                raise InvalidPipelineError("the limit must be positive")
            current = current[: int(spec)]
        elif name == "$project":
            current = [project(document, spec) for document in current]
        elif name == "$count":
            current = [{str(spec): len(current)}] if current else []
        else:
            raise InvalidPipelineError(f"Unrecognized pipeline stage name: '{name}'")
    return current


class InMemoryCollection(DocumentCollection):
    """Dictionary-backed collection keyed by ``_id``."""

    def __init__(self, name: str):
        self.name = name
        self._documents: Dict[Any, Document] = {}
        self._lock = asyncio.Lock()

    def _matching(self, filter: Optional[Filter]) -> List[Document]:
        return [doc for doc in self._documents.values() if matches(doc, filter)]

    async def insert_one(self, document: Document) -> Any:
        async with self._lock:
            return self._insert(document)

    def _insert(self, document: Document) -> Any:
        stored = copy.deepcopy(dict(document))
        stored.setdefault("_id", new_object_id())
        if stored["_id"] in self._documents:
            raise DuplicateKeyError(stored["_id"])
        self._documents[stored["_id"]] = stored
        return stored["_id"]

    async def insert_many(self, documents: Sequence[Document]) -> List[Any]:
        async with self._lock:
            return [self._insert(document) for document in documents]

    async def find(
        self,
        filter: Optional[Filter] = None,
        sort: Optional[SortSpec] = None,
        skip: int = 0,
        limit: int = 0,
        projection: Optional[Mapping[str, int]] = None,
    ) -> List[Document]:
        async with self._lock:
            found = sort_documents(self._matching(filter), sort)
        if skip:
            found = found[skip:]
        if limit:
            found = found[:limit]
        return [project(copy.deepcopy(doc), projection) for doc in found]

    async def find_one(
        self,
        filter: Optional[Filter] = None,
        sort: Optional[SortSpec] = None,
        projection: Optional[Mapping[str, int]] = None,
    ) -> Optional[Document]:
        found = await self.find(filter, sort=sort, limit=1, projection=projection)
        return found[0] if found else None

    async def count_documents(self, filter: Optional[Filter] = None) -> int:
        async with self._lock:
            return len(self._matching(filter))

    async def update_many(
        self, filter: Filter, update: Mapping[str, Any]
    ) -> UpdateResult:
        async with self._lock:
            targets = self._matching(filter)
            updated = [(doc, apply_update(doc, update)) for doc in targets]
            modified = 0
            for before, after in updated:
                if after != before:
                    modified += 1
                self._documents[before["_id"]] = after
            return UpdateResult(matched_count=len(targets), modified_count=modified)

    async def find_one_and_update(
        self,
        filter: Filter,
        update: Mapping[str, Any],
        return_document_after: bool = True,
        sort: Optional[SortSpec] = None,
    ) -> Optional[Document]:
        async with self._lock:
            targets = sort_documents(self._matching(filter), sort)
            if not targets:
                return None
            before = targets[0]
            after = apply_update(before, update)
            self._documents[before["_id"]] = after
            return copy.deepcopy(after if return_document_after else before)

    async def delete_one(self, filter: Filter) -> DeleteResult:
        async with self._lock:
            targets = self._matching(filter)
            if not targets:
                return DeleteResult(deleted_count=0)
            del self._documents[targets[0]["_id"]]
            return DeleteResult(deleted_count=1)

    async def delete_many(self, filter: Filter) -> DeleteResult:
        async with self._lock:
            targets = self._matching(filter)
            for document in targets:
                del self._documents[document["_id"]]
            return DeleteResult(deleted_count=len(targets))

    async def aggregate(self, pipeline: Pipeline) -> List[Document]:
        async with self._lock:
            snapshot = [copy.deepcopy(doc) for doc in self._documents.values()]
        return run_pipeline(snapshot, pipeline)


class InMemoryDocumentDatabase(DocumentDatabase):
    """Database handle holding in-memory collections by name."""

    def __init__(self) -> None:
        self._collections: Dict[str, InMemoryCollection] = {}
        self._closed = False

    def collection(self, name: str) -> InMemoryCollection:
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    def list_collection_names(self) -> List[str]:
        return sorted(self._collections)

    def drop_collection(self, name: str) -> None:
        self._collections.pop(name, None)

    async def ping(self) -> bool:
        return not self._closed

    async def close(self) -> None:
        self._closed = True
