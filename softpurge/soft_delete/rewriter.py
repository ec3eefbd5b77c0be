"""
Deletion-aware query rewriting.

Pure functions that inject the "not deleted" predicate into filters and
aggregation pipelines. Nothing here performs I/O; errors surface from the
storage engine that later runs the rewritten query.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from ..storage.base import GEO_NEAR_STAGE, MATCH_STAGE, SEARCH_STAGES, Pipeline

DELETED_FIELD = "deleted"
DELETED_AT_FIELD = "deletedAt"


@dataclass(frozen=True)
class QueryOptions:
    """Per-call options for the read path.

    Attributes:
        include_deleted: Skip the default ``deleted == False`` injection
            (admin listings, restore lookups, login by email).
        only_deleted: Restrict to soft-deleted records (the trash view).
            Implies ``include_deleted``.
    """

    include_deleted: bool = False
    only_deleted: bool = False

    @classmethod
    def with_deleted(cls) -> "QueryOptions":
        return cls(include_deleted=True)

    @classmethod
    def trash(cls) -> "QueryOptions":
        return cls(only_deleted=True)


DEFAULT_OPTIONS = QueryOptions()


def apply_deletion_filter(
    filter: Optional[Mapping[str, Any]] = None,
    options: QueryOptions = DEFAULT_OPTIONS,
) -> Dict[str, Any]:
    """
    Rewrite a read filter so it respects the deletion lifecycle.

    Args:
        filter: Caller's filter; never mutated
        options: Escape hatches for this call

    Returns:
        A new filter. ``deleted: False`` is added when the caller did not
        constrain ``deleted`` at the top level; ``only_deleted`` forces
        ``deleted: True``; ``include_deleted`` leaves the filter as given.
    """
    rewritten = dict(filter or {})

    if options.only_deleted:
        rewritten[DELETED_FIELD] = True
        return rewritten

    if options.include_deleted:
        return rewritten

    if DELETED_FIELD not in rewritten:
        rewritten[DELETED_FIELD] = False
    return rewritten


def force_active(filter: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Copy of ``filter`` with ``deleted: False`` overriding any caller value."""
    rewritten = dict(filter or {})
    rewritten[DELETED_FIELD] = False
    return rewritten


def stage_name(stage: Any) -> Optional[str]:
    """Name of a single-key pipeline stage, or None for malformed stages."""
    if isinstance(stage, Mapping) and len(stage) == 1:
        return str(next(iter(stage)))
    return None


def rewrite_pipeline(pipeline: Optional[Pipeline] = None) -> List[Dict[str, Any]]:
    """
    Rewrite an aggregation pipeline to exclude soft-deleted documents.

    * empty pipeline: a single ``$match`` on ``deleted: False``
    * ``$geoNear`` first: the predicate is merged into the stage's own
      ``query``, since ``$geoNear`` must stay the first stage
    * search stage first (``$search``, ``$vectorSearch``, ``$searchMeta``):
      returned unchanged. Search indexes live outside the primary documents,
      so callers must filter deleted results themselves.
    * anything else: ``$match`` on ``deleted: False`` is prepended

    Args:
        pipeline: Caller's pipeline; never mutated

    Returns:
        The pipeline to run
    """
    if not pipeline:
        return [{MATCH_STAGE: {DELETED_FIELD: False}}]

    stages = [dict(stage) for stage in pipeline]
    first, rest = stages[0], stages[1:]
    name = stage_name(first)

    if name == GEO_NEAR_STAGE:
        geo_near = dict(first[GEO_NEAR_STAGE])
        query = dict(geo_near.get("query") or {})
        query[DELETED_FIELD] = False
        geo_near["query"] = query
        return [{GEO_NEAR_STAGE: geo_near}, *rest]

    if name in SEARCH_STAGES:
        return stages

    return [{MATCH_STAGE: {DELETED_FIELD: False}}, *stages]


def pipeline_warnings(pipeline: Optional[Pipeline]) -> List[str]:
    """
    Explain where soft delete filtering cannot be enforced in a pipeline.

    Returns:
        A warning for the first search stage found, or an empty list
    """
    for stage in pipeline or []:
        name = stage_name(stage)
        if name in SEARCH_STAGES:
            return [
                f"This aggregation uses {name}. Soft delete cannot be enforced "
                "automatically. Ensure deleted filtering is handled explicitly."
            ]
    return []
