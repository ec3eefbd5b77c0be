"""
Filter, update, sort and projection evaluation for document collections.

Implements the subset of the document query language the soft delete layer
relies on: field equality, comparison operators, logical combinators and
dotted paths for filters; ``$set``, ``$unset`` and ``$inc`` for updates.
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .base import Document, Filter, InvalidUpdateError, SortSpec, StorageError

MISSING = object()


def get_path(document: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path, returning ``MISSING`` when absent."""
    current: Any = document
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return MISSING
    return current


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = document
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value


def _unset_path(document: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = document
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return
        current = current[part]
    if isinstance(current, dict):
        current.pop(parts[-1], None)


def _comparable(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return False
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    numeric = (int, float)
    if isinstance(left, numeric) and isinstance(right, numeric):
        return True
    if isinstance(left, datetime) and isinstance(right, datetime):
        return True
    return type(left) is type(right)


def _compare(left: Any, op: str, right: Any) -> bool:
    if not _comparable(left, right):
        return False
    try:
        if op == "$gt":
            return bool(left > right)
        if op == "$gte":
            return bool(left >= right)
        if op == "$lt":
            return bool(left < right)
        return bool(left <= right)
    except TypeError:
        # Naive and aware datetimes never match each other
        return False


def _equals(value: Any, expected: Any) -> bool:
    if value is MISSING:
        return expected is None
    if isinstance(value, list) and not isinstance(expected, list):
        return any(_equals(item, expected) for item in value)
    if isinstance(value, bool) != isinstance(expected, bool):
        return False
    return bool(value == expected)


def _candidates(value: Any) -> List[Any]:
    if isinstance(value, list):
        return list(value)
    return [value]


def _match_operators(value: Any, operators: Mapping[str, Any]) -> bool:
    for op, operand in operators.items():
        if op == "$eq":
            if not _equals(value, operand):
                return False
        elif op == "$ne":
            if _equals(value, operand):
                return False
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if value is MISSING:
                return False
            if not any(_compare(item, op, operand) for item in _candidates(value)):
                return False
        elif op == "$in":
            if not any(_equals(value, item) for item in operand):
                return False
        elif op == "$nin":
            if any(_equals(value, item) for item in operand):
                return False
        elif op == "$exists":
            if (value is not MISSING) != bool(operand):
                return False
        elif op == "$not":
            if not isinstance(operand, Mapping):
                raise StorageError("$not needs an operator document")
            if _match_operators(value, operand):
                return False
        else:
            raise StorageError(f"Unknown query operator: {op}")
    return True


def _is_operator_document(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and len(value) > 0
        and all(str(key).startswith("$") for key in value)
    )


def matches(document: Mapping[str, Any], filter: Optional[Filter]) -> bool:
    """
    Check whether a document satisfies a filter.

    Args:
        document: Document to test
        filter: Filter predicate; None or empty matches everything

    Returns:
        True if the document matches
    """
    if not filter:
        return True

    for key, condition in filter.items():
        if key == "$and":
            if not all(matches(document, clause) for clause in condition):
                return False
        elif key == "$or":
            if not any(matches(document, clause) for clause in condition):
                return False
        elif key == "$nor":
            if any(matches(document, clause) for clause in condition):
                return False
        elif key.startswith("$"):
            raise StorageError(f"Unknown top level operator: {key}")
        else:
            value = get_path(document, key)
            if _is_operator_document(condition):
                if not _match_operators(value, condition):
                    return False
            elif not _equals(value, condition):
                return False
    return True


def apply_update(document: Dict[str, Any], update: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Apply an update document and return the new version.

    A plain mapping without operators is treated as ``$set``.

    Raises:
        InvalidUpdateError: Mixed or unknown operators, or an ``_id`` change
    """
    if not update:
        raise InvalidUpdateError("Update document must not be empty")

    keys = [str(key) for key in update]
    operator_keys = [key for key in keys if key.startswith("$")]
    if operator_keys and len(operator_keys) != len(keys):
        raise InvalidUpdateError("Update document mixes operators and plain fields")
    if not operator_keys:
        update = {"$set": dict(update)}

    result = copy.deepcopy(document)
    for op, fields in update.items():
        if op == "$set":
            for path, value in fields.items():
                if path == "_id" and value != result.get("_id"):
                    raise InvalidUpdateError(
                        "Performing an update on the path '_id' would modify "
                        "the immutable field '_id'"
                    )
                _set_path(result, path, copy.deepcopy(value))
        elif op == "$unset":
            for path in fields:
                if path == "_id":
                    raise InvalidUpdateError("The field '_id' cannot be unset")
                _unset_path(result, path)
        elif op == "$inc":
            for path, amount in fields.items():
                current = get_path(result, path)
                if current is MISSING:
                    current = 0
                if not isinstance(current, (int, float)) or isinstance(current, bool):
                    raise InvalidUpdateError(f"Cannot apply $inc to non-numeric {path}")
                _set_path(result, path, current + amount)
        else:
            raise InvalidUpdateError(f"Unknown update operator: {op}")
    return result


def normalize_sort(sort: Optional[SortSpec]) -> List[Tuple[str, int]]:
    """Turn a mapping or a sequence of pairs into a list of (field, direction)."""
    if not sort:
        return []
    if isinstance(sort, Mapping):
        return [(str(field), int(direction)) for field, direction in sort.items()]
    return [(str(field), int(direction)) for field, direction in sort]


def sort_documents(
    documents: Sequence[Document], sort: Optional[SortSpec]
) -> List[Document]:
    """Stable multi-key sort; missing and null values order first."""
    result = list(documents)
    for field, direction in reversed(normalize_sort(sort)):

        def key(document: Document, field: str = field) -> Tuple[int, Any]:
            value = get_path(document, field)
            if value is MISSING or value is None:
                return (0, 0)
            return (1, value)

        result.sort(key=key, reverse=direction < 0)
    return result


def project(document: Document, projection: Optional[Mapping[str, Any]]) -> Document:
    """Apply an inclusion or exclusion projection."""
    if not projection:
        return document

    fields = {key: value for key, value in projection.items() if key != "_id"}
    include_id = bool(projection.get("_id", 1))

    if not fields:
        if include_id:
            return {"_id": document["_id"]} if "_id" in document else {}
        return {key: value for key, value in document.items() if key != "_id"}

    if all(bool(value) for value in fields.values()):
        result: Dict[str, Any] = {}
        if include_id and "_id" in document:
            result["_id"] = document["_id"]
        for path in fields:
            value = get_path(document, path)
            if value is not MISSING:
                _set_path(result, path, value)
        return result

    if any(bool(value) for value in fields.values()):
        raise StorageError("Cannot mix inclusion and exclusion in a projection")

    result = copy.deepcopy(document)
    for path in fields:
        _unset_path(result, path)
    if not include_id:
        result.pop("_id", None)
    return result
