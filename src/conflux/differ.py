"""
Field-level comparison of two snapshots of the same record.

Values are compared by strict inequality: values of different types always
differ (``1`` vs ``"1"``, ``True`` vs ``1``), ints and floats compare
numerically, and an absent field (UNDEFINED) differs from everything,
``None`` included. Composite values are compared through their canonical
JSON serialization so that two equal-looking dicts are not flagged; whole
floats inside them are written as ints so that ``[1]`` and ``[1.0]`` agree
the same way ``1`` and ``1.0`` do.
"""

import json
import logging
from numbers import Number
from typing import Any, FrozenSet

from .errors import MismatchedEntityError
from .models import UNDEFINED, VersionedSnapshot

logger = logging.getLogger(__name__)

_COMPOSITE_TYPES = (dict, list, tuple, set, frozenset)


def canonicalize(value: Any) -> Any:
    """
    Reduce a field value to a form comparable by plain equality.

    Composite values become canonical JSON strings (sorted keys, sets
    sorted, whole floats as ints); scalars are returned unchanged.
    """
    if isinstance(value, _COMPOSITE_TYPES):
        return json.dumps(_normalize(value), sort_keys=True, separators=(",", ":"), default=str)
    return value


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_normalize(v) for v in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _is_plain_number(value: Any) -> bool:
    return isinstance(value, Number) and not isinstance(value, bool)


def values_differ(a: Any, b: Any) -> bool:
    """Strict inequality between two field values."""
    if a is UNDEFINED or b is UNDEFINED:
        return a is not b
    if isinstance(a, _COMPOSITE_TYPES) or isinstance(b, _COMPOSITE_TYPES):
        if type(a) is not type(b):
            return True
        return canonicalize(a) != canonicalize(b)
    if _is_plain_number(a) and _is_plain_number(b):
        return a != b
    if type(a) is not type(b):
        return True
    return a != b


def diff(local: VersionedSnapshot, server: VersionedSnapshot) -> FrozenSet[str]:
    """
    Compute the names of fields whose values differ between two snapshots.

    Args:
        local: Snapshot held by the initiating actor
        server: Snapshot currently persisted

    Returns:
        Frozen set of differing field names (empty when the snapshots agree)

    Raises:
        MismatchedEntityError: If the snapshots belong to different records
    """
    if local.entity_table != server.entity_table or local.record_id != server.record_id:
        raise MismatchedEntityError(local.key, server.key)

    names = set(local.fields) | set(server.fields)
    diffs = frozenset(
        name for name in names
        if values_differ(local.get(name), server.get(name))
    )
    logger.debug(
        f"Diffed {local.entity_table}/{local.record_id}: "
        f"{len(diffs)} of {len(names)} fields differ"
    )
    return diffs


def is_stale(local: VersionedSnapshot, server: VersionedSnapshot) -> bool:
    """
    Version check run by the write path before applying a write.

    True when the local snapshot was taken at a different version than the
    one currently persisted, meaning another actor wrote in between.
    """
    if local.key != server.key:
        raise MismatchedEntityError(local.key, server.key)
    return local.version != server.version


__all__ = ["canonicalize", "values_differ", "diff", "is_stale"]
