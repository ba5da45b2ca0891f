"""
normalizer.py – RawRecord → FlatRow shape transform.

A record with a declared *breakdown* field (a list of nested mappings, e.g.
Ad Library ``demographic_distribution``) is unnested into one row per
breakdown element, with the record's top-level scalars replicated on each
row::

    {"id": "1", "demographic_distribution": [
        {"age": "18-24", "gender": "female", "percentage": "0.4"},
        {"age": "25-34", "gender": "male", "percentage": "0.6"}]}

    → {"id": "1", "age": "18-24", "gender": "female", "percentage": "0.4"}
      {"id": "1", "age": "25-34", "gender": "male",   "percentage": "0.6"}

Only shape is handled here; value checks happen in the orchestrator.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple

from .errors import AmbiguousBreakdownError, RecordShapeError
from .models import ABSENT, SCALAR_TYPES, FlatRow, IdentityKey, RawRecord

logger = logging.getLogger(__name__)

__all__ = [
    "SEP",
    "identity_key",
    "normalize_record",
    "normalize_records",
]

SEP = "."


# --------------------------------------------------------------------------- #
# Shape helpers
# --------------------------------------------------------------------------- #


def _is_scalar(value: Any) -> bool:
    return isinstance(value, SCALAR_TYPES)


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _flatten_scalars(obj: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Scalar leaves of ``obj``; nested mappings become ``parent.child`` columns.

    Sequences are not breakdowns at this level and are left out.
    """
    out: Dict[str, Any] = {}
    for key, value in obj.items():
        col = f"{prefix}{key}"
        if _is_scalar(value):
            out[col] = value
        elif isinstance(value, Mapping):
            out.update(_flatten_scalars(value, prefix=f"{col}{SEP}"))
        elif _is_sequence(value):
            logger.debug("Dropping non-breakdown sequence column %s", col)
        else:
            raise RecordShapeError(f"unsupported value type {type(value).__name__} for field {col!r}")
    return out


def _lookup(record: Mapping[str, Any], field: str) -> Any:
    """Resolve ``field`` directly, falling back to a dotted path (``id.videoId``)."""
    if field in record:
        return record[field]
    node: Any = record
    for part in field.split(SEP):
        if not isinstance(node, Mapping) or part not in node:
            raise RecordShapeError(f"identity field {field!r} missing from record")
        node = node[part]
    return node


def identity_key(record: RawRecord, identity_fields: Sequence[str]) -> IdentityKey:
    """Tuple of the record's identity-field values; each must be a present scalar."""
    values = []
    for field in identity_fields:
        value = _lookup(record, field)
        if not _is_scalar(value) or value is None:
            raise RecordShapeError(f"identity field {field!r} must be a non-null scalar, got {value!r}")
        values.append(value)
    return tuple(values)


def _present_breakdowns(record: Mapping[str, Any], breakdown_fields: Iterable[str]) -> List[str]:
    present = []
    for field in breakdown_fields:
        value = record.get(field)
        if value is None:
            continue
        if not _is_sequence(value):
            raise RecordShapeError(
                f"breakdown field {field!r} must be a sequence of mappings, got {type(value).__name__}"
            )
        if value:
            present.append(field)
    return present


# --------------------------------------------------------------------------- #
# Public API
# --------------------------------------------------------------------------- #


def normalize_record(
    record: RawRecord,
    breakdown_fields: Sequence[str] = (),
    identity_fields: Sequence[str] = (),
) -> List[FlatRow]:
    """Flatten one record into rows sharing an identical column set.

    * no declared breakdown present → exactly one row
    * one non-empty breakdown of length N → N rows
    * several non-empty breakdowns → :class:`AmbiguousBreakdownError`
    """
    if not isinstance(record, Mapping):
        raise RecordShapeError(f"record must be a mapping, got {type(record).__name__}")

    if identity_fields:
        identity_key(record, identity_fields)

    present = _present_breakdowns(record, breakdown_fields)
    if len(present) > 1:
        raise AmbiguousBreakdownError(present)

    declared = set(breakdown_fields)
    base = _flatten_scalars({k: v for k, v in record.items() if k not in declared})
    for field in identity_fields:
        if field not in base:
            # dotted identity path flattened under its own name
            base[field] = _lookup(record, field)

    if not present:
        return [base]

    field = present[0]
    promoted: List[Dict[str, Any]] = []
    columns: Dict[str, None] = {}
    for idx, element in enumerate(record[field]):
        if not isinstance(element, Mapping):
            raise RecordShapeError(
                f"breakdown {field!r} element {idx} must be a mapping, got {type(element).__name__}"
            )
        flat: Dict[str, Any] = {}
        for key, value in _flatten_scalars(element).items():
            # never let a bucket overwrite a top-level column (e.g. the identity key)
            col = f"{field}{SEP}{key}" if key in base else key
            flat[col] = value
            columns.setdefault(col, None)
        promoted.append(flat)

    rows: List[FlatRow] = []
    for flat in promoted:
        row = dict(base)
        for col in columns:
            row[col] = flat.get(col, ABSENT)
        rows.append(row)
    return rows


def normalize_records(
    records: Iterable[RawRecord],
    breakdown_fields: Sequence[str] = (),
    identity_fields: Sequence[str] = (),
) -> List[Tuple[IdentityKey, List[FlatRow]]]:
    """Normalize a page of records, aligning every row to the union column set.

    Returns ``(identity_key, rows)`` per record so callers can dedup whole
    records rather than individual breakdown rows. Without identity fields
    the key is the record's position in the page.
    """
    grouped: List[Tuple[IdentityKey, List[FlatRow]]] = []
    columns: Dict[str, None] = {}

    for pos, record in enumerate(records):
        rows = normalize_record(record, breakdown_fields, identity_fields)
        key = identity_key(record, identity_fields) if identity_fields else (pos,)
        for row in rows:
            for col in row:
                columns.setdefault(col, None)
        grouped.append((key, rows))

    aligned: List[Tuple[IdentityKey, List[FlatRow]]] = []
    for key, rows in grouped:
        aligned.append((key, [{col: row.get(col, ABSENT) for col in columns} for row in rows]))
    return aligned
