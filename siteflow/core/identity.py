from __future__ import annotations

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

KEY_SEPARATOR = "|"
LEADING_COLUMNS = 3

_WHITESPACE = re.compile(r"\s+")


def normalize_site_code(value: Any) -> str:
    return _WHITESPACE.sub(" ", str(value or "")).strip().upper()


def _cell(row: Mapping[str, Any], header: str) -> str:
    value = row.get(header)
    return "" if value is None else str(value)


class RowKey(BaseModel):
    """Composite identity of a spreadsheet row within one uploaded file."""

    file_id: str
    identity: tuple[str, ...]
    explicit: bool = False

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.file_id}-{KEY_SEPARATOR.join(self.identity)}"

    @classmethod
    def parse(cls, raw: str, file_id: str) -> Optional["RowKey"]:
        prefix = f"{file_id}-"
        if not str(raw or "").startswith(prefix):
            return None
        rest = raw[len(prefix):]
        return cls(file_id=file_id, identity=tuple(rest.split(KEY_SEPARATOR)))


def resolve_key(file_id: str, row: Mapping[str, Any], headers: Sequence[str]) -> RowKey:
    explicit_id = row.get("id")
    if explicit_id not in (None, ""):
        return RowKey(file_id=file_id, identity=(str(explicit_id),), explicit=True)

    if len(headers) >= LEADING_COLUMNS:
        leading = tuple(_cell(row, header) for header in headers[:LEADING_COLUMNS])
        if any(leading):
            return RowKey(file_id=file_id, identity=leading)

    return RowKey(file_id=file_id, identity=tuple(_cell(row, header) for header in headers))


def resolve_row_key(file_id: str, row: Mapping[str, Any], headers: Sequence[str]) -> str:
    return str(resolve_key(file_id, row, headers))


def _contains_values(values: List[str], wanted: Sequence[str]) -> bool:
    pool = list(values)
    for value in wanted:
        if value not in pool:
            return False
        pool.remove(value)
    return True


def migrate_keys(
    file_id: str,
    rows: Iterable[Mapping[str, Any]],
    headers: Sequence[str],
    known_keys: Iterable[str],
) -> Dict[str, str]:
    """Maps freshly computed row keys to previously stored keys for the same rows.

    A stored key is carried over only when its leading value tuple matches exactly
    one row; ambiguous or missing matches are left unmapped.
    """
    row_list = list(rows)
    stored = list(known_keys)
    new_keys = [resolve_key(file_id, row, headers) for row in row_list]
    current = {str(key) for key in new_keys}

    mapping: Dict[str, str] = {}
    claimed: set[str] = set()
    for old_raw in stored:
        if old_raw in current:
            mapping[old_raw] = old_raw
            claimed.add(old_raw)

    for old_raw in stored:
        if old_raw in mapping:
            continue
        old_key = RowKey.parse(old_raw, file_id)
        if old_key is None or not any(old_key.identity):
            continue
        candidates = []
        for row, new_key in zip(row_list, new_keys):
            if new_key.explicit or str(new_key) in claimed:
                continue
            values = [_cell(row, header) for header in headers]
            if _contains_values(values, old_key.identity):
                candidates.append(str(new_key))
        if len(candidates) == 1:
            mapping[candidates[0]] = old_raw
            claimed.add(candidates[0])
        else:
            logger.warning(
                "Row key drift: stored key %s matched %s rows in file %s; treating as no prior state",
                old_raw,
                len(candidates),
                file_id,
            )
    return mapping
