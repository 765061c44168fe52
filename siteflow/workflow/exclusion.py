# siteflow/workflow/exclusion.py

from __future__ import annotations

import logging
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set

from pydantic import BaseModel, Field

from siteflow.core.identity import normalize_site_code, resolve_row_key
from siteflow.core.site_record import canonical_header_map
from siteflow.core.stores import (
    default_sqlite_path,
    ensure_sqlite_component_schema,
    open_sqlite_connection,
    storage_mode,
)
from siteflow.workflow.actions import Action

logger = logging.getLogger(__name__)


class ExclusionSet(BaseModel):
    file_id: Optional[str] = None
    row_keys: List[str] = Field(default_factory=list)
    site_codes: List[str] = Field(default_factory=list)

    def contains(self, row_key: Optional[str], site_code: Optional[str]) -> bool:
        if row_key and row_key in self.row_keys:
            return True
        code = normalize_site_code(site_code)
        return bool(code) and code in self.site_codes


class ExclusionStore:
    """Append-only record of sites finalized by the terminal authority."""
    SCHEMA_COMPONENT = "exclusions"
    SCHEMA_VERSION = 1

    def __init__(self, mode: Optional[str] = None, sqlite_path: Optional[str] = None):
        mode = mode or storage_mode("SITEFLOW_EXCLUSION_STORE", storage_mode("SITEFLOW_STORE", "inmem"))
        self._use_sqlite = mode == "sqlite"
        self._row_keys: Dict[str, Set[str]] = {}
        self._site_codes: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()
        self._sqlite_path = sqlite_path or default_sqlite_path()
        if self._use_sqlite:
            self._init_sqlite()

    def _connect(self) -> sqlite3.Connection:
        return open_sqlite_connection(self._sqlite_path)

    def _init_sqlite(self) -> None:
        with self._connect() as conn:
            ensure_sqlite_component_schema(conn, self.SCHEMA_COMPONENT, self.SCHEMA_VERSION)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS exclusions (
                  file_id TEXT NOT NULL,
                  row_key TEXT NOT NULL DEFAULT '',
                  site_code TEXT NOT NULL DEFAULT '',
                  created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                  PRIMARY KEY (file_id, row_key, site_code)
                )
                """
            )

    def add(self, file_id: str, row_key: Optional[str], site_code: Optional[str]) -> None:
        key = str(row_key or "")
        code = normalize_site_code(site_code)
        if not key and not code:
            return
        if self._use_sqlite:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT OR IGNORE INTO exclusions (file_id, row_key, site_code)
                        VALUES (?, ?, ?)
                        """,
                        (file_id, key, code),
                    )
            return

        with self._lock:
            if key:
                self._row_keys.setdefault(file_id, set()).add(key)
            if code:
                self._site_codes.setdefault(file_id, set()).add(code)

    def get(self, file_id: Optional[str] = None) -> ExclusionSet:
        """Returns one file's exclusions, or the union across files when ``file_id`` is None."""
        if self._use_sqlite:
            query = "SELECT row_key, site_code FROM exclusions"
            params: tuple = ()
            if file_id is not None:
                query += " WHERE file_id = ?"
                params = (file_id,)
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
            row_keys = {row["row_key"] for row in rows if row["row_key"]}
            site_codes = {row["site_code"] for row in rows if row["site_code"]}
        else:
            with self._lock:
                if file_id is None:
                    row_keys = set().union(*self._row_keys.values()) if self._row_keys else set()
                    site_codes = set().union(*self._site_codes.values()) if self._site_codes else set()
                else:
                    row_keys = set(self._row_keys.get(file_id, set()))
                    site_codes = set(self._site_codes.get(file_id, set()))
        return ExclusionSet(file_id=file_id, row_keys=sorted(row_keys), site_codes=sorted(site_codes))


class ExclusionFilter:
    """Hides finalized sites from every role's active views."""

    def __init__(self, store: ExclusionStore) -> None:
        self.store = store

    def excluded_sites(self, file_id: Optional[str] = None) -> ExclusionSet:
        return self.store.get(file_id)

    def is_excluded(self, row_key: Optional[str], site_code: Optional[str], file_id: Optional[str] = None) -> bool:
        if self.store.get(file_id).contains(row_key, site_code):
            return True
        # Site codes apply across files because row keys drift between re-uploads.
        return file_id is not None and self.store.get(None).contains(None, site_code)

    def filter_rows(
        self,
        file_id: str,
        rows: Iterable[Mapping[str, Any]],
        headers: Sequence[str],
        exclusions: Optional[ExclusionSet] = None,
    ) -> List[Mapping[str, Any]]:
        current = exclusions or self._combined(file_id)
        header_map = canonical_header_map(headers)
        site_header = header_map.get("site_code")
        kept: List[Mapping[str, Any]] = []
        removed = 0
        for row in rows:
            row_key = resolve_row_key(file_id, row, headers)
            site_code = row.get(site_header) if site_header else None
            if current.contains(row_key, site_code):
                removed += 1
                continue
            kept.append(row)
        if removed:
            logger.debug("Exclusion filter removed %s rows for file %s", removed, file_id)
        return kept

    def filter_actions(self, actions: Iterable[Action], exclusions: Optional[ExclusionSet] = None) -> List[Action]:
        current = exclusions or self.store.get(None)
        return [a for a in actions if not current.contains(a.row_key or a.origin_row_key, a.site_code)]

    def _combined(self, file_id: str) -> ExclusionSet:
        own = self.store.get(file_id)
        everywhere = self.store.get(None)
        return ExclusionSet(
            file_id=file_id,
            row_keys=own.row_keys,
            site_codes=sorted(set(own.site_codes) | set(everywhere.site_codes)),
        )
