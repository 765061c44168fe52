# siteflow/workflow/observations.py

from __future__ import annotations

import sqlite3
import threading
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from siteflow.core.identity import normalize_site_code
from siteflow.core.stores import (
    default_sqlite_path,
    ensure_sqlite_component_schema,
    open_sqlite_connection,
    storage_json_dumps,
    storage_json_loads,
    storage_mode,
)
from siteflow.workflow.actions import utc_now


class ObservationStatus(str, Enum):
    NONE = ""
    PENDING = "Pending"
    RESOLVED = "Resolved"


class SiteObservation(BaseModel):
    """A role's own marker for a site; never read on behalf of another role."""

    role: str
    site_code: str
    row_key: str = ""
    file_id: str = ""
    user_id: str = ""
    status: ObservationStatus = ObservationStatus.NONE
    type_of_issue: str = ""
    remarks: str = ""
    photos: List[str] = Field(default_factory=list)
    updated_at: str = Field(default_factory=utc_now)

    @property
    def subject(self) -> str:
        return self.row_key or f"site:{normalize_site_code(self.site_code)}"


class ObservationStore:
    """Role-scoped observation state keyed by (row key or site code, role)."""
    SCHEMA_COMPONENT = "site_observations"
    SCHEMA_VERSION = 1

    def __init__(self, mode: Optional[str] = None, sqlite_path: Optional[str] = None):
        mode = mode or storage_mode("SITEFLOW_OBSERVATION_STORE", storage_mode("SITEFLOW_STORE", "inmem"))
        self._use_sqlite = mode == "sqlite"
        self._observations: Dict[Tuple[str, str], SiteObservation] = {}
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
                CREATE TABLE IF NOT EXISTS site_observations (
                  subject TEXT NOT NULL,
                  role TEXT NOT NULL,
                  site_code TEXT NOT NULL,
                  row_key TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL,
                  payload_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (subject, role)
                )
                """
            )

    def set(self, observation: SiteObservation) -> SiteObservation:
        stored = observation.model_copy(deep=True)
        stored.site_code = normalize_site_code(stored.site_code)
        stored.updated_at = utc_now()
        if self._use_sqlite:
            with self._lock:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO site_observations (subject, role, site_code, row_key, status, payload_json, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(subject, role) DO UPDATE SET
                          site_code=excluded.site_code,
                          status=excluded.status,
                          payload_json=excluded.payload_json,
                          updated_at=excluded.updated_at
                        """,
                        (
                            stored.subject,
                            stored.role,
                            stored.site_code,
                            stored.row_key,
                            stored.status.value,
                            storage_json_dumps(stored.model_dump(mode="json")),
                            stored.updated_at,
                        ),
                    )
            return stored

        with self._lock:
            self._observations[(stored.subject, stored.role)] = stored
        return stored.model_copy(deep=True)

    def get(self, role: str, *, row_key: Optional[str] = None, site_code: Optional[str] = None) -> Optional[SiteObservation]:
        """Looks up by exact row key first, then by the latest entry for the site code."""
        code = normalize_site_code(site_code)
        if self._use_sqlite:
            with self._connect() as conn:
                row = None
                if row_key:
                    row = conn.execute(
                        "SELECT payload_json FROM site_observations WHERE subject = ? AND role = ?",
                        (row_key, role),
                    ).fetchone()
                if row is None and code:
                    row = conn.execute(
                        """
                        SELECT payload_json FROM site_observations
                        WHERE site_code = ? AND role = ?
                        ORDER BY updated_at DESC LIMIT 1
                        """,
                        (code, role),
                    ).fetchone()
            return SiteObservation.model_validate(storage_json_loads(row["payload_json"])) if row else None

        with self._lock:
            if row_key and (row_key, role) in self._observations:
                return self._observations[(row_key, role)].model_copy(deep=True)
            if not code:
                return None
            matches = [o for o in self._observations.values() if o.role == role and o.site_code == code]
            if not matches:
                return None
            return max(matches, key=lambda o: o.updated_at).model_copy(deep=True)

    def status(self, role: str, *, row_key: Optional[str] = None, site_code: Optional[str] = None) -> ObservationStatus:
        observation = self.get(role, row_key=row_key, site_code=site_code)
        return observation.status if observation is not None else ObservationStatus.NONE

    def mark(
        self,
        role: str,
        status: ObservationStatus,
        *,
        site_code: str,
        row_key: str = "",
        file_id: str = "",
        user_id: str = "",
    ) -> SiteObservation:
        """Overwrites only the status, keeping the role's remarks and photos."""
        current = self.get(role, row_key=row_key or None, site_code=site_code)
        if current is None or (row_key and current.row_key and current.row_key != row_key):
            current = SiteObservation(role=role, site_code=site_code, row_key=row_key, file_id=file_id)
        current.status = status
        if user_id:
            current.user_id = user_id
        return self.set(current)

    def list_for_site(self, site_code: str) -> List[SiteObservation]:
        code = normalize_site_code(site_code)
        if self._use_sqlite:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT payload_json FROM site_observations WHERE site_code = ? ORDER BY updated_at ASC",
                    (code,),
                ).fetchall()
            return [SiteObservation.model_validate(storage_json_loads(row["payload_json"])) for row in rows]

        with self._lock:
            items = [o.model_copy(deep=True) for o in self._observations.values() if o.site_code == code]
        return sorted(items, key=lambda o: o.updated_at)
