from __future__ import annotations

import json
import os
import sqlite3
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from siteflow.core.identity import normalize_site_code
from siteflow.workflow.actions import Action, ActionNotFound

DEFAULT_SQLITE_BUSY_TIMEOUT_MS = 5000


def _env(name: str, default: str) -> str:
    return os.getenv(name, default)


def default_sqlite_path() -> str:
    return _env("SITEFLOW_SQLITE_PATH", "./siteflow_state.db")


def sqlite_busy_timeout_ms() -> int:
    raw = _env("SITEFLOW_SQLITE_BUSY_TIMEOUT_MS", str(DEFAULT_SQLITE_BUSY_TIMEOUT_MS))
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_SQLITE_BUSY_TIMEOUT_MS
    return max(0, value)


def storage_mode(name: str, default: str = "inmem") -> str:
    return _env(name, default).strip().lower()


def sanitize_jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): sanitize_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [sanitize_jsonable(item) for item in value]
    return str(value)


def storage_json_dumps(value: Any) -> str:
    return json.dumps(sanitize_jsonable(value), ensure_ascii=False, separators=(",", ":"))


def storage_json_loads(value: str) -> Any:
    return json.loads(value)


def open_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout = {sqlite_busy_timeout_ms()}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    return conn


def ensure_sqlite_schema_meta(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_meta (
          component TEXT PRIMARY KEY,
          version INTEGER NOT NULL,
          updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )


def ensure_sqlite_component_schema(conn: sqlite3.Connection, component: str, target_version: int) -> int:
    ensure_sqlite_schema_meta(conn)
    row = conn.execute("SELECT version FROM schema_meta WHERE component = ?", (component,)).fetchone()
    if row is None:
        conn.execute(
            """
            INSERT INTO schema_meta (component, version, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            """,
            (component, target_version),
        )
        return target_version

    current_version = int(row["version"])
    if current_version > target_version:
        raise RuntimeError(
            f"Unsupported newer schema for component '{component}': {current_version} > {target_version}"
        )
    if current_version < target_version:
        conn.execute(
            """
            UPDATE schema_meta
            SET version = ?, updated_at = CURRENT_TIMESTAMP
            WHERE component = ?
            """,
            (target_version, component),
        )
    return target_version


class ActionStore(Protocol):
    def add(self, action: Action) -> Action: ...

    def save(self, action: Action) -> Action: ...

    def get(self, action_id: str) -> Optional[Action]: ...

    def require(self, action_id: str) -> Action: ...

    def list_for_site(self, site_code: str) -> List[Action]: ...

    def list_assigned_to(self, role: str, user_id: Optional[str] = None) -> List[Action]: ...

    def list_assigned_by(self, role: str, user_id: Optional[str] = None) -> List[Action]: ...

    def list_all(self) -> List[Action]: ...


class InMemoryActionStore:
    def __init__(self) -> None:
        self._actions: Dict[str, Action] = {}
        self._lock = threading.Lock()

    def add(self, action: Action) -> Action:
        with self._lock:
            self._actions[action.id] = action.model_copy(deep=True)
        return action

    def save(self, action: Action) -> Action:
        return self.add(action)

    def get(self, action_id: str) -> Optional[Action]:
        with self._lock:
            action = self._actions.get(action_id)
            return action.model_copy(deep=True) if action is not None else None

    def require(self, action_id: str) -> Action:
        action = self.get(action_id)
        if action is None:
            raise ActionNotFound(action_id)
        return action

    def _select(self, predicate: Callable[[Action], bool]) -> List[Action]:
        with self._lock:
            selected = [a.model_copy(deep=True) for a in self._actions.values() if predicate(a)]
        return sorted(selected, key=lambda a: a.created_at)

    def list_for_site(self, site_code: str) -> List[Action]:
        code = normalize_site_code(site_code)
        return self._select(lambda a: a.site_code == code)

    def list_assigned_to(self, role: str, user_id: Optional[str] = None) -> List[Action]:
        return self._select(
            lambda a: a.assigned_to_role == role and (user_id is None or a.assigned_to_user_id in ("", user_id))
        )

    def list_assigned_by(self, role: str, user_id: Optional[str] = None) -> List[Action]:
        return self._select(
            lambda a: a.assigned_by_role == role and (user_id is None or a.assigned_by_user_id in ("", user_id))
        )

    def list_all(self) -> List[Action]:
        return self._select(lambda a: True)


class SQLiteActionStore:
    SCHEMA_COMPONENT = "actions"
    SCHEMA_VERSION = 1

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or default_sqlite_path()
        self._write_lock = threading.Lock()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return open_sqlite_connection(self.db_path)

    def _init_db(self) -> None:
        with self._connect() as conn:
            ensure_sqlite_component_schema(conn, self.SCHEMA_COMPONENT, self.SCHEMA_VERSION)
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS actions (
                  id TEXT PRIMARY KEY,
                  site_code TEXT NOT NULL,
                  row_key TEXT NOT NULL DEFAULT '',
                  assigned_to_role TEXT NOT NULL,
                  assigned_to_user_id TEXT NOT NULL DEFAULT '',
                  assigned_by_role TEXT NOT NULL,
                  assigned_by_user_id TEXT NOT NULL DEFAULT '',
                  status TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  payload_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_actions_site ON actions (site_code)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_actions_to ON actions (assigned_to_role, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_actions_by ON actions (assigned_by_role)")

    def add(self, action: Action) -> Action:
        payload_json = storage_json_dumps(action.model_dump(mode="json"))
        with self._write_lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO actions (
                      id, site_code, row_key, assigned_to_role, assigned_to_user_id,
                      assigned_by_role, assigned_by_user_id, status, created_at, payload_json, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(id) DO UPDATE SET
                      site_code=excluded.site_code,
                      row_key=excluded.row_key,
                      assigned_to_role=excluded.assigned_to_role,
                      assigned_to_user_id=excluded.assigned_to_user_id,
                      status=excluded.status,
                      payload_json=excluded.payload_json,
                      updated_at=CURRENT_TIMESTAMP
                    """,
                    (
                        action.id,
                        action.site_code,
                        action.row_key,
                        action.assigned_to_role,
                        action.assigned_to_user_id,
                        action.assigned_by_role,
                        action.assigned_by_user_id,
                        action.status.value,
                        action.created_at,
                        payload_json,
                    ),
                )
        return action

    def save(self, action: Action) -> Action:
        return self.add(action)

    def _rows(self, where: str, params: tuple) -> List[Action]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT payload_json FROM actions WHERE {where} ORDER BY created_at ASC",
                params,
            ).fetchall()
        return [Action.model_validate(storage_json_loads(row["payload_json"])) for row in rows]

    def get(self, action_id: str) -> Optional[Action]:
        rows = self._rows("id = ?", (action_id,))
        return rows[0] if rows else None

    def require(self, action_id: str) -> Action:
        action = self.get(action_id)
        if action is None:
            raise ActionNotFound(action_id)
        return action

    def list_for_site(self, site_code: str) -> List[Action]:
        return self._rows("site_code = ?", (normalize_site_code(site_code),))

    def list_assigned_to(self, role: str, user_id: Optional[str] = None) -> List[Action]:
        if user_id is None:
            return self._rows("assigned_to_role = ?", (role,))
        return self._rows(
            "assigned_to_role = ? AND assigned_to_user_id IN ('', ?)",
            (role, user_id),
        )

    def list_assigned_by(self, role: str, user_id: Optional[str] = None) -> List[Action]:
        if user_id is None:
            return self._rows("assigned_by_role = ?", (role,))
        return self._rows(
            "assigned_by_role = ? AND assigned_by_user_id IN ('', ?)",
            (role, user_id),
        )

    def list_all(self) -> List[Action]:
        return self._rows("1 = 1", ())


def create_action_store_from_env() -> InMemoryActionStore | SQLiteActionStore:
    mode = storage_mode("SITEFLOW_STORE", "inmem")
    if mode == "sqlite":
        return SQLiteActionStore()
    return InMemoryActionStore()
