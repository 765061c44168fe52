from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from siteflow.client.gateway import ActionGateway, GatewayError
from siteflow.core.config import SyncConfig, config
from siteflow.workflow.actions import Action, ActionNotFound, ActionStatus, InvalidTransition
from siteflow.workflow.exclusion import ExclusionSet

logger = logging.getLogger(__name__)

FlushFn = Callable[[str, Dict[str, Any]], None]


class Debouncer:
    """Coalesces writes per key; only the last write before a flush is sent.

    Writes for one key are flushed in submission order and never overlap.
    """

    def __init__(
        self,
        flush_fn: FlushFn,
        window_s: Optional[float] = None,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        self.flush_fn = flush_fn
        self.window_s = window_s if window_s is not None else config.sync.debounce_s
        self._timer_factory = timer_factory
        self._pending: Dict[str, Dict[str, Any]] = {}
        self._timers: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._send_locks: Dict[str, threading.Lock] = {}

    def submit(self, key: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            merged = dict(self._pending.get(key, {}))
            merged.update(payload)
            self._pending[key] = merged
            if key in self._timers:
                return
            timer = self._timer_factory(self.window_s, self.flush, args=(key,))
            timer.daemon = True
            self._timers[key] = timer
        timer.start()

    def pending(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            payload = self._pending.get(key)
            return dict(payload) if payload is not None else None

    def flush(self, key: str) -> bool:
        with self._lock:
            send_lock = self._send_locks.setdefault(key, threading.Lock())
        with send_lock:
            with self._lock:
                timer = self._timers.pop(key, None)
                payload = self._pending.pop(key, None)
            if timer is not None and timer is not threading.current_thread():
                timer.cancel()
            if payload is None:
                return False
            self.flush_fn(key, payload)
            return True

    def flush_all(self) -> int:
        with self._lock:
            keys = list(self._pending)
        return sum(1 for key in keys if self.flush(key))

    def cancel(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._pending.clear()
        for timer in timers:
            timer.cancel()


class ExclusionCache:
    """Last known exclusion set per file; a failed fetch keeps showing it."""

    def __init__(self, fetch: Callable[[str], ExclusionSet]) -> None:
        self._fetch = fetch
        self._known: Dict[str, ExclusionSet] = {}
        self._lock = threading.Lock()

    def get(self, file_id: str) -> ExclusionSet:
        try:
            fresh = self._fetch(file_id)
        except GatewayError as exc:
            with self._lock:
                known = self._known.get(file_id)
            logger.warning(
                "Exclusion fetch failed for file %s; keeping %s known exclusions: %s",
                file_id,
                len(known.site_codes) if known is not None else 0,
                exc,
            )
            return known if known is not None else ExclusionSet(file_id=file_id)
        with self._lock:
            previous = self._known.get(file_id)
            if previous is not None:
                # Exclusions are append only; never forget a site already hidden.
                fresh = ExclusionSet(
                    file_id=file_id,
                    row_keys=sorted(set(previous.row_keys) | set(fresh.row_keys)),
                    site_codes=sorted(set(previous.site_codes) | set(fresh.site_codes)),
                )
            self._known[file_id] = fresh
        return fresh

    def last_known(self, file_id: str) -> Optional[ExclusionSet]:
        with self._lock:
            return self._known.get(file_id)


class SyncAdapter:
    """Single synchronization point between the local action view and the remote store."""

    def __init__(
        self,
        gateway: ActionGateway,
        *,
        sync_config: Optional[SyncConfig] = None,
        debouncer: Optional[Debouncer] = None,
    ) -> None:
        self.gateway = gateway
        self.sync_config = sync_config or config.sync
        self.debouncer = debouncer or Debouncer(self._flush_draft, self.sync_config.debounce_s)
        self.exclusions = ExclusionCache(gateway.list_excluded_sites)
        self._mirror: Dict[str, Action] = {}
        self._drafts: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    # Local view.

    def _overlay(self, action: Action) -> Action:
        draft = self._drafts.get(action.id)
        if not draft:
            return action.model_copy(deep=True)
        return action.model_copy(update=draft, deep=True)

    def get(self, action_id: str) -> Optional[Action]:
        with self._lock:
            action = self._mirror.get(action_id)
            return self._overlay(action) if action is not None else None

    def _is_excluded(self, action: Action) -> bool:
        known = self.exclusions.last_known(action.source_file_id)
        return known is not None and known.contains(action.row_key, action.site_code)

    def actions(self) -> List[Action]:
        with self._lock:
            return [self._overlay(a) for a in self._mirror.values() if not self._is_excluded(a)]

    def has_draft(self, action_id: str) -> bool:
        with self._lock:
            return action_id in self._drafts

    def _reconcile(self, remote: Action) -> Action:
        local = self._mirror.get(remote.id)
        if local is not None and local.updated_at > remote.updated_at and remote.status != ActionStatus.COMPLETED:
            return local
        return remote

    # Remote reads.

    def refresh(self) -> Optional[List[Action]]:
        try:
            remote = self.gateway.list_my_actions() + self.gateway.list_actions_i_routed()
        except GatewayError as exc:
            logger.warning("Action refresh failed; keeping %s local actions: %s", len(self._mirror), exc)
            return None
        with self._lock:
            mirror = {action.id: self._reconcile(action) for action in remote}
            for action_id in set(self._mirror) - set(mirror):
                if self._drafts.pop(action_id, None) is not None:
                    logger.warning("Action %s left this view remotely; dropping its unsent draft", action_id)
            self._mirror = mirror
        for file_id in sorted({action.source_file_id for action in remote}):
            self.exclusions.get(file_id)
        return self.actions()

    def excluded_sites(self, file_id: str) -> ExclusionSet:
        return self.exclusions.get(file_id)

    # Writes.

    def edit(self, action_id: str, *, remarks: Optional[str] = None, photos: Optional[List[str]] = None) -> None:
        """Records a remarks/photos edit locally and schedules a debounced write."""
        patch: Dict[str, Any] = {}
        if remarks is not None:
            patch["remarks"] = remarks
        if photos is not None:
            patch["photos"] = list(photos)
        if not patch:
            return
        with self._lock:
            draft = dict(self._drafts.get(action_id, {}))
            draft.update(patch)
            self._drafts[action_id] = draft
        self.debouncer.submit(action_id, patch)

    def _flush_draft(self, action_id: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            current = self._mirror.get(action_id)
        if current is None:
            logger.warning("Dropping draft for unknown action %s", action_id)
            return
        if current.status == ActionStatus.COMPLETED:
            logger.warning("Action %s completed remotely; keeping unsent draft locally", action_id)
            return
        try:
            saved = self.gateway.update_action_status(
                action_id,
                current.status.value,
                payload.get("remarks"),
                photos=payload.get("photos"),
            )
        except GatewayError as exc:
            logger.warning("Draft write for action %s failed; keeping it locally: %s", action_id, exc)
            return
        except InvalidTransition as exc:
            logger.warning("Action %s completed remotely; keeping unsent draft locally: %s", action_id, exc)
            with self._lock:
                local = self._mirror.get(action_id)
                if local is not None:
                    self._mirror[action_id] = local.model_copy(update={"status": ActionStatus.COMPLETED})
            return
        except ActionNotFound:
            logger.warning("Action %s no longer exists remotely; dropping its draft", action_id)
            with self._lock:
                self._mirror.pop(action_id, None)
                self._drafts.pop(action_id, None)
            return
        with self._lock:
            self._mirror[action_id] = saved
            draft = self._drafts.get(action_id, {})
            if all(draft.get(k) == v for k, v in payload.items()) and set(draft) <= set(payload):
                self._drafts.pop(action_id, None)

    def set_status(
        self,
        action_id: str,
        status: str,
        remarks: Optional[str] = None,
        *,
        outcome: Optional[str] = None,
    ) -> Optional[Action]:
        self.debouncer.flush(action_id)
        try:
            saved = self.gateway.update_action_status(action_id, status, remarks, outcome=outcome)
        except GatewayError as exc:
            logger.warning("Status update for action %s failed; leaving it unchanged: %s", action_id, exc)
            return None
        with self._lock:
            self._mirror[action_id] = saved
            return self._overlay(saved)

    def reroute(
        self,
        action_id: str,
        new_assignee_role: str,
        new_assignee_user_id: Optional[str] = None,
        remarks: Optional[str] = None,
        photos: Optional[List[str]] = None,
    ) -> Optional[Action]:
        try:
            saved = self.gateway.reroute_action(action_id, new_assignee_role, new_assignee_user_id, remarks, photos)
        except GatewayError as exc:
            logger.warning("Reroute of action %s failed; keeping prior assignee: %s", action_id, exc)
            return None
        with self._lock:
            # Replace the whole record so no reader ever sees two assignees.
            self._mirror[action_id] = saved
            return self._overlay(saved)


class Poller:
    """Calls ``refresh`` on a fixed interval in a daemon thread."""

    def __init__(self, refresh: Callable[[], Any], interval_s: Optional[float] = None) -> None:
        self.refresh = refresh
        self.interval_s = interval_s if interval_s is not None else config.sync.refresh_interval_s
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="siteflow-poller", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.is_set():
            self.refresh()
            self._stop.wait(self.interval_s)

    def stop(self, timeout_s: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout_s)
            self._thread = None
