"""Decides when edits are saved locally and when they are pushed to the remote store."""

import asyncio
import hashlib
import logging
import statistics
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.config import get_scheduler_config
from shared.db_operations import LocalStore
from shared.models import Page
from services.sync_service.events import SYNC_ERROR, SYNC_PROGRESS, EventEmitter

logger = logging.getLogger(__name__)

CHANGE_HISTORY_LIMIT = 100
SESSION_GAP_SECONDS = 300.0
ACTIVITY_CHECK_INTERVAL = 5.0
INACTIVITY_THRESHOLD = 60.0
CONSECUTIVE_CHANGE_LIMIT = 10
ADAPTIVE_MIN_SESSIONS = 5
RETUNE_MIN_SESSIONS = 3

LocalSaveHandler = Callable[[str, str], Awaitable[Any]]
CloudSyncHandler = Callable[..., Awaitable[Dict[str, Any]]]


def normalize_page_id(page_id: Any) -> Optional[str]:
    """Trim a page id to its canonical string form; empty ids become None."""
    if page_id is None:
        return None
    normalized = str(page_id).strip()
    return normalized or None


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


class Debouncer:
    """Runs a coroutine function once calls stop arriving for ``delay`` seconds."""

    def __init__(self, func: Callable[..., Awaitable[Any]], delay: float):
        self.func = func
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None
        self._args: tuple = ()
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def call(self, *args) -> None:
        self.cancel()
        self._args = args
        self._handle = asyncio.get_running_loop().call_later(self.delay, self._fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    async def flush(self) -> Any:
        """Run a pending call immediately; no-op when nothing is pending."""
        if self._handle is None:
            return None
        self.cancel()
        return await self.func(*self._args)

    async def wait(self) -> None:
        """Wait for a call that has already fired to finish."""
        if self._task is not None and not self._task.done():
            await self._task

    def _fire(self) -> None:
        self._handle = None
        self._task = asyncio.get_running_loop().create_task(self.func(*self._args))


class SmartSync:
    """Turns keystroke-level content changes into local saves and cloud pushes.

    Local saves are debounced on every real change. Cloud pushes are scheduled
    only when the change heuristics say so, with a hard ceiling of
    ``max_sync_delay`` seconds between pushes while changes are pending.
    """

    def __init__(
        self,
        on_local_save: LocalSaveHandler,
        on_cloud_sync: CloudSyncHandler,
        emitter: Optional[EventEmitter] = None,
        config: Optional[dict] = None,
        on_local_delete: Optional[Callable[[str], Any]] = None,
        page_source: Optional[Callable[[bool], List[Page]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the scheduler.

        Args:
            on_local_save: ``async (page_id, content)`` persisting an edit locally
            on_cloud_sync: ``async (page_id, payload, is_delete=False)`` pushing to remote;
                returns a dict with ``success``
            emitter: Event emitter for sync-progress and sync-error events
            config: Overrides for values from get_scheduler_config()
            on_local_delete: Removes a page from local storage
            page_source: Returns all pages (True) or pending pages (False) for sync_all
            clock: Wall clock in seconds
        """
        self.on_local_save = on_local_save
        self.on_cloud_sync = on_cloud_sync
        self.on_local_delete = on_local_delete
        self.page_source = page_source
        self.emitter = emitter or EventEmitter()
        self.config = {**get_scheduler_config(), **(config or {})}
        self.clock = clock

        self._local_save = Debouncer(self._perform_local_save, self.config["local_save_delay"])
        self._cloud_sync = Debouncer(self._perform_cloud_sync, self.config["cloud_sync_delay"])
        self._force_sync_handle: Optional[asyncio.TimerHandle] = None
        self._force_sync_task: Optional[asyncio.Task] = None
        self._activity_task: Optional[asyncio.Task] = None

        self.current_page_id: Optional[str] = None
        self.last_content: Optional[str] = None
        self.last_local_save: Optional[float] = None
        self.last_cloud_sync: Optional[float] = None
        self.last_change_time: Optional[float] = None
        self.last_activity_time = clock()
        self.session_start: Optional[float] = None
        self.pending_changes = False
        self.sync_scheduled = False
        self.consecutive_changes = 0
        self.change_history: List[Dict[str, float]] = []
        self.editor_active_time = 0.0
        self.editor_inactive_time = 0.0
        self.user_patterns = {
            "avgEditSessionLength": 0.0,
            "avgTimeBetweenEdits": 0.0,
            "typicalChangeSize": 0.0,
            "sessionCount": 0,
        }
        self.server_document_timestamps: Dict[str, Any] = {}
        self.counters = {
            "localSaves": 0,
            "cloudSyncs": 0,
            "failedCloudSyncs": 0,
            "skippedChanges": 0,
            "forcedSyncs": 0,
            "adaptiveAdjustments": 0,
        }

    # Lifecycle

    def start(self) -> None:
        """Start the background activity tracker."""
        if self._activity_task is None:
            self._activity_task = asyncio.get_running_loop().create_task(self._activity_loop())

    async def stop(self) -> None:
        self._local_save.cancel()
        self._cloud_sync.cancel()
        self._cancel_force_sync()
        if self._activity_task is not None:
            self._activity_task.cancel()
            try:
                await self._activity_task
            except asyncio.CancelledError:
                pass
            self._activity_task = None

    # Public API

    async def handle_content_change(self, page_id: str, content: str) -> Dict[str, bool]:
        """
        Record an editor change and schedule saves.

        Args:
            page_id: The edited page
            content: Full current content

        Returns:
            ``{"savedLocally": bool, "scheduledForSync": bool}``
        """
        page_id = normalize_page_id(page_id)
        now = self.clock()

        if self.current_page_id is not None and page_id != self.current_page_id:
            await self._switch_page()
        self.current_page_id = page_id

        self.last_activity_time = now
        if self.session_start is None:
            self.session_start = now

        has_changed, change_size, is_significant = self._calculate_change_metrics(content)
        if not has_changed:
            self.counters["skippedChanges"] += 1
            return {"savedLocally": False, "scheduledForSync": False}

        self.pending_changes = True
        self.consecutive_changes += 1
        self._local_save.call(page_id, content)

        if self.config["collect_metrics"]:
            self.change_history.append({
                "timestamp": now,
                "changeSize": change_size,
                "timeSinceLastChange": now - self.last_change_time if self.last_change_time else 0.0,
            })
            if len(self.change_history) > CHANGE_HISTORY_LIMIT:
                self.change_history.pop(0)
        self.last_change_time = now

        should_sync = self._should_trigger_cloud_sync(change_size, is_significant)
        if should_sync:
            self.sync_scheduled = True
            self._cloud_sync.call(page_id, content)

        self._ensure_max_sync_delay(page_id, content)

        return {"savedLocally": True, "scheduledForSync": should_sync}

    async def force_sync(self, page_id: str, content: str) -> Dict[str, Any]:
        """Cancel pending timers, then save locally and push immediately."""
        page_id = normalize_page_id(page_id)
        self._local_save.cancel()
        self._cloud_sync.cancel()
        self.counters["forcedSyncs"] += 1

        await self._perform_local_save(page_id, content)
        return await self._perform_cloud_sync(page_id, content)

    async def prepare_close(self, page_id: Optional[str] = None, content: Optional[str] = None) -> bool:
        """Flush pending work before the editor is torn down."""
        self._cloud_sync.cancel()
        if page_id is not None and content is not None:
            self._local_save.cancel()
            if self.pending_changes:
                await self._perform_local_save(normalize_page_id(page_id), content)
        else:
            await self._local_save.flush()

        if self.pending_changes and self.current_page_id is not None:
            await self._perform_cloud_sync(
                normalize_page_id(page_id) or self.current_page_id,
                content if content is not None else self.last_content or "",
            )

        await self.stop()
        return True

    async def sync_all(self, force_all: bool = False, local_only: bool = False) -> Dict[str, Any]:
        """
        Save and push every pending page, or every page when ``force_all``.

        Each page emits ``sync-progress`` events; a failing page does not stop
        the rest.

        Returns:
            ``{"success": bool, "results": {total, succeeded, failed, skipped, details}}``
        """
        self._local_save.cancel()
        self._cloud_sync.cancel()

        try:
            pages = self.page_source(force_all) if self.page_source else []
        except Exception as e:
            logger.error(f"Error listing pages for global sync: {e}", exc_info=True)
            self.emitter.emit(SYNC_ERROR, {"error": str(e)})
            return {
                "success": False,
                "error": str(e),
                "results": {"total": 0, "succeeded": 0, "failed": 1, "skipped": 0, "details": {}},
            }

        results = {"total": len(pages), "succeeded": 0, "failed": 0, "skipped": 0, "details": {}}

        for index, page in enumerate(pages):
            processed = index + 1
            self._emit_progress("processing", page.id, index, results["total"])
            try:
                if not page.content and not force_all:
                    results["skipped"] += 1
                    results["details"][page.id] = {"status": "skipped", "reason": "no content"}
                    self._emit_progress("skipped", page.id, processed, results["total"])
                    continue

                await self._perform_local_save(page.id, page.content)

                if local_only:
                    results["succeeded"] += 1
                    results["details"][page.id] = {"status": "local-only-success"}
                    self._emit_progress("local-saved", page.id, processed, results["total"])
                    continue

                outcome = await self._perform_cloud_sync(page.id, page.content)
                if outcome.get("success"):
                    results["succeeded"] += 1
                    results["details"][page.id] = {"status": "success"}
                    self._emit_progress("synced", page.id, processed, results["total"])
                else:
                    results["failed"] += 1
                    results["details"][page.id] = {"status": "failed", "error": outcome.get("error")}
                    self._emit_progress("failed", page.id, processed, results["total"], outcome.get("error"))
            except Exception as e:
                logger.error(f"Error syncing page {page.id}: {e}", exc_info=True)
                results["failed"] += 1
                results["details"][page.id] = {"status": "failed", "error": str(e)}
                self._emit_progress("error", page.id, processed, results["total"], str(e))

        return {"success": results["failed"] == 0, "results": results}

    async def handle_page_deletion(self, page_id: str) -> Dict[str, Any]:
        """Drop local bookkeeping for a page and push its deletion."""
        page_id = normalize_page_id(page_id)
        try:
            if self.current_page_id == page_id:
                self._local_save.cancel()
                self._cloud_sync.cancel()
                self._cancel_force_sync()
                self.pending_changes = False
                self.sync_scheduled = False
                self.current_page_id = None
                self.last_content = None

            if self.on_local_delete is not None:
                result = self.on_local_delete(page_id)
                if asyncio.iscoroutine(result):
                    await result

            response = await self.on_cloud_sync(
                page_id,
                {
                    "pageId": page_id,
                    "metadata": {"operation": "delete", "timestamp": self.clock()},
                    "content": None,
                    "isDeleteOperation": True,
                },
                True,
            )
            self.server_document_timestamps.pop(page_id, None)
            return {"success": bool(response and response.get("success")), "error": (response or {}).get("error")}
        except Exception as e:
            logger.error(f"Error during page deletion of {page_id}: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "lastLocalSave": self.last_local_save,
            "lastCloudSync": self.last_cloud_sync,
            "pendingChanges": self.pending_changes,
            "consecutiveChanges": self.consecutive_changes,
            "userPatterns": dict(self.user_patterns),
            "counters": dict(self.counters),
            "timing": {
                "localSaveDelay": self.config["local_save_delay"],
                "cloudSyncDelay": self.config["cloud_sync_delay"],
                "maxSyncDelay": self.config["max_sync_delay"],
            },
        }

    # Save and sync

    async def _perform_local_save(self, page_id: str, content: str) -> Dict[str, Any]:
        try:
            started = self.clock()
            await self.on_local_save(page_id, content)
            self.last_content = content
            self.last_local_save = self.clock()
            self.counters["localSaves"] += 1
            return {"success": True, "duration": self.last_local_save - started}
        except Exception as e:
            logger.error(f"Error during local save of {page_id}: {e}", exc_info=True)
            return {"success": False, "error": str(e)}

    async def _perform_cloud_sync(self, page_id: str, content: str) -> Dict[str, Any]:
        try:
            # The remote push reads from local storage, so a pending save must land first
            await self._local_save.flush()

            payload = self._prepare_timestamp_based_sync(page_id, content)
            response = await self.on_cloud_sync(page_id, payload)

            if response and response.get("success"):
                self.last_cloud_sync = self.clock()
                self.pending_changes = False
                self.sync_scheduled = False
                self.consecutive_changes = 0
                self.counters["cloudSyncs"] += 1
                self.server_document_timestamps[page_id] = response.get("serverTimestamp", self.last_cloud_sync)
                self._cancel_force_sync()
                if self.config["adaptive_timing"]:
                    self._update_adaptive_timing()
                return {"success": True}

            self.sync_scheduled = False
            self.counters["failedCloudSyncs"] += 1
            error = (response or {}).get("error") or (response or {}).get("reason") or "Unknown server error"
            return {"success": False, "error": error}
        except Exception as e:
            logger.error(f"Error during cloud sync of {page_id}: {e}", exc_info=True)
            self.sync_scheduled = False
            self.counters["failedCloudSyncs"] += 1
            return {"success": False, "error": str(e)}

    def _prepare_timestamp_based_sync(self, page_id: str, content: str) -> Dict[str, Any]:
        local_timestamp = self.last_cloud_sync or 0
        server_timestamp = self.server_document_timestamps.get(page_id) or 0
        is_first_sync = page_id not in self.server_document_timestamps
        return {
            "pageId": page_id,
            "metadata": {
                "localTimestamp": local_timestamp,
                "contentHash": content_hash(content),
                "contentLength": len(content),
                "isFirstSync": is_first_sync,
            },
            "content": content,
            "requireFullSync": is_first_sync or server_timestamp > local_timestamp,
        }

    async def _switch_page(self) -> None:
        """Land the previous page's pending save before tracking a new page."""
        await self._local_save.flush()
        self.last_content = None
        self.consecutive_changes = 0

    # Heuristics

    def _calculate_change_metrics(self, content: str):
        if self.last_content is None:
            return True, len(content), True

        has_changed = content != self.last_content
        change_size = abs(len(content) - len(self.last_content))
        return has_changed, change_size, change_size >= self.config["significant_change_threshold"]

    def _seconds_since_cloud_sync(self) -> float:
        reference = self.last_cloud_sync or self.session_start
        return self.clock() - reference if reference is not None else 0.0

    def _should_trigger_cloud_sync(self, change_size: int, is_significant: bool) -> bool:
        if is_significant:
            return True

        if change_size < self.config["min_change_threshold"]:
            return False

        if self.last_cloud_sync is None or self._seconds_since_cloud_sync() > self.config["cloud_sync_delay"] * 2:
            return True

        if self.consecutive_changes > CONSECUTIVE_CHANGE_LIMIT:
            return True

        if self.config["adaptive_timing"] and self.user_patterns["sessionCount"] > ADAPTIVE_MIN_SESSIONS:
            # Push before the point where this user usually stops editing
            if self.consecutive_changes > self.user_patterns["avgEditSessionLength"] * 0.8:
                return True

        return False

    def _ensure_max_sync_delay(self, page_id: str, content: str) -> None:
        if self._force_sync_handle is not None or not self.pending_changes:
            return

        delay = max(0.0, self.config["max_sync_delay"] - self._seconds_since_cloud_sync())
        self._force_sync_handle = asyncio.get_running_loop().call_later(
            delay, self._fire_force_sync, page_id, content
        )

    def _fire_force_sync(self, page_id: str, content: str) -> None:
        self._force_sync_handle = None
        if not self.pending_changes:
            return
        logger.info(f"Maximum sync delay reached for page {page_id}, forcing cloud sync")
        self.counters["forcedSyncs"] += 1
        content = self.last_content if self.current_page_id == page_id and self.last_content else content
        self._force_sync_task = asyncio.get_running_loop().create_task(self._perform_cloud_sync(page_id, content))

    def _cancel_force_sync(self) -> None:
        if self._force_sync_handle is not None:
            self._force_sync_handle.cancel()
            self._force_sync_handle = None

    async def _activity_loop(self) -> None:
        while True:
            await asyncio.sleep(ACTIVITY_CHECK_INTERVAL)
            await self._track_activity()

    async def _track_activity(self) -> None:
        """Flush the pending cloud push once the user has gone idle."""
        idle = self.clock() - self.last_activity_time
        if idle < INACTIVITY_THRESHOLD:
            self.editor_active_time += ACTIVITY_CHECK_INTERVAL
            return

        self.editor_inactive_time += ACTIVITY_CHECK_INTERVAL
        if self.editor_active_time > 0 and self.pending_changes:
            logger.debug("Editor idle with pending changes, flushing cloud sync")
            if self._cloud_sync.pending:
                await self._cloud_sync.flush()
            elif self.current_page_id is not None:
                await self._perform_cloud_sync(self.current_page_id, self.last_content or "")
            self.editor_active_time = 0.0

    # Adaptive timing

    def _update_adaptive_timing(self) -> None:
        if len(self.change_history) < 5:
            return

        sessions: List[List[Dict[str, float]]] = [[self.change_history[0]]]
        for previous, change in zip(self.change_history, self.change_history[1:]):
            if change["timestamp"] - previous["timestamp"] < SESSION_GAP_SECONDS:
                sessions[-1].append(change)
            else:
                sessions.append([change])

        edits = sum(len(session) for session in sessions)
        gaps = [
            later["timestamp"] - earlier["timestamp"]
            for session in sessions
            for earlier, later in zip(session, session[1:])
        ]

        self.user_patterns = {
            "avgEditSessionLength": edits / len(sessions),
            "avgTimeBetweenEdits": statistics.mean(gaps) if gaps else 0.0,
            "typicalChangeSize": statistics.mean(c["changeSize"] for c in self.change_history),
            "sessionCount": len(sessions),
        }
        self._adjust_timings()

    def _adjust_timings(self) -> None:
        patterns = self.user_patterns
        if patterns["sessionCount"] < RETUNE_MIN_SESSIONS:
            return

        gap = patterns["avgTimeBetweenEdits"]
        local_delay = self.config["local_save_delay"]
        if 0 < gap < 1.0:
            local_delay = min(2.0, gap * 2)
        elif gap > 5.0:
            local_delay = max(0.5, gap / 5)

        length = patterns["avgEditSessionLength"]
        cloud_delay = self.config["cloud_sync_delay"]
        if length < 10:
            cloud_delay = max(10.0, length * 1.0)
        elif length > 50:
            cloud_delay = min(60.0, length * 0.5)

        if (local_delay, cloud_delay) != (self.config["local_save_delay"], self.config["cloud_sync_delay"]):
            logger.info(f"Adjusted sync timing: local {local_delay:.2f}s, cloud {cloud_delay:.2f}s")
            self.counters["adaptiveAdjustments"] += 1

        self.config["local_save_delay"] = local_delay
        self.config["cloud_sync_delay"] = cloud_delay
        self._local_save.delay = local_delay
        self._cloud_sync.delay = cloud_delay

    def _emit_progress(self, status: str, page_id: str, processed: int, total: int, error: Optional[str] = None) -> None:
        payload = {"status": status, "pageId": page_id, "processed": processed, "total": total}
        if error is not None:
            payload["error"] = error
        self.emitter.emit(SYNC_PROGRESS, payload)


def create_smart_sync_manager(
    local_store: LocalStore,
    sync_engine,
    emitter: Optional[EventEmitter] = None,
    config: Optional[dict] = None,
) -> SmartSync:
    """
    Wire a SmartSync scheduler to the local store and sync engine.

    Args:
        local_store: Store receiving debounced local saves
        sync_engine: SyncEngine used for cloud pushes
        emitter: Shared event emitter
        config: Scheduler config overrides

    Returns:
        Configured SmartSync instance
    """
    async def on_local_save(page_id: str, content: Optional[str]) -> bool:
        page_id = normalize_page_id(page_id)
        if not page_id or content is None:
            return False
        local_store.save_page(page_id, content)
        return True

    async def on_cloud_sync(page_id: str, payload: Dict[str, Any], is_delete: bool = False) -> Dict[str, Any]:
        result = await sync_engine.sync(page_id, payload.get("metadata"), is_delete)
        return {"success": result.get("success"), "error": result.get("error") or result.get("reason")}

    def page_source(force_all: bool) -> List[Page]:
        return local_store.get_all_pages() if force_all else local_store.get_pending_pages()

    return SmartSync(
        on_local_save=on_local_save,
        on_cloud_sync=on_cloud_sync,
        emitter=emitter or sync_engine.emitter,
        config=config,
        on_local_delete=local_store.mark_page_deleted,
        page_source=page_source,
    )
