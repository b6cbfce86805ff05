"""Sync engine that reconciles the local page store with the remote document store."""

import asyncio
import logging
import math
import random
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from shared.config import get_sync_config
from shared.db_operations import LocalStore
from shared.encryption import KeyVault
from shared.errors import DecryptError, SyncError
from shared.models import (
    EPOCH,
    Page,
    SyncCheckpoint,
    SyncPhase,
    SyncStatus,
    Tombstone,
    encode_page_cursor,
    utcnow_iso,
)
from services.sync_service.error_log import SyncErrorLog
from services.sync_service.events import (
    SYNC_ERROR,
    SYNC_ITEM_PROGRESS,
    SYNC_PROGRESS_UPDATE,
    EventEmitter,
)
from services.sync_service.merge import merge_pages, should_merge
from services.sync_service.notifications import NotificationService
from services.sync_service.remote_store import RemoteStore
from services.sync_service.retry import execute_with_retry

logger = logging.getLogger(__name__)

PENDING_SYNC_JOB_KEY = "pendingSyncJob"
LAST_SYNC_TIME_KEY = "lastSyncTime"
LAST_SUCCESSFUL_SYNC_KEY = "lastSuccessfulSync"

SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
VAULT_LOCKED = "VAULT_LOCKED"
SYNC_ABORTED = "SYNC_ABORTED"
SYNC_ERROR_REASON = "SYNC_ERROR"


@dataclass
class SyncState:
    """Transient state of the current sync job."""
    in_progress: bool = False
    current_job_id: Optional[str] = None
    phase: Optional[str] = None
    resume_token: Optional[str] = None
    total_items: int = 0
    processed_items: int = 0
    failed_items: List[str] = field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    start_time: Optional[float] = None
    started_at: Optional[str] = None
    current_batch: int = 0
    total_batches: int = 0
    tombstoned_ids: Set[str] = field(default_factory=set)

    def reset(self) -> None:
        self.__init__()


class SyncEngine:
    """Runs resumable, checkpointed sync jobs.

    A full job runs four phases in order: apply remote tombstones, upload
    pending local pages, push local deletions, download remote changes.
    At most one job runs at a time.
    """

    def __init__(
        self,
        local_store: LocalStore,
        remote_store: RemoteStore,
        vault: KeyVault,
        current_user: Callable[[], Optional[str]],
        emitter: Optional[EventEmitter] = None,
        notification_service: Optional[NotificationService] = None,
        config: Optional[dict] = None,
        random_source: Callable[[], float] = random.random,
    ):
        """
        Initialize the sync engine.

        Args:
            local_store: Local page and metadata store
            remote_store: Remote document store
            vault: Holder of the content key
            current_user: Returns the signed-in user id, or None
            emitter: Event emitter for progress notifications
            notification_service: Optional failure notifier
            config: Overrides for values from get_sync_config()
            random_source: Source of uniform [0, 1) values for checkpoint sampling
        """
        self.local_store = local_store
        self.remote_store = remote_store
        self.vault = vault
        self.current_user = current_user
        self.emitter = emitter or EventEmitter()
        self.notification_service = notification_service
        self.config = {**get_sync_config(), **(config or {})}
        self.random_source = random_source

        self.state = SyncState()
        self.error_log = SyncErrorLog(local_store, limit=self.config["error_log_limit"])

        self._recovery_handle: Optional[asyncio.TimerHandle] = None
        self._recovery_task: Optional[asyncio.Task] = None
        self._auth_warning_logged = False
        self._last_progress_emit = 0.0

    # Public API

    async def sync(
        self,
        page_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        is_delete: bool = False,
    ) -> Dict[str, Any]:
        """
        Run a sync job.

        Args:
            page_id: Page that triggered the sync, if any
            metadata: Optional trigger details, logged only
            is_delete: Whether the trigger was a deletion of ``page_id``

        Returns:
            ``{"success": True, "stats": {...}}`` or
            ``{"success": False, "reason": ..., ...}``
        """
        if self.state.in_progress:
            logger.info("Sync already in progress, rejecting new request")
            return {"success": False, "reason": SYNC_IN_PROGRESS}

        user_id = self.current_user()
        if not user_id:
            if not self._auth_warning_logged:
                logger.warning("Sync requested without an authenticated user")
                self._auth_warning_logged = True
            return {"success": False, "reason": NOT_AUTHENTICATED}

        if not self.vault.is_unlocked():
            logger.info("Sync requested while the vault is locked")
            return {"success": False, "reason": VAULT_LOCKED}

        self.state.reset()
        self.state.in_progress = True
        job_id = str(uuid.uuid4())
        self.state.current_job_id = job_id
        self.state.start_time = time.monotonic()
        self.state.started_at = utcnow_iso()
        self._last_progress_emit = 0.0

        logger.info(f"Starting sync job {job_id} for user {user_id}")
        if page_id:
            logger.debug(f"Sync job {job_id} triggered by page {page_id}: {metadata or {}}")

        try:
            if is_delete and page_id:
                await self._upload_tombstone(user_id, page_id)

            checkpoint_data = self.local_store.get_item(PENDING_SYNC_JOB_KEY)
            if checkpoint_data:
                await self._resume_job(user_id, SyncCheckpoint.from_dict(checkpoint_data))
            else:
                await self._run_phases(user_id)

            if self.state.aborted:
                self._save_checkpoint()
                reason = self.state.abort_reason or SYNC_ABORTED
                logger.warning(f"Sync job {job_id} stopped early: {reason}")
                return {"success": False, "reason": reason, "jobId": job_id}

            duration = time.monotonic() - self.state.start_time
            completed_at = utcnow_iso()

            self.local_store.remove_item(PENDING_SYNC_JOB_KEY)
            self.local_store.set_item(LAST_SYNC_TIME_KEY, completed_at)
            self.local_store.set_item(LAST_SUCCESSFUL_SYNC_KEY, {
                "timestamp": completed_at,
                "duration": duration,
                "itemsProcessed": self.state.processed_items,
            })
            self.cancel_recovery()

            stats = {
                "jobId": job_id,
                "totalProcessed": self.state.processed_items,
                "failedItems": len(self.state.failed_items),
                "duration": duration,
                "timestamp": completed_at,
            }
            logger.info(
                f"Sync job {job_id} completed: {stats['totalProcessed']} processed, "
                f"{stats['failedItems']} failed in {duration:.2f}s"
            )
            return {"success": True, "stats": stats}

        except Exception as e:
            logger.error(f"Sync job {job_id} failed: {e}", exc_info=True)
            self._log_sync_error("sync", None, e)
            self._save_checkpoint()
            self._schedule_recovery()
            self.emitter.emit(SYNC_ERROR, {"error": str(e), "jobId": job_id})

            if self.notification_service:
                await self.notification_service.notify_sync_failure(
                    job_id,
                    user_id,
                    str(e),
                    phase=self.state.phase,
                    resume_token=self.state.resume_token,
                )

            return {"success": False, "reason": SYNC_ERROR_REASON, "error": str(e), "jobId": job_id}

        finally:
            self.state.in_progress = False

    def abort_sync(self) -> bool:
        """
        Request the running job to stop at its next safe point.

        Returns:
            True if a job was running
        """
        if not self.state.in_progress:
            return False

        logger.info(f"Abort requested for sync job {self.state.current_job_id}")
        self.state.aborted = True
        self.state.abort_reason = SYNC_ABORTED
        self._save_checkpoint()
        return True

    def get_sync_status(self) -> Dict[str, Any]:
        """Get a snapshot of the current job's progress."""
        total = self.state.total_items
        elapsed = time.monotonic() - self.state.start_time if self.state.start_time else 0
        return {
            "inProgress": self.state.in_progress,
            "jobId": self.state.current_job_id,
            "phase": self.state.phase,
            "progress": round(self.state.processed_items / total * 100) if total else 0,
            "processedItems": self.state.processed_items,
            "totalItems": total,
            "failedItems": len(self.state.failed_items),
            "startTime": self.state.started_at,
            "elapsedTime": elapsed,
        }

    def get_sync_error_log(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Get recorded sync errors, newest first."""
        return [entry.to_dict() for entry in self.error_log.entries(limit)]

    @property
    def recovery_scheduled(self) -> bool:
        return self._recovery_handle is not None

    def cancel_recovery(self) -> None:
        if self._recovery_handle is not None:
            self._recovery_handle.cancel()
            self._recovery_handle = None

    async def close(self) -> None:
        """Cancel pending recovery work."""
        self.cancel_recovery()
        if self._recovery_task is not None and not self._recovery_task.done():
            self._recovery_task.cancel()

    # Job sequencing

    async def _resume_job(self, user_id: str, checkpoint: SyncCheckpoint) -> None:
        phase = checkpoint.phase if checkpoint.phase in SyncPhase.ALL else None
        if phase is None:
            logger.info(f"Checkpoint {checkpoint.job_id} has no usable phase, starting full sync")
            await self._run_phases(user_id)
            return

        logger.info(
            f"Resuming sync from checkpoint {checkpoint.job_id} at phase {phase} "
            f"(token {checkpoint.resume_token})"
        )
        self.state.processed_items = checkpoint.processed_items
        self.state.total_items = checkpoint.total_items
        self.state.failed_items = list(checkpoint.failed_items)
        await self._run_phases(user_id, phase, checkpoint.resume_token)

    async def _run_phases(
        self,
        user_id: str,
        resume_phase: Optional[str] = None,
        resume_token: Optional[str] = None,
    ) -> None:
        """Run the phase sequence, starting at ``resume_phase`` when resuming."""
        if resume_phase not in (SyncPhase.UPLOADING, SyncPhase.DELETING):
            await self._process_remote_deletions(user_id)
            if self._should_stop():
                return

        if resume_phase != SyncPhase.DELETING:
            token = resume_token if resume_phase == SyncPhase.UPLOADING else None
            await self._upload_pending_changes(user_id, token)
            if self._should_stop():
                return

        await self._handle_deletions(user_id)
        if self._should_stop():
            return

        token = resume_token if resume_phase == SyncPhase.DOWNLOADING else None
        await self._download_remote_changes(user_id, token)

    def _should_stop(self) -> bool:
        """Check the abort flag and whether the vault was locked mid-job."""
        if self.state.aborted:
            return True
        if self.vault.is_unlocked():
            return False

        logger.warning(f"Vault locked during sync job {self.state.current_job_id}, aborting")
        self.state.aborted = True
        self.state.abort_reason = VAULT_LOCKED
        self._save_checkpoint()
        return True

    async def _retry(self, operation: Callable[[], Awaitable[Any]], description: str) -> Any:
        return await execute_with_retry(
            operation,
            max_attempts=self.config["max_retries"],
            base_delay=self.config["base_retry_delay"],
            description=description,
        )

    # Phases

    async def _upload_tombstone(self, user_id: str, page_id: str) -> None:
        tombstone = Tombstone(page_id=page_id, deleted_at=utcnow_iso())
        try:
            await self._retry(
                lambda: self.remote_store.put_tombstone(user_id, tombstone),
                f"tombstone upload for {page_id}",
            )
        except Exception as e:
            self._log_sync_error("upload_tombstone", page_id, e)
            return
        self.state.tombstoned_ids.add(page_id)

    async def _process_remote_deletions(self, user_id: str) -> None:
        """Remove local pages that peers deleted since the last sync."""
        last_sync_time = self.local_store.get_item(LAST_SYNC_TIME_KEY) or EPOCH
        tombstones = await self._retry(
            lambda: self.remote_store.query_tombstones(user_id, deleted_after=last_sync_time),
            "tombstone query",
        )

        for tombstone in tombstones:
            if self._should_stop():
                return
            try:
                if self.local_store.delete_page(tombstone.page_id):
                    logger.info(f"Removed page {tombstone.page_id} deleted on another device")
                    self.state.processed_items += 1
            except Exception as e:
                self._mark_failed(tombstone.page_id, "apply_tombstone", e)

    async def _upload_pending_changes(self, user_id: str, resume_token: Optional[str] = None) -> None:
        self.state.phase = SyncPhase.UPLOADING
        self.state.resume_token = resume_token

        pages = self.local_store.get_pending_pages(above_id=resume_token)
        if not pages:
            logger.debug("No pending pages to upload")
            return

        batch_size = self.config["batch_size"]
        batches = [pages[i:i + batch_size] for i in range(0, len(pages), batch_size)]
        self.state.total_items += len(pages)
        self.state.total_batches = len(batches)
        logger.info(f"Uploading {len(pages)} pending pages in {len(batches)} batches")

        for index, batch in enumerate(batches):
            if self._should_stop():
                return
            self.state.current_batch = index + 1

            last_id = await self._process_upload_batch(user_id, batch)
            if self.state.aborted:
                return
            if last_id:
                self._save_resume_checkpoint(SyncPhase.UPLOADING, last_id)
            self._update_sync_progress(SyncPhase.UPLOADING, index + 1, len(batches))

    async def _process_upload_batch(self, user_id: str, batch: List[Page]) -> Optional[str]:
        """
        Encrypt and commit one batch of pages.

        Returns:
            Id of the last page committed, or None if nothing was committed
        """
        documents = []
        staged: List[Page] = []

        for page in batch:
            if self._should_stop():
                return None
            try:
                cipher = self.vault.cipher
                if cipher is None:
                    self._should_stop()
                    return None
                staged_at = utcnow_iso()
                document = page.copy(
                    content=cipher.encrypt(page.content),
                    is_encrypted=True,
                    pending_sync=0,
                    sync_status=SyncStatus.SYNCED,
                    last_synced=staged_at,
                    last_modified=page.last_modified or staged_at,
                ).to_document()
                documents.append(document)
                staged.append(page)
            except Exception as e:
                self._mark_failed(page.id, "prepare_upload", e)

        if not documents:
            return None

        try:
            await self._retry(
                lambda: self.remote_store.batch_write(user_id, upserts=documents),
                "upload batch",
            )
        except Exception as e:
            for page in batch:
                if page.id not in self.state.failed_items:
                    self.state.failed_items.append(page.id)
            self._log_sync_error("upload_batch", batch[0].id, e)
            if not self._handle_sync_retry():
                return None
            raise SyncError(f"Failed to upload batch starting at {batch[0].id}: {e}") from e

        synced_at = utcnow_iso()
        for page in staged:
            self.local_store.mark_synced(page.id, synced_at, page.last_modified)

        self.state.processed_items += len(staged)
        self._update_progress_counter()
        return staged[-1].id

    def _handle_sync_retry(self) -> bool:
        """
        Checkpoint after a failed batch.

        Returns:
            True if the job should fail and be retried later, False if it was aborted
        """
        self._save_checkpoint()
        return not self.state.aborted

    async def _handle_deletions(self, user_id: str) -> None:
        """Push locally deleted page ids as remote deletes plus tombstones."""
        self.state.phase = SyncPhase.DELETING
        self.state.resume_token = None

        page_ids = sorted(self.local_store.get_deleted_page_ids())
        if not page_ids:
            return

        batch_size = self.config["batch_size"]
        batches = [page_ids[i:i + batch_size] for i in range(0, len(page_ids), batch_size)]
        self.state.total_items += len(page_ids)
        logger.info(f"Deleting {len(page_ids)} remote pages")

        for index, batch in enumerate(batches):
            if self._should_stop():
                return

            deleted_at = utcnow_iso()
            # Pages tombstoned earlier in this job already have their marker
            tombstones = [
                Tombstone(page_id=page_id, deleted_at=deleted_at)
                for page_id in batch
                if page_id not in self.state.tombstoned_ids
            ]
            try:
                await self._retry(
                    lambda: self.remote_store.batch_write(user_id, deletes=batch, tombstones=tombstones),
                    "delete batch",
                )
            except Exception as e:
                self._log_sync_error("delete_batch", batch[0], e)
                raise SyncError(f"Failed to delete remote pages: {e}") from e

            # Only forget the ids once the remote commit succeeded
            self.local_store.clear_deleted_page_ids(batch)
            self.state.processed_items += len(batch)
            self._save_resume_checkpoint(SyncPhase.DELETING, batch[-1])
            self._update_sync_progress(SyncPhase.DELETING, index + 1, len(batches))

    async def _download_remote_changes(self, user_id: str, resume_token: Optional[str] = None) -> None:
        self.state.phase = SyncPhase.DOWNLOADING
        self.state.resume_token = resume_token

        last_sync_time = self.local_store.get_item(LAST_SYNC_TIME_KEY) or EPOCH
        page_limit = self.config["page_limit"]
        batch_size = self.config["batch_size"]
        deleted_ids = self.local_store.get_deleted_page_ids()
        cursor = resume_token
        batches_done = 0

        while True:
            if self._should_stop():
                return

            documents = await self._retry(
                lambda: self.remote_store.query_pages(
                    user_id,
                    modified_after=last_sync_time,
                    limit=page_limit,
                    start_after=cursor,
                ),
                "download query",
            )
            if not documents:
                break

            self.state.total_items += len(documents)
            batches_total = batches_done + math.ceil(len(documents) / batch_size)

            for start in range(0, len(documents), batch_size):
                batch = documents[start:start + batch_size]
                await self._process_download_batch(batch, deleted_ids)
                if self._should_stop():
                    return

                cursor = encode_page_cursor(batch[-1].get("lastModified"), batch[-1]["id"])
                batches_done += 1
                self._save_resume_checkpoint(SyncPhase.DOWNLOADING, cursor)
                self._update_sync_progress(SyncPhase.DOWNLOADING, batches_done, batches_total)

            if len(documents) < page_limit:
                break

    async def _process_download_batch(self, documents: List[Dict[str, Any]], deleted_ids: set) -> None:
        for document in documents:
            if self._should_stop():
                return

            page_id = document.get("id")
            if page_id in self.state.failed_items or page_id in deleted_ids:
                continue

            try:
                remote = Page.from_document(document)
                if remote.is_encrypted and remote.content:
                    cipher = self.vault.cipher
                    if cipher is None:
                        self._should_stop()
                        return
                    try:
                        remote.content = cipher.decrypt(remote.content)
                    except DecryptError as e:
                        self._mark_failed(page_id, "decrypt", e)
                        continue
                remote.pending_sync = 0

                local = self.local_store.get_page(page_id)
                if local is None:
                    self.local_store.create_page_from_remote(
                        remote.copy(sync_status=SyncStatus.SYNCED, last_synced=utcnow_iso())
                    )
                elif should_merge(local, remote, self.config["merge_tolerance"]):
                    self.local_store.put_page(merge_pages(local, remote))

                self.state.processed_items += 1
                self._update_progress_counter()
            except Exception as e:
                self._mark_failed(page_id, "process_download", e)

    # Checkpoints, progress and errors

    def _save_checkpoint(self) -> None:
        if not self.state.current_job_id:
            return
        checkpoint = SyncCheckpoint(
            job_id=self.state.current_job_id,
            phase=self.state.phase,
            resume_token=self.state.resume_token,
            processed_items=self.state.processed_items,
            total_items=self.state.total_items,
            failed_items=list(self.state.failed_items),
        )
        try:
            self.local_store.set_item(PENDING_SYNC_JOB_KEY, checkpoint.to_dict())
        except Exception as e:
            logger.error(f"Failed to save sync checkpoint: {e}", exc_info=True)

    def _save_resume_checkpoint(self, phase: str, resume_token: str) -> None:
        """Advance the resume token; only a sample of advances is persisted."""
        self.state.phase = phase
        self.state.resume_token = resume_token
        if self.random_source() < self.config["checkpoint_probability"]:
            self._save_checkpoint()

    def _schedule_recovery(self) -> None:
        if self.state.aborted:
            return
        self.cancel_recovery()
        delay = self.config["recovery_interval"]
        self._recovery_handle = asyncio.get_running_loop().call_later(delay, self._start_recovery)
        logger.info(f"Scheduled sync recovery in {delay} seconds")

    def _start_recovery(self) -> None:
        self._recovery_handle = None
        logger.info("Starting scheduled sync recovery")
        self._recovery_task = asyncio.get_running_loop().create_task(self.sync())

    def _update_sync_progress(self, phase: str, current: int, total: int) -> None:
        self.state.current_batch = current
        self.state.total_batches = total
        self.emitter.emit(SYNC_PROGRESS_UPDATE, {
            "phase": phase,
            "current": current,
            "total": total,
            "percent": round(current / total * 100) if total else 0,
            "processedItems": self.state.processed_items,
            "totalItems": self.state.total_items,
        })

    def _update_progress_counter(self) -> None:
        now = time.monotonic()
        if now - self._last_progress_emit < self.config["progress_interval"]:
            return
        self._last_progress_emit = now

        total = self.state.total_items
        self.emitter.emit(SYNC_ITEM_PROGRESS, {
            "processed": self.state.processed_items,
            "total": total,
            "percent": round(self.state.processed_items / total * 100) if total else 0,
            "elapsedTime": now - self.state.start_time if self.state.start_time else 0,
        })

    def _mark_failed(self, page_id: str, operation: str, error: Exception) -> None:
        if page_id not in self.state.failed_items:
            self.state.failed_items.append(page_id)
        self._log_sync_error(operation, page_id, error)

    def _log_sync_error(self, operation: str, document_id: Optional[str], error: Exception) -> None:
        logger.error(f"Sync error during {operation} for {document_id or 'job'}: {error}")
        self.error_log.record(operation, document_id, error, job_id=self.state.current_job_id)
