import asyncio
import logging
from typing import Callable, Optional, Tuple
from .clients.abs_client import RemoteProgressClient
from .config import settings
from .models import Decision, ProgressRecord, SyncResult, now_ms
from .state import LocalStore

logger = logging.getLogger(__name__)

def resolve(local: ProgressRecord, remote: ProgressRecord) -> Decision:
    """Last write wins on last_update. On a tie the local copy is kept."""
    if remote.last_update > local.last_update:
        return Decision.ADOPT_REMOTE
    return Decision.KEEP_LOCAL_AND_UPLOAD

def backoff_delay_ms(base_delay_ms: int, attempt: int) -> int:
    return base_delay_ms * (1 << attempt)

async def store_synced(store: LocalStore, record: ProgressRecord) -> bool:
    """
    Persist record with pending_upload cleared, unless the store meanwhile
    received newer progress for the item. Returns whether it was written.
    """
    current = await store.get(record.item_id)
    if current is not None and current.last_update > record.last_update:
        logger.info(f"Newer local progress for {record.item_id} arrived during sync, leaving it pending")
        return False
    await store.put(record.model_copy(update={"pending_upload": False}))
    return True

class RetryingUploader:
    def __init__(self, remote: RemoteProgressClient, store: LocalStore,
                 max_retries: Optional[int] = None, base_delay_ms: Optional[int] = None):
        self.remote = remote
        self.store = store
        self.max_retries = settings.SYNC_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay_ms = settings.SYNC_BASE_DELAY_MS if base_delay_ms is None else base_delay_ms

    async def upload_with_retry(self, record: ProgressRecord) -> bool:
        """
        Push record, retrying with exponential backoff. True only once the
        server accepted it and the synced copy is persisted locally, or newer
        local progress that arrived meanwhile was left pending.
        """
        attempt = 0
        while True:
            logger.debug(f"Uploading progress for {record.item_id} (attempt {attempt + 1})")
            try:
                accepted = await self.remote.push(record)
            except Exception as e:
                logger.warning(f"Upload of {record.item_id} failed (attempt {attempt + 1}): {e}")
                accepted = False

            if accepted:
                try:
                    await store_synced(self.store, record)
                except Exception as e:
                    # Server has it but local state could not be saved; stays pending
                    logger.error(f"Uploaded {record.item_id} but could not persist it locally: {e}")
                    return False
                logger.info(f"Progress uploaded for {record.item_id}: {record.elapsed_seconds:.1f}s")
                return True

            if attempt >= self.max_retries:
                logger.warning(f"Giving up on upload of {record.item_id} after {attempt + 1} attempts")
                return False

            delay = backoff_delay_ms(self.base_delay_ms, attempt)
            logger.debug(f"Upload failed, retrying in {delay}ms")
            await asyncio.sleep(delay / 1000.0)
            attempt += 1

class ProgressSync:
    def __init__(self, remote: RemoteProgressClient, store: LocalStore,
                 max_retries: Optional[int] = None, base_delay_ms: Optional[int] = None,
                 notifier: Optional[Callable[[str], None]] = None,
                 show_error_notifications: Optional[bool] = None):
        self.remote = remote
        self.store = store
        self.uploader = RetryingUploader(remote, store, max_retries, base_delay_ms)
        self.notifier = notifier
        self.show_error_notifications = (
            settings.SHOW_ERROR_NOTIFICATIONS if show_error_notifications is None
            else show_error_notifications
        )
        self.last_result: Optional[SyncResult] = None

    @property
    def max_retries(self) -> int:
        return self.uploader.max_retries

    @property
    def base_delay_ms(self) -> int:
        return self.uploader.base_delay_ms

    async def _fetch_with_retry(self, item_id: str) -> Tuple[bool, Optional[ProgressRecord]]:
        """Returns (ok, remote_record_or_None)."""
        attempt = 0
        while True:
            try:
                return True, await self.remote.fetch(item_id)
            except Exception as e:
                logger.warning(f"Fetching server progress for {item_id} failed (attempt {attempt + 1}): {e}")

            if attempt >= self.max_retries:
                return False, None

            delay = backoff_delay_ms(self.base_delay_ms, attempt)
            logger.debug(f"Retrying fetch in {delay}ms")
            await asyncio.sleep(delay / 1000.0)
            attempt += 1

    async def _sync(self, local: ProgressRecord) -> bool:
        ok, remote = await self._fetch_with_retry(local.item_id)
        if not ok:
            return False

        if remote is not None and resolve(local, remote) == Decision.ADOPT_REMOTE:
            logger.info(f"Progress on server is more recent for {local.item_id}. Not uploading")
            await store_synced(self.store, remote)
            return True

        return await self.uploader.upload_with_retry(local)

    async def sync_item(self, local: ProgressRecord) -> bool:
        """
        Reconcile one record with the server. "True" means local state is now
        consistent with the server, either pushed or overwritten.
        """
        try:
            success = await self._sync(local)
        except Exception as e:
            logger.error(f"Unexpected error syncing {local.item_id}: {e}", exc_info=True)
            success = False

        if not success:
            self._notify(f"Could not sync progress for {local.item_id}")
        return success

    def _notify(self, text: str):
        if not self.show_error_notifications or self.notifier is None:
            return
        try:
            self.notifier(text)
        except Exception as e:
            logger.debug(f"Notifier failed: {e}")

    async def sync_all_pending(self) -> SyncResult:
        result = SyncResult()
        try:
            pending = await self.store.list_pending()
        except Exception as e:
            logger.error(f"Could not list pending progress: {e}", exc_info=True)
            result.failure_count += 1
            result.errors.append(f"Could not list pending items: {e}")
            self.last_result = result
            return result

        logger.info(f"Starting batch sync of {len(pending)} pending items")

        for record in pending:
            try:
                success = await self._sync(record)
                if success:
                    await self.store.mark_synced(record.item_id, record.last_update)
                    result.success_count += 1
                    logger.debug(f"Successfully synced progress for {record.item_id}")
                else:
                    result.failure_count += 1
                    result.errors.append(f"Failed to sync {record.item_id}")
                    logger.warning(f"Failed to sync progress for {record.item_id}")
            except Exception as e:
                result.failure_count += 1
                result.errors.append(f"Error syncing {record.item_id}: {e}")
                logger.error(f"Error syncing progress for {record.item_id}: {e}", exc_info=True)

        logger.info(f"Batch sync completed: {result.success_count} successful, {result.failure_count} failed")
        self.last_result = result
        return result

    async def record_progress(self, item_id: str, elapsed_seconds: float,
                              last_update: Optional[int] = None) -> ProgressRecord:
        record = ProgressRecord(
            item_id=item_id,
            elapsed_seconds=elapsed_seconds,
            last_update=now_ms() if last_update is None else last_update,
            pending_upload=True
        )
        await self.store.put(record)
        return record

    async def current_progress(self, item_id: str) -> Optional[ProgressRecord]:
        """Newer of the local and server records. Falls back to local if the server is unreachable."""
        local = await self.store.get(item_id)
        try:
            remote = await self.remote.fetch(item_id)
        except Exception as e:
            logger.debug(f"Server progress for {item_id} unavailable: {e}")
            return local

        if local is None:
            return remote
        if remote is not None and resolve(local, remote) == Decision.ADOPT_REMOTE:
            return remote
        return local
