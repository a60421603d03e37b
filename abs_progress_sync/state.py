import json
import logging
import os
import fcntl
from pathlib import Path
from typing import List, Optional, Protocol
from .models import ProgressRecord, StoreState, SyncResult
from .config import settings

logger = logging.getLogger(__name__)

class StoreWriteError(Exception):
    """A local write did not reach disk."""

class LocalStore(Protocol):
    """
    Single-record operations are assumed atomic. Writes raise if they
    could not be made durable.
    """

    async def get(self, item_id: str) -> Optional[ProgressRecord]: ...

    async def put(self, record: ProgressRecord) -> None: ...

    async def list_pending(self) -> List[ProgressRecord]: ...

    async def mark_synced(self, item_id: str, last_update: Optional[int] = None) -> None: ...

class JsonProgressStore:
    def __init__(self, path: str, persist: Optional[bool] = None):
        self.path = Path(path)
        self.persist = settings.PERSIST_ENABLED if persist is None else persist
        self.state = StoreState()
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No progress file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
                self.state = StoreState(**data)
        except Exception as e:
            logger.error(f"Failed to load progress: {e}. Starting fresh.", exc_info=True)

    def save(self):
        if not self.persist:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError:
                    raise StoreWriteError(f"{self.path} is locked by another writer")

                try:
                    json.dump(self.state.model_dump(mode="json"), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save progress to {self.path}: {e}")
            raise StoreWriteError(str(e)) from e

    async def get(self, item_id: str) -> Optional[ProgressRecord]:
        record = self.state.items.get(item_id)
        return record.model_copy() if record else None

    async def put(self, record: ProgressRecord) -> None:
        previous = self.state.items.get(record.item_id)
        self.state.items[record.item_id] = record.model_copy()
        try:
            self.save()
        except StoreWriteError:
            if previous is None:
                del self.state.items[record.item_id]
            else:
                self.state.items[record.item_id] = previous
            raise

    async def list_pending(self) -> List[ProgressRecord]:
        return [r.model_copy() for r in self.state.items.values() if r.pending_upload]

    async def mark_synced(self, item_id: str, last_update: Optional[int] = None) -> None:
        """
        Clear the pending flag. With last_update given, only a stored record
        carrying that exact timestamp is cleared; newer local progress stays pending.
        """
        record = self.state.items.get(item_id)
        if record is None or not record.pending_upload:
            return
        if last_update is not None and record.last_update != last_update:
            logger.debug(f"Not marking {item_id} synced: stored progress changed since upload")
            return
        record.pending_upload = False
        try:
            self.save()
        except StoreWriteError:
            record.pending_upload = True
            raise

    async def remove(self, item_id: str) -> None:
        if self.state.items.pop(item_id, None) is not None:
            logger.info(f"Removed progress for {item_id}")
            self.save()

    def record_batch(self, result: SyncResult, finished_at: float):
        self.state.last_batch_result = result
        self.state.last_batch_at = finished_at
        self.save()
