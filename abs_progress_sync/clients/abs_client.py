import logging
import httpx
from pydantic import ValidationError
from typing import Optional, Protocol
from ..config import settings
from ..models import ProgressRecord

logger = logging.getLogger(__name__)

class RemoteError(Exception):
    """Fetching an item's progress from the server failed."""

class RemoteProgressClient(Protocol):
    async def fetch(self, item_id: str) -> Optional[ProgressRecord]: ...

    async def push(self, record: ProgressRecord) -> bool: ...

class ABSClient:
    """
    Audiobookshelf media progress endpoints. Single attempt per call,
    retries are the caller's business.
    """

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(
            base_url=(base_url or settings.ABS_BASE_URL).rstrip('/'),
            headers={"Authorization": f"Bearer {token if token is not None else settings.ABS_TOKEN}"},
            timeout=httpx.Timeout(timeout if timeout is not None else settings.request_timeout),
            transport=transport
        )
        self.user_id: Optional[str] = None

    async def initialize(self):
        try:
            resp = await self.client.get("/api/me")
            resp.raise_for_status()
            data = resp.json()
            self.user_id = data.get("user", {}).get("id") or data.get("id")
            logger.info(f"Connected to ABS as user {self.user_id}")
        except Exception as e:
            logger.error(f"Failed to initialize ABS client: {e}")
            raise

    async def close(self):
        await self.client.aclose()

    async def fetch(self, item_id: str) -> Optional[ProgressRecord]:
        """
        Returns the server's progress for item_id, or None if the server
        has none. Raises RemoteError on any failure.
        """
        try:
            resp = await self.client.get(f"/api/me/progress/{item_id}")
        except httpx.HTTPError as e:
            raise RemoteError(f"request failed: {e!r}") from e

        if resp.status_code == 404:
            return None
        if not resp.is_success:
            raise RemoteError(f"HTTP {resp.status_code}")

        try:
            data = resp.json()
            return ProgressRecord(
                item_id=data.get("libraryItemId") or item_id,
                elapsed_seconds=data.get("currentTime") or 0.0,
                last_update=int(data.get("lastUpdate") or 0),
                pending_upload=False
            )
        except (ValueError, TypeError, AttributeError, ValidationError) as e:
            raise RemoteError(f"malformed progress for {item_id}: {e}") from e

    async def push(self, record: ProgressRecord) -> bool:
        payload = {
            "currentTime": record.elapsed_seconds,
            "lastUpdate": record.last_update
        }
        resp = await self.client.patch(f"/api/me/progress/{record.item_id}", json=payload)
        if not resp.is_success:
            logger.warning(f"Progress upload for {record.item_id} rejected: HTTP {resp.status_code}")
            return False
        logger.debug(f"Progress uploaded for {record.item_id}: {record.elapsed_seconds}s")
        return True
