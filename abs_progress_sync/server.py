import time
from fastapi import FastAPI, Depends, HTTPException, Header
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from typing import Optional
from .engine import ProgressSync
from .models import SyncResult
from .config import settings

app = FastAPI(title="ABS Progress Sync")
progress_sync: Optional[ProgressSync] = None
last_batch_at: float = 0.0

class ProgressUpdate(BaseModel):
    elapsed_seconds: float = Field(ge=0)
    last_update: Optional[int] = None

def get_token(x_token: Optional[str] = Header(None, alias="X-Token")):
    if settings.HTTP_SERVER_TOKEN and x_token != settings.HTTP_SERVER_TOKEN:
        raise HTTPException(status_code=401, detail="Invalid token")

def get_sync() -> ProgressSync:
    if not progress_sync:
        raise HTTPException(status_code=503, detail="Not ready")
    return progress_sync

@app.get("/healthz")
def healthz():
    if not progress_sync:
        return {"status": "starting"}

    if last_batch_at and time.time() - last_batch_at > (settings.SYNC_INTERVAL_SECONDS * 3 + 60):
        return {"status": "lagging", "last_batch_age": time.time() - last_batch_at}

    return {"status": "ok"}

@app.get("/status", dependencies=[Depends(get_token)])
async def status(ps: ProgressSync = Depends(get_sync)):
    pending = await ps.store.list_pending()
    return {
        "pending": [r.item_id for r in pending],
        "last_batch_at": last_batch_at,
        "last_result": ps.last_result.model_dump() if ps.last_result else None,
        "config": {
            "max_retries": ps.max_retries,
            "base_delay_ms": ps.base_delay_ms,
            "interval": settings.SYNC_INTERVAL_SECONDS
        }
    }

@app.post("/sync", dependencies=[Depends(get_token)], response_model=SyncResult)
async def sync_now(ps: ProgressSync = Depends(get_sync)):
    global last_batch_at
    result = await ps.sync_all_pending()
    last_batch_at = time.time()
    return result

@app.post("/progress/{item_id}", dependencies=[Depends(get_token)])
async def record_progress(item_id: str, update: ProgressUpdate, ps: ProgressSync = Depends(get_sync)):
    record = await ps.record_progress(item_id, update.elapsed_seconds, update.last_update)
    return record.model_dump()

@app.get("/metrics", response_class=PlainTextResponse)
async def metrics():
    if not progress_sync:
        return ""

    pending = await progress_sync.store.list_pending()
    r = progress_sync.last_result or SyncResult()
    lines = [
        f'abs_progress_pending_items {len(pending)}',
        f'abs_progress_last_batch_timestamp {last_batch_at}',
        f'abs_progress_last_batch_success {r.success_count}',
        f'abs_progress_last_batch_failure {r.failure_count}'
    ]
    return "\n".join(lines)
