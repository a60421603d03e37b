import time
from enum import Enum
from pydantic import BaseModel, Field, field_validator
from typing import Dict, List

def now_ms() -> int:
    return int(time.time() * 1000)

class ProgressRecord(BaseModel):
    item_id: str
    elapsed_seconds: float = 0.0
    last_update: int = 0  # epoch ms, higher = more recent
    pending_upload: bool = True

    @field_validator("item_id")
    @classmethod
    def _item_id_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("item_id must not be empty")
        return v

    @field_validator("elapsed_seconds")
    @classmethod
    def _elapsed_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("elapsed_seconds must not be negative")
        return v

class Decision(str, Enum):
    KEEP_LOCAL_AND_UPLOAD = "keep_local_and_upload"
    ADOPT_REMOTE = "adopt_remote"

class SyncResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    errors: List[str] = Field(default_factory=list)  # in failure order

class StoreState(BaseModel):
    items: Dict[str, ProgressRecord] = Field(default_factory=dict)  # insertion ordered
    last_batch_at: float = 0.0
    last_batch_result: SyncResult = Field(default_factory=SyncResult)
