from pydantic import BaseModel, Field
from typing import Optional, List, Literal
import time
import uuid


def now_ms() -> int:
    """Current time as epoch milliseconds"""
    return int(time.time() * 1000)


class Message(BaseModel):
    """One turn in the conversation"""
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sender: Literal["user", "assistant"]
    content: str
    timestamp: int = Field(default_factory=now_ms)


class SandboxRecord(BaseModel):
    """Persisted lifecycle record, one per tenant key"""
    sandbox_id: Optional[str] = None
    is_initialized: bool = False
    dev_server_url: Optional[str] = None
    created_at: int = Field(default_factory=now_ms)
    last_accessed_at: int = Field(default_factory=now_ms)
    messages: List[Message] = Field(default_factory=list)


# ========== Request/Response Models ==========

class RunCodeRequest(BaseModel):
    message: str


class InitializeResponse(BaseModel):
    success: bool = True
    sandbox_id: str
    dev_server_url: Optional[str] = None
    action: str


class StatusResponse(BaseModel):
    success: bool = True
    state: SandboxRecord


class ResetResponse(BaseModel):
    success: bool = True
    message: str = "Conversation session reset"
