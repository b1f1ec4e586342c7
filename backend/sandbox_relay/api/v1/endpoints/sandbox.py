"""
Sandbox API Endpoints

Provides endpoints for:
- Ensuring the tenant's sandbox is ready
- Streaming an agent turn as Server-Sent Events
- Reading the sandbox record
- Clearing the conversation
"""

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse

from sandbox_relay.core.config import settings
from sandbox_relay.core.logging_config import logger
from sandbox_relay.core.middleware import TENANT_HEADER
from sandbox_relay.schemas.sandbox import (
    InitializeResponse,
    ResetResponse,
    RunCodeRequest,
    StatusResponse,
)
from sandbox_relay.services.sandbox_service import SandboxService, get_sandbox_service

router = APIRouter()


def get_tenant_key(x_tenant_key: Optional[str] = Header(None, alias=TENANT_HEADER)) -> str:
    """Tenant selected by header, or the default tenant"""
    return x_tenant_key or settings.DEFAULT_TENANT_KEY


@router.post("/initialize", response_model=InitializeResponse)
async def initialize_sandbox(
    tenant_key: str = Depends(get_tenant_key),
    service: SandboxService = Depends(get_sandbox_service),
):
    """Reuse, restart or create the tenant's sandbox"""
    return await service.initialize(tenant_key)


@router.post("/run-code")
async def run_code(
    request: RunCodeRequest,
    tenant_key: str = Depends(get_tenant_key),
    service: SandboxService = Depends(get_sandbox_service),
):
    """
    Run one agent turn inside the sandbox.

    Returns:
        Server-Sent Events stream of agent events, ending with {"type": "done"}
    """
    service.validate_message(request.message)
    logger.info(f"[SandboxAPI] run-code for tenant {tenant_key} ({len(request.message)} chars)")

    async def event_generator():
        async for event in service.run_code(tenant_key, request.message):
            yield f"data: {json.dumps(event)}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"
        }
    )


@router.get("/status", response_model=StatusResponse)
async def get_status(
    tenant_key: str = Depends(get_tenant_key),
    service: SandboxService = Depends(get_sandbox_service),
):
    return StatusResponse(state=await service.status(tenant_key))


@router.post("/reset-session", response_model=ResetResponse)
async def reset_session(
    tenant_key: str = Depends(get_tenant_key),
    service: SandboxService = Depends(get_sandbox_service),
):
    """Clear the conversation without touching the sandbox"""
    await service.reset_session(tenant_key)
    return ResetResponse()
