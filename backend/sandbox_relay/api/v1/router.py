from fastapi import APIRouter
from sandbox_relay.api.v1.endpoints import sandbox

api_router = APIRouter()

api_router.include_router(sandbox.router, tags=["Sandbox"])
