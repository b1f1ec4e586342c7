"""
Sandbox Relay - Test Configuration and Fixtures
"""
import os
from typing import AsyncGenerator
from unittest.mock import AsyncMock, Mock

import pytest
from httpx import AsyncClient, ASGITransport

# Set testing environment
os.environ['ENVIRONMENT'] = 'test'
os.environ['REDIS_URL'] = ''
os.environ['DAYTONA_API_KEY'] = ''
os.environ['ANTHROPIC_API_KEY'] = 'test-anthropic-key'

from sandbox_relay.main import app
from sandbox_relay.services.agent_bridge import AgentBridge
from sandbox_relay.services.sandbox_resolver import SandboxResolver
from sandbox_relay.services.sandbox_service import SandboxService, get_sandbox_service
from sandbox_relay.services.state_store import SandboxStateStore
from tests.mocks.fake_provider import FakeSandboxProvider

TENANT = "test-tenant"


@pytest.fixture
def tenant_key() -> str:
    return TENANT


@pytest.fixture
def store() -> SandboxStateStore:
    """Fresh in-process state store"""
    return SandboxStateStore(redis_url="")


@pytest.fixture
def provider() -> FakeSandboxProvider:
    return FakeSandboxProvider()


@pytest.fixture
def probe() -> Mock:
    """Health probe reporting the dev server as reachable"""
    probe = Mock()
    probe.probe = AsyncMock(return_value=True)
    return probe


@pytest.fixture
def resolver(provider, store, probe) -> SandboxResolver:
    return SandboxResolver(provider, store, probe)


@pytest.fixture
def bridge(provider, store) -> AgentBridge:
    return AgentBridge(provider, store, timeout=1.0, queue_size=8)


@pytest.fixture
def service(provider, store, probe) -> SandboxService:
    return SandboxService(store, provider=provider, probe=probe, stream_timeout=1.0)


@pytest.fixture
async def client(service: SandboxService) -> AsyncGenerator[AsyncClient, None]:
    """Test client wired to the fake provider"""
    app.dependency_overrides[get_sandbox_service] = lambda: service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac

    app.dependency_overrides.clear()
