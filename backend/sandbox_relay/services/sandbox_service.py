"""
Sandbox Service - Per-tenant facade over store, resolver and bridge

Used by the API layer. The provider is created lazily so status and reset
work even when the remote provider is not configured.
"""

from typing import Any, AsyncIterator, Dict, Optional

from sandbox_relay.core.config import settings
from sandbox_relay.core.exceptions import SandboxProviderError, SandboxRelayError, ValidationError
from sandbox_relay.core.logging_config import logger
from sandbox_relay.schemas.sandbox import InitializeResponse, SandboxRecord
from sandbox_relay.services.agent_bridge import AgentBridge
from sandbox_relay.services.health_probe import HealthProbe
from sandbox_relay.services.sandbox_provider import SandboxProvider, get_provider
from sandbox_relay.services.sandbox_resolver import SandboxResolver
from sandbox_relay.services.state_store import SandboxStateStore, state_store
from sandbox_relay.services.stream_events import StreamEvent


class SandboxService:

    def __init__(
        self,
        store: SandboxStateStore,
        provider: Optional[SandboxProvider] = None,
        probe: Optional[HealthProbe] = None,
        stream_timeout: Optional[float] = None,
    ):
        self.store = store
        self._provider = provider
        self._probe = probe
        self._stream_timeout = stream_timeout
        self._resolver: Optional[SandboxResolver] = None
        self._bridge: Optional[AgentBridge] = None

    @property
    def provider(self) -> SandboxProvider:
        if self._provider is None:
            self._provider = get_provider()
        return self._provider

    @property
    def resolver(self) -> SandboxResolver:
        if self._resolver is None:
            self._resolver = SandboxResolver(self.provider, self.store, self._probe)
        return self._resolver

    @property
    def bridge(self) -> AgentBridge:
        if self._bridge is None:
            self._bridge = AgentBridge(self.provider, self.store, timeout=self._stream_timeout)
        return self._bridge

    async def initialize(self, tenant_key: str) -> InitializeResponse:
        """Make sure the tenant has a ready sandbox"""
        resolved = await self.resolver.resolve(tenant_key)
        record = await self.store.get_state(tenant_key)

        dev_server_url = record.dev_server_url
        if not dev_server_url:
            try:
                dev_server_url = await self.provider.get_preview_url(resolved.handle, settings.DEV_SERVER_PORT)
                await self.store.set_dev_server_url(tenant_key, dev_server_url)
            except SandboxProviderError as e:
                logger.warning(f"[SandboxService] Preview URL unavailable for {resolved.handle.id}: {e.message}")
                dev_server_url = None

        logger.log_sandbox_event(resolved.handle.id, "initialized", action=resolved.action.value)
        return InitializeResponse(
            sandbox_id=resolved.handle.id,
            dev_server_url=dev_server_url,
            action=resolved.action.value,
        )

    @staticmethod
    def validate_message(message: str) -> str:
        if not message or not message.strip():
            raise ValidationError("Message must not be empty", field="message")
        return message

    async def run_code(self, tenant_key: str, message: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream one agent turn as event dicts, always ending with {"type": "done"}.

        Errors raised before the agent starts (resolution, storage) become a
        single error event; the stream itself never raises them.
        """
        self.validate_message(message)

        try:
            resolved = await self.resolver.resolve(tenant_key)
            record = await self.store.get_state(tenant_key)
        except SandboxRelayError as e:
            logger.log_error_with_context(e, "run_code resolve", tenant_key=tenant_key)
            yield StreamEvent.error(e.code, e.message, e.retryable).to_dict()
            yield StreamEvent.done().to_dict()
            return

        first_turn = not record.messages
        try:
            async for event in self.bridge.stream(tenant_key, resolved.handle, message, first_turn):
                yield event.to_dict()
        except SandboxRelayError as e:
            # Storing the user turn failed before the agent started
            logger.log_error_with_context(e, "run_code stream", tenant_key=tenant_key)
            yield StreamEvent.error(e.code, e.message, e.retryable).to_dict()
            yield StreamEvent.done().to_dict()

    async def status(self, tenant_key: str) -> SandboxRecord:
        return await self.store.get_state(tenant_key)

    async def reset_session(self, tenant_key: str) -> SandboxRecord:
        """Clear the conversation; the sandbox stays bound"""
        record = await self.store.clear_messages(tenant_key)
        logger.info(f"[SandboxService] Conversation cleared for tenant {tenant_key}")
        return record


# Global instance
_service: Optional[SandboxService] = None


def get_sandbox_service() -> SandboxService:
    """Get or create the global service (FastAPI dependency)"""
    global _service
    if _service is None:
        _service = SandboxService(state_store)
    return _service
