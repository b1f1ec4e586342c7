"""
Sandbox Provider - Remote execution environment capability interface

The rest of the service only talks to SandboxProvider:
- get / create / start a sandbox
- preview URL for a port
- short synchronous commands (process setup)
- sessions with async commands and incremental log streaming

DaytonaProvider implements it on the Daytona async SDK.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from sandbox_relay.core.config import settings
from sandbox_relay.core.exceptions import (
    ConfigurationError,
    SandboxNotFoundError,
    SandboxProviderError,
    SnapshotNotFoundError,
)
from sandbox_relay.core.logging_config import logger


STDOUT = "stdout"
STDERR = "stderr"

# (chunk, stream name); chunks of one stream arrive in order
ChunkCallback = Callable[[bytes, str], Awaitable[None]]


@dataclass
class SandboxHandle:
    """Live reference to a remote sandbox"""
    id: str
    state: str
    native: Any = None  # Provider SDK object


@dataclass
class ExecResult:
    """Result of a short synchronous command"""
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SandboxProvider(ABC):
    """Capabilities consumed from the remote execution provider"""

    @abstractmethod
    async def get(self, sandbox_id: str) -> SandboxHandle:
        """Look up a sandbox; raises SandboxNotFoundError when unknown"""

    @abstractmethod
    async def create(self, snapshot: str, env_vars: Dict[str, str], public: bool) -> SandboxHandle:
        """Create a sandbox from a prebuilt snapshot"""

    @abstractmethod
    async def start(self, handle: SandboxHandle, timeout: float) -> None:
        """Start a stopped or archived sandbox"""

    @abstractmethod
    async def get_preview_url(self, handle: SandboxHandle, port: int) -> str:
        """Externally reachable URL for a port inside the sandbox"""

    @abstractmethod
    async def exec(self, handle: SandboxHandle, command: str, timeout: Optional[int] = None) -> ExecResult:
        """Run a short command and wait for it"""

    @abstractmethod
    async def create_session(self, handle: SandboxHandle) -> str:
        """Create a session scoping one command and its log stream"""

    @abstractmethod
    async def execute_async(self, handle: SandboxHandle, session_id: str, command: str) -> str:
        """Start a command inside a session; returns the command id immediately"""

    @abstractmethod
    async def stream_logs(
        self,
        handle: SandboxHandle,
        session_id: str,
        command_id: str,
        on_chunk: ChunkCallback,
    ) -> None:
        """Deliver output chunks tagged STDOUT or STDERR in arrival order; returns when the command finishes"""


class DaytonaProvider(SandboxProvider):
    """SandboxProvider backed by daytona_sdk.AsyncDaytona"""

    def __init__(self, api_key: str, api_url: str = "", target: str = ""):
        from daytona_sdk import AsyncDaytona, DaytonaConfig

        config_kwargs = {"api_key": api_key}
        if api_url:
            config_kwargs["api_url"] = api_url
        if target:
            config_kwargs["target"] = target

        self._client = AsyncDaytona(DaytonaConfig(**config_kwargs))
        logger.info("[Provider] Daytona client initialized")

    @staticmethod
    def _state_of(sandbox: Any) -> str:
        state = getattr(sandbox, "state", None)
        if state is None:
            return "unknown"
        return str(state.value if hasattr(state, "value") else state).lower()

    @staticmethod
    def _wrap(error: Exception, action: str, sandbox_id: Optional[str] = None) -> SandboxProviderError:
        message = str(error)
        if getattr(error, "status_code", None) == 404 or "not found" in message.lower():
            if sandbox_id:
                return SandboxNotFoundError(sandbox_id)
        return SandboxProviderError(f"{action} failed: {message}", sandbox_id)

    async def get(self, sandbox_id: str) -> SandboxHandle:
        try:
            sandbox = await self._client.get(sandbox_id)
        except Exception as e:
            raise self._wrap(e, "Sandbox lookup", sandbox_id) from e
        return SandboxHandle(id=sandbox.id, state=self._state_of(sandbox), native=sandbox)

    async def create(self, snapshot: str, env_vars: Dict[str, str], public: bool) -> SandboxHandle:
        from daytona_sdk import CreateSandboxFromSnapshotParams

        params = CreateSandboxFromSnapshotParams(snapshot=snapshot, env_vars=env_vars, public=public)
        try:
            sandbox = await self._client.create(params)
        except Exception as e:
            if "snapshot" in str(e).lower():
                raise SnapshotNotFoundError(snapshot, str(e)) from e
            raise self._wrap(e, "Sandbox create") from e
        return SandboxHandle(id=sandbox.id, state=self._state_of(sandbox), native=sandbox)

    async def start(self, handle: SandboxHandle, timeout: float) -> None:
        try:
            await handle.native.start(timeout=timeout)
        except Exception as e:
            raise self._wrap(e, "Sandbox start", handle.id) from e
        handle.state = self._state_of(handle.native)

    async def get_preview_url(self, handle: SandboxHandle, port: int) -> str:
        try:
            link = await handle.native.get_preview_link(port)
        except Exception as e:
            raise self._wrap(e, "Preview link", handle.id) from e
        return link.url

    async def exec(self, handle: SandboxHandle, command: str, timeout: Optional[int] = None) -> ExecResult:
        try:
            response = await handle.native.process.exec(command, timeout=timeout)
        except Exception as e:
            raise self._wrap(e, "Command", handle.id) from e
        return ExecResult(exit_code=int(response.exit_code), output=response.result or "")

    async def create_session(self, handle: SandboxHandle) -> str:
        session_id = f"agent-{uuid.uuid4().hex[:12]}"
        try:
            await handle.native.process.create_session(session_id)
        except Exception as e:
            raise self._wrap(e, "Session create", handle.id) from e
        return session_id

    async def execute_async(self, handle: SandboxHandle, session_id: str, command: str) -> str:
        from daytona_sdk import SessionExecuteRequest

        try:
            response = await handle.native.process.execute_session_command(
                session_id,
                SessionExecuteRequest(command=command, run_async=True),
            )
        except Exception as e:
            raise self._wrap(e, "Session command", handle.id) from e
        return response.cmd_id

    async def stream_logs(
        self,
        handle: SandboxHandle,
        session_id: str,
        command_id: str,
        on_chunk: ChunkCallback,
    ) -> None:
        # SDK callbacks are synchronous; relay them through a queue so on_chunk
        # is awaited strictly in arrival order.
        chunks: asyncio.Queue = asyncio.Queue()

        def collector(stream: str) -> Callable[[str], None]:
            def collect(text: str) -> None:
                chunks.put_nowait((text.encode("utf-8"), stream))
            return collect

        subscription = asyncio.ensure_future(
            handle.native.process.get_session_command_logs_async(
                session_id, command_id, collector(STDOUT), collector(STDERR)
            )
        )
        getter: Optional[asyncio.Future] = None
        try:
            while not (subscription.done() and chunks.empty()):
                if not chunks.empty():
                    await on_chunk(*chunks.get_nowait())
                    continue
                getter = asyncio.ensure_future(chunks.get())
                done, _ = await asyncio.wait(
                    {getter, subscription}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter in done:
                    await on_chunk(*getter.result())
                else:
                    getter.cancel()
                getter = None
            subscription.result()
        except SandboxProviderError:
            raise
        except Exception as e:
            raise self._wrap(e, "Log stream", handle.id) from e
        finally:
            if getter is not None:
                getter.cancel()
            subscription.cancel()


# Global instance
_provider: Optional[SandboxProvider] = None


def get_provider() -> SandboxProvider:
    """Get or create the global provider from settings"""
    global _provider

    if _provider is None:
        if not settings.DAYTONA_API_KEY:
            raise ConfigurationError(
                "DAYTONA_API_KEY is not set",
                hint="Add DAYTONA_API_KEY to your .env file",
            )
        _provider = DaytonaProvider(
            api_key=settings.DAYTONA_API_KEY,
            api_url=settings.DAYTONA_API_URL,
            target=settings.DAYTONA_TARGET,
        )

    return _provider


def set_provider(provider: Optional[SandboxProvider]) -> None:
    """Replace the global provider (tests, alternative backends)"""
    global _provider
    _provider = provider
