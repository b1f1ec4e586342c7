"""
Agent Bridge - Stream one agent turn from the sandbox to the client

For each user message:
1. Persist the user turn (before anything runs remotely)
2. Start the agent CLI asynchronously inside a fresh session
3. Reassemble log chunks into lines, parse them into StreamEvents
4. Relay events to the client as they arrive, folding assistant text
   (and raw lines) into one response
5. Persist the assistant turn when the stream ends or times out

The remote work runs in its own task and talks to the client through a
bounded queue. A client that disconnects stops receiving events but the
turn still runs to completion so the conversation stays consistent.
"""

import asyncio
import shlex
from typing import AsyncIterator, Dict, List, Optional, Set

from sandbox_relay.core.config import settings
from sandbox_relay.core.exceptions import SandboxLostError, SandboxProviderError, SandboxRelayError
from sandbox_relay.core.logging_config import logger
from sandbox_relay.schemas.sandbox import Message
from sandbox_relay.services.sandbox_provider import STDERR, STDOUT, SandboxHandle, SandboxProvider
from sandbox_relay.services.state_store import SandboxStateStore
from sandbox_relay.services.stream_events import (
    LineAssembler,
    StreamEvent,
    StreamEventKind,
    assistant_text,
    parse_line,
)


# Turns whose client went away; referenced here so they are not garbage collected
_active_runs: Set[asyncio.Task] = set()


def build_agent_command(message: str, continue_session: bool) -> str:
    """Shell command running the agent CLI for one turn"""
    project_dir = shlex.quote(settings.PROJECT_DIR)
    parts = [
        settings.AGENT_COMMAND,
        "-p", shlex.quote(message),
        "--output-format", "stream-json",
        "--verbose",
        "--dangerously-skip-permissions",
    ]
    if continue_session:
        parts.append("--continue")
    return f"mkdir -p {project_dir} && cd {project_dir} && {' '.join(parts)}"


class AgentRun:
    """Producer side of one turn: remote command, parsing, folding, persistence"""

    def __init__(
        self,
        provider: SandboxProvider,
        store: SandboxStateStore,
        tenant_key: str,
        handle: SandboxHandle,
        command: str,
        timeout: float,
        queue_size: int,
    ):
        self.provider = provider
        self.store = store
        self.tenant_key = tenant_key
        self.handle = handle
        self.command = command
        self.timeout = timeout
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        # stdout and stderr are reassembled separately so their lines never interleave
        self._assemblers: Dict[str, LineAssembler] = {STDOUT: LineAssembler(), STDERR: LineAssembler()}
        self._response_parts: List[str] = []
        self._detached = False

    @property
    def response_text(self) -> str:
        return "".join(self._response_parts)

    def detach(self) -> None:
        """Client is gone: stop forwarding, unblock a pending put"""
        self._detached = True
        while not self.queue.empty():
            self.queue.get_nowait()

    async def _emit(self, event: StreamEvent) -> None:
        if self._detached:
            return
        await self.queue.put(event)

    async def _handle_line(self, line: str) -> None:
        event = parse_line(line)
        if event.is_raw:
            self._response_parts.append(line + "\n")
        else:
            self._response_parts.append(assistant_text(event))
        await self._emit(event)

    async def _on_chunk(self, chunk: bytes, stream: str = STDOUT) -> None:
        assembler = self._assemblers.setdefault(stream, LineAssembler())
        for line in assembler.feed(chunk):
            await self._handle_line(line)

    async def _flush_tail(self) -> None:
        for assembler in self._assemblers.values():
            tail = assembler.flush()
            if tail is not None:
                await self._handle_line(tail)

    async def _stream_output(self) -> None:
        session_id = await self.provider.create_session(self.handle)
        command_id = await self.provider.execute_async(self.handle, session_id, self.command)
        logger.info(f"[AgentBridge] Command {command_id} started in session {session_id}")

        try:
            await asyncio.wait_for(
                self.provider.stream_logs(self.handle, session_id, command_id, self._on_chunk),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[AgentBridge] Agent output timed out after {self.timeout:.0f}s in {self.handle.id}")
            await self._flush_tail()
            await self._emit(StreamEvent.error(
                "AGENT_TIMEOUT",
                f"Agent did not finish within {self.timeout:.0f} seconds; partial output was kept",
            ))
            return

        await self._flush_tail()

    async def _finalize(self) -> None:
        text = self.response_text.strip()
        if not text:
            logger.info("[AgentBridge] Agent produced no response text")
            return
        await self.store.add_message(self.tenant_key, Message(sender="assistant", content=text))
        logger.info(f"[AgentBridge] Assistant turn saved ({len(text)} chars)")

    async def execute(self) -> None:
        try:
            await self._stream_output()
            await self._finalize()
        except SandboxProviderError as e:
            logger.error(f"[AgentBridge] Sandbox {self.handle.id} lost mid-stream: {e.message}")
            lost = SandboxLostError(self.handle.id, e.message)
            try:
                await self.store.reset(self.tenant_key)
            finally:
                await self._emit(StreamEvent.error(lost.code, lost.message, lost.retryable))
        except SandboxRelayError as e:
            logger.log_error_with_context(e, "agent turn", tenant_key=self.tenant_key)
            await self._emit(StreamEvent.error(e.code, e.message, e.retryable))
        except Exception as e:
            logger.error(f"[AgentBridge] Unexpected error in agent turn: {type(e).__name__}: {e}", exc_info=True)
            await self._emit(StreamEvent.error("INTERNAL_ERROR", "Agent turn failed unexpectedly"))
        finally:
            await self._emit(StreamEvent.done())


class AgentBridge:
    """Runs agent turns inside a resolved sandbox"""

    def __init__(
        self,
        provider: SandboxProvider,
        store: SandboxStateStore,
        timeout: Optional[float] = None,
        queue_size: Optional[int] = None,
    ):
        self.provider = provider
        self.store = store
        self.timeout = timeout if timeout is not None else settings.AGENT_STREAM_TIMEOUT
        self.queue_size = queue_size or settings.AGENT_STREAM_QUEUE_SIZE

    async def stream(
        self,
        tenant_key: str,
        handle: SandboxHandle,
        message: str,
        first_turn: bool,
    ) -> AsyncIterator[StreamEvent]:
        """
        Run one turn and yield its events, ending with a "done" event.

        ``first_turn`` omits the agent's --continue flag so a new agent
        session starts; later turns continue the previous one.
        """
        await self.store.add_message(tenant_key, Message(sender="user", content=message))

        run = AgentRun(
            provider=self.provider,
            store=self.store,
            tenant_key=tenant_key,
            handle=handle,
            command=build_agent_command(message, continue_session=not first_turn),
            timeout=self.timeout,
            queue_size=self.queue_size,
        )
        task = asyncio.create_task(run.execute())
        _active_runs.add(task)
        task.add_done_callback(_active_runs.discard)

        try:
            while True:
                event = await run.queue.get()
                yield event
                if event.kind == StreamEventKind.DONE:
                    break
        finally:
            if not task.done():
                logger.info("[AgentBridge] Client detached, turn continues in background")
                run.detach()
