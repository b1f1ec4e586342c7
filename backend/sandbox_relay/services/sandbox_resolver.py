"""
Sandbox Resolver - Reuse, restart or recreate the tenant's sandbox

Given the last-known sandbox id, produce a live sandbox:
1. No id                      -> create
2. Lookup fails / not found   -> create (recoverable, only logged)
3. Running                    -> probe dev server; repair it if unreachable
4. Stopped / archived         -> start, ensure dev server, refresh preview URL
5. Any other state            -> create

At most one sandbox is created per call. Calls for the same tenant are
serialized by a per-tenant lock and the record is re-read inside the lock,
so concurrent first requests in one process share a single creation.
"""

import asyncio
import json
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from sandbox_relay.core.config import settings
from sandbox_relay.core.exceptions import (
    ConfigurationError,
    SandboxCreateError,
    SandboxProviderError,
    SandboxStartError,
)
from sandbox_relay.core.logging_config import logger
from sandbox_relay.services.health_probe import HealthProbe, health_probe
from sandbox_relay.services.sandbox_provider import SandboxHandle, SandboxProvider
from sandbox_relay.services.state_store import SandboxStateStore


RUNNING_STATES = {"started", "running"}
STOPPED_STATES = {"stopped"}
ARCHIVED_STATES = {"archived"}


class SandboxAction(str, Enum):
    """What resolve() did to produce the sandbox"""
    REUSED = "reused"
    REPAIRED = "repaired"
    STARTED = "started"
    CREATED = "created"


class DevServerAction(str, Enum):
    """Outcome of the dev server reconciliation step"""
    ONLINE = "online"
    RESTARTED = "restarted"
    STARTED = "started"
    FAILED = "failed"


@dataclass
class ResolvedSandbox:
    handle: SandboxHandle
    action: SandboxAction

    @property
    def created(self) -> bool:
        return self.action == SandboxAction.CREATED


class SandboxResolver:
    """Decision procedure over the provider-reported sandbox state"""

    def __init__(
        self,
        provider: SandboxProvider,
        store: SandboxStateStore,
        probe: Optional[HealthProbe] = None,
    ):
        self.provider = provider
        self.store = store
        self.probe = probe or health_probe
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def resolve(self, tenant_key: str) -> ResolvedSandbox:
        async with self._locks[tenant_key]:
            record = await self.store.get_state(tenant_key)

            if record.sandbox_id:
                handle = await self._lookup(record.sandbox_id)
                if handle is not None:
                    resolved = await self._reconcile(tenant_key, handle)
                    if resolved is not None:
                        return resolved

            return await self._create(tenant_key)

    async def _lookup(self, sandbox_id: str) -> Optional[SandboxHandle]:
        try:
            return await self.provider.get(sandbox_id)
        except SandboxProviderError as e:
            logger.warning(f"[Resolver] Sandbox {sandbox_id} unavailable, creating a new one: {e.message}")
            return None

    async def _reconcile(self, tenant_key: str, handle: SandboxHandle) -> Optional[ResolvedSandbox]:
        state = (handle.state or "").lower()

        if state in RUNNING_STATES:
            if await self._dev_server_healthy(handle):
                logger.info(f"[Resolver] Reusing sandbox {handle.id}")
                return ResolvedSandbox(handle, SandboxAction.REUSED)

            logger.info(f"[Resolver] Dev server unreachable in {handle.id}, repairing")
            await self.ensure_dev_server(handle)
            return ResolvedSandbox(handle, SandboxAction.REPAIRED)

        if state in STOPPED_STATES or state in ARCHIVED_STATES:
            archived = state in ARCHIVED_STATES
            timeout = settings.SANDBOX_ARCHIVED_START_TIMEOUT if archived else settings.SANDBOX_START_TIMEOUT
            logger.log_sandbox_event(handle.id, f"starting from {state}", timeout=timeout)

            try:
                await self.provider.start(handle, timeout=timeout)
            except SandboxProviderError as e:
                raise SandboxStartError(handle.id, e.message) from e

            await self.ensure_dev_server(handle)

            url = await self.provider.get_preview_url(handle, settings.DEV_SERVER_PORT)
            await self.store.set_dev_server_url(tenant_key, url)
            logger.log_sandbox_event(handle.id, "started", dev_server_url=url)
            return ResolvedSandbox(handle, SandboxAction.STARTED)

        logger.warning(f"[Resolver] Sandbox {handle.id} in unrecognized state '{handle.state}', recreating")
        return None

    async def _dev_server_healthy(self, handle: SandboxHandle) -> bool:
        try:
            url = await self.provider.get_preview_url(handle, settings.DEV_SERVER_PORT)
        except SandboxProviderError as e:
            logger.warning(f"[Resolver] No preview URL for {handle.id}: {e.message}")
            return False
        return await self.probe.probe(url)

    async def _create(self, tenant_key: str) -> ResolvedSandbox:
        if not settings.ANTHROPIC_API_KEY:
            raise ConfigurationError(
                "ANTHROPIC_API_KEY is not set",
                hint="Add ANTHROPIC_API_KEY to your .env file so the agent can run inside the sandbox",
            )

        logger.info(f"[Resolver] Creating sandbox from snapshot {settings.SANDBOX_SNAPSHOT}")
        try:
            handle = await self.provider.create(
                snapshot=settings.SANDBOX_SNAPSHOT,
                env_vars={"ANTHROPIC_API_KEY": settings.ANTHROPIC_API_KEY},
                public=settings.SANDBOX_PUBLIC,
            )
        except SandboxProviderError as e:
            raise SandboxCreateError(e.message) from e

        await self.store.set_sandbox(tenant_key, handle.id)

        # The bound record may still carry the previous sandbox's URL
        try:
            url = await self.provider.get_preview_url(handle, settings.DEV_SERVER_PORT)
        except SandboxProviderError as e:
            logger.warning(f"[Resolver] No preview URL for new sandbox {handle.id}: {e.message}")
            url = None
        await self.store.set_dev_server_url(tenant_key, url)

        logger.log_sandbox_event(handle.id, "created", tenant_key=tenant_key, dev_server_url=url)
        return ResolvedSandbox(handle, SandboxAction.CREATED)

    # ==================== Dev server reconciliation ====================

    async def ensure_dev_server(self, handle: SandboxHandle) -> DevServerAction:
        """
        Make sure the dev server process is online. Safe to call repeatedly.

        online -> nothing; present but not online -> restart;
        absent -> start fresh from the ecosystem file and save pm2 state.
        Never raises: failures are logged and reported as FAILED.
        """
        name = settings.DEV_SERVER_PROCESS_NAME
        status = await self._dev_server_status(handle)

        try:
            if status == "online":
                return DevServerAction.ONLINE

            if status is not None:
                logger.info(f"[Resolver] Restarting {name} (status: {status}) in {handle.id}")
                await self._run_setup(handle, f"pm2 restart {name}")
                return DevServerAction.RESTARTED

            logger.info(f"[Resolver] Starting {name} in {handle.id}")
            await self._run_setup(
                handle,
                f"test -d {settings.PROJECT_DIR} || cp -r {settings.TEMPLATE_DIR} {settings.PROJECT_DIR}",
            )
            await self._run_setup(handle, f"pm2 start {settings.DEV_SERVER_ECOSYSTEM_FILE} --only {name}")
            await self._run_setup(handle, "pm2 save")
            return DevServerAction.STARTED

        except SandboxProviderError as e:
            logger.warning(f"[Resolver] Dev server reconciliation failed in {handle.id}: {e.message}")
            return DevServerAction.FAILED

    async def _run_setup(self, handle: SandboxHandle, command: str) -> None:
        result = await self.provider.exec(handle, command)
        if not result.ok:
            logger.warning(f"[Resolver] '{command}' exited {result.exit_code}: {result.output[:200]}")

    async def _dev_server_status(self, handle: SandboxHandle) -> Optional[str]:
        """pm2 status of the dev server, or None when absent or unknown"""
        name = settings.DEV_SERVER_PROCESS_NAME
        try:
            result = await self.provider.exec(handle, "pm2 jlist")
            if not result.ok:
                logger.warning(f"[Resolver] pm2 jlist exited {result.exit_code} in {handle.id}")
                return None
        except SandboxProviderError as e:
            logger.warning(f"[Resolver] pm2 status check failed in {handle.id}: {e.message}")
            return None

        processes = self._parse_process_list(result.output)
        if processes is None:
            logger.warning(f"[Resolver] Could not parse pm2 process list in {handle.id}")
            return None

        for process in processes:
            if isinstance(process, dict) and process.get("name") == name:
                return str((process.get("pm2_env") or {}).get("status", "unknown")).lower()
        return None

    @staticmethod
    def _parse_process_list(output: str) -> Optional[list]:
        # pm2 may print banner lines ("[PM2] ...") before the JSON array
        for line in reversed(output.splitlines()):
            line = line.strip()
            if not line.startswith("["):
                continue
            try:
                processes = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(processes, list):
                return processes
        return None
