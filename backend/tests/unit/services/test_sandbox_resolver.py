"""
Unit Tests for SandboxResolver

Covers the reuse / repair / start / create decision tree and the
dev server reconciliation step.
"""
import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from sandbox_relay.core.exceptions import (
    ConfigurationError,
    SandboxCreateError,
    SandboxProviderError,
    SandboxStartError,
)
from sandbox_relay.services.sandbox_resolver import DevServerAction, SandboxAction

DEV_SERVER = "vite-dev-server"


class TestCreatePath:

    @pytest.mark.asyncio
    async def test_unbound_record_creates_once(self, resolver, provider, store, tenant_key):
        resolved = await resolver.resolve(tenant_key)

        assert resolved.action == SandboxAction.CREATED
        assert resolved.created is True
        assert provider.count("create") == 1
        assert provider.count("get") == 0

        record = await store.get_state(tenant_key)
        assert record.sandbox_id == resolved.handle.id
        assert record.is_initialized is True

    @pytest.mark.asyncio
    async def test_create_passes_snapshot_and_secret(self, resolver, provider, tenant_key):
        await resolver.resolve(tenant_key)

        args = provider.create_args[0]
        assert args["snapshot"] == "claude-code-env:1.0.0"
        assert args["env_vars"] == {"ANTHROPIC_API_KEY": "test-anthropic-key"}
        assert args["public"] is True

    @pytest.mark.asyncio
    async def test_not_found_recreates(self, resolver, provider, store, tenant_key):
        await store.set_sandbox(tenant_key, "sbx-gone")

        resolved = await resolver.resolve(tenant_key)

        assert provider.count("get") == 1
        assert provider.count("create") == 1
        record = await store.get_state(tenant_key)
        assert record.sandbox_id == resolved.handle.id != "sbx-gone"
        assert record.is_initialized is True

    @pytest.mark.asyncio
    async def test_create_stores_new_preview_url(self, resolver, store, tenant_key):
        await store.set_sandbox(tenant_key, "sbx-gone")
        await store.set_dev_server_url(tenant_key, "https://3000-sbx-gone.preview.test")

        resolved = await resolver.resolve(tenant_key)

        record = await store.get_state(tenant_key)
        assert record.dev_server_url == f"https://3000-{resolved.handle.id}.preview.test"

    @pytest.mark.asyncio
    async def test_create_without_preview_url_clears_stale_one(self, resolver, provider, store, tenant_key):
        await store.set_sandbox(tenant_key, "sbx-gone")
        await store.set_dev_server_url(tenant_key, "https://3000-sbx-gone.preview.test")
        provider.failures["get_preview_url"] = SandboxProviderError("no preview")

        resolved = await resolver.resolve(tenant_key)

        assert resolved.action == SandboxAction.CREATED
        record = await store.get_state(tenant_key)
        assert record.dev_server_url is None

    @pytest.mark.asyncio
    async def test_lookup_transport_error_recreates(self, resolver, provider, store, tenant_key):
        provider.add_sandbox("sbx-1", "started")
        await store.set_sandbox(tenant_key, "sbx-1")
        provider.failures["get"] = SandboxProviderError("timeout talking to provider")

        resolved = await resolver.resolve(tenant_key)

        assert resolved.action == SandboxAction.CREATED
        assert provider.count("create") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["error", "destroyed", "pending_build", ""])
    async def test_unrecognized_state_recreates(self, resolver, provider, store, tenant_key, state):
        provider.add_sandbox("sbx-1", state)
        await store.set_sandbox(tenant_key, "sbx-1")

        resolved = await resolver.resolve(tenant_key)

        assert resolved.action == SandboxAction.CREATED
        assert provider.count("create") == 1

    @pytest.mark.asyncio
    async def test_create_failure_propagates(self, resolver, provider, tenant_key):
        provider.failures["create"] = SandboxProviderError("quota exceeded")

        with pytest.raises(SandboxCreateError) as exc_info:
            await resolver.resolve(tenant_key)

        assert "quota exceeded" in exc_info.value.message
        assert provider.count("create") == 1

    @pytest.mark.asyncio
    async def test_missing_anthropic_key_is_configuration_error(self, resolver, provider, tenant_key, monkeypatch):
        from sandbox_relay.core.config import settings
        monkeypatch.setattr(settings, "ANTHROPIC_API_KEY", "")

        with pytest.raises(ConfigurationError) as exc_info:
            await resolver.resolve(tenant_key)

        assert exc_info.value.hint
        assert provider.count("create") == 0


class TestReusePath:

    @pytest.mark.asyncio
    async def test_repeated_resolves_do_not_create_again(self, resolver, provider, tenant_key):
        first = await resolver.resolve(tenant_key)
        second = await resolver.resolve(tenant_key)
        third = await resolver.resolve(tenant_key)

        assert provider.count("create") == 1
        assert second.action == SandboxAction.REUSED
        assert third.handle.id == first.handle.id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["started", "STARTED", "Running"])
    async def test_running_and_healthy_is_reused(self, resolver, provider, store, probe, tenant_key, state):
        handle = provider.add_sandbox("sbx-1", state, {DEV_SERVER: "online"})
        await store.set_sandbox(tenant_key, "sbx-1")

        resolved = await resolver.resolve(tenant_key)

        assert resolved.handle is handle
        assert resolved.action == SandboxAction.REUSED
        probe.probe.assert_awaited_once_with("https://3000-sbx-1.preview.test")
        assert provider.exec_commands == []

    @pytest.mark.asyncio
    async def test_unhealthy_existing_process_is_restarted(self, resolver, provider, store, probe, tenant_key):
        handle = provider.add_sandbox("r1", "STARTED", {DEV_SERVER: "errored"})
        await store.set_sandbox(tenant_key, "r1")
        probe.probe = AsyncMock(return_value=False)

        resolved = await resolver.resolve(tenant_key)

        assert resolved.handle is handle
        assert resolved.action == SandboxAction.REPAIRED
        assert f"pm2 restart {DEV_SERVER}" in provider.exec_commands
        assert not any(c.startswith("pm2 start") for c in provider.exec_commands)
        assert provider.count("create") == 0

    @pytest.mark.asyncio
    async def test_preview_url_failure_counts_as_unhealthy(self, resolver, provider, store, probe, tenant_key):
        provider.add_sandbox("sbx-1", "started", {DEV_SERVER: "online"})
        await store.set_sandbox(tenant_key, "sbx-1")
        provider.failures["get_preview_url"] = SandboxProviderError("no preview")

        resolved = await resolver.resolve(tenant_key)

        assert resolved.action == SandboxAction.REPAIRED
        probe.probe.assert_not_awaited()


class TestStartPath:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["stopped", "STOPPED", "archived", "Archived"])
    async def test_start_once_and_refresh_url(self, resolver, provider, store, tenant_key, state):
        provider.add_sandbox("sbx-1", state, {DEV_SERVER: "stopped"})
        await store.set_sandbox(tenant_key, "sbx-1")
        await store.set_dev_server_url(tenant_key, "https://stale.preview.test")

        resolved = await resolver.resolve(tenant_key)

        assert resolved.action == SandboxAction.STARTED
        assert provider.count("start") == 1
        assert provider.count("create") == 0
        record = await store.get_state(tenant_key)
        assert record.dev_server_url == "https://3000-sbx-1.preview.test"

    @pytest.mark.asyncio
    async def test_archived_uses_longer_timeout(self, resolver, provider, store, tenant_key):
        provider.add_sandbox("sbx-1", "archived")
        await store.set_sandbox(tenant_key, "sbx-1")
        provider.start = AsyncMock()

        await resolver.resolve(tenant_key)

        assert provider.start.await_args.kwargs["timeout"] == 300

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self, resolver, provider, store, tenant_key):
        provider.add_sandbox("sbx-1", "stopped")
        await store.set_sandbox(tenant_key, "sbx-1")
        provider.failures["start"] = SandboxProviderError("capacity")

        with pytest.raises(SandboxStartError):
            await resolver.resolve(tenant_key)

        assert provider.count("start") == 1
        assert provider.count("create") == 0


class TestSingleFlight:

    @pytest.mark.asyncio
    async def test_concurrent_first_requests_share_one_create(self, resolver, provider, store, tenant_key):
        results = await asyncio.gather(*[resolver.resolve(tenant_key) for _ in range(5)])

        assert provider.count("create") == 1
        assert len({r.handle.id for r in results}) == 1

    @pytest.mark.asyncio
    async def test_different_tenants_are_independent(self, resolver, provider):
        a, b = await asyncio.gather(resolver.resolve("tenant-a"), resolver.resolve("tenant-b"))

        assert provider.count("create") == 2
        assert a.handle.id != b.handle.id


class TestEnsureDevServer:

    @pytest.mark.asyncio
    async def test_online_is_noop(self, resolver, provider):
        handle = provider.add_sandbox("sbx-1", "started", {DEV_SERVER: "online"})

        action = await resolver.ensure_dev_server(handle)

        assert action == DevServerAction.ONLINE
        assert provider.exec_commands == ["pm2 jlist"]

    @pytest.mark.asyncio
    async def test_not_online_is_restarted(self, resolver, provider):
        handle = provider.add_sandbox("sbx-1", "started", {DEV_SERVER: "stopped"})

        action = await resolver.ensure_dev_server(handle)

        assert action == DevServerAction.RESTARTED
        assert provider.pm2["sbx-1"][DEV_SERVER] == "online"

    @pytest.mark.asyncio
    async def test_absent_is_started_fresh_and_saved(self, resolver, provider):
        handle = provider.add_sandbox("sbx-1", "started", {"other": "online"})

        action = await resolver.ensure_dev_server(handle)

        assert action == DevServerAction.STARTED
        commands = provider.exec_commands
        assert any("cp -r /workspace/template /tmp/project" in c for c in commands)
        assert f"pm2 start /workspace/template/ecosystem.config.cjs --only {DEV_SERVER}" in commands
        assert commands[-1] == "pm2 save"

    @pytest.mark.asyncio
    async def test_banner_before_json_is_ignored(self, resolver, provider):
        handle = provider.add_sandbox("sbx-1", "started", {DEV_SERVER: "online"})
        provider.pm2_output_prefix = "[PM2] Spawning PM2 daemon\n"

        action = await resolver.ensure_dev_server(handle)

        assert action == DevServerAction.ONLINE
        assert provider.exec_commands == ["pm2 jlist"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("entry", [
        {"name": DEV_SERVER, "pm2_env": None},
        {"name": DEV_SERVER},
        {"name": DEV_SERVER, "pm2_env": {}},
    ])
    async def test_missing_pm2_env_is_restarted(self, resolver, provider, entry):
        handle = provider.add_sandbox("sbx-1", "started", {DEV_SERVER: "errored"})
        provider.pm2_output = json.dumps([entry])

        action = await resolver.ensure_dev_server(handle)

        assert action == DevServerAction.RESTARTED
        assert f"pm2 restart {DEV_SERVER}" in provider.exec_commands

    @pytest.mark.asyncio
    async def test_check_failure_is_treated_as_absent(self, resolver, provider):
        handle = provider.add_sandbox("sbx-1", "started")

        async def flaky_exec(h, command, timeout=None):
            if command == "pm2 jlist":
                raise SandboxProviderError("exec timed out")
            return await type(provider).exec(provider, h, command, timeout)

        provider.exec = flaky_exec

        action = await resolver.ensure_dev_server(handle)

        assert action == DevServerAction.STARTED

    @pytest.mark.asyncio
    async def test_never_raises(self, resolver, provider):
        handle = provider.add_sandbox("sbx-1", "started")
        provider.failures["exec"] = SandboxProviderError("sandbox unreachable")

        action = await resolver.ensure_dev_server(handle)

        assert action == DevServerAction.FAILED
