"""Tests for the Runtime."""

import asyncio

import pytest

from mcporter.config import RuntimeConfig, load_config
from mcporter.errors import (
    ConfigError,
    InvocationTimeoutError,
    TransportError,
    UnknownServerError,
    UnknownToolError,
)
from mcporter.runtime import Runtime, create_runtime

from helpers import SERVERS, echo_servers, text_payload


class TestCreate:
    """Tests for runtime construction."""

    def test_list_servers(self, factory):
        runtime = Runtime.create(servers=SERVERS, binding_factory=factory)
        assert runtime.list_servers() == ["context7", "figma"]

    def test_bindings_created_not_started(self, factory, bindings):
        create_runtime(servers=SERVERS, binding_factory=factory)
        assert set(bindings) == {"context7", "figma"}
        assert not any(b.started for b in bindings.values())

    def test_config_file_and_overrides(self, factory, tmp_path):
        path = tmp_path / "mcporter.json"
        path.write_text('{"servers": {"context7": {"command": "npx"}, "figma": {"command": "bunx"}}}')

        runtime = Runtime.create(
            config_path=path,
            servers=[{"name": "figma", "command": "node", "session": True}],
            binding_factory=factory,
        )

        assert runtime.list_servers() == ["context7", "figma"]
        assert runtime.server_spec("figma").command == "node"
        assert runtime.server_spec("figma").session_scoped

    def test_prebuilt_config(self, factory):
        config = load_config(servers=SERVERS)
        runtime = Runtime.create(config, binding_factory=factory)
        assert runtime.config is config

    def test_empty_config_rejected(self, factory):
        with pytest.raises(ConfigError):
            Runtime(RuntimeConfig(), binding_factory=factory)

    def test_malformed_config_starts_nothing(self, factory, bindings):
        """Test that a config error is raised before any binding exists."""
        with pytest.raises(ConfigError):
            Runtime.create(servers=[{"name": "a", "command": "x"}, {"name": "a", "command": "y"}], binding_factory=factory)
        assert bindings == {}

    def test_no_config_found(self, monkeypatch, tmp_path):
        monkeypatch.delenv("MCPORTER_CONFIG", raising=False)
        monkeypatch.chdir(tmp_path)
        with pytest.raises(ConfigError, match="No config file"):
            Runtime.create()


class TestDiscovery:
    """Tests for listing tools."""

    @pytest.mark.asyncio
    async def test_list_tools(self, runtime):
        tools = await runtime.list_tools("context7")

        assert [t.name for t in tools] == ["resolve-library-id", "get-library-docs", "show all docs"]
        assert tools[0].qualified_name == "context7.resolve-library-id"
        assert tools[0].required_params[0].name == "query"

    @pytest.mark.asyncio
    async def test_tools_cached_until_refresh(self, runtime, bindings):
        await runtime.list_tools("context7")
        await runtime.list_tools("context7")
        assert bindings["context7"].list_calls == 1

        await runtime.list_tools("context7", refresh=True)
        assert bindings["context7"].list_calls == 2

    @pytest.mark.asyncio
    async def test_concurrent_first_lookups_share_query(self, runtime, bindings):
        await asyncio.gather(*(runtime.list_tools("context7") for _ in range(4)))
        assert bindings["context7"].list_calls == 1

    @pytest.mark.asyncio
    async def test_unknown_server(self, runtime):
        with pytest.raises(UnknownServerError, match="nope"):
            await runtime.list_tools("nope")

    @pytest.mark.asyncio
    async def test_transport_failure(self, runtime, bindings):
        async def broken():
            raise TransportError("server exited")

        bindings["context7"].list_tools = broken
        with pytest.raises(TransportError):
            await runtime.list_tools("context7")

    def test_concurrency_property(self, factory):
        runtime = Runtime.create(
            servers=[
                {"name": "serial", "command": "x", "concurrent": False},
                {"name": "parallel", "command": "y"},
            ],
            binding_factory=factory,
        )
        assert runtime.supports_concurrent_calls("serial") is False
        assert runtime.supports_concurrent_calls("parallel") is True


class TestInvoke:
    """Tests for Runtime.invoke()."""

    @pytest.mark.asyncio
    async def test_invoke(self, runtime, bindings):
        bindings["context7"].responses["resolve-library-id"] = text_payload(
            '{"candidates": [{"context7CompatibleLibraryID": "/facebook/react"}]}'
        )

        result = await runtime.invoke("context7", "resolve-library-id", {"query": "react"})

        assert bindings["context7"].calls == [("resolve-library-id", {"query": "react"})]
        assert result.json()["candidates"][0]["context7CompatibleLibraryID"] == "/facebook/react"

    @pytest.mark.asyncio
    async def test_views_do_not_reinvoke(self, runtime, bindings):
        result = await runtime.invoke("context7", "get-library-docs", {"libraryId": "/facebook/react"})
        for _ in range(3):
            result.text()
            result.json()
            result.markdown()
        assert len(bindings["context7"].calls) == 1

    @pytest.mark.asyncio
    async def test_unknown_tool(self, runtime, bindings):
        """Test that an unadvertised tool is UnknownToolError, not TransportError."""
        with pytest.raises(UnknownToolError, match="resolve-library-id"):
            await runtime.invoke("context7", "resolve-library")
        assert bindings["context7"].calls == []

    @pytest.mark.asyncio
    async def test_discovery_disabled(self, factory, bindings):
        runtime = Runtime.create(servers=[{"name": "s", "command": "x", "discover": False}], binding_factory=factory)
        async with runtime:
            await runtime.invoke("s", "anything", {"a": 1})
        assert bindings["s"].calls == [("anything", {"a": 1})]
        assert bindings["s"].list_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_server(self, runtime):
        with pytest.raises(UnknownServerError):
            await runtime.invoke("missing", "tool")

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, runtime, bindings):
        bindings["context7"].responses["get-library-docs"] = TransportError("connection dropped")
        with pytest.raises(TransportError, match="connection dropped"):
            await runtime.invoke("context7", "get-library-docs", {"libraryId": "x"})

    @pytest.mark.asyncio
    async def test_timeout(self, runtime, bindings):
        async def slow(args):
            await asyncio.sleep(5)

        bindings["context7"].responses["get-library-docs"] = slow
        with pytest.raises(InvocationTimeoutError):
            await runtime.invoke("context7", "get-library-docs", {"libraryId": "x"}, timeout=0.05)

    @pytest.mark.asyncio
    async def test_calls_on_different_servers_overlap(self, runtime, bindings):
        """Test that the runtime does not serialize calls across servers."""
        await runtime.establish_session("figma", "c1")
        gate = asyncio.Event()

        async def wait_for_gate(args):
            await gate.wait()
            return text_payload("docs")

        async def open_gate(args):
            gate.set()
            return text_payload("info")

        bindings["context7"].responses["get-library-docs"] = wait_for_gate
        bindings["figma"].responses["get_document_info"] = open_gate

        docs, info = await asyncio.wait_for(asyncio.gather(
            runtime.invoke("context7", "get-library-docs", {"libraryId": "x"}),
            runtime.invoke("figma", "get_document_info"),
        ), timeout=2)

        assert docs.text() == "docs"
        assert info.text() == "info"


class TestClose:
    """Tests for Runtime.close()."""

    @pytest.mark.asyncio
    async def test_close_twice(self, runtime, bindings):
        await runtime.invoke("context7", "resolve-library-id", {"query": "react"})

        await runtime.close()
        await runtime.close()

        assert runtime.closed
        assert all(b.terminations == 1 for b in bindings.values())
        assert not any(b.is_running for b in bindings.values())

    @pytest.mark.asyncio
    async def test_close_ignores_dead_bindings(self, runtime, bindings):
        bindings["context7"].fail_terminate = True
        await runtime.close()
        assert bindings["figma"].terminations == 1

    @pytest.mark.asyncio
    async def test_invoke_after_close(self, runtime):
        await runtime.close()
        with pytest.raises(TransportError, match="closed"):
            await runtime.invoke("context7", "resolve-library-id", {"query": "react"})

    @pytest.mark.asyncio
    async def test_no_servers_listed_after_close(self, runtime):
        await runtime.close()
        assert runtime.list_servers() == []

    @pytest.mark.asyncio
    async def test_close_during_invoke(self):
        """Test that closing the runtime fails a call still waiting on its server."""
        runtime = create_runtime(servers=echo_servers())
        call = asyncio.ensure_future(runtime.invoke("echo", "slow", {"seconds": 5}))
        while not runtime.binding("echo").is_running:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.2)

        await runtime.close()

        with pytest.raises(TransportError):
            await asyncio.wait_for(call, timeout=2)

    @pytest.mark.asyncio
    async def test_context_manager_closes_on_error(self, factory, bindings):
        with pytest.raises(UnknownToolError):
            async with create_runtime(servers=SERVERS, binding_factory=factory) as runtime:
                await runtime.invoke("context7", "nope")
        assert runtime.closed
        assert bindings["context7"].terminations == 1
