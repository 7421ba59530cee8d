"""Tests for admission control, the client registry and shutdown."""

import asyncio
import signal

import pytest

from mcpcode.client.coordinator import (
    MAX_CONCURRENT_CLIENTS,
    SHUTDOWN_SIGNALS,
    ConnectionCoordinator,
    get_coordinator,
)


class FakeClient:
    """Stands in for MCPClient: records close() calls."""

    def __init__(self, coordinator, server_name="fake", fail=False):
        self.server_name = server_name
        self.coordinator = coordinator
        self.fail = fail
        self.closed = 0
        coordinator.register(self)

    async def close(self):
        self.closed += 1
        self.coordinator.unregister(self)
        if self.fail:
            raise RuntimeError("close failed")


class TestAdmission:
    """Tests for the admission counter."""

    def test_default_budget(self):
        """Test the default connection budget."""
        assert ConnectionCoordinator(handle_signals=False).max_concurrent == MAX_CONCURRENT_CLIENTS == 8

    def test_try_admit_until_full(self, coordinator):
        """Test admitting until the budget is used up."""
        for _ in range(coordinator.max_concurrent):
            assert coordinator.try_admit() is True

        assert coordinator.has_capacity() is False
        assert coordinator.try_admit() is False
        assert coordinator.active_count == coordinator.max_concurrent

    def test_release_never_below_zero(self, coordinator):
        """Test that extra releases do not go negative."""
        coordinator.try_admit()
        coordinator.release()
        coordinator.release()

        assert coordinator.active_count == 0

    def test_invalid_budget(self):
        """Test that a budget below one is rejected."""
        with pytest.raises(ValueError):
            ConnectionCoordinator(max_concurrent=0)

    def test_singleton(self):
        """Test that get_coordinator() returns one instance."""
        assert get_coordinator() is get_coordinator()


class TestRegistry:
    """Tests for the client registry."""

    def test_register_and_unregister(self, coordinator):
        """Test registry membership."""
        client = FakeClient(coordinator)
        assert coordinator.is_registered(client)
        assert coordinator.clients() == [client]

        coordinator.unregister(client)
        coordinator.unregister(client)
        assert coordinator.clients() == []

    @pytest.mark.asyncio
    async def test_shutdown_closes_every_client(self, coordinator):
        """Test that shutdown closes each client once."""
        clients = [FakeClient(coordinator, f"s{i}") for i in range(3)]

        results = await coordinator.shutdown()

        assert results == [None, None, None]
        assert all(client.closed == 1 for client in clients)
        assert coordinator.clients() == []

    @pytest.mark.asyncio
    async def test_shutdown_is_best_effort(self, coordinator, caplog):
        """Test that one failing close does not stop the others."""
        good = FakeClient(coordinator, "good")
        bad = FakeClient(coordinator, "bad", fail=True)

        results = await coordinator.shutdown()

        assert good.closed == 1 and bad.closed == 1
        assert sum(isinstance(result, RuntimeError) for result in results) == 1
        assert "Error closing MCP client for bad" in caplog.text

    @pytest.mark.asyncio
    async def test_shutdown_with_no_clients(self, coordinator):
        """Test shutdown with an empty registry."""
        assert await coordinator.shutdown() == []


class TestShutdownHandlers:
    """Tests for signal handler installation and the drain-then-exit path."""

    def test_installed_once(self, monkeypatch):
        """Test that handlers are installed only once."""
        installed = []
        monkeypatch.setattr(signal, "signal", lambda sig, handler: installed.append(sig))
        coordinator = ConnectionCoordinator()

        assert coordinator.install_shutdown_handlers() is True
        assert coordinator.install_shutdown_handlers() is False
        assert installed == list(SHUTDOWN_SIGNALS)

    def test_handlers_outlive_the_installing_loop(self, monkeypatch):
        """Test that handlers installed under one event loop still drain under the next."""
        handlers = {}
        monkeypatch.setattr(signal, "signal", lambda sig, handler: handlers.__setitem__(sig, handler))
        exits = []
        coordinator = ConnectionCoordinator(exit_func=exits.append)

        async def _install():
            return coordinator.install_shutdown_handlers()

        assert asyncio.run(_install()) is True
        assert set(handlers) == set(SHUTDOWN_SIGNALS)
        client = FakeClient(coordinator)

        async def _signal_and_wait():
            handlers[signal.SIGTERM](signal.SIGTERM, None)
            for _ in range(50):
                if exits:
                    break
                await asyncio.sleep(0.01)

        asyncio.run(_signal_and_wait())

        assert exits == [0]
        assert client.closed == 1
        assert coordinator.install_shutdown_handlers() is False

    def test_install_outside_main_thread_can_retry(self, monkeypatch):
        """Test that a failed install outside the main thread can be retried."""
        def _refuse(sig, handler):
            raise ValueError("signal only works in main thread")

        monkeypatch.setattr(signal, "signal", _refuse)
        coordinator = ConnectionCoordinator()
        assert coordinator.install_shutdown_handlers() is False

        installed = []
        monkeypatch.setattr(signal, "signal", lambda sig, handler: installed.append(sig))
        assert coordinator.install_shutdown_handlers() is True
        assert installed == list(SHUTDOWN_SIGNALS)

    def test_disabled(self, monkeypatch):
        """Test that handle_signals=False installs nothing."""
        installed = []
        monkeypatch.setattr(signal, "signal", lambda sig, handler: installed.append(sig))

        assert ConnectionCoordinator(handle_signals=False).install_shutdown_handlers() is False
        assert installed == []

    def test_signal_without_loop_drains_then_exits(self):
        """Test the drain-then-exit path outside an event loop."""
        exits = []
        coordinator = ConnectionCoordinator(exit_func=exits.append)
        client = FakeClient(coordinator)

        coordinator._on_signal(signal.SIGTERM)

        assert client.closed == 1
        assert exits == [0]

    @pytest.mark.asyncio
    async def test_signal_inside_loop_drains_then_exits(self):
        """Test the drain-then-exit path inside an event loop."""
        exits = []
        coordinator = ConnectionCoordinator(exit_func=exits.append)
        clients = [FakeClient(coordinator, f"s{i}") for i in range(3)]

        coordinator._on_signal(signal.SIGINT)
        coordinator._on_signal(signal.SIGINT)  # second signal while draining is ignored
        for _ in range(50):
            if exits:
                break
            await asyncio.sleep(0.01)

        assert exits == [0]
        assert all(client.closed == 1 for client in clients)
        assert coordinator.clients() == []
