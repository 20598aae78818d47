"""Tests for runtime port discovery and ephemeral port injection."""

from __future__ import annotations

import asyncio
import os
import sys
import textwrap

import psutil
import pytest

from harness_core.config import DiscoveryConfig, ProcessConfig
from harness_core.core import PortDiscoveryError
from harness_core.orchestration import port_discovery
from harness_core.orchestration.port_discovery import (
    PortBinding,
    discover_port,
    inject_port,
    select_rpc_port,
    with_ephemeral_rpc_port,
)
from harness_core.orchestration.process_manager import ProcessManager

# Binds whatever port --rpc-port asks for (0 = ephemeral), then idles.
FAKE_NODE = textwrap.dedent(
    """
    import socket, sys, time
    port = 0
    for arg in sys.argv[1:]:
        if arg.startswith("--rpc-port="):
            port = int(arg.split("=", 1)[1])
    s = socket.socket()
    s.bind(("127.0.0.1", port))
    s.listen()
    print("RPC listening on port", s.getsockname()[1], flush=True)
    time.sleep(60)
    """
)


class TestSelectRpcPort:
    """Choosing the RPC port among several listeners."""

    def test_excludes_p2p_and_prometheus(self):
        assert select_rpc_port([30333, 9615, 9944]) == 9944

    def test_prefers_range(self):
        assert select_rpc_port([45001, 9944]) == 9944

    def test_single_candidate_outside_range(self):
        assert select_rpc_port([30333, 45001]) == 45001

    def test_ambiguous_returns_none(self):
        assert select_rpc_port([45001, 45002]) is None

    def test_nothing_listening(self):
        assert select_rpc_port([]) is None
        assert select_rpc_port([30333, 9615]) is None


class TestArgumentRewriting:
    """Ephemeral port placeholder and injection."""

    def test_appends_ephemeral_port(self):
        assert with_ephemeral_rpc_port(["--dev"]) == ["--dev", "--rpc-port=0"]

    def test_keeps_explicit_port(self):
        assert with_ephemeral_rpc_port(["--rpc-port=9944"]) == ["--rpc-port=9944"]
        assert with_ephemeral_rpc_port(["--port", "30444"]) == ["--port", "30444"]

    def test_inject_replaces_placeholder(self):
        assert inject_port(["--dev", "--rpc-port=0", "--tmp"], 41234) == [
            "--dev", "--rpc-port=41234", "--tmp",
        ]

    def test_inject_handles_separate_value(self):
        assert inject_port(["--rpc-port", "0", "--dev"], 41234) == ["--rpc-port=41234", "--dev"]

    def test_inject_appends_when_missing(self):
        assert inject_port(["--dev"], 41234) == ["--dev", "--rpc-port=41234"]


class TestDiscoverPort:
    """Bounded polling of the socket table."""

    @pytest.mark.asyncio
    async def test_at_most_max_attempts(self, monkeypatch):
        calls = []

        def fake_list(pid, include_children=True):
            calls.append(pid)
            return []

        monkeypatch.setattr(port_discovery, "list_listening_ports", fake_list)

        with pytest.raises(PortDiscoveryError) as exc_info:
            await discover_port(os.getpid(), max_attempts=7, interval=0)

        assert len(calls) == 7
        assert exc_info.value.attempts == 7
        assert exc_info.value.pid == os.getpid()

    @pytest.mark.asyncio
    async def test_succeeds_once_port_appears(self, monkeypatch):
        responses = [[], [], [PortBinding(pid=1, port=9944)]]

        monkeypatch.setattr(
            port_discovery, "list_listening_ports",
            lambda pid, include_children=True: responses.pop(0),
        )

        assert await discover_port(1, max_attempts=10, interval=0) == 9944
        assert responses == []

    @pytest.mark.asyncio
    async def test_fails_immediately_when_process_gone(self, monkeypatch):
        calls = []

        def gone(pid, include_children=True):
            calls.append(pid)
            raise psutil.NoSuchProcess(pid)

        monkeypatch.setattr(port_discovery, "list_listening_ports", gone)

        with pytest.raises(PortDiscoveryError) as exc_info:
            await discover_port(12345, max_attempts=50, interval=0)

        assert len(calls) == 1
        assert exc_info.value.attempts == 1

    @pytest.mark.asyncio
    async def test_uses_configured_defaults(self, monkeypatch):
        calls = []
        monkeypatch.setattr(
            port_discovery, "list_listening_ports",
            lambda pid, include_children=True: calls.append(pid) or [],
        )

        with pytest.raises(PortDiscoveryError):
            await discover_port(1, config=DiscoveryConfig(max_attempts=3, interval=0))

        assert len(calls) == 3


class TestEphemeralPortScenario:
    """A real child bound to port 0 is found and its port recorded."""

    @pytest.mark.asyncio
    async def test_ephemeral_port_discovered_and_injected(self, tmp_path):
        manager = ProcessManager(
            ProcessConfig(log_dir=tmp_path, write_log_files=False, kill_grace_period=2.0),
            install_hooks=False,
        )
        args = with_ephemeral_rpc_port(["-c", FAKE_NODE])
        assert "--rpc-port=0" in args

        handle = await manager.spawn("fake", sys.executable, args)
        try:
            port = await discover_port(handle.pid, max_attempts=5, interval=0.5)
            handle.args = inject_port(handle.args, port)

            assert port > 0
            assert f"--rpc-port={port}" in handle.args
            assert "--rpc-port=0" not in handle.args

            # The bound port is the one the node reports.
            for _ in range(50):
                if handle.output.find(["RPC listening on port"]):
                    break
                await asyncio.sleep(0.05)
            assert f"RPC listening on port {port}" in handle.output.lines()
        finally:
            await manager.shutdown_all()
