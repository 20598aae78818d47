"""Tests for the single-node launch pipeline."""

from __future__ import annotations

import sys
import textwrap

import pytest
import pytest_asyncio

from harness_core.cache import StartupCacheConfig, StartupCacheService
from harness_core.config import (
    DiscoveryConfig,
    HarnessConfig,
    LockConfig,
    ProcessConfig,
    ReadinessConfig,
)
from harness_core.core import LaunchError, NodeReadinessError, StartupCacheError
from harness_core.orchestration.launcher import LaunchSpec, NodeLauncher, replace_flag
from harness_core.orchestration.process_manager import ProcessManager, ProcessState
from harness_core.orchestration.readiness import ReadinessStrategy

FAKE_NODE = textwrap.dedent(
    """
    import socket, sys, time
    port = 0
    for arg in sys.argv[1:]:
        if arg.startswith("--rpc-port="):
            port = int(arg.split("=", 1)[1])
    s = socket.socket()
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    s.bind(("127.0.0.1", port))
    s.listen()
    print("args:", " ".join(sys.argv[1:]), flush=True)
    print("Development Service Ready", flush=True)
    time.sleep(60)
    """
)

SILENT_NODE = "import time\nprint('syncing', flush=True)\ntime.sleep(60)\n"


@pytest.fixture
def harness_config(tmp_path):
    return HarnessConfig(
        process=ProcessConfig(kill_grace_period=2.0, log_dir=tmp_path / "logs", write_log_files=True),
        discovery=DiscoveryConfig(max_attempts=50, interval=0.1),
        readiness=ReadinessConfig(interval=0.05, deadline=10.0),
        lock=LockConfig(retry_interval=0.02, timeout=5.0),
    )


@pytest_asyncio.fixture
async def launcher(harness_config):
    manager = ProcessManager(harness_config.process, install_hooks=False)
    node_launcher = NodeLauncher(manager, harness_config)
    yield node_launcher
    await node_launcher.teardown()


def test_replace_flag():
    assert replace_flag(["--chain", "dev", "--tmp"], "--chain", "/x.json") == ["--tmp", "--chain=/x.json"]
    assert replace_flag(["--chain=dev"], "--chain", "/x.json") == ["--chain=/x.json"]
    assert replace_flag([], "--wasmtime-precompiled", "/c") == ["--wasmtime-precompiled=/c"]


class TestLaunch:
    """End-to-end launch against a fake node process."""

    @pytest.mark.asyncio
    async def test_launch_discovers_and_records_port(self, launcher):
        node = await launcher.launch(
            LaunchSpec(
                name="alith",
                command=sys.executable,
                args=["-c", FAKE_NODE],
                strategy=ReadinessStrategy.LOG_PATTERN,
            )
        )

        assert node.port > 0
        assert node.endpoint == f"ws://127.0.0.1:{node.port}"
        assert f"--rpc-port={node.port}" in node.handle.args
        assert "--rpc-port=0" not in node.handle.args
        assert node.readiness.ready
        assert launcher.get("alith") is node
        assert node.describe()["port"] == node.port

    @pytest.mark.asyncio
    async def test_spawn_failure_never_reaches_discovery(self, launcher, tmp_path, monkeypatch):
        async def fail_discovery(*args, **kwargs):
            raise AssertionError("port discovery must not run")

        monkeypatch.setattr("harness_core.orchestration.launcher.discover_port", fail_discovery)

        with pytest.raises(LaunchError):
            await launcher.launch(LaunchSpec(name="ghost", command=str(tmp_path / "nope")))

    @pytest.mark.asyncio
    async def test_readiness_timeout_kills_process(self, launcher):
        spec = LaunchSpec(
            name="silent",
            command=sys.executable,
            args=["-c", SILENT_NODE],
            strategy=ReadinessStrategy.LOG_PATTERN,
            ephemeral_port=False,
            deadline=0.5,
        )

        with pytest.raises(NodeReadinessError) as exc_info:
            await launcher.launch(spec)

        assert "syncing" in exc_info.value.log_tail
        handle = launcher.process_manager.last_handle("silent")
        assert handle.state == ProcessState.KILLED
        assert launcher.get("silent") is None

    @pytest.mark.asyncio
    async def test_relaunch_uses_original_spec(self, launcher):
        spec = LaunchSpec(
            name="alith",
            command=sys.executable,
            args=["-c", FAKE_NODE],
            strategy=ReadinessStrategy.LOG_PATTERN,
        )
        first = await launcher.launch(spec)
        second = await launcher.relaunch("alith")

        assert first.handle.state == ProcessState.KILLED
        assert second.handle.pid != first.handle.pid
        assert second.handle.is_alive
        # Ephemeral again, not pinned to the old port
        assert second.spec.args == ["-c", FAKE_NODE]

    @pytest.mark.asyncio
    async def test_relaunch_unknown(self, launcher):
        with pytest.raises(LaunchError):
            await launcher.relaunch("nobody")


class TestLaunchWithCache:
    """Cached artifacts are wired into the node arguments."""

    @pytest.mark.asyncio
    async def test_cached_artifacts_added_to_args(self, launcher, tmp_path):
        async def fake_runner(argv):
            if argv[1] == "precompile-wasm":
                out = argv[-1]
                with open(f"{out}/precompiled_wasm_0x1.cwasm", "wb") as f:
                    f.write(b"x")
                return 0, b"", b""
            return 0, b'{"name": "dev"}', b""

        launcher.cache_service = StartupCacheService(runner=fake_runner, lock_config=launcher.config.lock)
        binary = tmp_path / "node-bin"
        binary.write_bytes(b"binary")

        node = await launcher.launch(
            LaunchSpec(
                name="cached",
                command=sys.executable,
                args=["-c", FAKE_NODE],
                strategy=ReadinessStrategy.LOG_PATTERN,
                cache=StartupCacheConfig(
                    bin_path=binary,
                    cache_dir=tmp_path / "cache",
                    is_dev_mode=True,
                    generate_raw_chain_spec=True,
                ),
            )
        )

        precompiled = [a for a in node.handle.args if a.startswith("--wasmtime-precompiled=")]
        chain = [a for a in node.handle.args if a.startswith("--chain=")]
        assert precompiled == [f"--wasmtime-precompiled={node.artifacts.precompiled_dir}"]
        assert chain == [f"--chain={node.artifacts.raw_chain_spec_path}"]
        assert node.artifacts.from_cache is False

    @pytest.mark.asyncio
    async def test_cache_failure_spawns_nothing(self, launcher, tmp_path):
        async def failing_runner(argv):
            return 1, b"", b"no such subcommand"

        launcher.cache_service = StartupCacheService(runner=failing_runner, lock_config=launcher.config.lock)
        binary = tmp_path / "node-bin"
        binary.write_bytes(b"binary")

        with pytest.raises(StartupCacheError):
            await launcher.launch(
                LaunchSpec(
                    name="cached",
                    command=sys.executable,
                    args=["-c", FAKE_NODE],
                    cache=StartupCacheConfig(bin_path=binary, cache_dir=tmp_path / "cache"),
                )
            )

        assert launcher.process_manager.last_handle("cached") is None
