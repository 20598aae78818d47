"""
Node launcher.

Composes the pieces of a single launch, in order:

    startup cache -> ephemeral port args -> spawn -> port discovery
        -> port injection into the recorded args -> readiness

Any failure after spawn kills the process before the error propagates, and the
captured output is logged so the failure can be diagnosed without a re-run.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from harness_core.cache.startup_cache import (
    StartupCacheConfig,
    StartupCacheResult,
    StartupCacheService,
)
from harness_core.config import HarnessConfig, get_config
from harness_core.core.error_handling import HarnessError, LaunchError
from harness_core.orchestration.port_discovery import (
    discover_port,
    inject_port,
    with_ephemeral_rpc_port,
)
from harness_core.orchestration.process_manager import ProcessHandle, ProcessManager
from harness_core.orchestration.readiness import (
    ReadinessResult,
    ReadinessStrategy,
    await_ready,
)

logger = logging.getLogger(__name__)


@dataclass
class LaunchSpec:
    """Everything needed to (re)launch one node."""
    name: str
    command: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    strategy: ReadinessStrategy = ReadinessStrategy.PORT_HANDSHAKE
    deadline: Optional[float] = None
    is_ethereum: bool = False
    ephemeral_port: bool = True
    ready_patterns: List[str] = field(default_factory=list)
    cache: Optional[StartupCacheConfig] = None

    @property
    def needs_port(self) -> bool:
        return self.ephemeral_port or self.strategy == ReadinessStrategy.PORT_HANDSHAKE


@dataclass
class LaunchedNode:
    spec: LaunchSpec
    handle: ProcessHandle
    readiness: ReadinessResult
    port: Optional[int] = None
    artifacts: Optional[StartupCacheResult] = None
    launched_at: float = field(default_factory=time.time)

    @property
    def endpoint(self) -> Optional[str]:
        return f"ws://127.0.0.1:{self.port}" if self.port else None

    def describe(self) -> Dict[str, object]:
        info = self.handle.describe()
        info.update({
            "port": self.port,
            "endpoint": self.endpoint,
            "ready_after": round(self.readiness.elapsed, 3),
            "from_cache": self.artifacts.from_cache if self.artifacts else None,
        })
        return info


def replace_flag(args: List[str], flag: str, value: str) -> List[str]:
    """Drop every ``flag``/``flag=...``/``flag <v>`` and append ``flag=value``."""
    result = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg == flag:
            skip_next = True
            continue
        if arg.startswith(flag + "="):
            continue
        result.append(arg)
    result.append(f"{flag}={value}")
    return result


class NodeLauncher:
    """
    Launches nodes through a ProcessManager and remembers how, so they can be
    relaunched with identical parameters.
    """

    def __init__(
        self,
        process_manager: ProcessManager,
        config: Optional[HarnessConfig] = None,
        cache_service: Optional[StartupCacheService] = None,
    ):
        self.process_manager = process_manager
        self.config = config or get_config()
        self.cache_service = cache_service or StartupCacheService(lock_config=self.config.lock)
        self.nodes: Dict[str, LaunchedNode] = {}
        self._specs: Dict[str, LaunchSpec] = {}

    async def launch(self, spec: LaunchSpec) -> LaunchedNode:
        """
        Launch a node and wait until it is ready.

        Raises:
            StartupCacheError: artifact generation failed (nothing spawned)
            LaunchError: the executable could not be started
            PortDiscoveryError: no RPC port found (process killed)
            NodeReadinessError: not ready before the deadline (process killed)
        """
        self._specs[spec.name] = spec
        start = time.monotonic()
        args = list(spec.args)

        artifacts = None
        if spec.cache is not None and self.config.cache.enabled:
            artifacts = await self.cache_service.get_cached_artifacts(spec.cache)
            args = replace_flag(args, "--wasmtime-precompiled", artifacts.precompiled_dir)
            if artifacts.raw_chain_spec_path:
                args = replace_flag(args, "--chain", artifacts.raw_chain_spec_path)

        if spec.ephemeral_port:
            args = with_ephemeral_rpc_port(args)

        handle = await self.process_manager.spawn(spec.name, spec.command, args, spec.cwd, spec.env)

        port = None
        try:
            if spec.needs_port:
                port = await discover_port(handle.pid, config=self.config.discovery)
                handle.args = inject_port(handle.args, port)
                logger.debug(f"[Launcher] '{spec.name}' bound to port {port}")

            readiness = await await_ready(
                handle,
                spec.strategy,
                deadline=spec.deadline,
                port=port,
                patterns=spec.ready_patterns,
                is_ethereum=spec.is_ethereum,
                config=self.config.readiness,
            )
        except BaseException as e:
            if isinstance(e, HarnessError):
                logger.error(
                    f"[Launcher] Launch of '{spec.name}' failed: {e.message}\n"
                    f"--- last output ---\n{handle.output.tail()}"
                )
            await self.process_manager.kill(handle, reason=f"launch failed: {type(e).__name__}")
            raise

        node = LaunchedNode(spec=spec, handle=handle, readiness=readiness, port=port, artifacts=artifacts)
        self.nodes[spec.name] = node
        logger.info(
            f"[Launcher] '{spec.name}' ready (pid {handle.pid}, port {port}) "
            f"in {time.monotonic() - start:.2f}s"
        )
        return node

    async def relaunch(self, name: str) -> LaunchedNode:
        """Kill ``name`` and launch it again from its original spec."""
        spec = self._specs.get(name)
        if spec is None:
            raise LaunchError(name, reason=f"no launch recorded for '{name}'")
        await self.process_manager.kill(name, reason="restart requested")
        self.nodes.pop(name, None)
        return await self.launch(replace(spec))

    async def kill(self, name: str, reason: str = "kill requested") -> None:
        await self.process_manager.kill(name, reason=reason)
        self.nodes.pop(name, None)

    def get(self, name: str) -> Optional[LaunchedNode]:
        return self.nodes.get(name)

    def knows(self, name: str) -> bool:
        return name in self._specs

    async def teardown(self) -> None:
        """Kill every launched node, newest first, then anything else still alive."""
        for name in reversed(list(self.nodes)):
            try:
                await self.process_manager.kill(name, reason="session teardown")
            except HarnessError as e:
                logger.error(f"[Launcher] Teardown of '{name}' failed: {e}")
        self.nodes.clear()
        await self.process_manager.shutdown_all()


__all__ = [
    "LaunchSpec",
    "LaunchedNode",
    "NodeLauncher",
    "replace_flag",
]
