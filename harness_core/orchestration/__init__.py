"""
Orchestration module for launched nodes.

Provides:
- Process lifecycle management with exit-safe teardown
- Runtime port discovery for ephemeral ports
- Readiness probing (RPC handshake or log pattern)
- Single-node launch pipeline
- Multi-chain fork orchestration and message relay
"""

from harness_core.orchestration.process_manager import (
    OutputBuffer,
    ProcessHandle,
    ProcessManager,
    ProcessState,
)

from harness_core.orchestration.port_discovery import (
    PortBinding,
    discover_port,
    inject_port,
    list_listening_ports,
    select_rpc_port,
    with_ephemeral_rpc_port,
)

from harness_core.orchestration.readiness import (
    ReadinessOutcome,
    ReadinessResult,
    ReadinessStrategy,
    await_ready,
)

from harness_core.orchestration.launcher import (
    LaunchedNode,
    LaunchSpec,
    NodeLauncher,
)

from harness_core.orchestration.fork_orchestrator import (
    BlockRef,
    ChainInstance,
    ChainLaunchConfig,
    ForkClient,
    MultiChainConfig,
    MultiChainOrchestrator,
    kusama_moonriver_config,
    launch_multi_chain,
    polkadot_moonbeam_config,
    storage_probe,
)

__all__ = [
    # Processes
    "OutputBuffer",
    "ProcessHandle",
    "ProcessManager",
    "ProcessState",
    # Ports
    "PortBinding",
    "discover_port",
    "inject_port",
    "list_listening_ports",
    "select_rpc_port",
    "with_ephemeral_rpc_port",
    # Readiness
    "ReadinessOutcome",
    "ReadinessResult",
    "ReadinessStrategy",
    "await_ready",
    # Launch
    "LaunchedNode",
    "LaunchSpec",
    "NodeLauncher",
    # Forks
    "BlockRef",
    "ChainInstance",
    "ChainLaunchConfig",
    "ForkClient",
    "MultiChainConfig",
    "MultiChainOrchestrator",
    "kusama_moonriver_config",
    "launch_multi_chain",
    "polkadot_moonbeam_config",
    "storage_probe",
]
