"""
Testnet Harness - CLI Entry Points.

Provides:
- testnet-harness launch: start one node, serve the control channel until exit
- testnet-harness fork: start a multi-chain fork preset
- testnet-harness cache: warm the startup artifact cache for a binary
- testnet-harness node: send restart/kill/isup/networkmap to a running session
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

# Configure logging early
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("testnet-harness")


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.getLogger("testnet-harness").setLevel(level)
    logging.getLogger("harness_core").setLevel(level)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testnet-harness",
        description="Testnet Harness - launch and control local blockchain test networks",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="YAML configuration file",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Launch command
    launch_parser = subparsers.add_parser("launch", help="Launch a node and keep it running")
    launch_parser.add_argument("name", help="Node name used by the control channel")
    launch_parser.add_argument("binary", help="Node executable")
    launch_parser.add_argument("node_args", nargs=argparse.REMAINDER, help="Arguments passed to the node")
    launch_parser.add_argument(
        "--strategy",
        choices=["rpc", "log"],
        default="rpc",
        help="Readiness strategy: RPC handshake or log pattern",
    )
    launch_parser.add_argument("--deadline", type=float, help="Readiness deadline in seconds")
    launch_parser.add_argument("--ethereum", action="store_true", help="Also require eth_chainId")
    launch_parser.add_argument(
        "--no-ephemeral",
        action="store_true",
        help="Do not append --rpc-port=0",
    )
    launch_parser.add_argument("--cache-dir", type=Path, help="Use the startup cache rooted here")
    launch_parser.add_argument("--raw-spec", action="store_true", help="Also cache a raw chain spec")
    launch_parser.add_argument("--socket", type=Path, help="Control channel socket path")

    # Fork command
    fork_parser = subparsers.add_parser("fork", help="Launch a multi-chain fork preset")
    fork_parser.add_argument(
        "--preset",
        choices=["polkadot-moonbeam", "kusama-moonriver"],
        default="polkadot-moonbeam",
    )
    fork_parser.add_argument("--relay-port", type=int, default=8000)
    fork_parser.add_argument("--para-port", type=int, default=8001)
    fork_parser.add_argument("--socket", type=Path, help="Control channel socket path")

    # Cache command
    cache_parser = subparsers.add_parser("cache", help="Generate or look up startup artifacts")
    cache_parser.add_argument("binary", type=Path, help="Node executable")
    cache_parser.add_argument("--cache-dir", type=Path, help="Cache root directory")
    cache_parser.add_argument("--chain", help="Chain argument, e.g. --chain=moonbase-local")
    cache_parser.add_argument("--dev", action="store_true", help="Dev mode chain")
    cache_parser.add_argument("--raw-spec", action="store_true", help="Also generate a raw chain spec")
    cache_parser.add_argument(
        "--flag",
        action="append",
        default=[],
        help="Extra flag that affects startup output (repeatable)",
    )

    # Node command
    node_parser = subparsers.add_parser("node", help="Control a node of a running session")
    node_parser.add_argument("action", choices=["restart", "kill", "isup", "networkmap"])
    node_parser.add_argument("name", nargs="?", default="", help="Node name")
    node_parser.add_argument("--text", default="", help="Free-text reason")
    node_parser.add_argument("--socket", type=Path, help="Socket path (default: $HARNESS_IPC_SOCKET)")

    return parser


def main(argv: Optional[list] = None) -> int:
    """Main entry point for the harness CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.version:
        from harness_core import __version__
        print(f"Testnet Harness v{__version__}")
        return 0

    if args.command is None:
        parser.print_help()
        return 0

    from harness_core.config import load_config
    load_config(args.config, reload=args.config is not None)

    try:
        if args.command == "launch":
            return asyncio.run(_run_launch(args))
        elif args.command == "fork":
            return asyncio.run(_run_fork(args))
        elif args.command == "cache":
            return asyncio.run(_run_cache(args))
        elif args.command == "node":
            return asyncio.run(_run_node(args))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130

    return 0


def _print_node(console, node) -> None:
    from rich.table import Table

    table = Table(title=f"Node '{node.handle.name}'")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for key, value in node.describe().items():
        if key == "args":
            value = " ".join(value)
        table.add_row(key, str(value))
    console.print(table)


async def _serve_until_exit(process_manager, launcher, socket_path: Optional[Path]) -> None:
    """Serve the control channel until every managed process is gone."""
    from harness_core.ipc import ControlServer

    async with ControlServer(process_manager, launcher, socket_path) as server:
        logger.info(f"Control channel: {server.socket_path}")
        while process_manager.live_handles():
            await asyncio.sleep(1.0)
        logger.info("All managed processes have exited")


def readiness_strategy(choice: str):
    """Map the --strategy choice to a ReadinessStrategy."""
    from harness_core.orchestration import ReadinessStrategy

    if choice == "log":
        return ReadinessStrategy.LOG_PATTERN
    if choice == "rpc":
        return ReadinessStrategy.PORT_HANDSHAKE
    raise ValueError(f"unknown readiness strategy: {choice}")


async def _run_launch(args: argparse.Namespace) -> int:
    """Launch a single node."""
    from harness_core.cache import StartupCacheConfig
    from harness_core.core import HarnessError
    from harness_core.orchestration import (
        LaunchSpec,
        NodeLauncher,
        ProcessManager,
    )
    from rich.console import Console

    console = Console()

    node_args = [a for a in args.node_args if a != "--"]
    cache = None
    if args.cache_dir:
        chain_arg = next((a for a in node_args if a.startswith("--chain")), None)
        cache = StartupCacheConfig(
            bin_path=args.binary,
            cache_dir=args.cache_dir,
            chain_arg=chain_arg,
            is_dev_mode="--dev" in node_args,
            generate_raw_chain_spec=args.raw_spec,
        )

    spec = LaunchSpec(
        name=args.name,
        command=args.binary,
        args=node_args,
        strategy=readiness_strategy(args.strategy),
        deadline=args.deadline,
        is_ethereum=args.ethereum,
        ephemeral_port=not args.no_ephemeral,
        cache=cache,
    )

    process_manager = ProcessManager()
    launcher = NodeLauncher(process_manager)
    try:
        node = await launcher.launch(spec)
        _print_node(console, node)
        await _serve_until_exit(process_manager, launcher, args.socket)
        return 0
    except HarnessError as e:
        console.print(f"\n[bold red]Launch failed:[/bold red] {e}")
        return 1
    finally:
        await launcher.teardown()


async def _run_fork(args: argparse.Namespace) -> int:
    """Launch a multi-chain fork preset."""
    from harness_core.core import HarnessError
    from harness_core.orchestration import NodeLauncher, ProcessManager, launch_multi_chain
    from harness_core.orchestration.fork_orchestrator import PRESETS
    from rich.console import Console
    from rich.table import Table

    console = Console()
    config = PRESETS[args.preset](args.relay_port, args.para_port)

    process_manager = ProcessManager()
    launcher = NodeLauncher(process_manager)
    orchestrator = None
    try:
        orchestrator = await launch_multi_chain(config, launcher)

        table = Table(title=f"Forks ({args.preset})")
        table.add_column("Chain", style="cyan")
        table.add_column("Role")
        table.add_column("Endpoint", style="green")
        table.add_column("Head")
        for chain in orchestrator.chains.values():
            head = f"#{chain.head.number}" if chain.head else "-"
            table.add_row(chain.name, chain.role, chain.endpoint, head)
        console.print(table)

        await _serve_until_exit(process_manager, launcher, args.socket)
        return 0
    except HarnessError as e:
        console.print(f"\n[bold red]Fork launch failed:[/bold red] {e}")
        return 1
    finally:
        if orchestrator is not None:
            await orchestrator.teardown()
        await launcher.teardown()


async def _run_cache(args: argparse.Namespace) -> int:
    """Warm the startup cache."""
    from harness_core.cache import StartupCacheConfig, StartupCacheService
    from harness_core.config import get_config
    from harness_core.core import HarnessError
    from rich.console import Console

    console = Console()
    config = StartupCacheConfig(
        bin_path=args.binary,
        cache_dir=args.cache_dir or get_config().cache.cache_dir,
        chain_arg=args.chain,
        is_dev_mode=args.dev,
        generate_raw_chain_spec=args.raw_spec,
        flags=tuple(args.flag),
    )

    try:
        result = await StartupCacheService().get_cached_artifacts(config)
    except HarnessError as e:
        console.print(f"[bold red]Cache generation failed:[/bold red] {e}")
        return 1

    state = "[green]hit[/green]" if result.from_cache else "[yellow]generated[/yellow]"
    console.print(f"Cache {state}")
    console.print(f"  precompiled: {result.precompiled_path}")
    if result.raw_chain_spec_path:
        console.print(f"  raw chain spec: {result.raw_chain_spec_path}")
    return 0


async def _run_node(args: argparse.Namespace) -> int:
    """Send one control request to a running session."""
    from harness_core.core import IpcError
    from harness_core.ipc import IpcRequest, send_ipc_message
    from rich.console import Console

    console = Console()
    request = IpcRequest(cmd=args.action, node_name=args.name, text=args.text)

    try:
        response = await send_ipc_message(request, args.socket)
    except IpcError as e:
        console.print(f"[bold red]Control channel error:[/bold red] {e}")
        return 1

    if response.ok:
        console.print(f"[green]{response.message or 'ok'}[/green]")
        return 0
    console.print(f"[bold red]{response.message}[/bold red]")
    return 1


if __name__ == "__main__":
    sys.exit(main())
