"""
Port discovery for launched nodes.

Nodes are usually started with ``--rpc-port=0`` so the OS picks a free port;
the real port is then read back from the socket table (psutil) and written
into the recorded argument list before anything treats the node as
addressable.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

import psutil

from harness_core.config import DiscoveryConfig, get_config
from harness_core.core.error_handling import PortDiscoveryError

logger = logging.getLogger(__name__)

EPHEMERAL_PORT_ARG = "--rpc-port=0"
PORT_FLAG_RE = re.compile(r"^--(rpc-port|ws-port|port)(=|$)")
RPC_PORT_RE = re.compile(r"^--rpc-port(=.*)?$")


@dataclass(frozen=True)
class PortBinding:
    """Snapshot of one listening socket."""
    pid: int
    port: int
    protocol: str = "tcp"


def list_listening_ports(pid: int, include_children: bool = True) -> List[PortBinding]:
    """
    TCP sockets in LISTEN state owned by ``pid`` (and its descendants).

    Raises:
        psutil.NoSuchProcess: the process is gone.
    """
    root = psutil.Process(pid)
    procs = [root]
    if include_children:
        try:
            procs.extend(root.children(recursive=True))
        except psutil.NoSuchProcess:
            pass

    bindings = []
    seen = set()
    for proc in procs:
        try:
            connections = proc.net_connections(kind="tcp")
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            if proc is root:
                raise
            continue
        except psutil.AccessDenied:
            logger.debug(f"[PortDiscovery] Access denied reading sockets of pid {proc.pid}")
            continue

        for conn in connections:
            if conn.status != psutil.CONN_LISTEN or not conn.laddr:
                continue
            if conn.laddr.port in seen:
                continue
            seen.add(conn.laddr.port)
            bindings.append(PortBinding(pid=proc.pid, port=conn.laddr.port))

    return bindings


def select_rpc_port(
    ports: Iterable[int],
    exclude: Sequence[int] = (30333, 9615),
    preferred: Tuple[int, int] = (9000, 20000),
) -> Optional[int]:
    """
    Pick the RPC port among a node's listening ports.

    The p2p (30333) and prometheus (9615) defaults are never chosen. A port in
    the preferred range wins; otherwise a single remaining candidate is taken.
    Returns None when nothing (or more than one unranked port) remains.
    """
    candidates = sorted({p for p in ports if p not in set(exclude)})
    low, high = preferred
    in_range = [p for p in candidates if low <= p <= high]
    if in_range:
        return in_range[0]
    if len(candidates) == 1:
        return candidates[0]
    return None


async def discover_port(
    pid: int,
    max_attempts: Optional[int] = None,
    interval: Optional[float] = None,
    config: Optional[DiscoveryConfig] = None,
) -> int:
    """
    Poll the socket table until ``pid`` listens on an RPC port.

    Makes at most ``max_attempts`` polls, sleeping ``interval`` between them.

    Raises:
        PortDiscoveryError: attempts exhausted, or the process disappeared.
    """
    config = config or get_config().discovery
    max_attempts = config.max_attempts if max_attempts is None else max_attempts
    interval = config.interval if interval is None else interval
    preferred = tuple(config.preferred_range[:2])

    last_seen: List[int] = []
    attempts = 0
    while attempts < max_attempts:
        attempts += 1
        try:
            bindings = list_listening_ports(pid)
        except (psutil.NoSuchProcess, psutil.ZombieProcess) as e:
            logger.error(f"[PortDiscovery] pid {pid} exited before binding a port")
            raise PortDiscoveryError(pid, attempts, e) from e
        except psutil.AccessDenied as e:
            raise PortDiscoveryError(pid, attempts, e) from e

        last_seen = [b.port for b in bindings]
        port = select_rpc_port(last_seen, exclude=config.excluded_ports, preferred=preferred)
        if port is not None:
            logger.debug(f"[PortDiscovery] pid {pid} listening on {port} (attempt {attempts})")
            return port

        if attempts < max_attempts:
            await asyncio.sleep(interval)

    reason = f"ambiguous ports {last_seen}" if last_seen else "no listening socket"
    raise PortDiscoveryError(pid, attempts, RuntimeError(reason))


def has_port_flag(args: Sequence[str]) -> bool:
    return any(PORT_FLAG_RE.match(a) for a in args)


def with_ephemeral_rpc_port(args: Sequence[str]) -> List[str]:
    """Append ``--rpc-port=0`` unless the caller already chose a port."""
    args = list(args)
    if not has_port_flag(args):
        args.append(EPHEMERAL_PORT_ARG)
    return args


def inject_port(args: Sequence[str], port: int) -> List[str]:
    """Replace the ``--rpc-port`` argument (ephemeral or not) with the real port."""
    result = []
    injected = False
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if RPC_PORT_RE.match(arg):
            if not injected:
                result.append(f"--rpc-port={port}")
                injected = True
            # "--rpc-port 0" form: drop the separate value too
            skip_next = arg == "--rpc-port"
            continue
        result.append(arg)
    if not injected:
        result.append(f"--rpc-port={port}")
    return result


__all__ = [
    "PortBinding",
    "EPHEMERAL_PORT_ARG",
    "list_listening_ports",
    "select_rpc_port",
    "discover_port",
    "has_port_flag",
    "with_ephemeral_rpc_port",
    "inject_port",
]
