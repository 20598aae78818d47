"""
Readiness prober.

Decides when a launched node can take protocol requests, using one of two
strategies:

- PORT_HANDSHAKE: a minimal JSON-RPC call over websocket (``system_chain``,
  plus ``eth_chainId`` on Ethereum-compatible chains) retried on a fixed
  interval.
- LOG_PATTERN: scan the captured output for a known "ready" line. Used for
  binaries whose RPC port opens before the node is actually usable.

Both run as a cooperative poll loop racing a deadline, so many launches can
wait concurrently inside one event loop.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import aiohttp

from harness_core.config import ReadinessConfig, get_config
from harness_core.core.error_handling import NodeReadinessError

logger = logging.getLogger(__name__)

_request_ids = itertools.count(1)


class ReadinessStrategy(Enum):
    PORT_HANDSHAKE = "port_handshake"
    LOG_PATTERN = "log_pattern"


class ReadinessOutcome(Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class ReadinessResult:
    """Outcome of one readiness wait."""
    outcome: ReadinessOutcome
    strategy: ReadinessStrategy
    elapsed: float
    attempts: int = 0
    matched: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.outcome == ReadinessOutcome.READY


async def rpc_call(
    port: int,
    method: str,
    params: Sequence = (),
    host: str = "127.0.0.1",
    connect_timeout: float = 3.0,
    call_timeout: float = 2.0,
) -> dict:
    """Send one JSON-RPC request over a fresh websocket and return the reply."""
    request_id = next(_request_ids)
    async with aiohttp.ClientSession() as session:
        ws = await asyncio.wait_for(session.ws_connect(f"ws://{host}:{port}"), timeout=connect_timeout)
        async with ws:
            await ws.send_json({"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params)})
            while True:
                reply = await asyncio.wait_for(ws.receive_json(), timeout=call_timeout)
                if reply.get("id") == request_id:
                    return reply


async def rpc_handshake(
    port: int,
    is_ethereum: bool = False,
    connect_timeout: float = 3.0,
    call_timeout: float = 2.0,
) -> Optional[str]:
    """Return the last method answered when every handshake call succeeds, else None."""
    methods = ["system_chain"]
    if is_ethereum:
        methods.append("eth_chainId")

    for method in methods:
        try:
            reply = await rpc_call(
                port, method,
                connect_timeout=connect_timeout,
                call_timeout=call_timeout,
            )
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError, ValueError, TypeError) as e:
            logger.debug(f"[Readiness] {method} on port {port} failed: {e}")
            return None
        if reply.get("jsonrpc") != "2.0" or "error" in reply:
            logger.debug(f"[Readiness] {method} on port {port} returned {reply}")
            return None
    return methods[-1]


async def await_ready(
    handle,
    strategy: ReadinessStrategy,
    deadline: Optional[float] = None,
    port: Optional[int] = None,
    patterns: Optional[Sequence[str]] = None,
    is_ethereum: bool = False,
    interval: Optional[float] = None,
    config: Optional[ReadinessConfig] = None,
) -> ReadinessResult:
    """
    Block (cooperatively) until ``handle`` is ready.

    Args:
        handle: ProcessHandle of the launched node
        strategy: which readiness check to poll
        deadline: seconds to wait before giving up
        port: RPC port, required for PORT_HANDSHAKE
        patterns: extra "ready" substrings for LOG_PATTERN
        is_ethereum: also require ``eth_chainId`` during the handshake

    Raises:
        NodeReadinessError: deadline expired (``.result.outcome`` is TIMED_OUT)
            or the process exited while waiting. Carries the log tail.
    """
    config = config or get_config().readiness
    deadline = config.deadline if deadline is None else deadline
    interval = config.interval if interval is None else interval

    if strategy == ReadinessStrategy.PORT_HANDSHAKE and port is None:
        raise ValueError("PORT_HANDSHAKE readiness needs a port")

    ready_patterns = list(config.ready_patterns) + list(patterns or [])

    async def check() -> Optional[str]:
        if strategy == ReadinessStrategy.LOG_PATTERN:
            return handle.output.find(ready_patterns)
        return await rpc_handshake(port, is_ethereum, config.connect_timeout, config.call_timeout)

    start = time.monotonic()
    attempts = 0
    logger.info(f"[Readiness] Waiting for '{handle.name}' ({strategy.value}, deadline {deadline:.1f}s)")

    while True:
        attempts += 1
        if not handle.is_alive:
            result = ReadinessResult(
                ReadinessOutcome.TIMED_OUT, strategy, time.monotonic() - start, attempts
            )
            raise NodeReadinessError(
                f"'{handle.name}' exited with code {handle.exit_code} before becoming ready",
                port=port,
                attempts=attempts,
                log_tail=handle.output.tail(),
                result=result,
            )

        remaining = deadline - (time.monotonic() - start)
        try:
            matched = await asyncio.wait_for(check(), timeout=max(remaining, 0.01))
        except asyncio.TimeoutError:
            matched = None

        elapsed = time.monotonic() - start
        if matched:
            logger.info(f"✅ '{handle.name}' is ready after {elapsed:.2f}s ({matched})")
            return ReadinessResult(ReadinessOutcome.READY, strategy, elapsed, attempts, matched)

        if elapsed >= deadline:
            break
        await asyncio.sleep(min(interval, deadline - elapsed))

    elapsed = time.monotonic() - start
    result = ReadinessResult(ReadinessOutcome.TIMED_OUT, strategy, elapsed, attempts)
    logger.error(f"❌ '{handle.name}' not ready after {elapsed:.1f}s ({attempts} checks)")
    raise NodeReadinessError(
        f"'{handle.name}' not ready within {deadline:.1f}s",
        port=port,
        attempts=attempts,
        log_tail=handle.output.tail(),
        result=result,
    )


__all__ = [
    "ReadinessStrategy",
    "ReadinessOutcome",
    "ReadinessResult",
    "rpc_call",
    "rpc_handshake",
    "await_ready",
]
