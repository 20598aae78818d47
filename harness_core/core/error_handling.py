"""
Error Taxonomy and Retry Patterns
=================================

Single source of truth for the harness failure modes and the bounded retry
policies used by the orchestration layer.

Taxonomy:
- LaunchError           - executable missing / exec failed (fatal, no retry)
- ProcessError          - signal or reap failure on a live child
- PortDiscoveryError    - listening port not found after bounded polling
- NodeReadinessError    - deadline exceeded, carries the captured log tail
- FileLockError         - cross-process lock acquisition timed out
- StartupCacheError     - artifact generation failed (cache left untouched)
- Chopsticks*Error      - fork instance failures, tagged with the relay leg
- IpcError              - control channel client could not complete a request

Every error keeps the low-level exception in ``cause`` (and ``__cause__`` when
raised with ``from``) plus enough context to diagnose without re-running.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Coroutine,
    Dict,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# ERROR TAXONOMY
# =============================================================================


class HarnessError(Exception):
    """Base class for every harness failure."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def context(self) -> Dict[str, Any]:
        """Structured fields for logging."""
        return {"error": type(self).__name__, "message": self.message}


class LaunchError(HarnessError):
    """The node executable could not be started."""

    def __init__(
        self,
        command: str,
        args: Sequence[str] = (),
        cause: Optional[BaseException] = None,
        reason: str = "",
    ):
        detail = reason or (str(cause) if cause else "spawn failed")
        super().__init__(f"Failed to launch '{command}': {detail}", cause)
        self.command = command
        self.args = list(args)

    def context(self) -> Dict[str, Any]:
        return {**super().context(), "command": self.command, "args": self.args}


class ProcessError(HarnessError):
    """A signal, wait or liveness check on a managed process failed."""

    def __init__(
        self,
        operation: str,
        pid: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(f"Process {operation} failed (pid={pid}): {cause}", cause)
        self.operation = operation
        self.pid = pid


class PortDiscoveryError(HarnessError):
    """No listening port could be attributed to the process."""

    def __init__(self, pid: int, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Port discovery for pid {pid} failed after {attempts} attempt(s): {cause}",
            cause,
        )
        self.pid = pid
        self.attempts = attempts

    def context(self) -> Dict[str, Any]:
        return {**super().context(), "pid": self.pid, "attempts": self.attempts}


class NodeReadinessError(HarnessError):
    """The node did not become ready before its deadline."""

    def __init__(
        self,
        reason: str,
        port: Optional[int] = None,
        attempts: int = 0,
        log_tail: str = "",
        result: Any = None,
        cause: Optional[BaseException] = None,
    ):
        message = f"Node not ready (port={port}, attempts={attempts}): {reason}"
        if log_tail:
            message += f"\n--- captured output ---\n{log_tail}"
        super().__init__(message, cause)
        self.reason = reason
        self.port = port
        self.attempts = attempts
        self.log_tail = log_tail
        self.result = result


class FileLockError(HarnessError):
    """Cross-process lock could not be acquired."""

    def __init__(self, lock_path: str, reason: str = "timeout", cause: Optional[BaseException] = None):
        super().__init__(f"Could not acquire lock {lock_path}: {reason}", cause)
        self.lock_path = str(lock_path)
        self.reason = reason


class StartupCacheError(HarnessError):
    """Startup artifact generation or lookup failed."""

    OPERATIONS = ("hash", "precompile", "cache", "lock", "chainspec")

    def __init__(self, operation: str, cause: Any = None):
        super().__init__(
            f"Startup cache {operation} failed: {cause}",
            cause if isinstance(cause, BaseException) else None,
        )
        self.operation = operation
        self.detail = cause


class ChopsticksSetupError(HarnessError):
    """A fork instance could not be started or connected to."""

    def __init__(self, endpoint: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(f"Fork setup failed for endpoint {endpoint}: {cause}", cause)
        self.endpoint = endpoint


class ChopsticksBlockError(HarnessError):
    """Block production or head manipulation failed."""

    def __init__(
        self,
        operation: str,
        chain: Optional[str] = None,
        leg: Optional[str] = None,
        block_identifier: Any = None,
        cause: Optional[BaseException] = None,
    ):
        where = f" on {chain}" if chain else ""
        which = f" ({leg} leg)" if leg else ""
        super().__init__(f"Block {operation}{where}{which} failed: {cause}", cause)
        self.operation = operation
        self.chain = chain
        self.leg = leg
        self.block_identifier = block_identifier


class ChopsticksStorageError(HarnessError):
    """A storage override was rejected by the fork instance."""

    def __init__(self, module: str, method: str, cause: Optional[BaseException] = None):
        super().__init__(f"Storage override {module}.{method} failed: {cause}", cause)
        self.module = module
        self.method = method


class ChopsticksXcmError(HarnessError):
    """A cross-chain message could not be queued or observed."""

    def __init__(
        self,
        message_type: str,
        para_id: Optional[int] = None,
        leg: Optional[str] = None,
        cause: Any = None,
    ):
        which = f" ({leg} leg)" if leg else ""
        super().__init__(
            f"XCM {message_type}{which} failed (para={para_id}): {cause}",
            cause if isinstance(cause, BaseException) else None,
        )
        self.message_type = message_type
        self.para_id = para_id
        self.leg = leg


class IpcError(HarnessError):
    """Control channel client failure (the server reports failures in-band)."""

    def __init__(self, socket_path: Optional[str], reason: str, cause: Optional[BaseException] = None):
        super().__init__(f"IPC via {socket_path} failed: {reason}", cause)
        self.socket_path = socket_path
        self.reason = reason


# =============================================================================
# RETRY WITH BACKOFF
# =============================================================================


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``exponential_base=1.0`` gives a fixed-interval schedule.
    """
    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: float = 0.0
    retry_on: Tuple[Type[BaseException], ...] = field(default_factory=lambda: (Exception,))

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** attempt), self.max_delay)
        if self.jitter:
            delay += delay * self.jitter * random.random()
        return delay


class RetryHandler:
    """
    Retry handler with bounded attempts.

    Features:
    - Fixed or exponential backoff with optional jitter
    - Exception type filtering
    - Callback hook per retry
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ):
        self.config = config or RetryConfig()
        self.on_retry = on_retry

    async def execute(
        self,
        func: Callable[..., Coroutine[Any, Any, T]],
        *args,
        **kwargs,
    ) -> T:
        """
        Execute ``func`` with retry logic.

        Makes at most ``max_retries + 1`` calls; the last exception propagates.
        """
        last_exception: Optional[BaseException] = None

        for attempt in range(self.config.max_retries + 1):
            try:
                return await func(*args, **kwargs)

            except self.config.retry_on as e:
                last_exception = e

                if attempt >= self.config.max_retries:
                    raise

                delay = self.config.delay_for(attempt)
                logger.debug(
                    f"Retry {attempt + 1}/{self.config.max_retries} "
                    f"after {delay:.2f}s: {e}"
                )

                if self.on_retry:
                    self.on_retry(attempt + 1, e)

                await asyncio.sleep(delay)

        raise last_exception  # pragma: no cover


__all__ = [
    "HarnessError",
    "LaunchError",
    "ProcessError",
    "PortDiscoveryError",
    "NodeReadinessError",
    "FileLockError",
    "StartupCacheError",
    "ChopsticksSetupError",
    "ChopsticksBlockError",
    "ChopsticksStorageError",
    "ChopsticksXcmError",
    "IpcError",
    "RetryConfig",
    "RetryHandler",
]
