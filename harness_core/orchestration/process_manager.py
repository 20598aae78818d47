"""
Process Manager for Launched Nodes
==================================

Handles the lifecycle of every node binary the harness starts:

1. **Spawning** - exec in a fresh process group, fail fast with LaunchError
2. **Output capture** - bounded ring buffer per node plus an on-disk log file
3. **Zombie prevention** - graceful SIGTERM, SIGKILL escalation on the whole
   process group, psutil sweep of leftovers
4. **Session exit safety** - atexit and SIGINT/SIGTERM hooks kill every live
   child so no node outlives the session that started it

The name -> handle table is owned by one ``ProcessManager`` instance and is
handed explicitly to whoever needs lookups (launcher, control channel).
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import platform
import signal
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import IO, Deque, Dict, Iterable, List, Optional, Sequence, Set, Union

import psutil

from harness_core.config import ProcessConfig, get_config
from harness_core.core.error_handling import LaunchError, ProcessError

logger = logging.getLogger(__name__)

IS_WINDOWS = platform.system() == "Windows"
STREAM_LIMIT = 1024 * 1024
FORCE_KILL_TIMEOUT = 5.0


class ProcessState(Enum):
    """Lifecycle of a managed process."""
    SPAWNING = "spawning"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class OutputBuffer:
    """Bounded ring buffer of output lines (stdout and stderr interleaved)."""

    def __init__(self, max_lines: int = 500):
        self._lines: Deque[str] = deque(maxlen=max_lines)
        self.total_lines = 0

    def append(self, line: str) -> None:
        self._lines.append(line)
        self.total_lines += 1

    def lines(self) -> List[str]:
        return list(self._lines)

    def tail(self, count: int = 50) -> str:
        return "\n".join(list(self._lines)[-count:])

    def find(self, patterns: Iterable[str]) -> Optional[str]:
        """Return the first pattern present in any buffered line."""
        patterns = list(patterns)
        for line in self._lines:
            for pattern in patterns:
                if pattern in line:
                    return pattern
        return None

    def __len__(self) -> int:
        return len(self._lines)


@dataclass
class ProcessHandle:
    """A spawned node process. Mutated only by its ProcessManager."""
    name: str
    command: str
    args: List[str]
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    pid: Optional[int] = None
    pgid: Optional[int] = None
    state: ProcessState = ProcessState.SPAWNING
    exit_code: Optional[int] = None
    output: OutputBuffer = field(default_factory=OutputBuffer)
    log_path: Optional[Path] = None
    started_at: float = field(default_factory=time.time)
    termination_reason: Optional[str] = None

    _process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False)
    _readers: List[asyncio.Task] = field(default_factory=list, repr=False)
    _watcher: Optional[asyncio.Task] = field(default=None, repr=False)
    _log_file: Optional[IO[str]] = field(default=None, repr=False)
    _terminating: bool = field(default=False, repr=False)
    _finalized: bool = field(default=False, repr=False)

    @property
    def is_alive(self) -> bool:
        if self.state not in (ProcessState.SPAWNING, ProcessState.RUNNING):
            return False
        return self._process is not None and self._process.returncode is None

    def describe(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "pid": self.pid,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "command": self.command,
            "args": list(self.args),
            "log_path": str(self.log_path) if self.log_path else None,
        }


def _log_file_path(log_dir: Path, command: str, args: Sequence[str], pid: int) -> Path:
    port_arg = next((a for a in args if a.startswith("--") and "port=" in a), None)
    port = port_arg.split("=", 1)[1] if port_arg else "unknown"
    return log_dir / f"{Path(command).name}_node_{port}_{pid}.log"


class ProcessManager:
    """
    Manages subprocess lifecycle with aggressive zombie prevention.

    Features:
    - Async subprocess creation in a new session / process group
    - Bounded output capture for launch diagnostics
    - Graceful + forceful termination, idempotent kill
    - Process tree cleanup
    - Exit and interrupt hooks while any child is alive
    """

    def __init__(self, config: Optional[ProcessConfig] = None, install_hooks: bool = True):
        self.config = config or get_config().process
        self.handles: Dict[str, ProcessHandle] = {}
        self._last_handles: Dict[str, ProcessHandle] = {}
        self._spawning: Set[str] = set()
        self._install_hooks = install_hooks
        self._hooks_registered = False
        self._signal_loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handlers: Dict[int, object] = {}

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def spawn(
        self,
        name: str,
        command: str,
        args: Sequence[str] = (),
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ProcessHandle:
        """
        Start a node process.

        Raises:
            LaunchError: executable missing, not executable, exec failure, or a
                live process is already registered under ``name``.
        """
        existing = self.handles.get(name)
        if existing is not None and existing.is_alive:
            raise LaunchError(
                command, args,
                reason=f"node '{name}' is already running (pid {existing.pid})",
            )
        if name in self._spawning:
            raise LaunchError(command, args, reason=f"node '{name}' is already being started")

        # Claimed before the first await; released once registered or failed.
        self._spawning.add(name)
        try:
            return await self._spawn(name, command, args, cwd, env)
        finally:
            self._spawning.discard(name)

    async def _spawn(
        self,
        name: str,
        command: str,
        args: Sequence[str],
        cwd: Optional[Union[str, Path]],
        env: Optional[Dict[str, str]],
    ) -> ProcessHandle:
        handle = ProcessHandle(
            name=name,
            command=command,
            args=list(args),
            cwd=str(cwd) if cwd else None,
            env=dict(env or {}),
            output=OutputBuffer(self.config.log_buffer_lines),
        )

        process_env = os.environ.copy()
        process_env.update(handle.env)

        logger.info(f"[ProcessManager] Starting '{name}': {command} {' '.join(handle.args)}")

        try:
            if not IS_WINDOWS:
                process = await asyncio.create_subprocess_exec(
                    command,
                    *handle.args,
                    cwd=handle.cwd,
                    env=process_env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                    limit=STREAM_LIMIT,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    command,
                    *handle.args,
                    cwd=handle.cwd,
                    env=process_env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
                    limit=STREAM_LIMIT,
                )
        except (OSError, ValueError) as e:
            logger.error(f"[ProcessManager] Failed to spawn '{name}' ({command}): {e}")
            raise LaunchError(command, handle.args, cause=e) from e

        handle._process = process
        handle.pid = process.pid
        handle.started_at = time.time()
        if not IS_WINDOWS:
            try:
                handle.pgid = os.getpgid(process.pid)
            except ProcessLookupError:
                handle.pgid = process.pid
        handle.state = ProcessState.RUNNING

        self._open_log(handle)
        handle._readers = [
            asyncio.create_task(self._read_stream(handle, process.stdout)),
            asyncio.create_task(self._read_stream(handle, process.stderr)),
        ]
        handle._watcher = asyncio.create_task(self._watch_exit(handle))

        self.handles[name] = handle
        self._last_handles[name] = handle
        self._register_exit_hooks()

        logger.info(f"[ProcessManager] '{name}' started with PID {process.pid}")
        return handle

    def _open_log(self, handle: ProcessHandle) -> None:
        if not self.config.write_log_files:
            return
        try:
            log_dir = Path(self.config.log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            handle.log_path = _log_file_path(log_dir, handle.command, handle.args, handle.pid)
            handle._log_file = open(handle.log_path, "a", encoding="utf-8")
        except OSError as e:
            logger.warning(f"[ProcessManager] Could not open log file for '{handle.name}': {e}")
            handle._log_file = None

    def _write_log(self, handle: ProcessHandle, text: str) -> None:
        if handle._log_file is None:
            return
        try:
            handle._log_file.write(text)
            handle._log_file.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"[ProcessManager] Log write failed for '{handle.name}': {e}")

    async def _read_stream(self, handle: ProcessHandle, stream: Optional[asyncio.StreamReader]) -> None:
        """Read lines into the ring buffer and the log file until EOF."""
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit: take what is buffered.
                raw = await stream.read(STREAM_LIMIT)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"[ProcessManager] Stream read error for '{handle.name}': {e}")
                break
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            handle.output.append(line)
            self._write_log(handle, line + "\n")

    async def _watch_exit(self, handle: ProcessHandle) -> None:
        """Reap the process whichever way it ends."""
        process = handle._process
        code = await process.wait()
        handle.exit_code = code
        if handle._terminating:
            handle.state = ProcessState.KILLED
        else:
            handle.state = ProcessState.EXITED
            logger.info(f"[ProcessManager] '{handle.name}' (PID {handle.pid}) exited with code {code}")
        await self._finalize(handle)

    async def _finalize(self, handle: ProcessHandle) -> None:
        if handle._finalized:
            return
        handle._finalized = True

        if handle._readers:
            done, pending = await asyncio.wait(handle._readers, timeout=2.0)
            for task in pending:
                task.cancel()

        timestamp = datetime.now().isoformat()
        if handle.state == ProcessState.KILLED:
            message = f"{timestamp} [harness] process killed. reason: {handle.termination_reason or 'unknown'}\n"
        elif handle.exit_code is not None and handle.exit_code < 0:
            message = f"{timestamp} [harness] process terminated by signal {-handle.exit_code}\n"
        elif handle.exit_code is not None:
            message = f"{timestamp} [harness] process exited with status code {handle.exit_code}\n"
        else:
            message = f"{timestamp} [harness] process terminated unexpectedly\n"
        self._write_log(handle, message)

        if handle._log_file is not None:
            try:
                handle._log_file.close()
            except OSError:
                pass
            handle._log_file = None

        self._forget(handle)

    def _forget(self, handle: ProcessHandle) -> None:
        if self.handles.get(handle.name) is handle:
            del self.handles[handle.name]

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def _resolve(self, target: Union[str, ProcessHandle]) -> Optional[ProcessHandle]:
        if isinstance(target, ProcessHandle):
            return target
        return self.handles.get(target)

    def _signal(self, handle: ProcessHandle, sig: int) -> None:
        if not IS_WINDOWS and handle.pgid:
            os.killpg(handle.pgid, sig)
        elif sig == getattr(signal, "SIGKILL", None):
            handle._process.kill()
        else:
            handle._process.terminate()

    async def kill(
        self,
        target: Union[str, ProcessHandle],
        reason: str = "Manual cleanup requested",
        grace_period: Optional[float] = None,
    ) -> None:
        """
        Stop a process gracefully, then forcefully if needed.

        Idempotent: unknown names and already-exited handles are a no-op.
        """
        handle = self._resolve(target)
        if handle is None:
            logger.debug(f"[ProcessManager] kill: no live process named '{target}'")
            return
        if not handle.is_alive:
            if handle._watcher is not None and not handle._finalized:
                await handle._watcher
            self._forget(handle)
            return

        grace = self.config.kill_grace_period if grace_period is None else grace_period
        process = handle._process
        handle._terminating = True
        handle.termination_reason = reason

        logger.info(f"[ProcessManager] Stopping '{handle.name}' (PID {handle.pid}): {reason}")

        try:
            self._signal(handle, signal.SIGTERM)
            try:
                await asyncio.wait_for(asyncio.shield(process.wait()), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[ProcessManager] '{handle.name}' did not terminate within {grace:.1f}s, sending SIGKILL..."
                )
                self._signal(handle, getattr(signal, "SIGKILL", signal.SIGTERM))
                await asyncio.wait_for(asyncio.shield(process.wait()), timeout=FORCE_KILL_TIMEOUT)
        except ProcessLookupError:
            pass
        except (OSError, asyncio.TimeoutError) as e:
            raise ProcessError("kill", handle.pid, e) from e
        finally:
            if process.returncode is not None:
                handle.exit_code = process.returncode
                handle.state = ProcessState.KILLED

        if handle.pgid and not IS_WINDOWS:
            await self.sweep_orphans(handle.pgid)

        if handle._watcher is not None:
            await handle._watcher
        else:
            await self._finalize(handle)

        logger.info(f"[ProcessManager] '{handle.name}' stopped")

    async def sweep_orphans(self, pgid: int) -> int:
        """Kill any process still in ``pgid``. Returns how many were found."""
        found = 0
        try:
            os.killpg(pgid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

        await asyncio.sleep(0)
        for proc in psutil.process_iter(["pid"]):
            try:
                if os.getpgid(proc.pid) == pgid and proc.status() != psutil.STATUS_ZOMBIE:
                    found += 1
                    logger.warning(f"[ProcessManager] Orphan detected: {proc.pid} ({proc.name()})")
                    proc.kill()
            except (ProcessLookupError, PermissionError, psutil.NoSuchProcess, psutil.AccessDenied):
                pass
        return found

    async def wait(self, target: Union[str, ProcessHandle]) -> Optional[int]:
        """Wait for the process to exit and be reaped."""
        handle = self._resolve(target)
        if handle is None:
            return None
        if handle._watcher is not None:
            await handle._watcher
        return handle.exit_code

    async def respawn(self, name: str) -> ProcessHandle:
        """Kill ``name`` (if alive) and start it again with its recorded parameters."""
        previous = self.handles.get(name) or self._last_handles.get(name)
        if previous is None:
            raise LaunchError(name, reason=f"no process was ever launched as '{name}'")
        await self.kill(previous, reason="restart requested")
        return await self.spawn(name, previous.command, previous.args, previous.cwd, previous.env)

    async def shutdown_all(self) -> None:
        """Stop all managed processes and drop the exit hooks."""
        live = [h for h in self.handles.values() if h.is_alive]
        if live:
            logger.info(f"[ProcessManager] Shutting down {len(live)} managed process(es)...")
            results = await asyncio.gather(
                *(self.kill(h, reason="session teardown") for h in live),
                return_exceptions=True,
            )
            for handle, result in zip(live, results):
                if isinstance(result, BaseException):
                    logger.error(f"[ProcessManager] Error stopping '{handle.name}': {result}")
        self._deregister_exit_hooks()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def get(self, name: str) -> Optional[ProcessHandle]:
        return self.handles.get(name)

    def last_handle(self, name: str) -> Optional[ProcessHandle]:
        return self._last_handles.get(name)

    def is_running(self, name: str) -> bool:
        handle = self.handles.get(name)
        return handle is not None and handle.is_alive

    def live_handles(self) -> List[ProcessHandle]:
        return [h for h in self.handles.values() if h.is_alive]

    # ------------------------------------------------------------------
    # Exit / interrupt hooks
    # ------------------------------------------------------------------

    def _register_exit_hooks(self) -> None:
        if self._hooks_registered or not self._install_hooks:
            return

        atexit.register(self._kill_all_sync)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
                self._signal_loop = loop
            except (NotImplementedError, RuntimeError, ValueError):
                try:
                    self._previous_handlers[sig] = signal.signal(
                        sig, lambda signum, frame: self._on_signal(signum)
                    )
                except (ValueError, OSError):
                    # Not on the main thread; atexit still covers normal exit.
                    pass

        self._hooks_registered = True
        logger.debug("[ProcessManager] Exit hooks registered")

    def _deregister_exit_hooks(self) -> None:
        if not self._hooks_registered:
            return

        atexit.unregister(self._kill_all_sync)
        for sig in (signal.SIGINT, signal.SIGTERM):
            if self._signal_loop is not None:
                try:
                    self._signal_loop.remove_signal_handler(sig)
                except (RuntimeError, ValueError):
                    pass
            if sig in self._previous_handlers:
                try:
                    signal.signal(sig, self._previous_handlers.pop(sig))
                except (ValueError, OSError, TypeError):
                    pass

        self._signal_loop = None
        self._hooks_registered = False
        logger.debug("[ProcessManager] Exit hooks removed")

    def _on_signal(self, signum: int) -> None:
        logger.warning(f"[ProcessManager] Received signal {signum}, killing managed processes...")
        self._kill_all_sync()
        self._deregister_exit_hooks()
        # Deliver the signal again with the original disposition.
        os.kill(os.getpid(), signum)

    def _kill_all_sync(self) -> None:
        """Blocking teardown for interrupt and interpreter-exit paths."""
        live = [h for h in self.handles.values() if h._process is not None and h._process.returncode is None]
        if not live:
            return

        procs = []
        for handle in live:
            handle._terminating = True
            handle.termination_reason = handle.termination_reason or "session exit"
            try:
                self._signal(handle, signal.SIGTERM)
                procs.append(psutil.Process(handle.pid))
            except (ProcessLookupError, psutil.NoSuchProcess):
                continue
            except OSError as e:
                logger.error(f"[ProcessManager] Could not signal '{handle.name}': {e}")

        _, alive = psutil.wait_procs(procs, timeout=self.config.kill_grace_period)
        for proc in alive:
            for handle in live:
                if handle.pid == proc.pid:
                    try:
                        self._signal(handle, getattr(signal, "SIGKILL", signal.SIGTERM))
                    except (ProcessLookupError, OSError):
                        pass
        for handle in live:
            handle.state = ProcessState.KILLED


__all__ = [
    "ProcessState",
    "ProcessHandle",
    "OutputBuffer",
    "ProcessManager",
]
