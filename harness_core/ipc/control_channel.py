"""
Control Channel
===============

Local unix-socket protocol that lets an interactive client act on the nodes of
a running session.

Wire format: one JSON object per line.

    request:  {"cmd": "restart" | "kill" | "isup" | "networkmap",
               "nodeName": "...", "text": "..."}
    response: {"status": "success" | "failure", "result": ..., "message": "..."}

The server never fails at the transport level for a bad request: malformed
JSON, unknown commands and unknown nodes all come back as ``failure``.
The socket path is exported through ``HARNESS_IPC_SOCKET``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Union

from harness_core.config import IpcConfig, get_config
from harness_core.core.error_handling import IpcError, RetryConfig, RetryHandler
from harness_core.orchestration.launcher import NodeLauncher
from harness_core.orchestration.process_manager import ProcessManager

logger = logging.getLogger(__name__)

COMMANDS = ("restart", "kill", "isup", "networkmap")


@dataclass
class IpcRequest:
    cmd: str
    node_name: str = ""
    text: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"cmd": self.cmd, "nodeName": self.node_name, "text": self.text}


@dataclass
class IpcResponse:
    status: str
    result: Any = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, result: Any = True, message: str = "") -> "IpcResponse":
        return cls("success", result, message)

    @classmethod
    def failure(cls, message: str) -> "IpcResponse":
        return cls("failure", False, message)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IpcResponse":
        return cls(
            status=str(data.get("status", "failure")),
            result=data.get("result"),
            message=str(data.get("message", "")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"status": self.status, "result": self.result, "message": self.message}


def default_socket_path() -> Path:
    return Path(tempfile.gettempdir()) / f"testnet-harness-{os.getpid()}" / "node-ipc.sock"


class ControlServer:
    """
    Serves control requests against a session's process registry.

    ``launcher`` is optional; with it, ``restart`` relaunches through the full
    launch pipeline (cache, port discovery, readiness), without it the process
    is respawned with its recorded arguments.
    """

    def __init__(
        self,
        process_manager: ProcessManager,
        launcher: Optional[NodeLauncher] = None,
        socket_path: Optional[Union[str, Path]] = None,
        config: Optional[IpcConfig] = None,
    ):
        self.process_manager = process_manager
        self.launcher = launcher
        self.socket_path = Path(socket_path) if socket_path else default_socket_path()
        self.config = config or get_config().ipc
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> Path:
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        if self.socket_path.exists() or self.socket_path.is_symlink():
            logger.info(f"[IPC] Removing stale socket {self.socket_path}")
            self.socket_path.unlink()

        self._server = await asyncio.start_unix_server(self._handle_client, path=str(self.socket_path))
        os.chmod(self.socket_path, 0o600)
        os.environ[self.config.socket_env_var] = str(self.socket_path)
        logger.info(f"[IPC] Control channel listening on {self.socket_path}")
        return self.socket_path

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass
        if os.environ.get(self.config.socket_env_var) == str(self.socket_path):
            del os.environ[self.config.socket_env_var]
        logger.info("[IPC] Control channel closed")

    async def __aenter__(self) -> "ControlServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        logger.debug("[IPC] Client connected")
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                response = await self.handle_line(line)
                writer.write((json.dumps(response.to_dict(), default=str) + "\n").encode("utf-8"))
                await writer.drain()
        except (ConnectionError, asyncio.IncompleteReadError, ValueError) as e:
            logger.debug(f"[IPC] Client error: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            logger.debug("[IPC] Client disconnected")

    async def handle_line(self, line: Union[bytes, str]) -> IpcResponse:
        try:
            message = json.loads(line)
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"[IPC] Malformed request: {e}")
            return IpcResponse.failure(f"malformed request: {e}")
        if not isinstance(message, dict):
            return IpcResponse.failure("malformed request: expected a JSON object")

        request = IpcRequest(
            cmd=str(message.get("cmd", "")),
            node_name=str(message.get("nodeName") or ""),
            text=str(message.get("text") or ""),
        )
        logger.info(f"[IPC] {request.cmd} {request.node_name}")
        try:
            return await self.dispatch(request)
        except Exception as e:
            logger.exception(f"[IPC] {request.cmd} for '{request.node_name}' failed")
            return IpcResponse.failure(str(e))

    async def dispatch(self, request: IpcRequest) -> IpcResponse:
        if request.cmd == "networkmap":
            return self._networkmap()
        if request.cmd not in COMMANDS:
            return IpcResponse.failure(f"Invalid command received: {request.cmd}")
        if not request.node_name:
            return IpcResponse.failure("nodeName not provided in message")

        name = request.node_name
        if request.cmd == "kill":
            return await self._kill(name, request.text)
        if request.cmd == "restart":
            return await self._restart(name)
        return self._isup(name)

    def _known(self, name: str) -> bool:
        if self.process_manager.last_handle(name) is not None:
            return True
        return self.launcher is not None and self.launcher.knows(name)

    async def _kill(self, name: str, text: str) -> IpcResponse:
        handle = self.process_manager.get(name)
        if handle is None:
            return IpcResponse.failure(f"Unknown node: {name}")
        pid = handle.pid
        reason = text or "killed via control channel"
        if self.launcher is not None:
            await self.launcher.kill(name, reason=reason)
        else:
            await self.process_manager.kill(name, reason=reason)
        return IpcResponse.success(True, f"{name}, pid {pid} killed")

    async def _restart(self, name: str) -> IpcResponse:
        if not self._known(name):
            return IpcResponse.failure(f"Unknown node: {name}")
        if self.launcher is not None and self.launcher.knows(name):
            node = await self.launcher.relaunch(name)
            return IpcResponse.success(node.describe(), f"{name} restarted")
        handle = await self.process_manager.respawn(name)
        return IpcResponse.success(handle.describe(), f"{name} restarted")

    def _isup(self, name: str) -> IpcResponse:
        if not self._known(name):
            return IpcResponse.failure(f"Unknown node: {name}")
        running = self.process_manager.is_running(name)
        return IpcResponse.success(running, f"{name} isUp result is {running}")

    def _networkmap(self) -> IpcResponse:
        nodes: Dict[str, Any] = {}
        for name, handle in self.process_manager.handles.items():
            launched = self.launcher.get(name) if self.launcher else None
            nodes[name] = launched.describe() if launched else handle.describe()
        return IpcResponse.success(nodes, "|".join(nodes))


async def send_ipc_message(
    request: Union[IpcRequest, Dict[str, Any]],
    socket_path: Optional[Union[str, Path]] = None,
    config: Optional[IpcConfig] = None,
) -> IpcResponse:
    """
    Send one request and wait for its response.

    Connection attempts are retried a bounded number of times (the server may
    still be starting). After the response arrives the transport is closed and
    awaited, bounded, before returning.

    Raises:
        IpcError: socket unreachable, or no response arrived.
    """
    config = config or get_config().ipc
    path = str(socket_path) if socket_path else os.environ.get(config.socket_env_var)
    if not path:
        raise IpcError(None, f"no socket path given and {config.socket_env_var} is not set")

    payload = request.to_dict() if isinstance(request, IpcRequest) else dict(request)

    connector = RetryHandler(
        RetryConfig(
            max_retries=max(config.connect_attempts - 1, 0),
            base_delay=config.connect_interval,
            max_delay=config.connect_interval,
            exponential_base=1.0,
            retry_on=(OSError,),
        )
    )
    try:
        reader, writer = await connector.execute(asyncio.open_unix_connection, path)
    except OSError as e:
        raise IpcError(path, f"could not connect after {config.connect_attempts} attempts", e) from e

    try:
        writer.write((json.dumps(payload) + "\n").encode("utf-8"))
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout=config.response_timeout)
        if not line:
            raise IpcError(path, "connection closed before a response arrived")
        try:
            data = json.loads(line)
        except ValueError as e:
            raise IpcError(path, f"malformed response: {line!r}", e) from e
        return IpcResponse.from_dict(data)
    except asyncio.TimeoutError as e:
        raise IpcError(path, f"no response within {config.response_timeout:.0f}s", e) from e
    except (ConnectionError, OSError) as e:
        raise IpcError(path, "connection lost", e) from e
    finally:
        writer.close()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=config.close_timeout)
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            logger.debug(f"[IPC] Transport close did not complete cleanly: {e}")


__all__ = [
    "IpcRequest",
    "IpcResponse",
    "ControlServer",
    "send_ipc_message",
    "default_socket_path",
    "COMMANDS",
]
