"""Control channel (unix socket IPC)."""
from harness_core.ipc.control_channel import (
    ControlServer,
    IpcRequest,
    IpcResponse,
    send_ipc_message,
)

__all__ = [
    "ControlServer",
    "IpcRequest",
    "IpcResponse",
    "send_ipc_message",
]
