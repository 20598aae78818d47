"""
Harness Core - Core Module
==========================

Error taxonomy and retry helpers shared by every component.
"""

from __future__ import annotations

from harness_core.core.error_handling import (
    ChopsticksBlockError,
    ChopsticksSetupError,
    ChopsticksStorageError,
    ChopsticksXcmError,
    FileLockError,
    HarnessError,
    IpcError,
    LaunchError,
    NodeReadinessError,
    PortDiscoveryError,
    ProcessError,
    RetryConfig,
    RetryHandler,
    StartupCacheError,
)

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
