"""
Testnet Harness - launch, probe and control local blockchain test networks
"""

__version__ = "1.0.0"

from harness_core.orchestration import LaunchSpec, NodeLauncher, ProcessManager
from harness_core.cache import StartupCacheConfig, StartupCacheService

__all__ = [
    "LaunchSpec",
    "NodeLauncher",
    "ProcessManager",
    "StartupCacheConfig",
    "StartupCacheService",
    "__version__",
]
