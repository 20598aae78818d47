"""
Configuration module for the test-network harness.

Provides dataclass-based configuration with:
- YAML file loading
- Environment variable interpolation and HARNESS_* overrides
- Type coercion
- Historical defaults for every polling constant
"""

from harness_core.config.base_config import (
    BaseConfig,
    CacheConfig,
    DiscoveryConfig,
    HarnessConfig,
    IpcConfig,
    LockConfig,
    PathResolver,
    ProcessConfig,
    ReadinessConfig,
    RelayConfig,
    get_config,
    load_config,
    reset_config,
    resolve_path,
)

__all__ = [
    "BaseConfig",
    "ProcessConfig",
    "DiscoveryConfig",
    "ReadinessConfig",
    "LockConfig",
    "CacheConfig",
    "RelayConfig",
    "IpcConfig",
    "HarnessConfig",
    "PathResolver",
    "resolve_path",
    "load_config",
    "get_config",
    "reset_config",
]
