"""
Base configuration system for the test-network harness.

Features:
- Dataclass-based configuration with type hints
- YAML file loading with environment variable interpolation
- Per-setting environment overrides (HARNESS_*)
- XDG Base Directory Specification compliance for the cache root
- Cached process-wide instance

Every polling constant keeps the historical default; the env vars only exist
so slow CI machines can stretch them.
"""

from __future__ import annotations

import os
import re
import threading
import typing
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import (
    Any,
    ClassVar,
    Dict,
    List,
    Optional,
    Type,
    TypeVar,
    Union,
)
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="BaseConfig")

_config_instance: Optional["HarnessConfig"] = None
_config_thread_lock = threading.Lock()


# ============================================================================
# DYNAMIC PATH RESOLUTION (XDG Compliant)
# ============================================================================

class PathResolver:
    """
    Path resolution with XDG compliance and fallbacks.

    Resolution order:
    1. Explicit environment variable
    2. $XDG_CACHE_HOME/testnet-harness, else ~/.cache/testnet-harness
    """

    _cache: ClassVar[Dict[str, Path]] = {}

    @classmethod
    def resolve(
        cls,
        name: str,
        env_var: Optional[str] = None,
        subdir: str = "",
    ) -> Path:
        """
        Resolve a cache directory path. Nothing is created on disk.

        Args:
            name: Human-readable name for logging
            env_var: Environment variable to check first
            subdir: Subdirectory under base path
        """
        cache_key = (
            f"{name}:{env_var}:{subdir}:{os.environ.get(env_var or '', '')}"
            f":{os.environ.get('XDG_CACHE_HOME', '')}"
        )
        if cache_key in cls._cache:
            return cls._cache[cache_key]

        path: Optional[Path] = None

        if env_var:
            env_value = os.environ.get(env_var)
            if env_value:
                path = Path(env_value).expanduser().resolve()
                logger.debug(f"[PathResolver] {name}: env {env_var} = {path}")

        if path is None:
            path = cls._get_xdg_cache_base() / "testnet-harness"
            if subdir:
                path = path / subdir
            logger.debug(f"[PathResolver] {name}: XDG cache = {path}")

        cls._cache[cache_key] = path
        return path

    @classmethod
    def _get_xdg_cache_base(cls) -> Path:
        env_value = os.environ.get("XDG_CACHE_HOME")
        if env_value:
            return Path(env_value)
        return Path.home() / ".cache"

    @classmethod
    def clear_cache(cls) -> None:
        """Clear path resolution cache."""
        cls._cache.clear()


def resolve_path(name: str, env_var: Optional[str] = None, subdir: str = "") -> Path:
    """Convenience wrapper around :meth:`PathResolver.resolve`."""
    return PathResolver.resolve(name, env_var, subdir)


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
    return int(float(os.getenv(name, str(default))))


def _interpolate_env_vars(value: Any) -> Any:
    """
    Recursively interpolate environment variables in config values.

    Supports formats:
    - ${VAR_NAME} - Required, raises if not set
    - ${VAR_NAME:-default} - Optional with default
    - ${VAR_NAME:?error message} - Required with custom error
    """
    if isinstance(value, str):
        pattern = r"\$\{([A-Z_][A-Z0-9_]*)(?:(:-)([^}]*))?(?:(:\?)([^}]*))?\}"

        def replace_var(match: re.Match) -> str:
            var_name = match.group(1)
            has_default = match.group(2) is not None
            default_value = match.group(3) or ""
            has_error = match.group(4) is not None
            error_msg = match.group(5) or f"Required environment variable {var_name} is not set"

            env_value = os.environ.get(var_name)

            if env_value is not None:
                return env_value
            elif has_default:
                return default_value
            elif has_error:
                raise ValueError(error_msg)
            else:
                if match.group(0) == value:
                    raise ValueError(f"Environment variable {var_name} is not set")
                return match.group(0)

        result = re.sub(pattern, replace_var, value)

        if result.startswith("~"):
            result = str(Path(result).expanduser())

        return result

    elif isinstance(value, dict):
        return {k: _interpolate_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [_interpolate_env_vars(item) for item in value]

    return value


def _coerce_type(value: Any, target_type: Any) -> Any:
    """Coerce a value to the target type."""
    if value is None:
        return None

    origin = getattr(target_type, "__origin__", None)

    # Optional[X]
    if origin is Union:
        args = target_type.__args__
        if type(None) in args:
            non_none_types = [t for t in args if t is not type(None)]
            if len(non_none_types) == 1:
                return _coerce_type(value, non_none_types[0])

    if target_type is Path:
        return Path(value).expanduser() if value else None

    if origin in (list, tuple):
        item_type = target_type.__args__[0] if getattr(target_type, "__args__", None) else str
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        if not isinstance(value, (list, tuple)):
            value = [value]
        items = [_coerce_type(item, item_type) for item in value]
        return tuple(items) if origin is tuple else items

    # bool("false") is True
    if target_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    if target_type is int:
        return int(float(value)) if value != "" else 0
    if target_type is float:
        return float(value) if value != "" else 0.0

    try:
        return target_type(value)
    except (TypeError, ValueError):
        return value


@dataclass
class BaseConfig:
    """
    Base configuration class with YAML loading and env var interpolation.
    """

    @classmethod
    def _field_types(cls) -> Dict[str, Any]:
        hints = typing.get_type_hints(cls)
        return {name: hints.get(name, str) for name in cls.__dataclass_fields__}

    @classmethod
    def from_dict(cls: Type[T], data: Dict[str, Any]) -> T:
        """Create config from dictionary with env var interpolation."""
        interpolated = _interpolate_env_vars(data)
        field_types = cls._field_types()

        filtered = {}
        for key, value in interpolated.items():
            key = key.replace("-", "_")
            if key in field_types:
                filtered[key] = _coerce_type(value, field_types[key])
            else:
                logger.debug(f"[Config] Ignoring unknown key '{key}' for {cls.__name__}")

        return cls(**filtered)

    @classmethod
    def from_yaml(cls: Type[T], path: Union[str, Path]) -> T:
        """Load config from YAML file with env var interpolation."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary."""
        result = {}
        for key, value in asdict(self).items():
            if isinstance(value, Path):
                result[key] = str(value)
            elif isinstance(value, tuple):
                result[key] = list(value)
            else:
                result[key] = value
        return result


# ============================================================================
# SECTION CONFIGS
# ============================================================================

@dataclass
class ProcessConfig(BaseConfig):
    """Child process lifecycle settings."""

    kill_grace_period: float = field(
        default_factory=lambda: _env_float("HARNESS_KILL_GRACE_SECONDS", 5.0)
    )
    log_buffer_lines: int = field(
        default_factory=lambda: _env_int("HARNESS_LOG_BUFFER_LINES", 500)
    )
    log_dir: Path = field(
        default_factory=lambda: Path(
            os.getenv("HARNESS_NODE_LOG_DIR", str(Path.cwd() / "tmp" / "node_logs"))
        )
    )
    write_log_files: bool = field(
        default_factory=lambda: os.getenv("HARNESS_WRITE_NODE_LOGS", "true").lower() == "true"
    )


@dataclass
class DiscoveryConfig(BaseConfig):
    """Port discovery polling. 600 x 100ms covers parallel startup contention."""

    max_attempts: int = field(
        default_factory=lambda: _env_int("HARNESS_PORT_DISCOVERY_ATTEMPTS", 600)
    )
    interval: float = field(
        default_factory=lambda: _env_float("HARNESS_PORT_DISCOVERY_INTERVAL", 0.1)
    )
    excluded_ports: List[int] = field(default_factory=lambda: [30333, 9615])
    preferred_range: List[int] = field(default_factory=lambda: [9000, 20000])


@dataclass
class ReadinessConfig(BaseConfig):
    """Readiness probing."""

    interval: float = field(
        default_factory=lambda: _env_float("HARNESS_READINESS_INTERVAL", 0.2)
    )
    deadline: float = field(
        default_factory=lambda: _env_float("HARNESS_READINESS_DEADLINE", 30.0)
    )
    connect_timeout: float = 3.0
    call_timeout: float = 2.0
    ready_patterns: List[str] = field(
        default_factory=lambda: [
            "Development Service Ready",
            " RPC listening on port",
            "RPC listening on ws://",
            "Listening on",
        ]
    )


@dataclass
class LockConfig(BaseConfig):
    """Cross-process file lock."""

    max_age: float = field(
        default_factory=lambda: _env_float("HARNESS_LOCK_MAX_AGE", 120.0)
    )
    retry_interval: float = field(
        default_factory=lambda: _env_float("HARNESS_LOCK_RETRY_INTERVAL", 0.5)
    )
    timeout: float = field(
        default_factory=lambda: _env_float("HARNESS_LOCK_TIMEOUT", 120.0)
    )


@dataclass
class CacheConfig(BaseConfig):
    """Startup artifact cache."""

    cache_dir: Path = field(
        default_factory=lambda: resolve_path(
            "startup_cache", env_var="HARNESS_CACHE_DIR", subdir="startup",
        )
    )
    enabled: bool = field(
        default_factory=lambda: os.getenv("HARNESS_CACHE_ENABLED", "true").lower() == "true"
    )


@dataclass
class RelayConfig(BaseConfig):
    """Multi-chain relay step retries."""

    max_retries: int = field(
        default_factory=lambda: _env_int("HARNESS_RELAY_MAX_RETRIES", 3)
    )
    retry_delay: float = field(
        default_factory=lambda: _env_float("HARNESS_RELAY_RETRY_DELAY", 0.5)
    )
    probe_attempts: int = 20
    probe_interval: float = 0.25


@dataclass
class IpcConfig(BaseConfig):
    """Control channel."""

    socket_env_var: str = "HARNESS_IPC_SOCKET"
    connect_attempts: int = field(
        default_factory=lambda: _env_int("HARNESS_IPC_CONNECT_ATTEMPTS", 100)
    )
    connect_interval: float = field(
        default_factory=lambda: _env_float("HARNESS_IPC_CONNECT_INTERVAL", 0.2)
    )
    response_timeout: float = 120.0
    close_timeout: float = 20.0


_SECTIONS: Dict[str, Type[BaseConfig]] = {
    "process": ProcessConfig,
    "discovery": DiscoveryConfig,
    "readiness": ReadinessConfig,
    "lock": LockConfig,
    "cache": CacheConfig,
    "relay": RelayConfig,
    "ipc": IpcConfig,
}


@dataclass
class HarnessConfig:
    """Aggregate of every section."""

    process: ProcessConfig = field(default_factory=ProcessConfig)
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    readiness: ReadinessConfig = field(default_factory=ReadinessConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    ipc: IpcConfig = field(default_factory=IpcConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HarnessConfig":
        sections = {}
        for name, section_cls in _SECTIONS.items():
            sections[name] = section_cls.from_dict(data.get(name) or {})
        unknown = set(data) - set(_SECTIONS)
        if unknown:
            logger.warning(f"[Config] Unknown config sections ignored: {sorted(unknown)}")
        return cls(**sections)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "HarnessConfig":
        """Load full config from YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name).to_dict() for name in _SECTIONS}


def load_config(
    path: Optional[Union[str, Path]] = None,
    reload: bool = False,
) -> HarnessConfig:
    """
    Load or get cached configuration.

    Args:
        path: YAML file. If None, defaults with env var overrides.
        reload: Force reload even if cached.
    """
    global _config_instance

    with _config_thread_lock:
        if _config_instance is not None and not reload:
            return _config_instance

        if path is None:
            _config_instance = HarnessConfig()
        else:
            _config_instance = HarnessConfig.from_yaml(path)

        logger.debug(f"Configuration loaded (cache_dir={_config_instance.cache.cache_dir})")
        return _config_instance


def get_config() -> HarnessConfig:
    """Get the process-wide configuration, loading defaults on first use."""
    if _config_instance is None:
        return load_config()
    return _config_instance


def reset_config() -> None:
    """Drop the cached instance (tests)."""
    global _config_instance
    with _config_thread_lock:
        _config_instance = None
    PathResolver.clear_cache()
