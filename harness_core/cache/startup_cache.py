"""
Startup Artifact Cache
======================

Content-addressed cache of the expensive per-binary startup work: the
precompiled runtime (``<bin> precompile-wasm``) and, optionally, the raw
chain spec (``<bin> build-spec ... --raw``).

Layout under the cache root::

    <cache_dir>/
        <bin>-<label>-<key[:12]>/       one entry per cache key (label: chain name or spec file stem)
            entry.json                  manifest (key, paths, created_at)
            precompiled_wasm_...        runtime artifact
            <label>-raw.json            optional raw chain spec
        <bin>-<label>-<key[:12]>.lock/  transient, held during generation

Misses are generated inside a cross-process file lock keyed by the entry, so
parallel test shards on one machine generate once and the rest re-check and
hit. Generation happens in a temporary directory that is renamed into place
only on success; a failed generation never leaves partial artifacts behind.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import time
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from harness_core.config import LockConfig, get_config
from harness_core.core.error_handling import FileLockError, StartupCacheError
from harness_core.utils.file_lock import file_lock

logger = logging.getLogger(__name__)

MANIFEST_FILE = "entry.json"
HASH_CHUNK_SIZE = 1024 * 1024
CHAIN_ARG_RE = re.compile(r"--chain[=\s]?(\S+)")
UNSAFE_LABEL_RE = re.compile(r"[^A-Za-z0-9._-]")

# (argv) -> (returncode, stdout, stderr)
Runner = Callable[[List[str]], Awaitable[Tuple[int, bytes, bytes]]]


@dataclass
class StartupCacheConfig:
    """What the cache needs to know about one launch."""
    bin_path: Union[str, Path]
    cache_dir: Union[str, Path]
    chain_arg: Optional[str] = None
    is_dev_mode: bool = False
    generate_raw_chain_spec: bool = False
    flags: Sequence[str] = field(default_factory=tuple)

    @property
    def chain_name(self) -> str:
        if self.is_dev_mode:
            return "dev"
        if self.chain_arg:
            match = CHAIN_ARG_RE.search(self.chain_arg)
            if match:
                return match.group(1)
        return "default"

    @property
    def chain_label(self) -> str:
        """Chain name usable as a single path segment (spec file paths become their stem)."""
        chain = self.chain_name
        if "/" in chain or os.sep in chain or chain.endswith(".json"):
            chain = Path(chain).stem
        return UNSAFE_LABEL_RE.sub("_", chain).strip(".") or "custom"


@dataclass
class CacheEntry:
    key: str
    directory: str
    precompiled_path: str
    raw_chain_spec_path: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def load(cls, directory: Path) -> Optional["CacheEntry"]:
        try:
            data = json.loads((directory / MANIFEST_FILE).read_text())
            return cls(**data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"[StartupCache] Ignoring unreadable manifest in {directory}: {e}")
            return None


@dataclass
class StartupCacheResult:
    precompiled_path: str
    from_cache: bool
    raw_chain_spec_path: Optional[str] = None

    @property
    def precompiled_dir(self) -> str:
        return str(Path(self.precompiled_path).parent)


def hash_file(path: Union[str, Path]) -> str:
    """sha256 of a file, streamed."""
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b""):
                digest.update(chunk)
    except OSError as e:
        raise StartupCacheError("hash", e) from e
    return digest.hexdigest()


def compute_cache_key(binary_sha256: str, chain: str, flags: Sequence[str] = ()) -> str:
    """Deterministic key: flag order does not matter, flag content does."""
    document = json.dumps(
        {"binary_sha256": binary_sha256, "chain": chain, "flags": sorted(flags)},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(document.encode("utf-8")).hexdigest()


def find_precompiled_artifact(directory: Path) -> Optional[Path]:
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for name in names:
        if name.startswith("precompiled_wasm_") or name.endswith((".cwasm", ".wasm")):
            return directory / name
    return None


async def run_subprocess(argv: List[str]) -> Tuple[int, bytes, bytes]:
    """Default runner: execute and collect output."""
    process = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    return process.returncode, stdout, stderr


class StartupCacheService:
    """
    Looks up or generates startup artifacts.

    ``runner`` executes the node binary; tests inject a fake. ``generations``
    counts actual generation runs done by this instance.
    """

    def __init__(
        self,
        runner: Optional[Runner] = None,
        lock_config: Optional[LockConfig] = None,
    ):
        self.runner = runner or run_subprocess
        self.lock_config = lock_config or get_config().lock
        self.generations = 0

    async def get_cached_artifacts(self, config: StartupCacheConfig) -> StartupCacheResult:
        bin_path = Path(config.bin_path)
        cache_dir = Path(config.cache_dir)
        chain = config.chain_name

        binary_sha = await asyncio.get_running_loop().run_in_executor(None, hash_file, bin_path)
        key = compute_cache_key(binary_sha, chain, config.flags)
        entry_name = f"{bin_path.name}-{config.chain_label}-{key[:12]}"
        entry_dir = cache_dir / entry_name

        hit = self._check_entry(entry_dir, key, config.generate_raw_chain_spec)
        if hit is not None:
            logger.debug(f"[StartupCache] Using cached artifacts: {hit.precompiled_path}")
            return self._result(hit, from_cache=True)

        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StartupCacheError("cache", e) from e

        lock_path = cache_dir / f"{entry_name}.lock"
        try:
            async with file_lock(
                lock_path,
                timeout=self.lock_config.timeout,
                retry_interval=self.lock_config.retry_interval,
                max_age=self.lock_config.max_age,
            ):
                hit = self._check_entry(entry_dir, key, config.generate_raw_chain_spec)
                if hit is not None:
                    logger.info(f"[StartupCache] Artifacts created by another process: {hit.precompiled_path}")
                    return self._result(hit, from_cache=True)

                entry = await self._generate(config, key, chain, entry_dir)
                return self._result(entry, from_cache=False)
        except FileLockError as e:
            raise StartupCacheError("lock", e) from e

    def _check_entry(self, entry_dir: Path, key: str, need_raw_spec: bool) -> Optional[CacheEntry]:
        entry = CacheEntry.load(entry_dir)
        if entry is None or entry.key != key:
            return None
        # Manifest paths are relative to wherever the entry lives now.
        precompiled = entry_dir / Path(entry.precompiled_path).name
        if not os.access(precompiled, os.R_OK):
            return None
        entry.directory = str(entry_dir)
        entry.precompiled_path = str(precompiled)
        if entry.raw_chain_spec_path:
            raw = entry_dir / Path(entry.raw_chain_spec_path).name
            entry.raw_chain_spec_path = str(raw) if raw.is_file() else None
        if need_raw_spec and not entry.raw_chain_spec_path:
            return None
        return entry

    async def _generate(
        self,
        config: StartupCacheConfig,
        key: str,
        chain: str,
        entry_dir: Path,
    ) -> CacheEntry:
        tmp_dir = entry_dir.with_name(f"{entry_dir.name}.tmp-{uuid.uuid4().hex[:8]}")
        tmp_dir.mkdir(parents=True)
        self.generations += 1
        start = time.monotonic()
        logger.info(f"[StartupCache] Generating startup artifacts for {Path(config.bin_path).name} ({chain})")

        try:
            precompiled = await self._precompile(config, tmp_dir)

            raw_spec = None
            if config.generate_raw_chain_spec:
                raw_spec = await self._build_raw_spec(config, chain, tmp_dir)

            entry = CacheEntry(
                key=key,
                directory=str(entry_dir),
                precompiled_path=str(entry_dir / precompiled.name),
                raw_chain_spec_path=str(entry_dir / raw_spec.name) if raw_spec else None,
            )
            (tmp_dir / MANIFEST_FILE).write_text(json.dumps(asdict(entry), indent=2))

            if entry_dir.exists():
                # Outdated or partial entry for this key: replace as a whole.
                stale = entry_dir.with_name(f"{entry_dir.name}.old-{uuid.uuid4().hex[:8]}")
                os.rename(entry_dir, stale)
                shutil.rmtree(stale, ignore_errors=True)
            os.rename(tmp_dir, entry_dir)
        except StartupCacheError:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise
        except OSError as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise StartupCacheError("cache", e) from e
        except BaseException:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            raise

        logger.info(
            f"[StartupCache] Cached artifacts in {entry_dir} ({time.monotonic() - start:.1f}s)"
        )
        return entry

    async def _run(self, argv: List[str], operation: str) -> bytes:
        logger.debug(f"[StartupCache] Running: {' '.join(argv)}")
        try:
            code, stdout, stderr = await self.runner(argv)
        except OSError as e:
            raise StartupCacheError(operation, e) from e
        if code != 0:
            message = stderr.decode("utf-8", errors="replace").strip()[-2000:]
            raise StartupCacheError(operation, f"{argv[1]} exited with code {code}: {message}")
        return stdout

    async def _precompile(self, config: StartupCacheConfig, out_dir: Path) -> Path:
        argv = [str(config.bin_path), "precompile-wasm"]
        if config.chain_arg:
            argv.append(config.chain_arg)
        argv.append(str(out_dir))

        await self._run(argv, "precompile")
        artifact = find_precompiled_artifact(out_dir)
        if artifact is None:
            raise StartupCacheError("precompile", "precompile-wasm produced no artifact")
        return artifact

    async def _build_raw_spec(self, config: StartupCacheConfig, chain: str, out_dir: Path) -> Path:
        if chain in ("dev", "default"):
            argv = [str(config.bin_path), "build-spec", "--dev", "--raw"]
        else:
            argv = [str(config.bin_path), "build-spec", f"--chain={chain}", "--raw"]

        stdout = await self._run(argv, "chainspec")
        if not stdout.strip():
            raise StartupCacheError("chainspec", "build-spec produced no output")

        spec_path = out_dir / f"{config.chain_label}-raw.json"
        spec_path.write_bytes(stdout)
        return spec_path

    @staticmethod
    def _result(entry: CacheEntry, from_cache: bool) -> StartupCacheResult:
        return StartupCacheResult(
            precompiled_path=entry.precompiled_path,
            from_cache=from_cache,
            raw_chain_spec_path=entry.raw_chain_spec_path,
        )


async def get_cached_artifacts(
    config: StartupCacheConfig,
    runner: Optional[Runner] = None,
) -> StartupCacheResult:
    """One-shot lookup/generation with a throwaway service."""
    return await StartupCacheService(runner=runner).get_cached_artifacts(config)


__all__ = [
    "StartupCacheConfig",
    "StartupCacheResult",
    "StartupCacheService",
    "CacheEntry",
    "hash_file",
    "compute_cache_key",
    "find_precompiled_artifact",
    "get_cached_artifacts",
    "run_subprocess",
]
