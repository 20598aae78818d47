"""
Cross-Process File Lock
=======================

Mutual exclusion between harness sessions running as separate OS processes
on the same machine (e.g. sharded test runs sharing one cache directory).

Acquisition is an atomic ``mkdir``: only one contender can create the lock
directory. The winner writes ``lock.json`` ({pid, hostname, timestamp}) inside
it. Contenders check that metadata before every attempt and reclaim the lock
when it is stale:

- its age exceeds ``max_age`` (120s), or
- its owner is on this host and that pid is no longer alive.

Release is best-effort: correctness only depends on staleness detection, so a
crashed or failed release never wedges later sessions.

Usage:
    from harness_core.utils.file_lock import file_lock

    async with file_lock(cache_dir / "polkadot-dev.lock"):
        await regenerate_artifacts()
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import socket
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import psutil

from harness_core.core.error_handling import FileLockError

logger = logging.getLogger(__name__)

LOCK_INFO_FILE = "lock.json"
LOCK_MAX_AGE = 120.0
DEFAULT_TIMEOUT = 120.0
DEFAULT_RETRY_INTERVAL = 0.5

PathLike = Union[str, Path]


@dataclass
class LockInfo:
    """Lock ownership metadata. ``timestamp`` is epoch milliseconds."""
    pid: int
    hostname: str
    timestamp: int

    @classmethod
    def current(cls) -> "LockInfo":
        return cls(
            pid=os.getpid(),
            hostname=socket.gethostname(),
            timestamp=int(time.time() * 1000),
        )

    def age_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return now - self.timestamp / 1000.0


def is_process_alive(pid: int) -> bool:
    """True if ``pid`` exists on this host (zombies count as dead)."""
    if pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists, owned by another user.
        return True


def read_lock_info(lock_path: PathLike) -> Optional[LockInfo]:
    """Read lock metadata, None when missing or malformed."""
    info_path = Path(lock_path) / LOCK_INFO_FILE
    try:
        data = json.loads(info_path.read_text())
        return LockInfo(
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            timestamp=int(data["timestamp"]),
        )
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"[FileLock] Unreadable lock metadata at {info_path}: {e}")
        return None


def is_lock_stale(
    lock_path: PathLike,
    max_age: float = LOCK_MAX_AGE,
    now: Optional[float] = None,
) -> bool:
    """
    Decide whether a held lock may be reclaimed.

    A lock directory without readable metadata (owner died between mkdir and
    the metadata write) is judged by the directory mtime.
    """
    lock_path = Path(lock_path)
    now = time.time() if now is None else now

    info = read_lock_info(lock_path)
    if info is None:
        try:
            return now - lock_path.stat().st_mtime > max_age
        except FileNotFoundError:
            return False

    if info.age_seconds(now) > max_age:
        return True

    return info.hostname == socket.gethostname() and not is_process_alive(info.pid)


def _cleanup_stale_lock(lock_path: Path, max_age: float) -> bool:
    """Remove the lock if stale. Returns True when something was reclaimed."""
    if not lock_path.exists():
        return False

    before = read_lock_info(lock_path)
    if not is_lock_stale(lock_path, max_age):
        return False

    # Owner may have changed between the two reads.
    if read_lock_info(lock_path) != before:
        return False

    tombstone = lock_path.with_name(f"{lock_path.name}.stale-{uuid.uuid4().hex[:8]}")
    try:
        os.rename(lock_path, tombstone)
    except FileNotFoundError:
        return False
    except OSError as e:
        logger.debug(f"[FileLock] Could not reclaim {lock_path}: {e}")
        return False

    # A new owner may have taken the lock between the check and the rename.
    if read_lock_info(tombstone) != before:
        try:
            os.rename(tombstone, lock_path)
        except OSError as e:
            logger.warning(f"[FileLock] Could not restore live lock {lock_path}: {e}")
        else:
            logger.debug(f"[FileLock] Lock {lock_path} changed owner during reclaim, left in place")
        return False

    shutil.rmtree(tombstone, ignore_errors=True)
    if before:
        logger.info(
            f"[FileLock] Removed stale lock {lock_path} "
            f"(pid={before.pid}, host={before.hostname}, age={before.age_seconds():.1f}s)"
        )
    else:
        logger.info(f"[FileLock] Removed stale lock {lock_path} (no metadata)")
    return True


def _try_create(lock_path: Path) -> bool:
    try:
        os.mkdir(lock_path)
    except FileExistsError:
        return False
    except FileNotFoundError:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        return _try_create(lock_path)

    info = LockInfo.current()
    try:
        (lock_path / LOCK_INFO_FILE).write_text(json.dumps(asdict(info)))
    except OSError as e:
        # Directory mtime still bounds the lock lifetime.
        logger.warning(f"[FileLock] Could not write lock metadata for {lock_path}: {e}")
    return True


async def acquire_file_lock(
    lock_path: PathLike,
    timeout: float = DEFAULT_TIMEOUT,
    retry_interval: float = DEFAULT_RETRY_INTERVAL,
    max_age: float = LOCK_MAX_AGE,
) -> LockInfo:
    """
    Acquire the lock, polling until ``timeout`` seconds elapse.

    Raises:
        FileLockError: reason "timeout" when the lock stayed held.
    """
    lock_path = Path(lock_path)
    start = time.monotonic()
    attempts = 0

    while True:
        attempts += 1
        _cleanup_stale_lock(lock_path, max_age)

        if _try_create(lock_path):
            logger.debug(f"[FileLock] Acquired {lock_path} after {attempts} attempt(s)")
            return read_lock_info(lock_path) or LockInfo.current()

        if time.monotonic() - start + retry_interval > timeout:
            break
        await asyncio.sleep(retry_interval)

    holder = read_lock_info(lock_path)
    logger.warning(
        f"[FileLock] Timed out after {timeout:.1f}s waiting for {lock_path} "
        f"(held by pid={holder.pid if holder else '?'})"
    )
    raise FileLockError(str(lock_path), reason="timeout")


def release_file_lock(lock_path: PathLike) -> None:
    """Remove the lock directory. Errors are logged and ignored."""
    try:
        shutil.rmtree(lock_path)
        logger.debug(f"[FileLock] Released {lock_path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"[FileLock] Release of {lock_path} failed (ignored): {e}")


@asynccontextmanager
async def file_lock(
    lock_path: PathLike,
    timeout: float = DEFAULT_TIMEOUT,
    retry_interval: float = DEFAULT_RETRY_INTERVAL,
    max_age: float = LOCK_MAX_AGE,
) -> AsyncIterator[LockInfo]:
    """Hold the lock for the body; released on every exit path."""
    info = await acquire_file_lock(lock_path, timeout, retry_interval, max_age)
    try:
        yield info
    finally:
        release_file_lock(lock_path)


async def with_file_lock(lock_path: PathLike, body, **lock_kwargs):
    """Run ``await body()`` while holding the lock."""
    async with file_lock(lock_path, **lock_kwargs):
        return await body()


__all__ = [
    "LockInfo",
    "LOCK_MAX_AGE",
    "acquire_file_lock",
    "release_file_lock",
    "file_lock",
    "with_file_lock",
    "read_lock_info",
    "is_lock_stale",
    "is_process_alive",
]
