"""Utilities module"""
from harness_core.utils.file_lock import (
    LockInfo,
    acquire_file_lock,
    file_lock,
    is_lock_stale,
    is_process_alive,
    read_lock_info,
    release_file_lock,
    with_file_lock,
)

__all__ = [
    "LockInfo",
    "acquire_file_lock",
    "release_file_lock",
    "file_lock",
    "with_file_lock",
    "read_lock_info",
    "is_lock_stale",
    "is_process_alive",
]
