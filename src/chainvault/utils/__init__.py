"""Utility modules."""

from chainvault.utils.cancel import CancelToken, run_cancellable, sleep_cancellable
from chainvault.utils.locks import NonceLock, clear_nonce_locks, get_nonce_lock

__all__ = [
    "CancelToken",
    "run_cancellable",
    "sleep_cancellable",
    "NonceLock",
    "get_nonce_lock",
    "clear_nonce_locks",
]
