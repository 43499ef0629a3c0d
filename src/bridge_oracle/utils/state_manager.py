"""
State management utilities for the Bridge Oracle.

This module provides a bounded, thread-safe record of processed event keys so
handlers can skip events a live feed delivers more than once.
"""

import threading
from collections import OrderedDict
from typing import Hashable


class ProcessedSet:
    """
    Bounded set of processed keys with LRU eviction.

    Uses an OrderedDict so the oldest keys are evicted first once the window
    is full. Check-and-mark is a single locked operation, so two concurrent
    deliveries of the same key cannot both be treated as new.
    """

    def __init__(self, max_size: int = 10000):
        """
        Initialize the processed set.

        Args:
            max_size: Maximum number of keys to remember
        """
        if max_size <= 0:
            raise ValueError(f"max_size must be positive, got {max_size}")
        self.max_size = max_size
        self._keys: OrderedDict[Hashable, None] = OrderedDict()
        self._lock = threading.Lock()
        self.evicted = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._keys

    def add(self, key: Hashable) -> bool:
        """
        Mark a key as processed.

        Args:
            key: Key to track

        Returns:
            True if the key was new, False if it had already been seen
        """
        with self._lock:
            if key in self._keys:
                # Refresh position so hot keys are not evicted
                self._keys.move_to_end(key)
                return False

            self._keys[key] = None
            while len(self._keys) > self.max_size:
                self._keys.popitem(last=False)  # Remove oldest (first)
                self.evicted += 1
            return True

    def discard(self, key: Hashable) -> None:
        with self._lock:
            self._keys.pop(key, None)

    def get_stats(self) -> dict:
        """
        Get current statistics.

        Returns:
            Dictionary with state metrics
        """
        with self._lock:
            return {
                'processed': len(self._keys),
                'max_size': self.max_size,
                'evicted': self.evicted
            }
