# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Space Locks

Single responsibility: At most one mutating package operation per
tenant/space at a time. Reads never take the lock.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

from package_engine.core.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_SPACE = "default"


class SpaceLockManager:
    """Per-space asyncio locks"""

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Default seconds to wait for a space lock
        """
        self.timeout = timeout
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, space_id: str) -> asyncio.Lock:
        if space_id not in self._locks:
            self._locks[space_id] = asyncio.Lock()
        return self._locks[space_id]

    def is_locked(self, space_id: str = DEFAULT_SPACE) -> bool:
        lock = self._locks.get(space_id)
        return bool(lock and lock.locked())

    @asynccontextmanager
    async def acquire(self, space_id: str = DEFAULT_SPACE, timeout: float = None) -> AsyncIterator[None]:
        """
        Hold the space lock for the duration of the block.

        Raises:
            OperationTimeoutError: If the lock is not acquired in time
        """
        timeout = timeout or self.timeout
        lock = self._lock_for(space_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out waiting for lock on space {space_id}")
            raise OperationTimeoutError(f"Lock acquisition for space {space_id}", timeout)

        logger.debug(f"Acquired lock on space {space_id}")
        try:
            yield
        finally:
            lock.release()
            logger.debug(f"Released lock on space {space_id}")
