import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class RideLockRegistry:
    """
    Hands out one asyncio.Lock per ride id.

    Every read-validate-write unit that touches a ride's seat inventory or its
    active bookings runs while holding the ride's lock, so two transitions on
    the same ride never interleave inside this process. Locks are dropped once
    nobody holds or waits on them.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, ride_id: str):
        lock = self._locks.get(ride_id)
        if lock is None:
            lock = self._locks[ride_id] = asyncio.Lock()
        self._users[ride_id] = self._users.get(ride_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[ride_id] -= 1
            if self._users[ride_id] == 0:
                del self._users[ride_id]
                del self._locks[ride_id]

    def __len__(self):
        return len(self._locks)


ride_locks = RideLockRegistry()
