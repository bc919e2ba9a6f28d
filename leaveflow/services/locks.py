import asyncio
from contextlib import asynccontextmanager
from typing import Dict


class CourseLocks:
    """
    One asyncio lock per course.

    Attendance marking and leave reconciliation both rewrite a course's
    sessions and recompute aggregates from them; holding the course lock
    keeps either side from reading a half-updated session set.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, course_id: str) -> asyncio.Lock:
        lock = self._locks.get(course_id)
        if lock is None:
            lock = self._locks[course_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, course_id: str):
        lock = self._lock_for(course_id)
        async with lock:
            yield
