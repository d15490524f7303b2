from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable


class Limiter:
    """Caps how many submitted jobs are in flight at once.

    Jobs beyond the cap wait on the semaphore and are admitted in arrival
    order as running jobs finish (success or failure). ``run`` returns or
    raises exactly what the job does.
    """

    def __init__(self, concurrency: int = 5) -> None:
        self.concurrency = max(1, int(concurrency))
        self._sem = asyncio.Semaphore(self.concurrency)

    async def run(self, job: Callable[[], Awaitable[Any]]) -> Any:
        async with self._sem:
            return await job()
