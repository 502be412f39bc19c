import asyncio, time
from typing import Optional

class TokenBucket:
    """Requests-per-minute limiter shared by concurrent callers of one collaborator."""
    def __init__(self, rate_per_minute: int, capacity: Optional[int] = None, *, clock=time.monotonic):
        if rate_per_minute <= 0:
            raise ValueError("rate_per_minute must be positive")
        self.rate = rate_per_minute / 60.0
        self.capacity = capacity or rate_per_minute
        self.tokens = float(self.capacity)
        self._clock = clock
        self.last = clock()
        self.lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self.last) * self.rate)
        self.last = now

    async def acquire(self, n: int = 1) -> None:
        async with self.lock:
            self._refill()
            while self.tokens < n:
                # sleep roughly until the missing tokens have accrued
                await asyncio.sleep(max((n - self.tokens) / self.rate, 0.01))
                self._refill()
            self.tokens -= n
