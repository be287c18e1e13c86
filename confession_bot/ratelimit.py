import time
from typing import Callable, Optional

from .errors import RateLimitError
from .storage import DocumentStore

COOLDOWNS = "cooldowns"
CONFESSION_ACTION = "confession"
CONFESSION_WINDOW_MS = 60000

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


class RateLimiter:
    """Per-user, per-action cooldowns kept in the ``cooldowns`` collection."""

    def __init__(self, store: DocumentStore, clock: Clock = now_ms):
        self.store = store
        self.clock = clock

    async def _last_action(self, user_id: int, action: str) -> Optional[int]:
        doc = await self.store.get(COOLDOWNS, str(user_id))
        if not doc:
            return None
        return doc.get(action)

    async def remaining_ms(self, user_id: int, action: str = CONFESSION_ACTION,
                           window_ms: int = CONFESSION_WINDOW_MS) -> int:
        last = await self._last_action(user_id, action)
        if last is None:
            return 0
        elapsed = self.clock() - last
        if elapsed > window_ms:
            return 0
        return window_ms - elapsed or 1

    async def allowed(self, user_id: int, action: str = CONFESSION_ACTION,
                      window_ms: int = CONFESSION_WINDOW_MS) -> bool:
        return await self.remaining_ms(user_id, action, window_ms) == 0

    async def check(self, user_id: int, action: str = CONFESSION_ACTION,
                    window_ms: int = CONFESSION_WINDOW_MS) -> None:
        """Raise ``RateLimitError`` if the cooldown for ``action`` is still running."""
        remaining = await self.remaining_ms(user_id, action, window_ms)
        if remaining:
            raise RateLimitError(remaining)

    async def record(self, user_id: int, action: str = CONFESSION_ACTION) -> None:
        await self.store.set(COOLDOWNS, str(user_id), {action: self.clock()}, merge=True)
