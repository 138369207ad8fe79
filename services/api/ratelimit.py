# services/api/ratelimit.py
from __future__ import annotations
import asyncio
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Tuple

from libs.common.config import DEFAULT_RATE_WINDOWS, RateWindow
from libs.common.errors import RateBudgetExceeded, TransientNetworkError
from libs.common.logs import get_logger

log = get_logger("ratelimit")


class _Window:
    def __init__(self, spec: RateWindow):
        self.spec = spec
        self.name = f"{spec.kind}:{spec.limit}/{spec.period_s:g}s"
        self.hits: Deque[Tuple[float, int]] = deque()  # (admis à, coût)
        self.used = 0

    def cost(self, weight: int) -> int:
        return weight if self.spec.kind == "weight" else 1

    def prune(self, now: float) -> None:
        horizon = now - self.spec.period_s
        while self.hits and self.hits[0][0] <= horizon:
            _, c = self.hits.popleft()
            self.used -= c

    def check(self, weight: int, now: float) -> None:
        """Lève RateBudgetExceeded avec le délai avant qu'assez de coût sorte de la fenêtre."""
        self.prune(now)
        need = self.used + self.cost(weight) - self.spec.limit
        if need <= 0:
            return
        freed = 0
        for ts, c in self.hits:
            freed += c
            if freed >= need:
                raise RateBudgetExceeded(self.name, ts + self.spec.period_s - now)
        raise RateBudgetExceeded(self.name, self.spec.period_s)

    def record(self, weight: int, now: float) -> None:
        c = self.cost(weight)
        self.hits.append((now, c))
        self.used += c


class RateLimitedQueue:
    """
    File unique devant tous les appels REST.
    Une requête n'est admise que si toutes les fenêtres glissantes ont de la marge ;
    l'admission se fait dans l'ordre d'arrivée (asyncio.Lock est FIFO) : la requête en tête
    garde le verrou pendant qu'elle attend sa marge, une requête lourde (get_orders, poids 20)
    retarde donc toutes les plus légères arrivées après elle.
    Les appels bloquants (binance-connector) tournent dans un thread.
    """

    def __init__(self, windows: Sequence[RateWindow] = DEFAULT_RATE_WINDOWS,
                 clock: Callable[[], float] = time.monotonic):
        if not windows:
            raise ValueError("at least one rate window is required")
        self._windows = [_Window(w) for w in windows]
        self._clock = clock
        self._lock = asyncio.Lock()
        self._waiting = 0
        self._inflight = 0
        self._closed = False
        self.admitted: Deque[Tuple[float, int]] = deque(maxlen=5000)

    def _try_admit(self, weight: int) -> None:
        now = self._clock()
        for w in self._windows:
            w.check(weight, now)
        for w in self._windows:
            w.record(weight, now)
        self.admitted.append((now, weight))

    async def acquire(self, weight: int = 1) -> None:
        if weight < 1:
            raise ValueError("weight must be >= 1")
        for w in self._windows:
            if w.cost(weight) > w.spec.limit:
                raise ValueError(f"weight {weight} can never fit in window {w.name}")
        self._waiting += 1
        try:
            async with self._lock:
                while True:
                    try:
                        self._try_admit(weight)
                        return
                    except RateBudgetExceeded as e:
                        log.debug("[rl] %s, waiting %.3fs", e.window, e.retry_after)
                        await asyncio.sleep(e.retry_after)
        finally:
            self._waiting -= 1

    async def submit(self, fn: Callable[..., Any], *args: Any, weight: int = 1, **kwargs: Any) -> Any:
        if self._closed:
            raise TransientNetworkError("rate limited queue is closed")
        await self.acquire(weight)
        self._inflight += 1
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        finally:
            self._inflight -= 1

    @property
    def pending(self) -> int:
        return self._waiting + self._inflight

    async def drain(self, timeout: Optional[float] = None, poll: float = 0.05) -> bool:
        """Ferme la file et attend la fin du travail déjà accepté. False si timeout."""
        self._closed = True
        deadline = None if timeout is None else self._clock() + timeout
        while self.pending:
            if deadline is not None and self._clock() >= deadline:
                log.warning("[rl] drain timeout with %d pending", self.pending)
                return False
            await asyncio.sleep(poll)
        return True

    def usage(self) -> List[Dict[str, Any]]:
        now = self._clock()
        out = []
        for w in self._windows:
            w.prune(now)
            out.append({"window": w.name, "used": w.used, "limit": w.spec.limit})
        return out
