# services/api/notify.py
from __future__ import annotations
import asyncio
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from libs.common.config import AlertsConfig
from libs.common.logs import get_logger
from libs.common.models import ALERTABLE, ConsensusResult, Signal

log = get_logger("notify")

TELEGRAM_API = "https://api.telegram.org"

# Couleurs Discord (RGB décimal)
_COLORS = {
    Signal.STRONG_BUY: 0x27AE60,
    Signal.BUY: 0x2ECC71,
    Signal.SELL: 0xE67E22,
    Signal.STRONG_SELL: 0xE74C3C,
}


class Notifier:
    """
    Alertes sur signal de consensus terminal :
      - Discord (embed) si configuré,
      - Telegram si configuré,
      - sinon fallback log.
    Un même (symbole, signal) n'est renvoyé qu'après `cooldown_s`.
    """

    def __init__(self, cfg: AlertsConfig, client: Optional[httpx.AsyncClient] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cfg = cfg
        self.client = client or httpx.AsyncClient(timeout=10)
        self.clock = clock
        self._last_sent: Dict[Tuple[str, Signal], float] = {}

    @property
    def discord_enabled(self) -> bool:
        return bool(self.cfg.discord_webhook_url)

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.cfg.telegram_bot_token and self.cfg.telegram_chat_id)

    def _cooling(self, symbol: str, signal: Signal) -> bool:
        last = self._last_sent.get((symbol, signal))
        return last is not None and self.clock() - last < self.cfg.cooldown_s

    async def maybe_alert(self, symbol: str, consensus: ConsensusResult, price: float) -> Optional[str]:
        """Renvoie le canal utilisé, None si rien n'est parti."""
        sig = consensus.consensus_signal
        if sig not in ALERTABLE or self._cooling(symbol, sig):
            return None
        self._last_sent[(symbol, sig)] = self.clock()
        fields = {
            "price": f"{price:.8g}",
            "buy": f"{consensus.normalized_buy_score:.2f}",
            "sell": f"{consensus.normalized_sell_score:.2f}",
            "agreement": f"{consensus.agreement.buy}B/{consensus.agreement.sell}S",
        }
        for s in consensus.signals:
            fields[s.timeframe] = s.signal.value
        return await self.notify(f"{sig.value} {symbol}", fields, color=_COLORS.get(sig))

    async def _discord_post(self, payload: Dict[str, Any]) -> None:
        url = self.cfg.discord_webhook_url
        r = await self.client.post(url, json=payload)
        if r.status_code == 429:
            try:
                retry = float(r.json().get("retry_after", 1.5))
            except ValueError:
                retry = 1.5
            log.warning("[discord] 429 rate limited, retry_after=%ss", retry)
            await asyncio.sleep(retry)
            r = await self.client.post(url, json=payload)
        if r.status_code >= 400:
            raise RuntimeError(f"[discord] HTTP {r.status_code}: {r.text}")

    async def _telegram_post(self, text: str) -> None:
        r = await self.client.post(
            f"{TELEGRAM_API}/bot{self.cfg.telegram_bot_token}/sendMessage",
            json={"chat_id": self.cfg.telegram_chat_id, "text": text, "disable_web_page_preview": True},
        )
        if r.status_code >= 400:
            raise RuntimeError(f"[tg] HTTP {r.status_code}: {r.text}")

    async def notify(self, text: str, extra: Optional[Dict[str, Any]] = None, color: Optional[int] = None) -> str:
        if self.discord_enabled:
            embed: Dict[str, Any] = {
                "description": text,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "color": color if color is not None else 0x3498DB,
            }
            if extra:
                embed["fields"] = [{"name": str(k), "value": str(v), "inline": True} for k, v in extra.items()]
            payload: Dict[str, Any] = {"embeds": [embed]}
            if self.cfg.discord_username:
                payload["username"] = self.cfg.discord_username
            try:
                await self._discord_post(payload)
                log.info("[discord] sent: %s", text)
                return "discord"
            except (httpx.HTTPError, RuntimeError) as e:
                log.warning("[discord] send error: %r", e)

        msg = text
        if extra:
            msg = f"{text} | " + " | ".join(f"{k}={v}" for k, v in extra.items())

        if self.telegram_enabled:
            try:
                await self._telegram_post(msg)
                log.info("[tg] sent: %s", text)
                return "telegram"
            except (httpx.HTTPError, RuntimeError) as e:
                log.warning("[tg] send error: %r", e)

        log.info("[notify] %s", msg)
        return "log"

    async def aclose(self) -> None:
        await self.client.aclose()
