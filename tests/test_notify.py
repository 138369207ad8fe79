import asyncio
import json

import httpx

from conftest import SYMBOL, consensus

from libs.common.config import AlertsConfig
from libs.common.models import Signal
from services.api.notify import Notifier

WEBHOOK = "https://discord.test/api/webhooks/1/abc"


class Recorder:
    """Transport httpx qui rejoue une liste de réponses et garde les requêtes."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body = self.responses.pop(0)
        return httpx.Response(status, json=body)


def _run(cfg, recorder, alerts, clock=None):
    async def go():
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        kw = {"clock": clock} if clock else {}
        n = Notifier(cfg, client=client, **kw)
        try:
            return [await n.maybe_alert(SYMBOL, consensus(sig), 100.0) for sig in alerts]
        finally:
            await n.aclose()
    return asyncio.run(go())


class TestNotifier:
    def test_discord_retries_after_429(self):
        rec = Recorder((429, {"retry_after": 0}), (204, None))
        out = _run(AlertsConfig(discord_webhook_url=WEBHOOK, discord_username="bot"), rec, [Signal.BUY])
        assert out == ["discord"]
        assert len(rec.requests) == 2
        payload = json.loads(rec.requests[-1].content)
        assert payload["username"] == "bot"
        assert payload["embeds"][0]["description"] == f"BUY {SYMBOL}"

    def test_cooldown_per_symbol_and_signal(self):
        now = [0.0]
        rec = Recorder(*[(204, None)] * 3)
        cfg = AlertsConfig(discord_webhook_url=WEBHOOK, cooldown_s=600)

        def clock():
            now[0] += 400
            return now[0]

        out = _run(cfg, rec, [Signal.BUY, Signal.BUY, Signal.SELL, Signal.BUY], clock=clock)
        # BUY à t=400, refus à t=800, SELL à t=1200, BUY à t=1600 (> 600 s)
        assert out == ["discord", None, "discord", "discord"]
        assert len(rec.requests) == 3

    def test_discord_failure_falls_back_to_telegram(self):
        rec = Recorder((500, {"message": "boom"}), (200, {"ok": True}))
        cfg = AlertsConfig(discord_webhook_url=WEBHOOK, telegram_bot_token="tkn", telegram_chat_id="42")
        assert _run(cfg, rec, [Signal.STRONG_SELL]) == ["telegram"]
        tg = rec.requests[1]
        assert str(tg.url) == "https://api.telegram.org/bottkn/sendMessage"
        assert json.loads(tg.content)["chat_id"] == "42"

    def test_log_fallback_without_channels(self):
        rec = Recorder()
        assert _run(AlertsConfig(), rec, [Signal.STRONG_BUY]) == ["log"]
        assert rec.requests == []

    def test_non_terminal_signals_not_alerted(self):
        rec = Recorder()
        cfg = AlertsConfig(discord_webhook_url=WEBHOOK)
        assert _run(cfg, rec, [Signal.HOLD, Signal.WEAK_BUY, Signal.EARLY_BUY]) == [None, None, None]
        assert rec.requests == []
