# services/api/app.py
from __future__ import annotations
from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from services.api.engine import TradeEngine


def create_app(engine: TradeEngine) -> FastAPI:
    """API de contrôle ; l'engine est injecté, aucun état global."""
    app = FastAPI(title="Consensus Trader API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )
    app.state.engine = engine

    # ---------------- Health ----------------
    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {
            "status": "ok",
            "mode": engine.config.mode,
            "engine": engine.config.engine.mode,
            "enabled": engine.enabled,
            "ticks": engine.ticks,
        }

    # ---------------- Bot ON/OFF & statut ----------------
    @app.get("/bot/status")
    async def bot_status() -> Dict[str, Any]:
        return engine.status()

    @app.post("/bot/enable")
    async def bot_enable() -> Dict[str, Any]:
        engine.enable()
        return {"ok": True, "enabled": engine.enabled}

    @app.post("/bot/disable")
    async def bot_disable() -> Dict[str, Any]:
        engine.disable()
        return {"ok": True, "enabled": engine.enabled}

    # ---------------- Paires ----------------
    @app.get("/pairs/{symbol}")
    async def pair(symbol: str) -> Dict[str, Any]:
        out = engine.pair_status(symbol.upper())
        if out is None:
            raise HTTPException(status_code=404, detail=f"unknown symbol {symbol}")
        return out

    return app
