import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from fastapi.middleware.cors import CORSMiddleware
from config import config
from monitoring.logging_utils import setup_logging


trading_system = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    trading_system = TradingSystem()
    task = asyncio.create_task(trading_system.start())
    try:
        yield
    finally:
        if trading_system:
            await trading_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


api_cfg = config.section('api')

app = FastAPI(title="Futures Signal Engine API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(api_cfg.get('cors_origins', ["*"])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _system():
    if not trading_system:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return trading_system


@app.get("/")
async def root():
    return {
        "service": "Futures Signal Engine",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    if not trading_system:
        return {"status": "starting", "timestamp": _now(), "system_running": False}
    trading_system.market_data.refresh_liveness()
    status = trading_system.state.status()
    healthy = all(status['liveness'].values())
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": _now(),
        "system_running": trading_system.running,
        "mode": trading_system.execution.mode,
        **status,
    }


@app.get("/api/trades")
async def get_trades():
    system = _system()
    trades = [trade.to_dict() for trade in system.state.active.values()]
    return {"trades": trades, "count": len(trades), "timestamp": _now()}


@app.get("/api/history")
async def get_history(limit: int = 100):
    system = _system()
    closed = list(system.state.history)[:max(0, limit)]
    return {
        "history": [trade.to_dict() for trade in closed],
        "count": len(closed),
        "total": len(system.state.history),
        "timestamp": _now(),
    }


@app.get("/api/watchlist")
async def get_watchlist():
    system = _system()
    state = system.state
    symbols = []
    for symbol in state.watchlist:
        ctx = state.contexts.get(symbol)
        entry = ctx.to_dict() if ctx else {"symbol": symbol}
        entry["funding_rate"] = state.funding_rate(symbol)
        symbols.append(entry)
    return {
        "watchlist": symbols,
        "count": len(symbols),
        "benchmark_change_pct": state.benchmark_change_pct,
        "timestamp": _now(),
    }


@app.post("/api/reset")
async def reset():
    system = _system()
    await system.reset()
    return {"status": "reset", "timestamp": _now()}


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
