import asyncio
from contextlib import asynccontextmanager
from datetime import datetime

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


app = FastAPI(title="Futures Position Bot API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api['cors_origins'],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)


def _system():
    if not trading_system:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return trading_system


@app.get("/")
async def root():
    return {
        "service": "Futures Position Bot",
        "version": "1.0.0",
        "status": "running" if trading_system and trading_system.running else "stopped"
    }

@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "system_running": trading_system.running if trading_system else False,
        "mode": ("paper" if trading_system.paper else "live") if trading_system else None,
    }

@app.get("/positions/open")
async def get_open_positions():
    system = _system()
    positions = await system.history.list_open_positions()
    return {
        "positions": [p.to_dict() for p in positions],
        "count": len(positions),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/positions/{symbol}")
async def get_positions(symbol: str, limit: int = 50):
    system = _system()
    symbol = symbol.upper()
    open_position = await system.history.get_open_position(symbol)
    history = await system.history.get_history(symbol, limit)
    return {
        "symbol": symbol,
        "open": open_position.to_dict() if open_position else None,
        "history": [p.to_dict() for p in history],
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/analysis/{symbol}")
async def get_analysis(symbol: str, limit: int = 10):
    system = _system()
    snapshots = system.analysis_store.latest(symbol.upper(), limit)
    return {
        "symbol": symbol.upper(),
        "analyses": [s.to_dict() for s in snapshots],
        "count": len(snapshots),
        "timestamp": datetime.utcnow().isoformat()
    }

@app.get("/marks/{symbol}")
async def get_mark(symbol: str):
    system = _system()
    read = system.mark_hub.get_mark(symbol.upper())
    if read is None:
        raise HTTPException(status_code=404, detail=f"No mark price for {symbol.upper()}")
    return read.to_dict()

if __name__ == "__main__":
    import uvicorn
    setup_logging()
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
