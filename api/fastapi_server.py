import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from config import config
from monitoring.logging_utils import setup_logging


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Standalone mode: the API owns the trading system
    if app.state.system is not None:
        yield
        return
    from main import LiquidationTradingSystem
    system = LiquidationTradingSystem()
    app.state.system = system
    task = asyncio.create_task(system.start(serve_api=False))
    try:
        yield
    finally:
        await system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


def create_app(system=None) -> FastAPI:
    app = FastAPI(title="Liquidation Cascade API", version="1.0.0", lifespan=lifespan)
    app.state.system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.section('api').get('cors_origins') or ["*"]),
        allow_credentials=True,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root():
        current = app.state.system
        return {
            "service": "Liquidation Cascade Trader",
            "version": "1.0.0",
            "status": "running" if current and current.running else "stopped",
        }

    @app.get("/health")
    async def health():
        current = app.state.system
        stream = current.stream if current else None
        return {
            "status": "healthy",
            "timestamp": _now(),
            "system_running": bool(current and current.running),
            "stream_connected": bool(stream and stream.connected),
            "stream_reconnects": stream.reconnect_count if stream else 0,
        }

    @app.get("/api/stats")
    async def get_stats():
        current = app.state.system
        if not current:
            return {"error": "Trading system not initialized"}
        return {
            "summary": current.analytics.snapshot(),
            "report": current.analytics.report(),
            "timestamp": _now(),
        }

    @app.get("/api/positions")
    async def get_positions():
        current = app.state.system
        if not current:
            return {"error": "Trading system not initialized"}
        positions = [p.to_dict() for p in current.tracker.positions]
        return {"positions": positions, "count": len(positions), "timestamp": _now()}

    @app.get("/api/cascades")
    async def get_cascades():
        current = app.state.system
        if not current:
            return {"error": "Trading system not initialized"}
        armed = current.detector.armed()
        return {
            "armed": armed,
            "count": len(armed),
            "cache": current.detector.cache_snapshot(),
            "timestamp": _now(),
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    api_cfg = config.section('api')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
