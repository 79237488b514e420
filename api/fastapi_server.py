import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from config import config
from errors import ValidationError
from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(bot=None, api_cfg: Optional[Dict[str, Any]] = None, run_bot: bool = False) -> FastAPI:
    """Command surface over a ``TradingBot``.

    With ``run_bot`` the bot's loops are started in the app lifespan, which is
    how the process is launched under uvicorn.
    """
    api_cfg = api_cfg if api_cfg is not None else config.section('api')
    auth_token = api_cfg.get('auth_token')
    push_interval_s = float(api_cfg.get('ws_push_interval_s', 5))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if run_bot:
            if app.state.bot is None:
                from main import TradingBot
                app.state.bot = TradingBot(config)
            task = asyncio.create_task(app.state.bot.start(handle_signals=False))
        try:
            yield
        finally:
            if task is not None:
                await app.state.bot.stop()
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="Signal Trading Bot API", version="1.0.0", lifespan=lifespan)
    app.state.bot = bot
    app.add_middleware(
        CORSMiddleware,
        allow_origins=api_cfg.get('cors_origins') or [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    manager = ConnectionManager()

    def require_token(x_api_key: Optional[str] = Header(default=None)):
        if auth_token and x_api_key != auth_token:
            raise HTTPException(status_code=401, detail="Invalid API key")

    def get_bot(request: Request):
        current = request.app.state.bot
        if current is None:
            raise HTTPException(status_code=503, detail="Trading bot not initialized")
        return current

    guarded = [Depends(require_token)]

    @app.get("/")
    async def root():
        current = app.state.bot
        return {
            "service": "Signal Trading Bot",
            "version": "1.0.0",
            "status": "running" if current and current.running else "stopped",
        }

    @app.get("/favicon.ico")
    async def favicon():
        return Response(content=b"", media_type="image/x-icon")

    @app.get("/health")
    async def health():
        current = app.state.bot
        return {
            "status": "healthy",
            "timestamp": _now(),
            "system_running": current.running if current else False,
        }

    @app.get("/api/status", dependencies=guarded)
    async def status(current=Depends(get_bot)):
        return await current.status()

    @app.get("/api/positions", dependencies=guarded)
    async def positions(current=Depends(get_bot)):
        return {
            "positions": [
                dict(p.to_dict(), state=p.state.value) for p in current.get_open_positions()
            ],
            "timestamp": _now(),
        }

    @app.post("/api/pause", dependencies=guarded)
    async def pause(current=Depends(get_bot)):
        current.set_paused(True)
        return {"paused": True}

    @app.post("/api/resume", dependencies=guarded)
    async def resume(current=Depends(get_bot)):
        current.set_paused(False)
        return {"paused": False}

    @app.post("/api/trade/buy/{asset}", dependencies=guarded)
    async def manual_buy(asset: str, amount: Optional[float] = None, current=Depends(get_bot)):
        try:
            ok = await current.manual_buy(asset, amount)
        except ValidationError as exc:
            logger.warning("Manual buy of %s rejected: %s", asset, exc.message)
            raise HTTPException(status_code=400, detail=exc.message) from exc
        return {"asset": asset.upper(), "action": "BUY", "success": ok}

    @app.post("/api/trade/sell/{asset}", dependencies=guarded)
    async def manual_sell(asset: str, current=Depends(get_bot)):
        try:
            ok = await current.manual_sell(asset)
        except ValidationError as exc:
            logger.warning("Manual sell of %s rejected: %s", asset, exc.message)
            raise HTTPException(status_code=400, detail=exc.message) from exc
        return {"asset": asset.upper(), "action": "SELL", "success": ok}

    @app.get("/api/logs", dependencies=guarded)
    async def logs(minutes: int = 1, current=Depends(get_bot)):
        try:
            lines = current.recent_logs(minutes)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.message) from exc
        return {"minutes": minutes, "count": len(lines), "lines": lines}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                current = app.state.bot
                if current is not None and current.running:
                    await websocket.send_json({"type": "status", "timestamp": _now(), **await current.status()})
                await asyncio.sleep(push_interval_s)
        except WebSocketDisconnect:
            manager.disconnect(websocket)

    return app


if __name__ == "__main__":
    import uvicorn
    logging_cfg = config.section('logging')
    setup_logging(logging_cfg.get('level', 'INFO'), log_dir=logging_cfg.get('log_dir'))
    api_section = config.section('api')
    uvicorn.run(
        create_app(run_bot=True),
        host=api_section.get('host', '0.0.0.0'),
        port=int(api_section.get('port', 8000)),
        log_level="info",
    )
