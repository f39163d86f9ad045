"""
Main FastAPI application
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import Dict, List, Optional, Tuple
from datetime import datetime
from decimal import Decimal
import logging
import asyncio
import threading
import fcntl
import sys
import os
import atexit
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from pydantic import BaseModel

from backend.database import get_db, init_db, SessionLocal
from backend.models.database import User, Asset, Order, Trade, LiquidationCluster, ViperTrade
from backend.services.errors import TradingError, AdapterError, NotFound
from backend.services.events import EventPublisher, jsonable, MARKET_DATA, SETTINGS_UPDATED, BALANCE_UPDATE
from backend.services.execution import PaperExchangeAdapter, build_live_adapter
from backend.services.ledger import LedgerService
from backend.services.market_data import PriceSimulator, OKXTickerFeed, asset_to_dict
from backend.services.order_execution import OrderExecutionEngine, OrderTicket
from backend.services.risk_settings import RiskSettingsService
from backend.services.viper import (
    AutonomousController,
    RandomMarketSampleSource,
    ViperEngine,
    load_viper_config,
    save_viper_config,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

VIPER_CYCLE_SECONDS = float(os.getenv("VIPER_CYCLE_SECONDS", "5"))
VIPER_STREAMS = int(os.getenv("VIPER_STREAMS", "1"))
PRICE_TICK_SECONDS = float(os.getenv("PRICE_TICK_SECONDS", "3"))
OKX_SANDBOX = os.getenv("OKX_SANDBOX", "false").lower().strip() in ("1", "true", "yes")


# ── Adapter factory (user credentials, falling back to OKX_* env) ───────

# user_id → (credentials, adapter); one adapter per user so its call lock
# and leverage cache persist across requests and cycles
_live_adapters: Dict[int, Tuple[tuple, object]] = {}
_live_adapters_lock = threading.Lock()


def _build_live_adapter(user: User):
    """Live adapter for ``user``; None when no credentials are available.

    Cached per user and rebuilt when the credentials change.
    """
    if user.has_credentials:
        credentials = (user.api_key, user.secret_key, user.passphrase)
    else:
        credentials = (os.getenv("OKX_API_KEY"), os.getenv("OKX_SECRET_KEY"), os.getenv("OKX_PASSPHRASE"))

    with _live_adapters_lock:
        cached = _live_adapters.get(user.id)
        if cached and cached[0] == credentials:
            return cached[1]
        adapter = build_live_adapter(*credentials, sandbox=OKX_SANDBOX)
        if adapter is None:
            _live_adapters.pop(user.id, None)
        else:
            _live_adapters[user.id] = (credentials, adapter)
        return adapter


def _build_price_feed(publisher: EventPublisher):
    feed = os.getenv("PRICE_FEED", "simulated").lower().strip()
    if feed == "okx":
        logger.info("Price feed: OKX public tickers")
        return OKXTickerFeed(publisher=publisher)
    if feed != "simulated":
        logger.warning(f"Unknown PRICE_FEED '{feed}' — falling back to simulated")
    logger.info("Price feed: SIMULATED (±1% random walk)")
    return PriceSimulator(publisher=publisher)


# Initialize services
publisher = EventPublisher()
ledger = LedgerService()
order_engine = OrderExecutionEngine(
    ledger,
    paper_adapter=PaperExchangeAdapter(),
    live_adapter_factory=_build_live_adapter,
    publisher=publisher,
)
risk_service = RiskSettingsService()
sample_source = RandomMarketSampleSource()
price_feed = _build_price_feed(publisher)

# Scheduler for background tasks
scheduler = AsyncIOScheduler()

# One controller per user, created on first use
controllers: Dict[int, AutonomousController] = {}
_controllers_lock = threading.Lock()


def _get_controller(user_id: int) -> AutonomousController:
    with _controllers_lock:
        controller = controllers.get(user_id)
        if controller is None:
            engine = ViperEngine(
                user_id,
                ledger,
                sample_source,
                session_factory=SessionLocal,
                live_adapter_factory=_build_live_adapter,
                publisher=publisher,
            )
            controller = AutonomousController(
                user_id,
                engine,
                ledger,
                SessionLocal,
                scheduler,
                cycle_seconds=VIPER_CYCLE_SECONDS,
                streams=VIPER_STREAMS,
                publisher=publisher,
            )
            controllers[user_id] = controller
        return controller


# WebSocket connections manager
class ConnectionManager:
    def __init__(self):
        self.active_connections: set[WebSocket] = set()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.add(websocket)

    def disconnect(self, websocket: WebSocket):
        self.active_connections.discard(websocket)

    async def broadcast(self, message: dict):
        """Send message to all live connections, pruning dead ones."""
        dead = []
        for ws in list(self.active_connections):
            try:
                if ws.client_state.name != "CONNECTED":
                    dead.append(ws)
                    continue
                await ws.send_json(message)
            except Exception:
                dead.append(ws)
        for ws in dead:
            self.active_connections.discard(ws)

manager = ConnectionManager()


# Pydantic models for API
class OrderCreate(BaseModel):
    user_id: int
    asset_id: int
    side: str
    quantity: Decimal
    order_type: str = "market"
    price: Optional[Decimal] = None
    inst_id: Optional[str] = None
    stop_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None


class RiskSettingsUpdate(BaseModel):
    user_id: int
    max_position_size: Optional[Decimal] = None
    stop_loss_percentage: Optional[Decimal] = None
    take_profit_percentage: Optional[Decimal] = None
    max_daily_loss: Optional[Decimal] = None


class ViperSettingsUpdate(BaseModel):
    max_leverage: Optional[int] = None
    vol_threshold: Optional[float] = None
    strike_window: Optional[float] = None
    profit_target: Optional[float] = None
    stop_loss: Optional[float] = None
    cluster_threshold: Optional[float] = None
    position_scaling: Optional[float] = None
    max_concurrent_trades: Optional[int] = None
    balance_multiplier: Optional[float] = None
    min_profit_potential: Optional[float] = None
    top_opportunities: Optional[int] = None
    is_enabled: Optional[bool] = None


class LiveModeUpdate(BaseModel):
    is_live_mode: bool


class ExchangeCredentials(BaseModel):
    exchange: str = "okx"
    api_key: str
    secret_key: str
    passphrase: str


# ── Serializers ─────────────────────────────────────────────────────────

def _user_dict(user: User) -> dict:
    return jsonable({
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "paper_balance": user.paper_balance,
        "live_balance": user.live_balance,
        "balance": ledger.active_balance(user),
        "is_live_mode": user.is_live_mode,
        "exchange": user.exchange,
        "has_credentials": user.has_credentials,
        "created_at": user.created_at,
    })


def _order_dict(o: Order) -> dict:
    return jsonable({
        "id": o.id,
        "user_id": o.user_id,
        "asset_id": o.asset_id,
        "symbol": o.asset.symbol if o.asset else None,
        "inst_id": o.inst_id,
        "type": o.type,
        "side": o.side,
        "quantity": o.quantity,
        "price": o.price,
        "status": o.status,
        "stop_price": o.stop_price,
        "take_profit_price": o.take_profit_price,
        "error": o.error,
        "filled_at": o.filled_at,
        "created_at": o.created_at,
    })


def _trade_dict(t: Trade) -> dict:
    return jsonable({
        "id": t.id,
        "order_id": t.order_id,
        "asset_id": t.asset_id,
        "symbol": t.asset.symbol if t.asset else None,
        "side": t.side,
        "quantity": t.quantity,
        "price": t.price,
        "total": t.total,
        "pnl": t.pnl,
        "executed_at": t.executed_at,
    })


def _viper_trade_dict(t: ViperTrade) -> dict:
    return jsonable({
        "id": t.id,
        "cluster_id": t.cluster_id,
        "inst_id": t.inst_id,
        "side": t.side,
        "entry_price": t.entry_price,
        "quantity": t.quantity,
        "leverage": t.leverage,
        "margin": t.margin,
        "take_profit_price": t.take_profit_price,
        "stop_loss_price": t.stop_loss_price,
        "status": t.status,
        "pnl": t.pnl,
        "exit_price": t.exit_price,
        "exit_reason": t.exit_reason,
        "entry_time": t.entry_time,
        "exit_time": t.exit_time,
    })


def _cluster_dict(c: LiquidationCluster) -> dict:
    return jsonable({
        "id": c.id,
        "inst_id": c.inst_id,
        "price": c.price,
        "size": c.size,
        "side": c.side,
        "volume": c.volume,
        "processed": c.processed,
        "timestamp": c.timestamp,
    })


# ── Lifespan ────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup → yield → shutdown."""
    # ── Startup ─────────────────────────────────────────────────────
    _acquire_instance_lock()
    logger.info("Starting VIPER trading application...")

    init_db()
    publisher.bind(asyncio.get_running_loop(), manager.broadcast)

    scheduler.add_job(run_price_tick, 'interval', seconds=PRICE_TICK_SECONDS, id='price_tick')
    scheduler.start()

    logger.info(
        f"Application started — Price tick: {PRICE_TICK_SECONDS}s | "
        f"VIPER cycle: {VIPER_CYCLE_SECONDS}s × {VIPER_STREAMS} stream(s)"
    )

    yield

    # ── Shutdown ────────────────────────────────────────────────────
    logger.info("Shutting down...")
    for controller in list(controllers.values()):
        controller.stop(reason="shutdown")
    scheduler.shutdown()


# Initialize FastAPI app with lifespan
app = FastAPI(title="VIPER Paper Trading", version="1.0.0", lifespan=lifespan)


@app.exception_handler(TradingError)
async def trading_error_handler(request: Request, exc: TradingError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# API Endpoints

# ── Account ───────────────────────────────────────────────────────────────

@app.get("/api/user/{user_id}")
def get_user(user_id: int, db: Session = Depends(get_db)):
    """Account with both balances; the active one is ``balance``"""
    return _user_dict(ledger.get_user(db, user_id))


@app.put("/api/user/{user_id}/live-mode")
def set_live_mode(user_id: int, body: LiveModeUpdate, db: Session = Depends(get_db)):
    """Toggle demo/live. Enabling reads the exchange balance first."""
    user = ledger.get_user(db, user_id)
    adapter = _build_live_adapter(user) if body.is_live_mode else None
    if body.is_live_mode and adapter is None:
        raise AdapterError("Exchange API credentials not configured")
    user = ledger.set_live_mode(db, user_id, body.is_live_mode, adapter)
    publisher.publish(BALANCE_UPDATE, {"user_id": user_id, "balance": ledger.active_balance(user),
                                       "is_live_mode": user.is_live_mode})
    return _user_dict(user)


@app.put("/api/user/{user_id}/exchange-credentials")
def set_exchange_credentials(user_id: int, body: ExchangeCredentials, db: Session = Depends(get_db)):
    """Validate credentials with a balance read, then store them."""
    ledger.get_user(db, user_id)
    adapter = build_live_adapter(body.api_key, body.secret_key, body.passphrase, sandbox=OKX_SANDBOX)
    if adapter is None:
        raise AdapterError("API key, secret key and passphrase are all required")
    live_balance = ledger.sync_live_balance(db, user_id, adapter)
    user = ledger.set_exchange_credentials(db, user_id, body.exchange, body.api_key,
                                           body.secret_key, body.passphrase)
    return {
        "success": True,
        "exchange": user.exchange,
        "has_credentials": user.has_credentials,
        "live_balance": jsonable(live_balance),
    }


# ── Market ────────────────────────────────────────────────────────────────

@app.get("/api/assets")
def get_assets(db: Session = Depends(get_db)):
    return [jsonable(asset_to_dict(a)) for a in db.query(Asset).order_by(Asset.id).all()]


@app.get("/api/assets/{symbol}")
def get_asset(symbol: str, db: Session = Depends(get_db)):
    asset = db.query(Asset).filter(Asset.symbol == symbol.upper()).first()
    if not asset:
        raise NotFound("Asset not found", {"symbol": symbol})
    return jsonable(asset_to_dict(asset))


# ── Portfolio & orders ────────────────────────────────────────────────────

@app.get("/api/portfolio/{user_id}")
def get_portfolio(user_id: int, db: Session = Depends(get_db)):
    return jsonable(ledger.portfolio_summary(db, user_id))


@app.post("/api/orders")
def place_order(order: OrderCreate, db: Session = Depends(get_db)):
    """Place a spot order (demo: simulated fill; live: exchange adapter)"""
    result = order_engine.place_order(db, OrderTicket(**order.model_dump()))
    if not result.success:
        raise AdapterError(result.error, {"order_id": result.order_id})
    return result.to_dict()


@app.get("/api/orders/{user_id}")
def get_orders(user_id: int, limit: int = 100, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    return [_order_dict(o) for o in order_engine.get_user_orders(db, user_id, limit)]


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: int, user_id: int, db: Session = Depends(get_db)):
    return _order_dict(order_engine.cancel_order(db, order_id, user_id))


@app.get("/api/trades/{user_id}")
def get_trades(user_id: int, limit: int = 100, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    return [_trade_dict(t) for t in order_engine.get_user_trades(db, user_id, limit)]


# ── Risk settings ─────────────────────────────────────────────────────────

@app.get("/api/risk-settings/{user_id}")
def get_risk_settings(user_id: int, db: Session = Depends(get_db)):
    return risk_service.get(db, user_id).to_dict()


@app.put("/api/risk-settings")
def update_risk_settings(body: RiskSettingsUpdate, db: Session = Depends(get_db)):
    settings = risk_service.upsert(db, body.user_id, body.model_dump(exclude={"user_id"}, exclude_none=True))
    publisher.publish(SETTINGS_UPDATED, {"user_id": body.user_id, "risk_settings": settings.to_dict()})
    return settings.to_dict()


# ── VIPER ─────────────────────────────────────────────────────────────────

@app.get("/api/viper/settings/{user_id}")
def get_viper_settings(user_id: int, db: Session = Depends(get_db)):
    return load_viper_config(db, user_id).to_dict()


@app.put("/api/viper/settings/{user_id}")
def update_viper_settings(user_id: int, body: ViperSettingsUpdate, db: Session = Depends(get_db)):
    config = save_viper_config(db, user_id, body.model_dump(exclude_none=True))
    publisher.publish(SETTINGS_UPDATED, {"user_id": user_id, "viper_settings": config.to_dict()})
    return config.to_dict()


@app.post("/api/viper/{user_id}/start")
def start_viper(user_id: int, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    controller = _get_controller(user_id)
    controller.start()
    return {"success": True, "state": controller.get_state()}


@app.post("/api/viper/{user_id}/stop")
def stop_viper(user_id: int, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    controller = _get_controller(user_id)
    stopped = controller.stop()
    return {"success": True, "was_running": stopped, "state": controller.get_state()}


@app.get("/api/viper/{user_id}/status")
def viper_status(user_id: int, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    controller = _get_controller(user_id)
    return {
        "state": controller.get_state(),
        "metrics": jsonable(controller.engine.get_performance_metrics(db)),
        "settings": load_viper_config(db, user_id).to_dict(),
    }


@app.get("/api/viper/{user_id}/trades")
def viper_trades(user_id: int, limit: int = 100, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    trades = db.query(ViperTrade).filter(ViperTrade.user_id == user_id).order_by(
        ViperTrade.entry_time.desc(), ViperTrade.id.desc()
    ).limit(limit).all()
    return [_viper_trade_dict(t) for t in trades]


@app.get("/api/viper/{user_id}/clusters")
def viper_clusters(user_id: int, limit: int = 50, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    clusters = db.query(LiquidationCluster).filter(LiquidationCluster.user_id == user_id).order_by(
        LiquidationCluster.timestamp.desc(), LiquidationCluster.id.desc()
    ).limit(limit).all()
    return [_cluster_dict(c) for c in clusters]


@app.post("/api/viper/{user_id}/trades/{trade_id}/close")
def close_viper_trade(user_id: int, trade_id: int, db: Session = Depends(get_db)):
    ledger.get_user(db, user_id)
    trade = _get_controller(user_id).engine.close_trade(db, trade_id)
    return _viper_trade_dict(trade)


# ── Health ────────────────────────────────────────────────────────────────

@app.get("/api/health")
def health_check():
    """Check API and service health"""
    return {
        "status": "ok",
        "execution": {
            "demo": order_engine.paper_adapter.mode,
            "live": "sandbox" if OKX_SANDBOX else "live",
            "env_credentials": bool(os.getenv("OKX_API_KEY") and os.getenv("OKX_SECRET_KEY")
                                    and os.getenv("OKX_PASSPHRASE")),
        },
        "price_feed": price_feed.health_check(),
        "scheduler_running": scheduler.running,
        "controllers": {uid: c.get_state() for uid, c in controllers.items()},
        "websocket_clients": len(manager.active_connections),
        "timestamp": datetime.utcnow().isoformat()
    }


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """WebSocket for real-time updates"""
    await manager.connect(websocket)
    try:
        assets = await asyncio.to_thread(_snapshot_assets)
        await websocket.send_json({"type": MARKET_DATA, "data": assets,
                                   "timestamp": datetime.utcnow().isoformat()})
        while True:
            await websocket.receive_text()
    except (WebSocketDisconnect, Exception):
        pass
    finally:
        manager.disconnect(websocket)


# Background tasks

def _snapshot_assets() -> List[dict]:
    db = SessionLocal()
    try:
        return [jsonable(asset_to_dict(a)) for a in db.query(Asset).order_by(Asset.id).all()]
    finally:
        db.close()


async def run_price_tick():
    """Advance asset prices and push them to connected dashboards.
    Blocking DB / HTTP work is offloaded to a thread pool.
    """
    def _sync_price_tick():
        db = SessionLocal()
        try:
            price_feed.tick(db)
        except Exception as e:
            db.rollback()
            logger.error(f"Price tick error: {e}", exc_info=True)
        finally:
            db.close()

    await asyncio.to_thread(_sync_price_tick)


# ── Single-instance lock ──────────────────────────────────────────────────

_lock_file = None


def _acquire_instance_lock():
    """Ensure only ONE server process runs at a time using an OS-level file lock."""
    global _lock_file
    if _lock_file:
        return
    lock_path = os.path.join(os.path.dirname(os.path.abspath(__file__)), ".server.lock")
    _lock_file = open(lock_path, "w")
    try:
        fcntl.flock(_lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        _lock_file.write(str(os.getpid()))
        _lock_file.flush()
        atexit.register(_release_instance_lock)
    except OSError:
        print(f"ERROR: Another server instance is already running. "
              f"Kill it first or delete {lock_path}")
        sys.exit(1)

def _release_instance_lock():
    global _lock_file
    if _lock_file:
        try:
            fcntl.flock(_lock_file, fcntl.LOCK_UN)
            _lock_file.close()
        except OSError:
            pass


if __name__ == "__main__":
    import uvicorn
    _acquire_instance_lock()
    uvicorn.run(app, host="0.0.0.0", port=8001)
