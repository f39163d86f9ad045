"""
VIPER Engine — liquidation-cluster strikes with leveraged exits.
===============================================================
One engine per user.  A cycle runs:

  1. scan      — detect clusters over the instrument pool, persist them
  2. strike    — top-N unprocessed clusters above the profit-potential bar,
                 traded counter to the liquidated side, while the
                 concurrency cap allows; then signal-driven entries
  3. monitor   — mark open trades to market, exit at TP / SL
  4. metrics   — total pnl, win rate over completed trades

Margin model: isolated and not marked to market.  Opening debits
``notional / leverage``; closing credits ``margin + pnl``.

Instrument exclusivity goes through ``ActiveTradeRegistry``; cluster
consumption goes through the ``processed`` flag under the user's ledger
lock, so a cluster is struck at most once.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session

from backend.models.database import LiquidationCluster, User, ViperTrade
from backend.models.types import quantize, to_decimal
from backend.services.errors import (
    AdapterError,
    ConcurrencyViolation,
    InsufficientBalance,
    InvalidInput,
    NotFound,
)
from backend.services.events import EventPublisher, BALANCE_UPDATE, TRADE_UPDATE
from backend.services.execution import ExchangeAdapter, OrderRequest
from backend.services.ledger import LedgerService
from backend.services.viper.active_trades import ActiveTradeRegistry
from backend.services.viper.config import ViperConfig, load_viper_config
from backend.services.viper.indicators import ViperIndicators
from backend.services.viper.models import ProfitSignal
from backend.services.viper.scanner import MarketSampleSource, OpportunityScanner
from backend.services.viper.sizing import exit_levels, size_position, unrealized_pnl

logger = logging.getLogger(__name__)

CLUSTER_TTL = timedelta(minutes=5)


class ViperEngine:
    """Per-user strategy engine; the sole mutator of that user's ViperTrades."""

    def __init__(
        self,
        user_id: int,
        ledger: LedgerService,
        source: MarketSampleSource,
        session_factory: Optional[Callable[[], Session]] = None,
        live_adapter_factory: Optional[Callable[[User], Optional[ExchangeAdapter]]] = None,
        publisher: Optional[EventPublisher] = None,
        registry: Optional[ActiveTradeRegistry] = None,
    ):
        self.user_id = user_id
        self.ledger = ledger
        self.source = source
        self.scanner = OpportunityScanner(source)
        self.registry = registry or ActiveTradeRegistry()
        self._live_adapter_factory = live_adapter_factory or (lambda user: None)
        self._publisher = publisher or EventPublisher()
        self._closing: Set[int] = set()  # trade ids with a close in flight

        if session_factory is not None:
            db = session_factory()
            try:
                self.rebuild_registry(db)
            finally:
                db.close()

    # ── Setup ───────────────────────────────────────────────────────────

    def rebuild_registry(self, db: Session) -> None:
        """Re-seat open instruments from persisted active trades."""
        rows = db.query(ViperTrade.inst_id).filter(
            ViperTrade.user_id == self.user_id,
            ViperTrade.status == "active",
        ).all()
        self.registry.rebuild(r.inst_id for r in rows)
        if rows:
            logger.info(f"VIPER user {self.user_id}: restored {len(rows)} active trade(s)")

    def config(self, db: Session) -> ViperConfig:
        return load_viper_config(db, self.user_id)

    def _live_adapter(self, user: User) -> Optional[ExchangeAdapter]:
        if not user.is_live_mode:
            return None
        adapter = self._live_adapter_factory(user)
        if adapter is None:
            raise AdapterError("Exchange API credentials not configured")
        return adapter

    # ── Scan & score ────────────────────────────────────────────────────

    def scan_opportunities(self, db: Session, instruments: Optional[List[str]] = None) -> List[LiquidationCluster]:
        """Detect and persist clusters; highest volume first."""
        config = self.config(db)
        balance = self.ledger.get_balance(db, self.user_id)
        detected = self.scanner.scan(instruments or self.source.instruments, float(balance), config)

        rows = []
        for c in detected:
            row = LiquidationCluster(
                user_id=self.user_id,
                inst_id=c.inst_id,
                price=quantize(to_decimal(c.price)),
                size=quantize(to_decimal(c.size)),
                side=c.side,
                volume=quantize(to_decimal(c.volume)),
                processed=False,
            )
            db.add(row)
            rows.append(row)
        if rows:
            db.commit()
        return rows

    def optimize_profit_strategy(self, inst_id: str, current_price: Optional[float] = None) -> ProfitSignal:
        history = self.source.get_price_history(inst_id)
        if current_price is None:
            current_price = self.source.get_price(inst_id)
        return ViperIndicators.score(inst_id, history, current_price)

    def pending_clusters(self, db: Session, limit: int,
                         instruments: Optional[List[str]] = None) -> List[LiquidationCluster]:
        """Unprocessed, unexpired clusters by volume descending."""
        cutoff = datetime.utcnow() - CLUSTER_TTL
        rows = db.query(LiquidationCluster).filter(
            LiquidationCluster.user_id == self.user_id,
            LiquidationCluster.processed.is_(False),
            LiquidationCluster.timestamp >= cutoff,
        ).all()
        if instruments is not None:
            rows = [r for r in rows if r.inst_id in instruments]
        rows.sort(key=lambda r: r.volume, reverse=True)
        return rows[:limit]

    # ── Opening ─────────────────────────────────────────────────────────

    def execute_liquidation_strike(self, db: Session, cluster: LiquidationCluster,
                                   signal: Optional[ProfitSignal] = None) -> Optional[ViperTrade]:
        """Trade counter to the cluster's liquidated side.

        Raises ConcurrencyViolation when the instrument is held or the cap
        is full; returns None when the cluster was already consumed or the
        position sizes to zero.
        """
        config = self.config(db)
        if not config.is_enabled:
            logger.info(f"VIPER user {self.user_id}: disabled, strike on {cluster.inst_id} skipped")
            return None
        if cluster.processed:
            return None

        side = "sell" if cluster.side == "long" else "buy"
        return self._open(db, config, cluster.inst_id, side, signal, cluster_id=cluster.id)

    def execute_autonomous_trade(self, db: Session, signal: ProfitSignal) -> Optional[ViperTrade]:
        """Signal-driven entry: side from whichever threshold fired."""
        config = self.config(db)
        if not config.is_enabled or signal.side is None:
            return None
        return self._open(db, config, signal.inst_id, signal.side, signal)

    def _open(self, db: Session, config: ViperConfig, inst_id: str, side: str,
              signal: Optional[ProfitSignal], cluster_id: Optional[int] = None) -> Optional[ViperTrade]:
        self.registry.try_acquire(inst_id, config.max_concurrent_trades)
        try:
            trade = self._open_locked(db, config, inst_id, side, signal, cluster_id)
        except Exception:
            db.rollback()
            self.registry.cool_down(inst_id)
            raise
        if trade is None:
            self.registry.release(inst_id)
            return None
        self.registry.confirm(inst_id)
        return trade

    def _open_locked(self, db: Session, config: ViperConfig, inst_id: str, side: str,
                     signal: Optional[ProfitSignal], cluster_id: Optional[int]) -> Optional[ViperTrade]:
        price = to_decimal(self.source.get_price(inst_id))
        if signal is None:
            signal = self.optimize_profit_strategy(inst_id, float(price))
        user = self.ledger.get_user(db, self.user_id)

        with self.ledger.locked(self.user_id):
            db.refresh(user)
            balance = self.ledger.active_balance(user)
            sized = size_position(balance, price, config, signal.risk_score, signal.opportunity_rating)
            if sized is None:
                logger.info(f"VIPER user {self.user_id}: {inst_id} sized to zero — skipped")
                return None
            if balance < sized.margin:
                raise InsufficientBalance(sized.margin, balance)

            cluster = None
            if cluster_id is not None:
                cluster = db.get(LiquidationCluster, cluster_id)
                db.refresh(cluster)
                if cluster.processed:
                    return None
                cluster.processed = True
                db.commit()

        # Venue call outside the lock; a slow exchange must not block the ledger
        adapter = self._live_adapter(user)
        if adapter is not None:
            lev = adapter.set_leverage(inst_id, sized.leverage)
            if not lev.success:
                raise AdapterError(lev.error or "Leverage update failed", {"inst_id": inst_id})
            placed = adapter.place_order(OrderRequest(
                inst_id=inst_id, side=side, order_type="market",
                quantity=sized.quantity, leverage=sized.leverage,
            ))
            if not placed.success:
                raise AdapterError(placed.error or "Order rejected by exchange", {"inst_id": inst_id})

        take_profit, stop_loss = exit_levels(price, side, config)
        with self.ledger.locked(self.user_id):
            trade = ViperTrade(
                user_id=self.user_id,
                cluster_id=cluster_id,
                inst_id=inst_id,
                side=side,
                entry_price=quantize(price),
                quantity=sized.quantity,
                leverage=sized.leverage,
                margin=sized.margin,
                take_profit_price=take_profit,
                stop_loss_price=stop_loss,
                status="active",
                pnl=Decimal("0"),
            )
            db.add(trade)
            new_balance = self.ledger.apply_balance_delta(db, self.user_id, -sized.margin)
            db.commit()

        logger.info(
            f"VIPER STRIKE: user {self.user_id} {side.upper()} {sized.quantity} {inst_id} "
            f"@ {price} {sized.leverage}x margin {sized.margin} | TP {take_profit} SL {stop_loss}"
            + (f" | cluster {cluster_id}" if cluster_id else "")
        )
        self._publisher.publish(TRADE_UPDATE, {"user_id": self.user_id, "action": "open", "trade_id": trade.id,
                                               "inst_id": inst_id, "side": side})
        self._publisher.publish(BALANCE_UPDATE, {"user_id": self.user_id, "balance": new_balance})
        return trade

    # ── Monitoring & closing ────────────────────────────────────────────

    def active_trades(self, db: Session) -> List[ViperTrade]:
        return db.query(ViperTrade).filter(
            ViperTrade.user_id == self.user_id,
            ViperTrade.status == "active",
        ).all()

    def monitor_active_trades(self, db: Session) -> List[ViperTrade]:
        """Mark every open trade; close those that reached TP or SL."""
        closed = []
        for trade in self.active_trades(db):
            try:
                price = to_decimal(self.source.get_price(trade.inst_id))
            except KeyError:
                logger.warning(f"VIPER monitor: no price for {trade.inst_id}")
                continue

            if trade.side == "buy":
                hit_tp = price >= trade.take_profit_price
                hit_sl = price <= trade.stop_loss_price
            else:
                hit_tp = price <= trade.take_profit_price
                hit_sl = price >= trade.stop_loss_price

            if hit_tp or hit_sl:
                reason = "take_profit" if hit_tp else "stop_loss"
                try:
                    if self._close(db, trade, price, "completed", reason):
                        closed.append(trade)
                except AdapterError as e:
                    logger.warning(f"VIPER monitor: close of trade {trade.id} failed: {e}")
            else:
                trade.pnl = unrealized_pnl(trade.side, trade.entry_price, price, trade.quantity)
        db.commit()
        return closed

    def _close(self, db: Session, trade: ViperTrade, price: Decimal, status: str, reason: str) -> bool:
        """Transition an active trade to ``status`` exactly once.

        The trade is claimed under the ledger lock before any venue call,
        so a racing close never sends a second ``close_position``.
        """
        with self.ledger.locked(self.user_id):
            db.refresh(trade)
            if trade.status != "active" or trade.id in self._closing:
                return False
            self._closing.add(trade.id)

        try:
            user = self.ledger.get_user(db, self.user_id)
            adapter = self._live_adapter(user)
            if adapter is not None:
                result = adapter.close_position(trade.inst_id, "long" if trade.side == "buy" else "short")
                if not result.success:
                    raise AdapterError(result.error or "Close failed", {"trade_id": trade.id})

            with self.ledger.locked(self.user_id):
                pnl = unrealized_pnl(trade.side, trade.entry_price, price, trade.quantity)
                trade.pnl = pnl
                trade.exit_price = quantize(price)
                trade.exit_reason = reason
                trade.status = status
                trade.exit_time = datetime.utcnow()
                new_balance = self.ledger.apply_balance_delta(db, self.user_id, trade.margin + pnl)
                db.commit()
        finally:
            with self.ledger.locked(self.user_id):
                self._closing.discard(trade.id)

        self.registry.release(trade.inst_id)
        logger.info(
            f"VIPER EXIT [{reason}]: user {self.user_id} {trade.side.upper()} {trade.inst_id} "
            f"@ {price} | PnL {pnl:+f} | released margin {trade.margin}"
        )
        self._publisher.publish(TRADE_UPDATE, {"user_id": self.user_id, "action": "close", "trade_id": trade.id,
                                               "reason": reason, "pnl": pnl})
        self._publisher.publish(BALANCE_UPDATE, {"user_id": self.user_id, "balance": new_balance})
        return True

    def _current_price(self, inst_id: str) -> Decimal:
        try:
            return to_decimal(self.source.get_price(inst_id))
        except KeyError as exc:
            raise NotFound(f"No price available for {inst_id}", {"inst_id": inst_id}) from exc

    def close_trade(self, db: Session, trade_id: int, reason: str = "manual") -> ViperTrade:
        trade = db.get(ViperTrade, trade_id)
        if not trade or trade.user_id != self.user_id:
            raise NotFound("Trade not found", {"trade_id": trade_id})
        if trade.status != "active":
            raise InvalidInput(f"Trade {trade_id} is already {trade.status}")
        price = self._current_price(trade.inst_id)
        if not self._close(db, trade, price, "stopped", reason):
            raise InvalidInput(f"Trade {trade_id} is already being closed")
        return trade

    def close_all_trades(self, db: Session, reason: str = "manual") -> int:
        closed = 0
        for trade in self.active_trades(db):
            try:
                price = self._current_price(trade.inst_id)
            except NotFound as e:
                logger.warning(f"VIPER close-all: trade {trade.id} left open: {e}")
                continue
            if self._close(db, trade, price, "stopped", reason):
                closed += 1
        return closed

    # ── Cycle ───────────────────────────────────────────────────────────

    def run_cycle(self, db: Session, instruments: Optional[List[str]] = None) -> Dict:
        """One scan → strike → monitor → metrics pass over ``instruments``."""
        config = self.config(db)
        pool = instruments or self.source.instruments
        strikes = []

        # advanced even when disabled; open trades are still marked below
        self.source.advance(pool)

        if config.is_enabled:
            self.scan_opportunities(db, pool)
            for cluster in self.pending_clusters(db, config.top_opportunities, pool):
                if self.registry.active_count >= config.max_concurrent_trades:
                    break
                signal = self.optimize_profit_strategy(cluster.inst_id)
                if signal.profit_potential < config.min_profit_potential:
                    continue
                try:
                    trade = self.execute_liquidation_strike(db, cluster, signal)
                except (ConcurrencyViolation, InsufficientBalance, AdapterError) as e:
                    logger.warning(f"VIPER user {self.user_id}: strike on {cluster.inst_id} skipped: {e}")
                    continue
                if trade:
                    strikes.append(trade)

            for inst_id in pool:
                if self.registry.active_count >= config.max_concurrent_trades:
                    break
                if self.registry.is_held(inst_id):
                    continue
                signal = self.optimize_profit_strategy(inst_id)
                if signal.side is None or signal.profit_potential < config.min_profit_potential:
                    continue
                try:
                    trade = self.execute_autonomous_trade(db, signal)
                except (ConcurrencyViolation, InsufficientBalance, AdapterError) as e:
                    logger.warning(f"VIPER user {self.user_id}: signal entry on {inst_id} skipped: {e}")
                    continue
                if trade:
                    strikes.append(trade)

        closed = self.monitor_active_trades(db)
        return {
            "strikes": len(strikes),
            "closed": len(closed),
            "metrics": self.get_performance_metrics(db),
        }

    def get_performance_metrics(self, db: Session) -> Dict:
        trades = db.query(ViperTrade).filter(ViperTrade.user_id == self.user_id).all()
        closed = [t for t in trades if t.status != "active"]
        completed = [t for t in trades if t.status == "completed"]
        winners = [t for t in completed if t.pnl > 0]
        total_pnl = sum((t.pnl for t in closed), Decimal("0"))
        return {
            "total_trades": len(trades),
            "active_trades": len(trades) - len(closed),
            "total_pnl": quantize(total_pnl),
            "win_rate": round(len(winners) / len(completed) * 100, 2) if completed else 0.0,
            "avg_pnl": quantize(total_pnl / len(closed)) if closed else Decimal("0"),
        }
