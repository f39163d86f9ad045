"""
Ledger & Position Store
=======================
Owns the two user balances (paper / live) and weighted-average-cost spot
positions.  Exactly one balance is *active*, selected by ``is_live_mode``;
trading only ever touches the active one.

Atomicity: every read-modify-write of a balance happens while holding the
user's re-entrant lock.  Callers that need several mutations to land
together (a fill = order status + trade + balance + position) hold
``ledger.locked(user_id)`` around the whole apply-and-commit.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, Iterator, Optional

from sqlalchemy.orm import Session

from backend.models.database import User, PortfolioPosition
from backend.models.types import quantize, to_decimal
from backend.services.errors import NotFound, AdapterError
from backend.services.execution.exchange_adapter import ExchangeAdapter

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class LedgerService:
    """Balance and position mutations with per-user locking."""

    def __init__(self):
        self._locks: Dict[int, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ── Locking ─────────────────────────────────────────────────────────

    def _lock_for(self, user_id: int) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[user_id] = lock
            return lock

    @contextmanager
    def locked(self, user_id: int) -> Iterator[None]:
        lock = self._lock_for(user_id)
        with lock:
            yield

    # ── Balances ────────────────────────────────────────────────────────

    def get_user(self, db: Session, user_id: int) -> User:
        user = db.get(User, user_id)
        if not user:
            raise NotFound("User not found", {"user_id": user_id})
        return user

    @staticmethod
    def active_balance(user: User) -> Decimal:
        return to_decimal(user.live_balance if user.is_live_mode else user.paper_balance)

    def get_balance(self, db: Session, user_id: int) -> Decimal:
        """Return the active balance (paper or live per ``is_live_mode``)."""
        return self.active_balance(self.get_user(db, user_id))

    def apply_balance_delta(self, db: Session, user_id: int, delta) -> Decimal:
        """Add ``delta`` (signed) to the active balance and flush.

        The fresh row is re-read under the user lock so concurrent writers
        from other sessions are never overwritten with a stale value.
        """
        delta = to_decimal(delta)
        with self.locked(user_id):
            user = self.get_user(db, user_id)
            db.refresh(user)
            new_balance = quantize(self.active_balance(user) + delta)
            if user.is_live_mode:
                user.live_balance = new_balance
            else:
                user.paper_balance = new_balance
            db.flush()
        logger.debug(f"Ledger: user {user_id} {'live' if user.is_live_mode else 'paper'} "
                     f"balance {delta:+f} → {new_balance}")
        return new_balance

    # ── Positions ───────────────────────────────────────────────────────

    def get_position(self, db: Session, user_id: int, asset_id: int) -> Optional[PortfolioPosition]:
        return db.query(PortfolioPosition).filter(
            PortfolioPosition.user_id == user_id,
            PortfolioPosition.asset_id == asset_id,
        ).first()

    def upsert_position(
        self, db: Session, user_id: int, asset_id: int,
        filled_qty, filled_price, side: str,
    ) -> Optional[PortfolioPosition]:
        """Apply a fill to the weighted-average position.

        buy:  quantity += q, total_invested += q*p, average = invested/quantity
        sell: quantity -= q; ≤ 0 deletes the row, otherwise total_invested is
              reduced by the sold fraction and the average price is kept.
        Returns the surviving position, or None when it was deleted.
        """
        qty = to_decimal(filled_qty)
        price = to_decimal(filled_price)
        pos = self.get_position(db, user_id, asset_id)

        if side == "buy":
            cost = qty * price
            if pos is None:
                pos = PortfolioPosition(
                    user_id=user_id,
                    asset_id=asset_id,
                    quantity=quantize(qty),
                    average_price=quantize(price),
                    total_invested=quantize(cost),
                )
                db.add(pos)
            else:
                new_qty = pos.quantity + qty
                new_invested = pos.total_invested + cost
                pos.quantity = quantize(new_qty)
                pos.total_invested = quantize(new_invested)
                pos.average_price = quantize(new_invested / new_qty)
            db.flush()
            return pos

        if pos is None:
            raise NotFound("Position not found", {"user_id": user_id, "asset_id": asset_id})

        remaining = pos.quantity - qty
        if remaining <= ZERO:
            db.delete(pos)
            db.flush()
            return None

        sell_ratio = qty / pos.quantity
        pos.total_invested = quantize(pos.total_invested * (1 - sell_ratio))
        pos.quantity = quantize(remaining)
        db.flush()
        return pos

    # ── Live mode ───────────────────────────────────────────────────────

    def sync_live_balance(self, db: Session, user_id: int, adapter: ExchangeAdapter) -> Decimal:
        """Read the exchange USDT balance into ``live_balance``."""
        result = adapter.get_account_balance()
        if not result.success:
            raise AdapterError(result.error or "Balance retrieval failed")
        with self.locked(user_id):
            user = self.get_user(db, user_id)
            user.live_balance = quantize(result.usdt_balance)
            db.commit()
        logger.info(f"Ledger: user {user_id} live balance synced → {user.live_balance} USDT")
        return user.live_balance

    def set_live_mode(self, db: Session, user_id: int, enabled: bool,
                      adapter: Optional[ExchangeAdapter] = None) -> User:
        """Toggle the active balance.

        Enabling requires a successful live balance read; on failure the
        account stays in demo mode and the adapter's message propagates.
        """
        user = self.get_user(db, user_id)
        if enabled:
            if adapter is None:
                raise AdapterError("No exchange adapter configured for live mode")
            self.sync_live_balance(db, user_id, adapter)
        with self.locked(user_id):
            user.is_live_mode = enabled
            db.commit()
        logger.info(f"Ledger: user {user_id} switched to {'LIVE' if enabled else 'DEMO'} mode")
        return user

    def set_exchange_credentials(self, db: Session, user_id: int, exchange: str,
                                 api_key: str, secret_key: str, passphrase: str) -> User:
        user = self.get_user(db, user_id)
        user.exchange = exchange
        user.api_key = api_key
        user.secret_key = secret_key
        user.passphrase = passphrase
        db.commit()
        logger.info(f"Ledger: user {user_id} exchange credentials stored ({exchange})")
        return user

    # ── Valuation ───────────────────────────────────────────────────────

    def portfolio_summary(self, db: Session, user_id: int) -> Dict:
        """Mark every position to the asset's current price."""
        user = self.get_user(db, user_id)
        positions = db.query(PortfolioPosition).filter(PortfolioPosition.user_id == user_id).all()

        rows = []
        total_value = ZERO
        total_invested = ZERO
        for pos in positions:
            current_value = quantize(pos.quantity * pos.asset.current_price)
            pnl = quantize(current_value - pos.total_invested)
            pnl_pct = quantize(pnl / pos.total_invested * 100) if pos.total_invested > 0 else ZERO
            total_value += current_value
            total_invested += pos.total_invested
            rows.append({
                "asset_id": pos.asset_id,
                "symbol": pos.asset.symbol,
                "quantity": pos.quantity,
                "average_price": pos.average_price,
                "total_invested": pos.total_invested,
                "current_price": pos.asset.current_price,
                "current_value": current_value,
                "pnl": pnl,
                "pnl_percentage": pnl_pct,
            })

        balance = self.active_balance(user)
        return {
            "user_id": user_id,
            "is_live_mode": user.is_live_mode,
            "balance": balance,
            "positions": rows,
            "total_value": quantize(total_value),
            "total_invested": quantize(total_invested),
            "total_pnl": quantize(total_value - total_invested),
            "total_portfolio_value": quantize(balance + total_value),
        }
