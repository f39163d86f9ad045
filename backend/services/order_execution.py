"""
Order Execution Engine
======================
Validates and executes a single spot order against the ledger.

Lifecycle:  pending → filled | cancelled | failed   (terminal states final)

  1. Validate synchronously (quantity, price, user, asset, balance,
     held quantity for sells) — nothing is persisted on rejection.
  2. Persist the order as ``pending``.
  3. Execute through the user's adapter:
       demo → PaperExchangeAdapter (probabilistic fill + slippage)
       live → exchange adapter; the trade is recorded at the requested
              price/quantity (venue fill details are trusted, not re-read)
  4. On fill, apply exactly once: order → filled, Trade row, balance delta,
     weighted-average position update — one commit under the user lock.
     Balance / held quantity are checked again inside that lock, since
     another order may have filled while this one was at the adapter; a
     fill that no longer fits fails the order instead.

A demo order that misses its fill draw stays ``pending`` until the user
cancels it; no retry is scheduled.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from backend.models.database import User, Asset, Order, Trade
from backend.models.types import quantize, to_decimal
from backend.services.errors import (
    AdapterError,
    InsufficientBalance,
    InvalidInput,
    NotFound,
)
from backend.services.events import EventPublisher, BALANCE_UPDATE
from backend.services.execution import (
    ExchangeAdapter,
    OrderRequest,
    PaperExchangeAdapter,
)
from backend.services.ledger import LedgerService

logger = logging.getLogger(__name__)

ORDER_TYPES = ("market", "limit", "stop_loss")
SIDES = ("buy", "sell")
TERMINAL_STATUSES = ("filled", "cancelled", "failed")


@dataclass
class OrderTicket:
    """Inbound order request from the control surface or the strategy."""
    user_id: int
    asset_id: int
    side: str
    quantity: Decimal
    order_type: str = "market"
    price: Optional[Decimal] = None
    inst_id: Optional[str] = None
    stop_price: Optional[Decimal] = None
    take_profit_price: Optional[Decimal] = None


@dataclass
class ExecutionResult:
    success: bool
    order_id: Optional[int] = None
    executed: bool = False
    executed_price: Optional[Decimal] = None
    executed_quantity: Optional[Decimal] = None
    trade_id: Optional[int] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "success": self.success,
            "order_id": self.order_id,
            "executed": self.executed,
            "executed_price": format(self.executed_price, "f") if self.executed_price is not None else None,
            "executed_quantity": format(self.executed_quantity, "f") if self.executed_quantity is not None else None,
            "trade_id": self.trade_id,
            "error": self.error,
        }


class OrderExecutionEngine:
    """Spot order placement for demo and live accounts."""

    def __init__(
        self,
        ledger: LedgerService,
        paper_adapter: Optional[PaperExchangeAdapter] = None,
        live_adapter_factory: Optional[Callable[[User], Optional[ExchangeAdapter]]] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self.ledger = ledger
        self.paper_adapter = paper_adapter or PaperExchangeAdapter()
        self._live_adapter_factory = live_adapter_factory or (lambda user: None)
        self._publisher = publisher or EventPublisher()

    def adapter_for(self, user: User) -> Optional[ExchangeAdapter]:
        if user.is_live_mode:
            return self._live_adapter_factory(user)
        return self.paper_adapter

    # ── Validation ──────────────────────────────────────────────────────

    def _validate(self, db: Session, ticket: OrderTicket):
        if ticket.side not in SIDES:
            raise InvalidInput(f"Invalid side: {ticket.side}")
        if ticket.order_type not in ORDER_TYPES:
            raise InvalidInput(f"Invalid order type: {ticket.order_type}")

        try:
            quantity = to_decimal(ticket.quantity)
        except ValueError as exc:
            raise InvalidInput(f"Invalid quantity: {ticket.quantity!r}") from exc
        if quantity <= 0:
            raise InvalidInput("Quantity must be positive", {"quantity": quantity})

        user = self.ledger.get_user(db, ticket.user_id)
        asset = db.get(Asset, ticket.asset_id)
        if not asset:
            raise NotFound("Invalid asset", {"asset_id": ticket.asset_id})

        if ticket.order_type == "market":
            price = asset.current_price
        else:
            if ticket.price is None:
                raise InvalidInput(f"Price is required for {ticket.order_type} orders")
            price = to_decimal(ticket.price)
            if price <= 0:
                raise InvalidInput("Price must be positive", {"price": price})

        return user, asset, quantity, price

    # ── Placement ───────────────────────────────────────────────────────

    def place_order(self, db: Session, ticket: OrderTicket) -> ExecutionResult:
        """Validate, persist and execute one order.

        Validation failures raise; adapter failures come back as
        ``success=False`` with ``error_type='AdapterError'`` and a ``failed``
        order row.
        """
        user, asset, quantity, price = self._validate(db, ticket)
        inst_id = ticket.inst_id or asset.inst_id or f"{asset.symbol}-USDT"

        with self.ledger.locked(user.id):
            db.refresh(user)
            if ticket.side == "buy":
                required = quantity * price
                available = self.ledger.active_balance(user)
                if available < required:
                    raise InsufficientBalance(required, available)
            else:
                pos = self.ledger.get_position(db, user.id, asset.id)
                held = pos.quantity if pos else Decimal("0")
                if quantity > held:
                    raise InvalidInput(
                        f"Insufficient position. Requested: {quantity}, Held: {held}",
                        {"requested": quantity, "held": held},
                    )

            order = Order(
                user_id=user.id,
                asset_id=asset.id,
                inst_id=inst_id,
                type=ticket.order_type,
                side=ticket.side,
                quantity=quantize(quantity),
                price=quantize(price),
                status="pending",
                stop_price=ticket.stop_price,
                take_profit_price=ticket.take_profit_price,
            )
            db.add(order)
            db.commit()

        adapter = self.adapter_for(user)
        if adapter is None:
            return self._fail(db, order, "Exchange API credentials not configured")

        result = adapter.place_order(OrderRequest(
            inst_id=inst_id,
            side=ticket.side,
            order_type="market" if ticket.order_type == "market" else "limit",
            quantity=quantity,
            price=price,
        ))

        if not result.success:
            return self._fail(db, order, result.error or "Order rejected by exchange")

        if not result.filled:
            return ExecutionResult(
                success=True, order_id=order.id, executed=False,
                error=result.error or "Order placed but not executed",
            )

        if user.is_live_mode:
            fill_price, fill_qty = price, quantity
        else:
            fill_price, fill_qty = result.fill_price, result.filled_qty

        trade = self.apply_fill(db, order.id, fill_price, fill_qty)
        tag = "LIVE" if user.is_live_mode else "DEMO"
        logger.info(
            f"{tag} fill: user {user.id} {ticket.side.upper()} {fill_qty} {asset.symbol} "
            f"@ {fill_price} (order {order.id})"
        )
        return ExecutionResult(
            success=True,
            order_id=order.id,
            executed=True,
            executed_price=trade.price,
            executed_quantity=trade.quantity,
            trade_id=trade.id,
        )

    def _fail(self, db: Session, order: Order, error: str) -> ExecutionResult:
        order.status = "failed"
        order.error = error
        db.commit()
        logger.warning(f"Order {order.id} failed: {error}")
        return ExecutionResult(success=False, order_id=order.id, error=error,
                               error_type=AdapterError.__name__)

    def apply_fill(self, db: Session, order_id: int, fill_price, fill_qty) -> Trade:
        """Record one fill and apply it to ledger + position exactly once.

        A second call for the same order returns the existing Trade without
        touching the balance again.  Balance (buys) and held quantity
        (sells) are re-checked under the user lock; a fill that no longer
        fits moves the order to ``failed`` and raises before any mutation.
        """
        order = db.get(Order, order_id)
        if not order:
            raise NotFound("Order not found", {"order_id": order_id})

        with self.ledger.locked(order.user_id):
            db.refresh(order)
            if order.status == "filled":
                existing = db.query(Trade).filter(Trade.order_id == order.id).first()
                if existing:
                    logger.warning(f"Fill for order {order.id} already applied — ignoring replay")
                    return existing
            if order.status != "pending":
                raise InvalidInput(f"Order {order.id} is {order.status}; cannot fill")

            price = quantize(fill_price)
            qty = quantize(fill_qty)
            total = quantize(qty * price)

            rejection = self._fill_rejection(db, order, qty, total)
            if rejection is not None:
                order.status = "failed"
                order.error = rejection.message
                db.commit()
            else:
                order.status = "filled"
                order.filled_at = datetime.utcnow()
                trade = Trade(
                    user_id=order.user_id,
                    order_id=order.id,
                    asset_id=order.asset_id,
                    side=order.side,
                    quantity=qty,
                    price=price,
                    total=total,
                    pnl=Decimal("0"),
                )
                db.add(trade)

                delta = -total if order.side == "buy" else total
                new_balance = self.ledger.apply_balance_delta(db, order.user_id, delta)
                self.ledger.upsert_position(db, order.user_id, order.asset_id, qty, price, order.side)
                db.commit()

        if rejection is not None:
            logger.warning(f"Order {order.id} failed at fill: {rejection.message}")
            raise rejection

        self._publisher.publish(BALANCE_UPDATE, {"user_id": order.user_id, "balance": new_balance})
        return trade

    def _fill_rejection(self, db: Session, order: Order, qty: Decimal, total: Decimal):
        """The error a fill would violate right now, or None. Caller holds the user lock."""
        user = self.ledger.get_user(db, order.user_id)
        db.refresh(user)
        if order.side == "buy":
            available = self.ledger.active_balance(user)
            if available < total:
                return InsufficientBalance(total, available)
            return None
        pos = self.ledger.get_position(db, order.user_id, order.asset_id)
        held = pos.quantity if pos else Decimal("0")
        if qty > held:
            return InvalidInput(
                f"Insufficient position. Requested: {qty}, Held: {held}",
                {"requested": qty, "held": held},
            )
        return None

    # ── Cancellation & queries ──────────────────────────────────────────

    def cancel_order(self, db: Session, order_id: int, user_id: int) -> Order:
        order = db.get(Order, order_id)
        if not order or order.user_id != user_id:
            raise NotFound("Order not found", {"order_id": order_id})
        with self.ledger.locked(user_id):
            db.refresh(order)
            if order.status in TERMINAL_STATUSES:
                raise InvalidInput(f"Order {order.id} is already {order.status}")
            order.status = "cancelled"
            db.commit()
        logger.info(f"Order {order.id} cancelled by user {user_id}")
        return order

    def get_user_orders(self, db: Session, user_id: int, limit: int = 100) -> List[Order]:
        return db.query(Order).filter(Order.user_id == user_id).order_by(
            Order.created_at.desc(), Order.id.desc()
        ).limit(limit).all()

    def get_user_trades(self, db: Session, user_id: int, limit: int = 100) -> List[Trade]:
        return db.query(Trade).filter(Trade.user_id == user_id).order_by(
            Trade.executed_at.desc(), Trade.id.desc()
        ).limit(limit).all()
