"""
Error taxonomy shared by the ledger, order execution and VIPER services.

Services raise these; the HTTP layer maps ``http_status`` + ``detail`` to a
JSON response. The strategy loop catches them per cycle.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Optional


class TradingError(Exception):
    """Base class for every business-level failure."""

    http_status = 400

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"message": self.message, "error": type(self).__name__}
        if self.detail:
            payload["detail"] = {
                k: (format(v, "f") if isinstance(v, Decimal) else v)
                for k, v in self.detail.items()
            }
        return payload


class NotFound(TradingError):
    """User, asset, order, position or trade is absent."""
    http_status = 404


class InvalidInput(TradingError):
    """Request failed validation before any state was created."""
    http_status = 400


class InsufficientBalance(TradingError):
    """Active balance (or position) does not cover the request."""

    http_status = 400

    def __init__(self, required: Decimal, available: Decimal, message: Optional[str] = None):
        self.required = required
        self.available = available
        self.shortfall = max(required - available, Decimal("0"))
        super().__init__(
            message or (
                f"Insufficient balance. Required: {required:.2f} USDT, "
                f"Available: {available:.2f} USDT"
            ),
            {"required": required, "available": available, "shortfall": self.shortfall},
        )


class AdapterError(TradingError):
    """Exchange call failed (transport or venue-reported error)."""
    http_status = 502


class ConcurrencyViolation(TradingError):
    """Instrument already has an open trade, or the concurrency cap is full."""
    http_status = 409


class AlreadyRunning(TradingError):
    """Autonomous controller start requested while it is running."""
    http_status = 409
