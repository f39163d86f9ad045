"""
Risk Settings — per-user advisory bounds with typed defaults.

The VIPER engine reads these for context; they are not hard limits on its
own sizing (the strategy carries its own ``ViperConfig``).
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from backend.models.database import RiskSettings, User
from backend.models.types import quantize, to_decimal
from backend.services.errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskLimits:
    max_position_size: Decimal = Decimal("15")        # % of balance
    stop_loss_percentage: Decimal = Decimal("5")
    take_profit_percentage: Decimal = Decimal("25")
    max_daily_loss: Decimal = Decimal("1000")         # USDT

    def to_dict(self) -> Dict[str, str]:
        return {k: format(v, "f") for k, v in asdict(self).items()}


def resolve_risk_defaults(partial: Optional[Mapping[str, Any]] = None) -> RiskLimits:
    """Fill missing / None fields from the defaults; unknown keys are ignored."""
    partial = partial or {}
    values = {}
    for f in fields(RiskLimits):
        raw = partial.get(f.name)
        if raw is None:
            continue
        try:
            value = to_decimal(raw)
        except ValueError as exc:
            raise InvalidInput(f"Invalid value for {f.name}: {raw!r}") from exc
        if value < 0:
            raise InvalidInput(f"{f.name} must be non-negative")
        values[f.name] = value
    return RiskLimits(**values)


class RiskSettingsService:
    """Keyed storage of RiskLimits per user."""

    def get(self, db: Session, user_id: int) -> RiskLimits:
        row = db.query(RiskSettings).filter(RiskSettings.user_id == user_id).first()
        if not row:
            return RiskLimits()
        return resolve_risk_defaults({f.name: getattr(row, f.name) for f in fields(RiskLimits)})

    def upsert(self, db: Session, user_id: int, settings: Mapping[str, Any]) -> RiskLimits:
        if not db.get(User, user_id):
            raise NotFound("User not found", {"user_id": user_id})

        row = db.query(RiskSettings).filter(RiskSettings.user_id == user_id).first()
        current = self.get(db, user_id)
        merged = resolve_risk_defaults({**asdict(current), **{k: v for k, v in settings.items() if v is not None}})

        if not row:
            row = RiskSettings(user_id=user_id)
            db.add(row)
        for f in fields(RiskLimits):
            setattr(row, f.name, quantize(getattr(merged, f.name)))
        db.commit()
        logger.info(f"Risk settings updated for user {user_id}: {merged.to_dict()}")
        return merged
