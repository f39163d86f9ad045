"""
VIPER configuration: typed defaults resolved once, persisted per user.
"""
import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.orm import Session

from backend.models.database import User, ViperSettings
from backend.services.errors import InvalidInput, NotFound

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViperConfig:
    max_leverage: int = 10
    vol_threshold: float = 5.0          # volatility index units (0 – 100)
    strike_window: float = 0.5          # window width, % of price
    profit_target: float = 2.0          # %
    stop_loss: float = 1.0              # %
    cluster_threshold: float = 0.5      # window notional / balance
    position_scaling: float = 1.0
    max_concurrent_trades: int = 3
    balance_multiplier: float = 1.0
    is_enabled: bool = True
    min_profit_potential: float = 0.05
    top_opportunities: int = 5

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce_bool(name: str, raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in ("true", "1", "yes", "on"):
        return True
    if isinstance(raw, str) and raw.strip().lower() in ("false", "0", "no", "off"):
        return False
    if isinstance(raw, (int, float)):
        return bool(raw)
    raise InvalidInput(f"Invalid value for {name}: {raw!r}")


def resolve_viper_defaults(partial: Optional[Mapping[str, Any]] = None) -> ViperConfig:
    """Full ViperConfig from a partial mapping.

    None values fall back to defaults, unknown keys are ignored, numeric
    strings are coerced to the field's type.
    """
    partial = partial or {}
    values = {}
    for f in fields(ViperConfig):
        raw = partial.get(f.name)
        if raw is None:
            continue
        if f.type in (bool, "bool"):
            values[f.name] = _coerce_bool(f.name, raw)
            continue
        try:
            value = int(float(raw)) if f.type in (int, "int") else float(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"Invalid value for {f.name}: {raw!r}") from exc
        if value < 0:
            raise InvalidInput(f"{f.name} must be non-negative")
        values[f.name] = value

    config = ViperConfig(**values)
    if config.max_leverage < 1:
        raise InvalidInput("max_leverage must be at least 1")
    if config.max_concurrent_trades < 1:
        raise InvalidInput("max_concurrent_trades must be at least 1")
    return config


def load_viper_config(db: Session, user_id: int) -> ViperConfig:
    """Read the user's settings, creating the default row on first use."""
    row = db.query(ViperSettings).filter(ViperSettings.user_id == user_id).first()
    if not row:
        if not db.get(User, user_id):
            raise NotFound("User not found", {"user_id": user_id})
        config = ViperConfig()
        row = ViperSettings(user_id=user_id, **config.to_dict())
        db.add(row)
        db.commit()
        logger.info(f"VIPER settings defaulted for user {user_id}")
        return config
    return resolve_viper_defaults({f.name: getattr(row, f.name) for f in fields(ViperConfig)})


def save_viper_config(db: Session, user_id: int, settings: Mapping[str, Any]) -> ViperConfig:
    current = load_viper_config(db, user_id)
    merged = resolve_viper_defaults({**current.to_dict(), **{k: v for k, v in settings.items() if v is not None}})

    row = db.query(ViperSettings).filter(ViperSettings.user_id == user_id).first()
    for name, value in merged.to_dict().items():
        setattr(row, name, value)
    db.commit()
    logger.info(f"VIPER settings updated for user {user_id}: {merged.to_dict()}")
    return merged
