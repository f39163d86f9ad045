"""
Database models for the paper trading platform.
Spot orders against a balance ledger plus leveraged VIPER strategy trades.
All money and quantity columns are fixed-point decimals stored as strings.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean, Float
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime

from backend.models.types import DecimalString

Base = declarative_base()


class User(Base):
    """Trading account with a paper and a live (exchange-sourced) balance"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True)
    email = Column(String, unique=True)
    paper_balance = Column(DecimalString, default="100000")
    live_balance = Column(DecimalString, default="0")
    is_live_mode = Column(Boolean, default=False)  # selects the active balance
    exchange = Column(String, nullable=True)       # e.g. "okx"
    api_key = Column(String, nullable=True)
    secret_key = Column(String, nullable=True)
    passphrase = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    positions = relationship("PortfolioPosition", back_populates="user", cascade="all, delete-orphan")
    orders = relationship("Order", back_populates="user", cascade="all, delete-orphan")
    trades = relationship("Trade", back_populates="user", cascade="all, delete-orphan")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.secret_key and self.passphrase)


class Asset(Base):
    """Tradable instrument with its latest (simulated or fed) price"""
    __tablename__ = "assets"

    id = Column(Integer, primary_key=True, index=True)
    symbol = Column(String, unique=True, index=True)  # e.g. "BTC"
    name = Column(String)                             # e.g. "Bitcoin"
    inst_id = Column(String, nullable=True)           # e.g. "BTC-USDT-SWAP"
    current_price = Column(DecimalString)
    change_24h = Column(DecimalString, default="0")
    volume_24h = Column(DecimalString, default="0")
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class PortfolioPosition(Base):
    """Weighted-average-cost spot holding per (user, asset)"""
    __tablename__ = "portfolio_positions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    asset_id = Column(Integer, ForeignKey("assets.id"))
    quantity = Column(DecimalString)
    average_price = Column(DecimalString)
    total_invested = Column(DecimalString)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="positions")
    asset = relationship("Asset")


class Order(Base):
    """Order lifecycle: pending → filled | cancelled | failed"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    asset_id = Column(Integer, ForeignKey("assets.id"))
    inst_id = Column(String, nullable=True)
    type = Column(String)            # market, limit, stop_loss
    side = Column(String)            # buy, sell
    quantity = Column(DecimalString)
    price = Column(DecimalString, nullable=True)
    status = Column(String, default="pending")
    stop_price = Column(DecimalString, nullable=True)
    take_profit_price = Column(DecimalString, nullable=True)
    error = Column(String, nullable=True)
    filled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="orders")
    asset = relationship("Asset")


class Trade(Base):
    """Immutable execution record, one per fill"""
    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), unique=True)
    asset_id = Column(Integer, ForeignKey("assets.id"))
    side = Column(String)
    quantity = Column(DecimalString)
    price = Column(DecimalString)
    total = Column(DecimalString)
    pnl = Column(DecimalString, default="0")  # spot fills realise nothing here
    executed_at = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="trades")
    order = relationship("Order")
    asset = relationship("Asset")


class RiskSettings(Base):
    """Per-user advisory risk bounds"""
    __tablename__ = "risk_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True)
    max_position_size = Column(DecimalString, default="15")      # %
    stop_loss_percentage = Column(DecimalString, default="5")
    take_profit_percentage = Column(DecimalString, default="25")
    max_daily_loss = Column(DecimalString, default="1000")
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ViperSettings(Base):
    """Per-user VIPER strategy configuration"""
    __tablename__ = "viper_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True)
    max_leverage = Column(Integer, default=10)
    vol_threshold = Column(Float, default=5.0)
    strike_window = Column(Float, default=0.5)
    profit_target = Column(Float, default=2.0)
    stop_loss = Column(Float, default=1.0)
    cluster_threshold = Column(Float, default=0.5)
    position_scaling = Column(Float, default=1.0)
    max_concurrent_trades = Column(Integer, default=3)
    balance_multiplier = Column(Float, default=1.0)
    min_profit_potential = Column(Float, default=0.05)
    top_opportunities = Column(Integer, default=5)
    is_enabled = Column(Boolean, default=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class LiquidationCluster(Base):
    """Detected (synthetic) liquidation concentration; struck at most once"""
    __tablename__ = "liquidation_clusters"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    inst_id = Column(String, index=True)
    price = Column(DecimalString)
    size = Column(DecimalString)
    side = Column(String)            # long, short (side being liquidated)
    volume = Column(DecimalString)   # size * price
    processed = Column(Boolean, default=False)
    timestamp = Column(DateTime, default=datetime.utcnow)


class ViperTrade(Base):
    """Autonomous leveraged position: active → completed | stopped"""
    __tablename__ = "viper_trades"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), index=True)
    cluster_id = Column(Integer, ForeignKey("liquidation_clusters.id"), nullable=True)
    inst_id = Column(String, index=True)
    side = Column(String)            # buy, sell
    entry_price = Column(DecimalString)
    quantity = Column(DecimalString)
    leverage = Column(Integer)
    margin = Column(DecimalString)   # debited on open, released on close
    take_profit_price = Column(DecimalString)
    stop_loss_price = Column(DecimalString)
    status = Column(String, default="active")
    pnl = Column(DecimalString, default="0")
    exit_price = Column(DecimalString, nullable=True)
    exit_reason = Column(String, nullable=True)  # take_profit, stop_loss, manual
    entry_time = Column(DateTime, default=datetime.utcnow)
    exit_time = Column(DateTime, nullable=True)

    cluster = relationship("LiquidationCluster")
