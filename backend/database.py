"""
Database connection and session management
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from backend.models.database import Base, User, Asset, RiskSettings
import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./trading.db")
DEFAULT_PAPER_BALANCE = os.getenv("DEFAULT_PAPER_BALANCE", "100000")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if "sqlite" in DATABASE_URL else {}
)

# Enable WAL mode for SQLite: allows concurrent reads while writing
# and prevents "database is locked" errors under multi-thread access.
if "sqlite" in DATABASE_URL:
    from sqlalchemy import event as sa_event

    @sa_event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Reference instruments (symbol, name, OKX swap id, starting price)
DEFAULT_ASSETS = [
    ("BTC", "Bitcoin", "BTC-USDT-SWAP", "43250.00000000", "2.34", "28492.50000000"),
    ("ETH", "Ethereum", "ETH-USDT-SWAP", "2650.00000000", "-1.12", "156789.25000000"),
    ("ADA", "Cardano", "ADA-USDT-SWAP", "0.48500000", "0.89", "45632.10000000"),
    ("SOL", "Solana", "SOL-USDT-SWAP", "95.00000000", "0", "0"),
]


def init_db():
    """Initialize database tables and provision the demo account."""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_defaults(db)
    finally:
        db.close()


def seed_defaults(db: Session, paper_balance: str = DEFAULT_PAPER_BALANCE) -> User:
    """Create the demo user, reference assets and default risk settings.

    Idempotent: existing rows are left untouched.
    """
    user = db.query(User).filter(User.username == "demo_trader").first()
    if not user:
        user = User(
            username="demo_trader",
            email="demo@tradinglab.com",
            paper_balance=paper_balance,
            live_balance="0",
            is_live_mode=False,
        )
        db.add(user)
        db.flush()
        logger.info(f"Seeded demo user {user.id} with {paper_balance} USDT paper balance")

    for symbol, name, inst_id, price, change, volume in DEFAULT_ASSETS:
        if not db.query(Asset).filter(Asset.symbol == symbol).first():
            db.add(Asset(
                symbol=symbol,
                name=name,
                inst_id=inst_id,
                current_price=price,
                change_24h=change,
                volume_24h=volume,
            ))

    if not db.query(RiskSettings).filter(RiskSettings.user_id == user.id).first():
        db.add(RiskSettings(user_id=user.id))

    db.commit()
    return user


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
