"""
Autonomous Controller — start / stop / observe the VIPER loop for one user.

Each stream is a one-shot APScheduler ``date`` job that re-adds itself
after every cycle while the controller is running, so stopping simply
stops the chain and removes whatever is queued.  With several streams the
instrument universe is split into disjoint pools (``instruments[i::n]``);
streams share only the ledger and the engine's ActiveTradeRegistry.
"""
import logging
import threading
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List

from apscheduler.jobstores.base import JobLookupError
from sqlalchemy.orm import Session

from backend.services.errors import AlreadyRunning, InsufficientBalance
from backend.services.events import EventPublisher, TRADE_UPDATE
from backend.services.ledger import LedgerService
from backend.services.viper.engine import ViperEngine
from backend.services.viper.models import AutoTradingState

logger = logging.getLogger(__name__)

LIVE_MIN_BALANCE = Decimal("10")
PAPER_MIN_BALANCE = Decimal("5")
DEGRADED_AFTER = 3  # consecutive failed cycles


class AutonomousController:

    def __init__(
        self,
        user_id: int,
        engine: ViperEngine,
        ledger: LedgerService,
        session_factory: Callable[[], Session],
        scheduler,
        cycle_seconds: float = 5,
        streams: int = 1,
        publisher: EventPublisher = None,
    ):
        self.user_id = user_id
        self.engine = engine
        self.ledger = ledger
        self._session_factory = session_factory
        self._scheduler = scheduler
        self.cycle_seconds = cycle_seconds
        self.streams = max(1, streams)
        self._publisher = publisher or EventPublisher()
        self._state = AutoTradingState()
        self._lock = threading.Lock()

    # ── Helpers ─────────────────────────────────────────────────────────

    def _job_id(self, stream: int) -> str:
        return f"viper-{self.user_id}-{stream}"

    def _pool(self, stream: int) -> List[str]:
        return self.engine.source.instruments[stream::self.streams]

    def minimum_balance(self, db: Session) -> Decimal:
        user = self.ledger.get_user(db, self.user_id)
        return LIVE_MIN_BALANCE if user.is_live_mode else PAPER_MIN_BALANCE

    def _schedule(self, stream: int, delay: float) -> None:
        self._scheduler.add_job(
            self._run_stream,
            'date',
            run_date=datetime.now() + timedelta(seconds=delay),
            args=[stream],
            id=self._job_id(stream),
            replace_existing=True,
        )

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self) -> AutoTradingState:
        with self._lock:
            if self._state.is_running:
                raise AlreadyRunning("VIPER is already running", {"user_id": self.user_id})

            db = self._session_factory()
            try:
                balance = self.ledger.get_balance(db, self.user_id)
                minimum = self.minimum_balance(db)
            finally:
                db.close()

            if balance < minimum:
                raise InsufficientBalance(
                    minimum, balance,
                    message=f"Minimum balance of {minimum} USDT required to start VIPER. "
                            f"Current balance: {balance:.2f} USDT",
                )

            self._state.is_running = True
            self._state.degraded = False
            self._state.consecutive_failures = 0
            for stream in range(self.streams):
                # stagger streams so their cycles don't fire in lockstep
                self._schedule(stream, stream * self.cycle_seconds / self.streams)

        logger.info(
            f"VIPER started for user {self.user_id}: {self.streams} stream(s), "
            f"{self.cycle_seconds}s cycle, balance {balance} USDT"
        )
        self._publisher.publish(TRADE_UPDATE, {"user_id": self.user_id, "action": "started"})
        return self._state

    def stop(self, reason: str = "user request") -> bool:
        """Stop every stream; returns False when already stopped."""
        with self._lock:
            if not self._state.is_running:
                return False
            self._state.is_running = False
            for stream in range(self.streams):
                try:
                    self._scheduler.remove_job(self._job_id(stream))
                except JobLookupError:
                    pass
            self.engine.registry.release_pending()

        logger.info(f"VIPER stopped for user {self.user_id} ({reason})")
        self._publisher.publish(TRADE_UPDATE, {"user_id": self.user_id, "action": "stopped", "reason": reason})
        return True

    # ── Cycle ───────────────────────────────────────────────────────────

    def _run_stream(self, stream: int) -> None:
        if not self._state.is_running:
            return
        try:
            self.run_cycle(stream)
        finally:
            with self._lock:
                if self._state.is_running:
                    self._schedule(stream, self.cycle_seconds)

    def run_cycle(self, stream: int = 0) -> bool:
        """One guarded cycle; never raises. Returns True on success."""
        db = self._session_factory()
        try:
            balance = self.ledger.get_balance(db, self.user_id)
            minimum = self.minimum_balance(db)
            if balance < minimum:
                logger.warning(
                    f"VIPER user {self.user_id}: balance {balance} below minimum {minimum}, halting"
                )
                self.stop(reason="insufficient balance")
                return False

            summary = self.engine.run_cycle(db, self._pool(stream))
        except Exception as e:
            db.rollback()
            self._state.consecutive_failures += 1
            if self._state.consecutive_failures >= DEGRADED_AFTER and not self._state.degraded:
                self._state.degraded = True
                logger.error(
                    f"VIPER user {self.user_id}: {self._state.consecutive_failures} consecutive "
                    f"cycle failures, entering degraded mode"
                )
            logger.error(f"VIPER cycle error (user {self.user_id}, stream {stream}): {e}", exc_info=True)
            return False
        finally:
            db.close()

        metrics = summary["metrics"]
        self._state.cycle_count += 1
        self._state.last_execution = datetime.utcnow()
        self._state.profitability = metrics["total_pnl"]
        self._state.success_rate = metrics["win_rate"]
        self._state.consecutive_failures = 0
        if self._state.degraded:
            logger.info(f"VIPER user {self.user_id}: cycle succeeded, leaving degraded mode")
        self._state.degraded = False
        return True

    def get_state(self) -> dict:
        return self._state.to_dict()
