"""
ActiveTradeRegistry — per-instrument mutual exclusion for VIPER strikes.

An instrument is in exactly one of:
  pending   acquired by a strike in progress
  open      backing a persisted active ViperTrade
  cooldown  a failed strike; unavailable until the expiry passes

``try_acquire`` is the single atomic check-and-set every stream goes
through, so two cycles can never open the same instrument twice.
"""
import logging
import threading
import time
from typing import Callable, Dict, Iterable, Set

from backend.services.errors import ConcurrencyViolation

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 30.0  # seconds


class ActiveTradeRegistry:

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Set[str] = set()
        self._open: Set[str] = set()
        self._cooldown: Dict[str, float] = {}

    def _purge_cooldowns(self):
        now = self._clock()
        for inst_id in [i for i, expiry in self._cooldown.items() if expiry <= now]:
            del self._cooldown[inst_id]

    def try_acquire(self, inst_id: str, max_concurrent: int) -> None:
        with self._lock:
            self._purge_cooldowns()
            if inst_id in self._open or inst_id in self._pending:
                raise ConcurrencyViolation(f"{inst_id} already has an active trade", {"inst_id": inst_id})
            if inst_id in self._cooldown:
                raise ConcurrencyViolation(f"{inst_id} is cooling down", {"inst_id": inst_id})
            held = len(self._open) + len(self._pending)
            if held >= max_concurrent:
                raise ConcurrencyViolation(
                    f"Max concurrent trades reached ({held}/{max_concurrent})",
                    {"active": held, "max_concurrent_trades": max_concurrent},
                )
            self._pending.add(inst_id)

    def confirm(self, inst_id: str) -> None:
        """Pending strike became an open trade."""
        with self._lock:
            self._pending.discard(inst_id)
            self._open.add(inst_id)

    def release(self, inst_id: str) -> None:
        with self._lock:
            self._pending.discard(inst_id)
            self._open.discard(inst_id)

    def cool_down(self, inst_id: str, seconds: float = DEFAULT_COOLDOWN) -> None:
        """Release a failed strike after ``seconds``."""
        with self._lock:
            self._pending.discard(inst_id)
            self._cooldown[inst_id] = self._clock() + seconds

    def release_pending(self) -> int:
        with self._lock:
            count = len(self._pending)
            self._pending.clear()
            self._cooldown.clear()
        if count:
            logger.info(f"VIPER: released {count} in-flight instrument lock(s)")
        return count

    def rebuild(self, inst_ids: Iterable[str]) -> None:
        with self._lock:
            self._pending.clear()
            self._open = set(inst_ids)

    def is_held(self, inst_id: str) -> bool:
        with self._lock:
            self._purge_cooldowns()
            return inst_id in self._open or inst_id in self._pending or inst_id in self._cooldown

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._open) + len(self._pending)

    @property
    def open_instruments(self) -> Set[str]:
        with self._lock:
            return set(self._open)
