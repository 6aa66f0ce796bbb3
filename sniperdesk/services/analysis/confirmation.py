"""
Sniper confirmation wait.

When the consensus call and an active sniper read disagree, the trade
is parked instead of rejected. It enters once the sniper flips to agree
(with a small confidence bonus) or is dropped after the timeout.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

CONFIRMATION_TIMEOUT_S = 4 * 60 * 60
MAX_CHECK_ATTEMPTS = 48
CONFIRMATION_BONUS = 0.05


@dataclass
class ConfirmationDecision:
    should_wait: bool
    should_enter: bool
    reason: Optional[str] = None
    bonus: float = 0.0


@dataclass
class PendingConfirmation:
    symbol: str
    direction: str
    started_at: float
    last_check: float
    sniper_direction: str
    sniper_score: int
    attempts: int = 1


class SniperConfirmationTracker:
    def __init__(self, timeout_s: float = CONFIRMATION_TIMEOUT_S,
                 max_attempts: int = MAX_CHECK_ATTEMPTS,
                 confidence_bonus: float = CONFIRMATION_BONUS,
                 clock: Callable[[], float] = time.time):
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.confidence_bonus = confidence_bonus
        self._clock = clock
        self._pending: Dict[str, PendingConfirmation] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(symbol: str, direction: str) -> str:
        return f"{symbol}-{direction}"

    def check(self, symbol: str, direction: str, sniper_direction: Optional[str],
              sniper_score: int = 0, sniper_active: bool = False) -> ConfirmationDecision:
        now = self._clock()
        key = self._key(symbol, direction)

        with self._lock:
            if not sniper_active or not sniper_direction:
                self._pending.pop(key, None)
                return ConfirmationDecision(should_wait=False, should_enter=True)

            agrees = ((direction == "long" and sniper_direction == "bullish")
                      or (direction == "short" and sniper_direction == "bearish"))
            if agrees:
                pending = self._pending.pop(key, None)
                if pending is None:
                    return ConfirmationDecision(should_wait=False, should_enter=True)
                wait_min = round((now - pending.started_at) / 60)
                logger.info(f"🎯 {symbol} {direction} confirmed by sniper after {wait_min}min")
                return ConfirmationDecision(
                    should_wait=False, should_enter=True,
                    reason=f"SNIPER CONFIRMED after {wait_min}min wait",
                    bonus=self.confidence_bonus,
                )

            pending = self._pending.get(key)
            if pending is None:
                self._pending[key] = PendingConfirmation(
                    symbol=symbol, direction=direction, started_at=now, last_check=now,
                    sniper_direction=sniper_direction, sniper_score=sniper_score,
                )
                return ConfirmationDecision(
                    should_wait=True, should_enter=False,
                    reason=(f"SNIPER WAIT STARTED: {direction.upper()} vs "
                            f"{sniper_direction} sniper - monitoring"),
                )

            pending.attempts += 1
            pending.last_check = now
            waited = now - pending.started_at
            if waited > self.timeout_s or pending.attempts > self.max_attempts:
                del self._pending[key]
                return ConfirmationDecision(
                    should_wait=False, should_enter=False,
                    reason=(f"SNIPER TIMEOUT: waited {round(waited / 60)}min, "
                            f"sniper still {sniper_direction}"),
                )
            return ConfirmationDecision(
                should_wait=True, should_enter=False,
                reason=(f"SNIPER WAIT: {direction.upper()} pending, sniper {sniper_direction} "
                        f"({round(waited / 60)}min/{round(self.timeout_s / 60)}min)"),
            )

    def pending(self) -> List[Dict]:
        now = self._clock()
        with self._lock:
            return [
                {
                    "symbol": p.symbol,
                    "direction": p.direction,
                    "waiting_for": "bearish" if p.sniper_direction == "bullish" else "bullish",
                    "wait_minutes": round((now - p.started_at) / 60),
                    "attempts": p.attempts,
                    "max_wait_minutes": round(self.timeout_s / 60),
                }
                for p in self._pending.values()
            ]

    def clear(self, symbol: str, direction: Optional[str] = None) -> None:
        with self._lock:
            for d in ([direction] if direction else ["long", "short"]):
                self._pending.pop(self._key(symbol, d), None)

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, p in self._pending.items() if now - p.started_at > self.timeout_s]
            for k in expired:
                del self._pending[k]
        return len(expired)
