# avr/services/plan_cache.py
"""In-process cache of gateway payment plans keyed by amount and currency."""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterator, Optional, Tuple, Union

from avr.services.gateway_types import PaymentPlan

log = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600

_CENTS = Decimal("0.01")


def plan_cache_key(amount: Union[Decimal, float, int, str], currency: str) -> str:
    """``plan_<amount 2dp>_<CURRENCY>``, e.g. ``plan_25.00_USD``."""
    amt = Decimal(str(amount)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"plan_{amt}_{(currency or 'USD').upper()}"


@dataclass
class CachedPaymentPlan:
    plan: PaymentPlan
    expires_at: float

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (time.monotonic() if now is None else now) >= self.expires_at


class _ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PaymentPlanCache:
    """
    Shared across request threads; one instance per app (see create_app).

    Lookups take the read lock, inserts and sweeps the write lock. Expired
    entries found on lookup are reported as misses and removed.
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = int(ttl_seconds)
        self._clock = clock
        self._plans: Dict[str, CachedPaymentPlan] = {}
        self._lock = _ReadWriteLock()

    def get(self, key: str) -> Tuple[Optional[PaymentPlan], bool]:
        now = self._clock()
        with self._lock.read():
            entry = self._plans.get(key)
            if entry is None:
                return None, False
            if not entry.is_expired(now):
                return entry.plan, True

        with self._lock.write():
            current = self._plans.get(key)
            if current is not None and current.is_expired(now):
                del self._plans[key]
        return None, False

    def set(self, key: str, plan: PaymentPlan) -> None:
        entry = CachedPaymentPlan(plan=plan, expires_at=self._clock() + self.ttl_seconds)
        with self._lock.write():
            self._plans[key] = entry
        log.debug("Cached payment plan %s under %s", plan.id, key)

    def clear(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock.write():
            stale = [k for k, v in self._plans.items() if v.is_expired(now)]
            for k in stale:
                del self._plans[k]
        if stale:
            log.info("Swept %d expired payment plan(s)", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._plans)


__all__ = ["PaymentPlanCache", "CachedPaymentPlan", "plan_cache_key", "DEFAULT_TTL_SECONDS"]
