import threading
from decimal import Decimal

from avr.services.gateway_types import PaymentPlan
from avr.services.plan_cache import PaymentPlanCache, plan_cache_key


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _plan(pid="101", amount="25.00"):
    return PaymentPlan(id=pid, name="Monthly Donation", recurring_amount=Decimal(amount), currency="USD")


def test_key_format():
    assert plan_cache_key(Decimal("25"), "usd") == "plan_25.00_USD"
    assert plan_cache_key("10.5", "CAD") == "plan_10.50_CAD"
    assert plan_cache_key(Decimal("25.004"), "USD") == "plan_25.00_USD"


def test_miss_then_hit():
    cache = PaymentPlanCache(ttl_seconds=60, clock=FakeClock())
    assert cache.get("plan_25.00_USD") == (None, False)

    plan = _plan()
    cache.set("plan_25.00_USD", plan)
    got, found = cache.get("plan_25.00_USD")
    assert found is True
    assert got is plan


def test_expired_entry_is_a_miss_and_removed():
    clock = FakeClock()
    cache = PaymentPlanCache(ttl_seconds=60, clock=clock)
    cache.set("plan_25.00_USD", _plan())

    clock.now += 59
    assert cache.get("plan_25.00_USD")[1] is True

    clock.now += 1
    assert cache.get("plan_25.00_USD") == (None, False)
    assert len(cache) == 0


def test_clear_sweeps_only_expired():
    clock = FakeClock()
    cache = PaymentPlanCache(ttl_seconds=60, clock=clock)
    cache.set("plan_10.00_USD", _plan("1", "10.00"))
    clock.now += 30
    cache.set("plan_20.00_USD", _plan("2", "20.00"))
    clock.now += 40

    assert cache.clear() == 1
    assert len(cache) == 1
    assert cache.get("plan_20.00_USD")[1] is True


def test_concurrent_readers_and_writers():
    cache = PaymentPlanCache(ttl_seconds=3600)
    errors = []

    def worker(n):
        try:
            for i in range(200):
                key = plan_cache_key(Decimal(i % 10), "USD")
                if i % 3 == 0:
                    cache.set(key, _plan(str(n * 1000 + i)))
                else:
                    cache.get(key)
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert not errors
    assert len(cache) == 10
