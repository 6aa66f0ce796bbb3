"""
Tests for the sniper confirmation wait.
"""
from sniperdesk.services.analysis.confirmation import SniperConfirmationTracker


def _tracker(clock, **kwargs):
    return SniperConfirmationTracker(clock=clock, **kwargs)


def test_inactive_sniper_enters_immediately(clock):
    tracker = _tracker(clock)
    d = tracker.check("BTCUSDT", "long", sniper_direction=None)
    assert d.should_enter and not d.should_wait
    assert tracker.pending() == []


def test_agreeing_sniper_enters_without_bonus(clock):
    tracker = _tracker(clock)
    d = tracker.check("BTCUSDT", "long", "bullish", 70, sniper_active=True)
    assert d.should_enter
    assert d.bonus == 0.0


def test_disagreement_waits_then_confirms_with_bonus(clock):
    tracker = _tracker(clock)

    d = tracker.check("ETHUSDT", "short", "bullish", 60, sniper_active=True)
    assert d.should_wait and not d.should_enter
    assert d.reason.startswith("SNIPER WAIT STARTED")

    pending = tracker.pending()
    assert len(pending) == 1
    assert pending[0]["waiting_for"] == "bearish"

    clock.advance(30 * 60)
    d = tracker.check("ETHUSDT", "short", "bullish", 60, sniper_active=True)
    assert d.should_wait
    assert tracker.pending()[0]["attempts"] == 2

    clock.advance(15 * 60)
    d = tracker.check("ETHUSDT", "short", "bearish", 65, sniper_active=True)
    assert d.should_enter
    assert d.bonus == 0.05
    assert "45min" in d.reason
    assert tracker.pending() == []


def test_wait_times_out(clock):
    tracker = _tracker(clock, timeout_s=3600)
    tracker.check("SOLUSDT", "long", "bearish", 55, sniper_active=True)

    clock.advance(3601)
    d = tracker.check("SOLUSDT", "long", "bearish", 55, sniper_active=True)

    assert not d.should_enter and not d.should_wait
    assert d.reason.startswith("SNIPER TIMEOUT")
    assert tracker.pending() == []


def test_attempt_limit(clock):
    tracker = _tracker(clock, max_attempts=2)
    tracker.check("SOLUSDT", "long", "bearish", 55, sniper_active=True)
    assert tracker.check("SOLUSDT", "long", "bearish", 55, sniper_active=True).should_wait
    assert not tracker.check("SOLUSDT", "long", "bearish", 55, sniper_active=True).should_wait


def test_sniper_going_quiet_releases_wait(clock):
    tracker = _tracker(clock)
    tracker.check("BNBUSDT", "long", "bearish", 55, sniper_active=True)
    d = tracker.check("BNBUSDT", "long", "bearish", 20, sniper_active=False)
    assert d.should_enter
    assert tracker.pending() == []


def test_cleanup_and_clear(clock):
    tracker = _tracker(clock, timeout_s=600)
    tracker.check("A", "long", "bearish", 55, sniper_active=True)
    clock.advance(300)
    tracker.check("B", "short", "bullish", 55, sniper_active=True)

    clock.advance(400)
    assert tracker.cleanup_expired() == 1
    assert [p["symbol"] for p in tracker.pending()] == ["B"]

    tracker.clear("B")
    assert tracker.pending() == []
