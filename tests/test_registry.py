"""
Key registry tests: registration, completion, retention and expiry.
"""
import pytest

from databus.bus import FetchResult, NoRegisteredCallbacksError, FOREVER

from conftest import Recorder


# =============================================================================
# Fresh state
# =============================================================================

def test_fresh_key_has_nothing(registry):
    for key in ("key1", "key2"):
        assert registry.size_of_waiters(key) == 0
        assert registry.cached_data_for(key) is None
        assert registry.is_pending(key) is False


# =============================================================================
# Coalescing
# =============================================================================

def test_first_registration_owns_the_fetch(registry):
    assert registry.register_interest("key1", Recorder()) is False
    assert registry.is_pending("key1") is True
    assert registry.size_of_waiters("key1") == 1


def test_second_registration_joins_the_waiters(registry):
    registry.register_interest("key1", Recorder())
    assert registry.register_interest("key1", Recorder()) is True
    assert registry.size_of_waiters("key1") == 2


def test_completion_delivers_to_every_waiter_in_order(registry, dispatcher):
    order = []
    first = Recorder("first", order)
    second = Recorder("second", order)
    third = Recorder("third", order)
    registry.register_interest("key1", first)
    registry.register_interest("key1", second)
    registry.register_interest("key1", third)

    registry.complete_fetch("key1", None, "data-goes-here")

    # Nothing runs inside complete_fetch itself
    assert first.calls == []
    assert registry.size_of_waiters("key1") == 0
    assert registry.is_pending("key1") is False

    dispatcher.run_pending()

    assert order == ["first", "second", "third"]
    for recorder in (first, second, third):
        assert recorder.calls == [(None, "data-goes-here")]
    assert registry.get_stats()["keys"] == 0


def test_callbacks_see_post_drain_state(registry, dispatcher):
    seen = []
    registry.register_interest("key1", lambda err, data: seen.append(registry.size_of_waiters("key1")))
    registry.register_interest("key1", lambda err, data: seen.append(registry.size_of_waiters("key1")))
    registry.complete_fetch("key1", None, "x")
    dispatcher.run_pending()
    assert seen == [0, 0]


def test_new_fetch_after_uncached_completion(registry, dispatcher):
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", None, "first")
    dispatcher.run_pending()
    assert registry.register_interest("key1", Recorder()) is False


def test_error_is_delivered_untouched(registry, dispatcher):
    error = {"code": 404}
    recorder = Recorder()
    registry.register_interest("missing", recorder)
    registry.complete_fetch("missing", error, None)
    dispatcher.run_pending()
    assert recorder.calls == [(error, None)]


def test_callback_must_be_callable(registry):
    with pytest.raises(TypeError):
        registry.register_interest("key1", "not-a-callback")
    assert registry.size_of_waiters("key1") == 0


# =============================================================================
# Usage errors
# =============================================================================

def test_complete_without_waiters_raises(registry):
    with pytest.raises(NoRegisteredCallbacksError) as exc_info:
        registry.complete_fetch("nobody", None, "data")
    assert exc_info.value.key == "nobody"


def test_complete_twice_raises(registry):
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", None, "data", retention=10)
    with pytest.raises(NoRegisteredCallbacksError):
        registry.complete_fetch("key1", None, "data")


def test_bad_retention_leaves_waiters_queued(registry):
    registry.register_interest("key1", Recorder())
    with pytest.raises(TypeError):
        registry.complete_fetch("key1", None, "data", retention="forever")
    assert registry.size_of_waiters("key1") == 1


# =============================================================================
# Retention
# =============================================================================

def test_retained_result_served_from_cache(registry, dispatcher):
    owner = Recorder()
    assert registry.register_interest("key3", owner) is False
    registry.complete_fetch("key3", None, "key3-data-goes-here", retention=1.0)

    assert registry.cached_data_for("key3") == FetchResult(None, "key3-data-goes-here")
    assert registry.is_pending("key3") is True

    later = Recorder()
    assert registry.register_interest("key3", later) is True
    assert registry.size_of_waiters("key3") == 0
    assert later.calls == []

    dispatcher.run_pending()
    assert owner.calls == [(None, "key3-data-goes-here")]
    assert later.calls == [(None, "key3-data-goes-here")]
    assert registry.is_pending("key3") is True


def test_cached_result_unpacks_as_pair(registry):
    registry.register_interest("key3", Recorder())
    registry.complete_fetch("key3", "warn", "payload", retention=5)
    error, data = registry.cached_data_for("key3")
    assert (error, data) == ("warn", "payload")


def test_retained_result_expires_on_timer(registry, dispatcher):
    registry.register_interest("key3", Recorder())
    registry.complete_fetch("key3", None, "data", retention=1.0)

    dispatcher.advance(0.5)
    assert registry.is_pending("key3") is True

    dispatcher.advance(1.0)
    assert registry.cached_data_for("key3") is None
    assert registry.is_pending("key3") is False
    assert registry.get_stats()["keys"] == 0


def test_expired_result_cleared_on_read(registry, dispatcher, clock):
    registry.register_interest("key3", Recorder())
    registry.complete_fetch("key3", None, "data", retention=1.0)

    # Time passes but the expiry timer has not run yet
    clock.now += 2.0
    assert registry.cached_data_for("key3") is None
    assert registry.get_stats()["keys"] == 0
    assert registry.register_interest("key3", Recorder()) is False

    # The late timer must not touch the new in-flight record
    dispatcher.advance(0)
    assert registry.size_of_waiters("key3") == 1


def test_non_positive_retention_keeps_result(registry, dispatcher):
    registry.register_interest("forever", Recorder())
    registry.complete_fetch("forever", None, "kept", retention=FOREVER)
    registry.register_interest("zero", Recorder())
    registry.complete_fetch("zero", None, "kept", retention=0)

    assert dispatcher.active_timers == []
    dispatcher.advance(10_000)
    assert registry.cached_data_for("forever") == FetchResult(None, "kept")
    assert registry.cached_data_for("zero") == FetchResult(None, "kept")


def test_cached_error_served_to_later_callers(registry, dispatcher):
    error = RuntimeError("upstream down")
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", error, None, retention=5)

    later = Recorder()
    registry.register_interest("key1", later)
    dispatcher.run_pending()
    assert later.calls == [(error, None)]


def test_uncached_completion_discards_previous_result(registry, dispatcher):
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", None, "old", retention=FOREVER)
    registry.register_interest("key1", Recorder(), force_update=True)
    registry.complete_fetch("key1", None, "new")

    assert registry.cached_data_for("key1") is None
    assert registry.get_stats()["keys"] == 0


# =============================================================================
# Force update
# =============================================================================

def test_force_update_bypasses_cache_when_idle(registry, dispatcher):
    registry.register_interest("key4", Recorder())
    registry.complete_fetch("key4", None, "key4-data-goes-here", retention=1.0)

    forced = Recorder()
    assert registry.register_interest("key4", forced, force_update=True) is False
    # Stale data stays visible until the forced fetch completes
    assert registry.cached_data_for("key4") == FetchResult(None, "key4-data-goes-here")

    registry.complete_fetch("key4", None, "different-data-for-key4", retention=1.0)
    dispatcher.run_pending()
    assert forced.calls == [(None, "different-data-for-key4")]
    assert registry.cached_data_for("key4") == FetchResult(None, "different-data-for-key4")


def test_force_update_joins_in_flight_fetch(registry):
    registry.register_interest("key4", Recorder())
    assert registry.register_interest("key4", Recorder(), force_update=True) is True
    assert registry.size_of_waiters("key4") == 2


def test_replaced_result_keeps_its_own_expiry(registry, dispatcher):
    registry.register_interest("key4", Recorder())
    registry.complete_fetch("key4", None, "short", retention=1.0)
    registry.register_interest("key4", Recorder(), force_update=True)
    registry.complete_fetch("key4", None, "long", retention=10.0)

    dispatcher.advance(2.0)
    assert registry.cached_data_for("key4") == FetchResult(None, "long")

    dispatcher.advance(9.0)
    assert registry.cached_data_for("key4") is None


# =============================================================================
# Maintenance and diagnostics
# =============================================================================

def test_invalidate_drops_cached_result(registry):
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", None, "data", retention=FOREVER)

    assert registry.invalidate("key1") is True
    assert registry.cached_data_for("key1") is None
    assert registry.invalidate("key1") is False


def test_invalidate_keeps_waiters(registry):
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", None, "data", retention=FOREVER)
    registry.register_interest("key1", Recorder(), force_update=True)

    assert registry.invalidate("key1") is True
    assert registry.size_of_waiters("key1") == 1


def test_stats_count_hits_misses_and_coalescing(registry, dispatcher):
    registry.register_interest("a", Recorder())
    registry.register_interest("a", Recorder())
    registry.complete_fetch("a", None, 1, retention=5)
    registry.register_interest("a", Recorder())
    registry.register_interest("b", Recorder())

    stats = registry.get_stats()
    assert stats["misses"] == 2
    assert stats["coalesced"] == 1
    assert stats["hits"] == 1
    assert stats["completions"] == 1
    assert stats["keys"] == 2
    assert stats["in_flight"] == 1
    assert stats["cached"] == 1


def test_describe_reports_state_without_payload(registry, clock):
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", None, "secret", retention=4.0)
    clock.now += 1.0

    info = registry.describe("key1")
    assert info == {
        "waiters": 0,
        "pending": True,
        "cached": True,
        "expires_in": 3.0,
        "scheduled": False,
        "refetch_state": "idle",
    }
    assert "secret" not in repr(info)


def test_shutdown_cancels_timers(registry, dispatcher):
    registry.register_interest("key1", Recorder())
    registry.complete_fetch("key1", None, "data", retention=5.0)

    registry.shutdown()
    assert registry.closed is True
    assert dispatcher.active_timers == []
    assert registry.get_stats()["keys"] == 0
