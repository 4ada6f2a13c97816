"""Tests for per-group run serialization."""

import threading
import time

from shipline.concurrency import CancelToken, ConcurrencySerializer, GroupPhase, GroupRegistry


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _enter_in_thread(serializer, group, run_id, token, results, **kwargs):
    def target():
        results[run_id] = serializer.enter(group, run_id, token, **kwargs)

    t = threading.Thread(target=target, daemon=True)
    t.start()
    return t


class TestCancelToken:
    def test_first_reason_wins(self):
        token = CancelToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"


class TestQueuePolicy:
    def test_idle_group_admits_immediately(self):
        ser = ConcurrencySerializer(GroupRegistry())
        assert ser.enter("deploy", "r1", CancelToken()) is True
        assert ser.state("deploy").phase == GroupPhase.RUNNING
        assert ser.state("deploy").active == "r1"

    def test_second_run_waits_for_first(self):
        ser = ConcurrencySerializer(GroupRegistry())
        ser.enter("deploy", "r1", CancelToken())
        results = {}
        t = _enter_in_thread(ser, "deploy", "r2", CancelToken(), results)

        assert _wait_until(lambda: ser.state("deploy").waiting == ["r2"])
        assert ser.state("deploy").phase == GroupPhase.QUEUED
        assert "r2" not in results

        ser.leave("deploy", "r1")
        t.join(5)
        assert results["r2"] is True
        assert ser.state("deploy").active == "r2"

    def test_waitlist_is_fifo(self):
        ser = ConcurrencySerializer(GroupRegistry())
        ser.enter("deploy", "r1", CancelToken())
        results = {}
        order = []
        threads = []
        for run_id in ("r2", "r3", "r4"):
            threads.append(_enter_in_thread(ser, "deploy", run_id, CancelToken(), results))
            assert _wait_until(lambda rid=run_id: rid in ser.state("deploy").waiting)

        active = "r1"
        for _ in range(3):
            ser.leave("deploy", active)
            assert _wait_until(lambda prev=active: ser.state("deploy").active not in (None, prev))
            active = ser.state("deploy").active
            order.append(active)

        for t in threads:
            t.join(5)
        assert order == ["r2", "r3", "r4"]

    def test_groups_are_independent(self):
        ser = ConcurrencySerializer(GroupRegistry())
        assert ser.enter("deploy", "r1", CancelToken())
        assert ser.enter("docs", "r2", CancelToken())

    def test_queue_policy_does_not_cancel_active(self):
        ser = ConcurrencySerializer(GroupRegistry())
        first = CancelToken()
        ser.enter("deploy", "r1", first)
        results = {}
        t = _enter_in_thread(ser, "deploy", "r2", CancelToken(), results)
        assert _wait_until(lambda: ser.state("deploy").waiting == ["r2"])
        assert not first.cancelled
        ser.leave("deploy", "r1")
        t.join(5)

    def test_waiter_cancelled_while_queued_never_runs(self):
        ser = ConcurrencySerializer(GroupRegistry())
        ser.enter("deploy", "r1", CancelToken())
        token = CancelToken()
        results = {}
        t = _enter_in_thread(ser, "deploy", "r2", token, results)
        assert _wait_until(lambda: ser.state("deploy").waiting == ["r2"])
        token.cancel("user")
        t.join(5)
        assert results["r2"] is False
        assert ser.state("deploy").waiting == []
        assert ser.state("deploy").active == "r1"


class TestCancelInProgressPolicy:
    def test_new_run_cancels_active_and_takes_over(self):
        ser = ConcurrencySerializer(GroupRegistry())
        first = CancelToken()
        ser.enter("deploy", "r1", first, cancel_in_progress=True)
        results = {}
        t = _enter_in_thread(ser, "deploy", "r2", CancelToken(), results, cancel_in_progress=True)

        assert _wait_until(lambda: first.cancelled)
        assert first.reason == "superseded by run r2"
        # r1 still holds the slot until it reaches a step boundary and leaves
        assert ser.state("deploy").active == "r1"

        ser.leave("deploy", "r1")
        t.join(5)
        assert results["r2"] is True

    def test_queued_runs_are_superseded_too(self):
        ser = ConcurrencySerializer(GroupRegistry())
        ser.enter("deploy", "r1", CancelToken(), cancel_in_progress=True)
        results = {}
        second = CancelToken()
        t2 = _enter_in_thread(ser, "deploy", "r2", second, results, cancel_in_progress=True)
        assert _wait_until(lambda: "r2" in ser.state("deploy").waiting)
        t3 = _enter_in_thread(ser, "deploy", "r3", CancelToken(), results, cancel_in_progress=True)

        t2.join(5)
        assert results["r2"] is False
        assert second.cancelled

        ser.leave("deploy", "r1")
        t3.join(5)
        assert results["r3"] is True


def test_on_queued_callback_sees_state():
    ser = ConcurrencySerializer(GroupRegistry())
    ser.enter("deploy", "r1", CancelToken())
    seen = []
    results = {}
    t = _enter_in_thread(
        ser, "deploy", "r2", CancelToken(), results,
        on_queued=lambda state: seen.append((state.active, state.waiting)),
    )
    assert _wait_until(lambda: seen)
    assert seen == [("r1", ["r2"])]
    ser.leave("deploy", "r1")
    t.join(5)
